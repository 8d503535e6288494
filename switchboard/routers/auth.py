"""Ticket issuance for the web chat socket."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from switchboard.database import get_db
from switchboard.logging_config import get_logger
from switchboard.schemas.auth import AuthTicketRequest, AuthTicketResponse
from switchboard.services.errors import ChannelInactive, ChannelNotFound
from switchboard.services.ticket_service import TicketService, get_ticket_service

logger = get_logger("auth_router")

router = APIRouter(tags=["webchat"])


@router.post("/auth", response_model=AuthTicketResponse)
@router.post("/api/v1/webchat/auth", response_model=AuthTicketResponse, include_in_schema=False)
def issue_ticket(
    request: AuthTicketRequest,
    db: Session = Depends(get_db),
    tickets: TicketService = Depends(get_ticket_service),
):
    try:
        ticket = tickets.issue_ticket(db, request.userId, request.channelId)
    except ChannelNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": exc.message, "code": exc.code},
        )
    except ChannelInactive as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": exc.message, "code": exc.code},
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": str(exc), "code": "ValidationError"},
        )

    return AuthTicketResponse(token=ticket.token, expiresInSeconds=ticket.expires_in_seconds)
