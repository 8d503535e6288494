from fastapi import APIRouter, Depends, WebSocket

from switchboard.services.connection_registry import ConnectionRegistry, get_connection_registry
from switchboard.services.message_dispatcher import MessageDispatcher, get_message_dispatcher
from switchboard.services.session_service import SessionHandler, WebSocketTransport
from switchboard.services.ticket_service import TicketService, get_ticket_service

router = APIRouter(tags=["webchat"])


@router.websocket("/webchat/ws")
@router.websocket("/api/v1/webchat/ws")
async def webchat_socket(
    websocket: WebSocket,
    registry: ConnectionRegistry = Depends(get_connection_registry),
    tickets: TicketService = Depends(get_ticket_service),
    dispatcher: MessageDispatcher = Depends(get_message_dispatcher),
):
    """Web chat session. The first frame must be ``{"type": "auth", "token": ...}``."""
    await websocket.accept()
    handler = SessionHandler.from_settings(
        WebSocketTransport(websocket),
        registry=registry,
        tickets=tickets,
        dispatcher=dispatcher,
    )
    await handler.run()
