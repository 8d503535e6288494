import pytest

from switchboard.services.errors import (
    AuthFailed,
    ChannelInactive,
    ChannelNotFound,
    TicketAlreadyUsed,
    TicketExpired,
    TicketInvalid,
)
from switchboard.services.ticket_service import TicketService


@pytest.fixture
def tickets(monotonic):
    return TicketService("test-secret", ttl_seconds=60, clock=monotonic)


def _db_with(db_session, channel):
    db_session.query.return_value.filter.return_value.first.return_value = channel
    return db_session


class TestIssueTicket:
    def test_issue_for_active_channel(self, tickets, db_session, make_channel):
        ticket = tickets.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        assert ticket.token
        assert ticket.user_id == "u1"
        assert ticket.channel_id == "c1"
        assert ticket.expires_in_seconds == 60

    def test_unknown_channel(self, tickets, db_session):
        with pytest.raises(ChannelNotFound):
            tickets.issue_ticket(_db_with(db_session, None), "u1", "missing")

    def test_inactive_channel(self, tickets, db_session, make_channel):
        with pytest.raises(ChannelInactive):
            tickets.issue_ticket(_db_with(db_session, make_channel(is_active=False)), "u1", "c1")

    def test_empty_user_rejected(self, tickets, db_session):
        with pytest.raises(ValueError):
            tickets.issue_ticket(db_session, "", "c1")

    def test_ticket_ids_are_unique(self, tickets, db_session, make_channel):
        db = _db_with(db_session, make_channel())
        first = tickets.issue_ticket(db, "u1", "c1")
        second = tickets.issue_ticket(db, "u1", "c1")
        assert first.ticket_id != second.ticket_id
        assert first.token != second.token


class TestConsumeTicket:
    def test_consume_once(self, tickets, db_session, make_channel):
        ticket = tickets.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        assert tickets.consume_ticket(ticket.token) == ("u1", "c1")

    def test_replay_rejected(self, tickets, db_session, make_channel):
        ticket = tickets.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        tickets.consume_ticket(ticket.token)
        with pytest.raises(TicketAlreadyUsed):
            tickets.consume_ticket(ticket.token)

    def test_replay_rejected_every_time(self, tickets, db_session, make_channel):
        ticket = tickets.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        tickets.consume_ticket(ticket.token)
        for _ in range(3):
            with pytest.raises(TicketAlreadyUsed):
                tickets.consume_ticket(ticket.token)

    def test_expired(self, tickets, db_session, make_channel, monotonic):
        ticket = tickets.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        monotonic.advance(61)
        with pytest.raises(TicketExpired):
            tickets.consume_ticket(ticket.token)

    def test_replay_after_expiry_still_reports_used(self, tickets, db_session, make_channel, monotonic):
        ticket = tickets.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        tickets.consume_ticket(ticket.token)
        monotonic.advance(90)
        with pytest.raises(TicketAlreadyUsed):
            tickets.consume_ticket(ticket.token)

    def test_consumed_ids_purged_eventually(self, tickets, db_session, make_channel, monotonic):
        db = _db_with(db_session, make_channel())
        ticket = tickets.issue_ticket(db, "u1", "c1")
        tickets.consume_ticket(ticket.token)
        assert tickets.consumed_count() == 1

        monotonic.advance(200)
        fresh = tickets.issue_ticket(db, "u2", "c1")
        tickets.consume_ticket(fresh.token)
        assert tickets.consumed_count() == 1
        with pytest.raises(TicketExpired):
            tickets.consume_ticket(ticket.token)

    def test_wrong_secret(self, tickets, db_session, make_channel, monotonic):
        other = TicketService("other-secret", clock=monotonic)
        ticket = other.issue_ticket(_db_with(db_session, make_channel()), "u1", "c1")
        with pytest.raises(TicketInvalid):
            tickets.consume_ticket(ticket.token)

    def test_garbage_token(self, tickets):
        with pytest.raises(TicketInvalid):
            tickets.consume_ticket("not-a-jwt")

    def test_missing_token(self, tickets):
        with pytest.raises(TicketInvalid):
            tickets.consume_ticket(None)

    def test_all_failures_are_auth_failures(self, tickets):
        with pytest.raises(AuthFailed):
            tickets.consume_ticket("")
