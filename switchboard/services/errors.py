"""Error taxonomy shared by the session and queue layers."""


class SwitchboardError(Exception):
    code = "InternalError"

    def __init__(self, message: str = "", code: str | None = None):
        self.message = message or self.__class__.__name__
        if code:
            self.code = code
        super().__init__(self.message)


class AuthTimeout(SwitchboardError):
    code = "AuthTimeout"


class AuthFailed(SwitchboardError):
    code = "AuthFailed"


class TicketExpired(AuthFailed):
    code = "TicketExpired"


class TicketAlreadyUsed(AuthFailed):
    code = "TicketAlreadyUsed"


class TicketInvalid(AuthFailed):
    code = "TicketInvalid"


class ChannelNotFound(SwitchboardError):
    code = "ChannelNotFound"


class ChannelInactive(SwitchboardError):
    code = "ChannelInactive"


class AgentUnavailable(SwitchboardError):
    code = "AgentUnavailable"


class RateLimited(SwitchboardError):
    code = "RateLimited"


class QueueUnknown(SwitchboardError):
    code = "QueueUnknown"


class QueueSaturated(SwitchboardError):
    code = "QueueSaturated"


class JobExhausted(SwitchboardError):
    code = "JobExhausted"


class InternalError(SwitchboardError):
    code = "InternalError"
