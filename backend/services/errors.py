"""Error taxonomy shared by the socket layer and the HTTP routes.

Every error carries a client-safe ``message`` and the HTTP status the REST
surface answers with. Persistence and transport failures keep their detail
for the server log and expose only a generic message.
"""


class ChatError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthError(ChatError):
    status_code = 401
    default_message = "Authentication error"


class ValidationError(ChatError):
    status_code = 400
    default_message = "Invalid request"


class ForbiddenError(ChatError):
    status_code = 403
    default_message = "Not allowed"


class NotFoundError(ChatError):
    status_code = 404
    default_message = "Not found"


class ConflictError(ChatError):
    status_code = 409
    default_message = "Conflict"


class ExpiredError(ChatError):
    status_code = 410
    default_message = "Invitation has expired"


class LimitReachedError(ChatError):
    status_code = 410
    default_message = "Invitation has reached its usage limit"


class RateLimitedError(ChatError):
    status_code = 429
    default_message = "Too many requests, please try again later"


class PersistenceError(ChatError):
    status_code = 503
    default_message = "Service temporarily unavailable"

    def __init__(self, detail: str = "", *, retryable: bool = False):
        # detail is for logs only; clients always see default_message
        super().__init__(self.default_message)
        self.detail = detail
        self.retryable = retryable


class TransportError(ChatError):
    status_code = 502
    default_message = "Delivery failed"

    def __init__(self, connection_id: str, detail: str = ""):
        super().__init__(self.default_message)
        self.connection_id = connection_id
        self.detail = detail
