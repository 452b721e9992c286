class ChatError(Exception):
    """Base class for failures the chat core reports back to a connection.

    ``message`` is safe to show to a client; the exception text may carry
    more detail and is only logged.
    """

    default_message = "Something went wrong"

    def __init__(self, message: str = None, detail: str = None):
        self.message = message or self.default_message
        super().__init__(detail or self.message)


class AuthenticationError(ChatError):
    default_message = "Authentication failed"


class AuthorizationError(ChatError):
    default_message = "Not authorized for this room"


class NotFoundError(ChatError):
    default_message = "Not found"


class ValidationError(ChatError):
    default_message = "Invalid payload"


class PersistenceError(ChatError):
    default_message = "Storage operation failed"
