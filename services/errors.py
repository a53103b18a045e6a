"""
Domain errors raised by the chat services.

Each carries the error kind the API reports and the HTTP status it maps to.
"""


class ChatError(Exception):
    error_kind = "internal-error"
    status_code = 500
    public_message = "Something went wrong"

    def __init__(self, message: str = None):
        super().__init__(message or self.public_message)


class InvalidPersonaError(ChatError):
    error_kind = "invalid-persona"
    status_code = 400
    public_message = "Unknown persona"


class UserNotFoundError(ChatError):
    error_kind = "not-found"
    status_code = 404
    public_message = "User not found"


class CompletionServiceError(ChatError):
    error_kind = "completion-service-error"
    status_code = 502
    public_message = "The assistant is unavailable right now, please try again"
