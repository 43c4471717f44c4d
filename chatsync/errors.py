"""
Exception hierarchy for the session service.

Route handlers map these onto HTTP status codes; background paths
(event consumers, sync batches) log them and carry on.
"""


class ChatSyncError(Exception):
    """Base error for the session service."""


class InvalidRequestError(ChatSyncError):
    """A required field is missing or malformed."""


class SessionNotFoundError(ChatSyncError):
    """No session row exists for the given name."""

    def __init__(self, session_name: str) -> None:
        super().__init__(f"session '{session_name}' not found")
        self.session_name = session_name


class ContactNotFoundError(ChatSyncError):
    """No contact row exists for (session, phone number)."""

    def __init__(self, session_name: str, phone_number: str) -> None:
        super().__init__(f"contact '{phone_number}' not found in session '{session_name}'")
        self.session_name = session_name
        self.phone_number = phone_number


class NotReadyError(ChatSyncError):
    """
    The operation needs a live, connected session.

    Also raised when a bulk sync is requested while another one is
    already running for the same session.
    """


class ProviderUnavailableError(ChatSyncError):
    """No client handle provider is configured or it could not be loaded."""
