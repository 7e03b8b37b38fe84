"""Exception taxonomy for the chat relay.

Persistence failures are fatal to a delivery and are surfaced to the sender.
Push failures are non-fatal: they are logged and counted, never raised past
the delivery engine. A recipient being offline is not an error at all.
"""


class RelayError(Exception):
    """Base exception for relay errors."""
    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(RelayError):
    """Raised when the storage layer fails or rejects a write."""


class ChannelNotFoundError(PersistenceError):
    """Raised when a channel-scoped operation names an unknown channel."""
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"Channel {channel_id} not found", status_code=404)


class MessageNotFoundError(PersistenceError):
    """Raised when a stored message cannot be read back."""
    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} not found", status_code=404)


class PushError(RelayError):
    """Raised when writing an event to a connection fails or times out."""
    def __init__(self, message: str, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Push to {connection_id} failed: {message}", status_code=500)


class IdentityRejectedError(RelayError):
    """Raised when a connection credential fails verification."""
    def __init__(self, message: str = "Invalid connection credential"):
        super().__init__(message, status_code=401)
