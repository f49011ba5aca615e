class ChatError(Exception):
    """Base class for errors raised by the chat services."""


class ValidationError(ChatError):
    """Client input failed a trivial field check (empty or oversized)."""


class StoreError(ChatError):
    """A read or write against the Redis store failed."""


class DeliveryError(ChatError):
    """Pushing a payload to a connection failed."""

    def __init__(self, message: str, target: str = None):
        super().__init__(message)
        self.target = target


class StaleConnectionError(DeliveryError):
    """The delivery target no longer exists; its registry record should be pruned."""


class TransientDeliveryError(DeliveryError):
    """The target could not be reached right now; it may still be live."""


class ConfigError(ChatError):
    """Required configuration is missing or invalid. Fatal at startup."""
