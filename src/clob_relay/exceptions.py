"""Exceptions raised by the relay service."""


class RelayError(Exception):
    """Base exception for relay errors"""

    pass


class ConfigurationError(RelayError):
    """Raised when required settings are missing or invalid"""

    pass


class ReconnectLimitExceeded(RelayError):
    """Raised when the feed connection cannot be re-established"""

    def __init__(self, attempts: int):
        super().__init__(f"Max reconnection attempts reached ({attempts})")
        self.attempts = attempts


class StoreError(RelayError):
    """Raised when a Redis read fails"""

    pass
