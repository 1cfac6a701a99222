from typing import Optional


class FeedInControllerError(Exception):
    """Base exception for the feed-in controller."""


class ConfigError(FeedInControllerError):
    """Raised when the configuration cannot be used to start the controller."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class InverterCommunicationError(FeedInControllerError):
    """Reading or writing an inverter limit failed."""

    def __init__(self, message: str, inverter_id: Optional[str] = None):
        self.inverter_id = inverter_id
        if inverter_id:
            message = f"{inverter_id}: {message}"
        super().__init__(message)
