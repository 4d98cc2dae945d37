"""Project error hierarchy."""


class RelayBridgeError(Exception):
    """Base error."""


class ConfigurationError(RelayBridgeError):
    """Raised when a required setting is missing at startup."""


class DeliveryError(RelayBridgeError):
    """Raised when the app server rejects or mis-acknowledges a delivery."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
