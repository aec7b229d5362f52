"""Exception taxonomy for the shop dunning agent."""


class DunningError(Exception):
    """Base class for all dunning errors."""


class ConfigurationError(DunningError):
    """Tenant or process configuration is missing or invalid."""


class ApiRequestError(DunningError):
    """Order backend request failed after exhausting its retry budget."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ApiRequestError):
    """Token exchange failed or the backend kept rejecting the token."""


class NotFoundError(ApiRequestError):
    """Requested entity does not exist in the order backend."""


class TemplateMissingError(DunningError):
    """Email template for a dunning stage could not be loaded."""


class MissingFieldError(DunningError):
    """Order lacks a field that is required to send a notice."""


class DeliveryError(DunningError):
    """Email provider rejected the message or was unreachable."""
