"""
Payment Integration Errors
Every error carries the HTTP status it is surfaced with and a caller-safe message
"""

from typing import Optional


class SalonPayError(Exception):
    """Base class for payment integration errors"""

    status_code = 500
    default_public_message = "Internal server error"

    def __init__(self, message: str, public_message: Optional[str] = None):
        super().__init__(message)
        self.public_message = public_message or self.default_public_message


class ConfigurationError(SalonPayError):
    """A required secret or setting is missing"""

    status_code = 500
    default_public_message = "Payment integration is not configured"


class NotConnectedError(ConfigurationError):
    """The organization has no Mercado Pago account connected"""

    status_code = 400
    default_public_message = (
        "This organization has no Mercado Pago account connected. Connect Mercado Pago in settings."
    )


class NoRefreshTokenError(SalonPayError):
    """The access token expired and there is no refresh token to renew it"""

    status_code = 400
    default_public_message = "Mercado Pago authorization expired. Reconnect Mercado Pago in settings."


class InvalidTokenError(SalonPayError):
    """Booking link invalid, expired or used outside its scope"""

    status_code = 403
    default_public_message = "Invalid or expired booking link"


class LinkNotFoundError(InvalidTokenError):
    pass


class LinkExpiredError(InvalidTokenError):
    pass


class LinkScopeError(InvalidTokenError):
    pass


class SlotUnavailableError(SalonPayError):
    status_code = 409
    default_public_message = "The selected time is no longer available"


class ProviderUnavailableError(SalonPayError):
    """Mercado Pago answered with a non-2xx status or could not be reached"""

    status_code = 502
    default_public_message = "Mercado Pago is unavailable, please try again"

    def __init__(
        self,
        message: str,
        public_message: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        super().__init__(message, public_message)
        self.upstream_status = upstream_status


class TokenRefreshError(ProviderUnavailableError):
    default_public_message = "Could not renew Mercado Pago authorization, please try again"


class DecryptionError(SalonPayError):
    """Stored secret failed authenticated decryption"""

    status_code = 500
    default_public_message = "Stored credentials could not be read"


class UnresolvedCorrelationError(SalonPayError):
    """
    A webhook could not be tied to an organization and appointment.
    Raised and handled inside webhook processing only; never rendered as a response.
    """
