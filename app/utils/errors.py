"""Error types for the FoodShare backend."""


class FoodShareError(Exception):
    """Base exception; carries the HTTP status a handler should answer with."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or (self.__class__.__doc__ or "").strip()


class ConfigError(FoodShareError):
    """Invalid configuration."""
    code = "config_error"


class ListingValidationError(FoodShareError):
    """Listing payload failed validation."""
    status_code = 400
    code = "validation_error"


class ListingNotFoundError(FoodShareError):
    """Listing not found."""
    status_code = 404
    code = "listing_not_found"


class ListingUnavailableError(FoodShareError):
    """This listing is not available for claiming."""
    status_code = 409
    code = "listing_unavailable"


class ClaimTokenNotFoundError(FoodShareError):
    """Invalid QR code or listing not found."""
    status_code = 404
    code = "qr_code_not_found"


class ClaimTokenExpiredError(FoodShareError):
    """QR code has expired."""
    status_code = 410
    code = "qr_code_expired"


class ClaimTokenUsedError(FoodShareError):
    """QR code already used."""
    status_code = 409
    code = "qr_code_used"


class RoleNotPermittedError(FoodShareError):
    """Your role does not allow this action."""
    status_code = 403
    code = "forbidden"


class DeliveryError(FoodShareError):
    """A notification channel failed to deliver."""
    code = "delivery_failed"
