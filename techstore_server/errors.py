"""Error taxonomy for the storefront client."""

from typing import Optional


class TechStoreError(Exception):
    """Base class for all storefront client errors."""

    code = "error"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class CartValidationError(TechStoreError):
    """Local cart input was rejected before touching the cart."""

    code = "cart_invalid"


class CartIntegrityError(TechStoreError):
    """A cart payload cannot be represented consistently."""

    code = "cart_integrity"


class CheckoutValidationError(TechStoreError):
    """A checkout step guard failed."""

    code = "checkout_invalid"

    def __init__(self, field_errors: dict[str, str], message: Optional[str] = None) -> None:
        super().__init__(message or "Please fill in the required checkout fields")
        self.field_errors = field_errors


class CheckoutStateError(TechStoreError):
    """Transition not permitted from the current checkout step."""

    code = "checkout_state"


class EmptyCartError(TechStoreError):
    """The cart is empty, so the checkout session cannot continue."""

    code = "empty_cart"


class ServiceError(TechStoreError):
    """A storefront API call failed."""

    code = "service_unavailable"

    def __init__(
        self, message: str, status_code: Optional[int] = None, code: Optional[str] = None
    ) -> None:
        super().__init__(message, code)
        self.status_code = status_code


class AuthenticationError(ServiceError):
    """The API rejected the credentials or the token."""

    code = "unauthenticated"


class CheckoutRejectedError(ServiceError):
    """The server refused the order (validation, stock)."""

    code = "checkout_rejected"


class StalePricingError(CheckoutRejectedError):
    """The discount code or loyalty points are no longer valid."""

    code = "stale_pricing"
