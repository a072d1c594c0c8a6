"""Checkout state machine: shipping, payment, review and order submission."""

import logging
from typing import Any, Optional, Union

from .auth import AuthManager
from .cart_store import CartStore
from .errors import (
    CheckoutStateError,
    CheckoutValidationError,
    EmptyCartError,
    ServiceError,
    StalePricingError,
    TechStoreError,
)
from .models import (
    CheckoutSession,
    CheckoutStep,
    DiscountValidation,
    GuestInfo,
    OrderResult,
    PaymentMethod,
    PricingPreview,
    ShippingAddress,
)
from .pricing import PricingPreviewEngine, clamp_points, normalize_discount_code
from .sequencing import RequestSequencer
from .techstore_client import TechStoreClient

logger = logging.getLogger(__name__)

REQUIRED_SHIPPING_FIELDS = ("full_name", "phone", "street", "city", "province")

EDITABLE_STEPS = (CheckoutStep.SHIPPING_INFO, CheckoutStep.PAYMENT_METHOD, CheckoutStep.REVIEW)


def pricing_changed(before: Optional[PricingPreview], after: Optional[PricingPreview]) -> bool:
    """True if the total or the discount outcome differs between two previews."""
    if before is None or after is None:
        return before is not after
    return before.total_amount != after.total_amount or before.discount_valid != after.discount_valid


class CheckoutOrchestrator:
    """
    Drives one checkout attempt.

    Steps move shipping_info -> payment_method -> review -> submitting, ending
    in success, or in failed and straight back to review so the user can fix
    the problem and retry. Draining the cart aborts the whole session.
    """

    def __init__(
        self,
        cart_store: CartStore,
        engine: PricingPreviewEngine,
        client: TechStoreClient,
        auth_manager: AuthManager,
    ) -> None:
        self.cart_store = cart_store
        self.engine = engine
        self.client = client
        self.auth_manager = auth_manager
        self.session = CheckoutSession()
        self.needs_fresh_preview = False
        self._submissions = RequestSequencer()
        self._submitting = False

        self.ensure_cart()
        self._prefill_shipping()

    @property
    def step(self) -> CheckoutStep:
        return self.session.step

    @property
    def preview(self) -> Optional[PricingPreview]:
        return self.engine.preview

    @property
    def is_authenticated(self) -> bool:
        return self.auth_manager.is_authenticated()

    @property
    def available_points(self) -> int:
        user = self.auth_manager.user
        return user.loyalty_points if user and self.is_authenticated else 0

    def _prefill_shipping(self) -> None:
        user = self.auth_manager.user
        if user is None:
            return
        address = next((a for a in user.addresses if a.is_default), None)
        if address is None and user.addresses:
            address = user.addresses[0]
        if address is not None:
            self.session.shipping = ShippingAddress(
                full_name=address.full_name or user.full_name,
                phone=address.phone,
                street=address.street,
                city=address.city,
                province=address.province,
                country=address.country or "Vietnam",
            )
        else:
            self.session.shipping = ShippingAddress(full_name=user.full_name)

    def _transition(self, step: CheckoutStep) -> None:
        logger.info(f"Checkout step {self.session.step.value} -> {step.value}")
        self.session.step = step
        self.session.history.append(step)

    def _ensure_editable(self) -> None:
        if self.session.step not in EDITABLE_STEPS:
            raise CheckoutStateError(f"Checkout cannot be edited while {self.session.step.value}")

    def ensure_cart(self) -> None:
        """
        Abort the session if the cart has been drained.

        Raises:
            EmptyCartError: If the confirmed cart has no lines
        """
        if not self.cart_store.confirmed.is_empty():
            return
        if self.session.step != CheckoutStep.ABORTED:
            logger.warning("Cart is empty, aborting checkout")
            self._abort()
        raise EmptyCartError("Your cart is empty")

    def _abort(self) -> None:
        self.engine.cancel()
        self._submissions.invalidate()
        self._transition(CheckoutStep.ABORTED)

    # Form state

    def update_shipping(self, **fields: Any) -> ShippingAddress:
        self._ensure_editable()
        unknown = set(fields) - set(ShippingAddress.model_fields)
        if unknown:
            raise CheckoutValidationError(
                {name: "Unknown field" for name in sorted(unknown)}, "Unknown shipping fields"
            )
        self.session.shipping = self.session.shipping.model_copy(update=fields)
        for name in fields:
            self.session.field_errors.pop(name, None)
        return self.session.shipping

    def set_guest_email(self, email: str) -> None:
        self._ensure_editable()
        self.session.guest_email = email.strip()
        self.session.field_errors.pop("guest_email", None)

    def select_payment_method(self, method: Union[str, PaymentMethod]) -> PaymentMethod:
        self._ensure_editable()
        try:
            self.session.payment_method = PaymentMethod(method)
        except ValueError:
            allowed = ", ".join(m.value for m in PaymentMethod)
            error = f"Choose one of: {allowed}"
            self.session.field_errors["payment_method"] = error
            raise CheckoutValidationError({"payment_method": error})
        self.session.field_errors.pop("payment_method", None)
        return self.session.payment_method

    async def set_discount_code(self, code: Optional[str]) -> Optional[PricingPreview]:
        self._ensure_editable()
        self.session.discount_code = normalize_discount_code(code) or ""
        return await self.refresh_preview()

    async def set_points(self, points: int) -> Optional[PricingPreview]:
        self._ensure_editable()
        self.session.points_requested = clamp_points(points, self.available_points)
        return await self.refresh_preview()

    # Pricing

    async def refresh_preview(self) -> Optional[PricingPreview]:
        """
        Re-evaluate the pricing preview for the current cart, code and points.

        A failed request leaves the previous preview in place and records a
        warning on the session instead of raising.
        """
        self.ensure_cart()
        try:
            await self.engine.refresh(
                self.cart_store.confirmed.items,
                self.session.discount_code,
                self.session.points_requested,
                self.available_points,
            )
        except ServiceError as e:
            self.session.pricing_warning = f"Prices could not be updated: {e.message}"
            return self.engine.preview

        if not self.engine.is_stale:
            self.session.pricing_warning = None
            self.needs_fresh_preview = False
        return self.engine.preview

    async def validate_discount(self) -> DiscountValidation:
        """Check the entered code against the current subtotal, for user feedback."""
        code = normalize_discount_code(self.session.discount_code)
        if not code:
            return DiscountValidation(valid=False, message="Enter a discount code")
        try:
            return await self.client.validate_discount(code, self.cart_store.confirmed.total_amount)
        except ServiceError as e:
            return DiscountValidation(valid=False, message=e.message)

    # Transitions

    def shipping_errors(self) -> dict[str, str]:
        errors = {}
        for name in REQUIRED_SHIPPING_FIELDS:
            if not str(getattr(self.session.shipping, name)).strip():
                errors[name] = "This field is required"
        if not self.is_authenticated and not self.session.guest_email:
            errors["guest_email"] = "Email is required for guest checkout"
        return errors

    def payment_errors(self) -> dict[str, str]:
        if self.session.payment_method is None:
            return {"payment_method": "Choose a payment method"}
        return {}

    def _guard(self, errors: dict[str, str]) -> None:
        self.session.field_errors = errors
        if errors:
            raise CheckoutValidationError(errors)

    def advance(self) -> CheckoutStep:
        """
        Move to the next step if the current step's fields are complete.

        Raises:
            CheckoutValidationError: If required fields are missing; the step is unchanged
            CheckoutStateError: If there is no next step to move to
            EmptyCartError: If the cart was drained
        """
        self.ensure_cart()
        step = self.session.step
        if step == CheckoutStep.SHIPPING_INFO:
            self._guard(self.shipping_errors())
            self._transition(CheckoutStep.PAYMENT_METHOD)
        elif step == CheckoutStep.PAYMENT_METHOD:
            self._guard(self.payment_errors())
            self._transition(CheckoutStep.REVIEW)
        else:
            raise CheckoutStateError(f"Cannot advance from {step.value}")
        return self.session.step

    def back(self) -> CheckoutStep:
        step = self.session.step
        if step == CheckoutStep.REVIEW:
            self._transition(CheckoutStep.PAYMENT_METHOD)
        elif step == CheckoutStep.PAYMENT_METHOD:
            self._transition(CheckoutStep.SHIPPING_INFO)
        else:
            raise CheckoutStateError(f"Cannot go back from {step.value}")
        return self.session.step

    # Submission

    def build_order_payload(self) -> dict[str, Any]:
        shipping = self.session.shipping
        payload: dict[str, Any] = {
            "cartItems": [
                {"productId": item.product_id, "variantId": item.variant_id, "quantity": item.quantity}
                for item in self.cart_store.confirmed.items
            ],
            "shippingAddress": {
                "fullName": shipping.full_name,
                "phone": shipping.phone,
                "street": shipping.street,
                "city": shipping.city,
                "province": shipping.province,
                "country": shipping.country,
            },
            "paymentMethod": self.session.payment_method.value if self.session.payment_method else None,
        }

        preview = self.engine.preview
        code = normalize_discount_code(self.session.discount_code)
        if code and preview is not None and preview.discount_valid and preview.discount_code == code:
            payload["discountCode"] = code

        if self.session.points_requested > 0:
            payload["pointsToUse"] = self.session.points_requested

        if not self.is_authenticated:
            guest = GuestInfo(email=self.session.guest_email, full_name=shipping.full_name, phone=shipping.phone)
            payload["guestInfo"] = {"email": guest.email, "fullName": guest.full_name, "phone": guest.phone}
        return payload

    async def submit(self) -> Optional[OrderResult]:
        """
        Submit the order from the review step.

        Returns:
            The order result, or None if the checkout was left while the
            request was in flight

        Raises:
            CheckoutStateError: If not in review, a submission is already in
                flight, or pricing could not be refreshed or changed after a
                rejection
            CheckoutValidationError: If an earlier step's fields are incomplete
            EmptyCartError: If the cart was drained
            ServiceError: If the server refused the order; the session is back in review
        """
        if self._submitting:
            raise CheckoutStateError("An order submission is already in progress")
        if self.session.step != CheckoutStep.REVIEW:
            raise CheckoutStateError(f"Orders can only be submitted from review, not {self.session.step.value}")
        self.ensure_cart()
        self._guard({**self.shipping_errors(), **self.payment_errors()})

        self._submitting = True
        try:
            if self.needs_fresh_preview:
                reviewed = self.engine.preview
                await self.refresh_preview()
                if self.needs_fresh_preview:
                    raise CheckoutStateError("Prices are out of date; refresh them before ordering again")
                if pricing_changed(reviewed, self.engine.preview):
                    self.session.error = "Prices changed; review the new total before ordering"
                    raise CheckoutStateError(self.session.error)

            ticket = self._submissions.issue()
            self.session.error = None
            self._transition(CheckoutStep.SUBMITTING)
            try:
                result = await self.client.checkout(self.build_order_payload())
            except TechStoreError as e:
                if not self._submissions.is_current(ticket):
                    logger.info(f"Ignoring failed submission for a left checkout: {e}")
                    return None
                self._fail(e)
                if self.needs_fresh_preview:
                    # Review must show what the server will charge now
                    await self.refresh_preview()
                raise

            await self._complete(result, ticket)
            return result if self._submissions.is_current(ticket) else None
        finally:
            self._submitting = False

    def _fail(self, error: TechStoreError) -> None:
        logger.warning(f"Order submission failed: {error}")
        self._transition(CheckoutStep.FAILED)
        self.session.error = error.message
        if isinstance(error, StalePricingError):
            self.needs_fresh_preview = True
        self._transition(CheckoutStep.REVIEW)

    async def _complete(self, result: OrderResult, ticket: int) -> None:
        # The order exists on the server even if the checkout screen was left
        self.cart_store.clear()
        if result.token:
            self.auth_manager.save_auth(result.token, result.user)
            if result.user is None:
                try:
                    self.auth_manager.save_auth(result.token, await self.client.get_me())
                except TechStoreError as e:
                    logger.warning(f"Could not load the account created at checkout: {e}")

        if not self._submissions.is_current(ticket):
            logger.info(f"Order {result.order.id} placed after checkout was left")
            return
        self.session.order_id = result.order.id
        self._transition(CheckoutStep.SUCCESS)
        self.engine.cancel()
        logger.info(f"Order {result.order.order_number} placed")

    def cancel(self) -> None:
        """Leave the checkout; in-flight previews and submissions are ignored."""
        if self.session.step != CheckoutStep.ABORTED:
            self._abort()
