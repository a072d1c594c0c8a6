"""Application root: owns the cart, pricing, merge and checkout components."""

import logging
import os
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from .auth import AuthManager
from .cart_store import CartStore, QuantityMode
from .checkout import EDITABLE_STEPS, CheckoutOrchestrator
from .errors import CheckoutStateError, EmptyCartError, TechStoreError
from .merge import CartMergeReconciler
from .models import AuthCredentials, Cart, ProductSummary, User
from .pricing import PricingPreviewEngine
from .sequencing import RequestSequencer
from .techstore_client import TechStoreClient

logger = logging.getLogger(__name__)


class Storefront:
    """
    Constructed once by the entry point and passed to whatever needs the cart.

    Cart actions update the optimistic view immediately, then send the new
    absolute quantity to the server. Server snapshots are applied in issuance
    order: a response is dropped if a later cart request was issued meanwhile.
    """

    def __init__(
        self,
        client: TechStoreClient,
        auth_manager: AuthManager,
        quantity_policy: QuantityMode = QuantityMode.ADD,
    ) -> None:
        self.client = client
        self.auth_manager = auth_manager
        self.cart_store = CartStore(auth_manager, quantity_policy=quantity_policy)
        self.pricing = PricingPreviewEngine(client)
        self.reconciler = CartMergeReconciler(client, self.cart_store)
        self.checkout: Optional[CheckoutOrchestrator] = None
        self._cart_requests = RequestSequencer()
        self._confirmed_ticket = 0
        self._failed_ticket = 0

        # Guests need a correlation key before their first cart call
        self.auth_manager.get_or_create_session_id()

    @property
    def cart(self) -> Cart:
        return self.cart_store.cart

    @property
    def user(self) -> Optional[User]:
        return self.auth_manager.user

    # Cart actions

    async def load_cart(self) -> Cart:
        ticket = self._cart_requests.issue()
        cart = await self.client.get_cart()
        if self._cart_requests.is_current(ticket):
            self.cart_store.set_cart(cart)
            self._confirmed_ticket = ticket
        return self.cart_store.cart

    async def _sync(self, send: Callable[[], Awaitable[Cart]]) -> Cart:
        """
        Send one cart write and reconcile the local views with the reply.

        Only the latest request may replace the displayed cart. An older reply
        still becomes the revert baseline when it is the newest snapshot the
        server has confirmed, so a later failure never rolls back past it.
        """
        ticket = self._cart_requests.issue()
        try:
            cart = await send()
        except TechStoreError:
            if self._cart_requests.is_current(ticket):
                self._failed_ticket = ticket
                self.cart_store.revert()
            raise

        if self._cart_requests.is_current(ticket):
            self._confirmed_ticket = ticket
            self.cart_store.set_cart(cart)
            await self._refresh_checkout()
            return self.cart_store.cart

        if ticket < self._confirmed_ticket:
            logger.debug(f"Discarding cart response #{ticket} (confirmed #{self._confirmed_ticket})")
            return self.cart_store.cart

        self._confirmed_ticket = ticket
        self.cart_store.confirm(cart)
        if self._failed_ticket == self._cart_requests.latest:
            # The latest write already failed and reverted; show this snapshot instead
            logger.info(f"Cart response #{ticket} arrived after the latest write failed, applying it")
            self.cart_store.revert()
            await self._refresh_checkout()
        return self.cart_store.cart

    async def add_to_cart(
        self,
        product_id: str,
        variant_id: str,
        quantity: int,
        unit_price: Decimal,
        product: Optional[ProductSummary] = None,
    ) -> Cart:
        """Add to a line; the server receives the resulting absolute quantity."""
        cart = self.cart_store.add_or_update_line(
            product_id, variant_id, quantity, unit_price=unit_price, product=product, mode=QuantityMode.ADD
        )
        line = cart.find(product_id, variant_id)
        new_quantity = line.quantity if line else 0
        return await self._sync(lambda: self.client.update_cart(product_id, variant_id, new_quantity))

    async def update_quantity(self, product_id: str, variant_id: str, quantity: int) -> Cart:
        """Overwrite a line's quantity. Quantities below 1 are ignored."""
        if quantity < 1:
            return self.cart_store.cart
        self.cart_store.add_or_update_line(product_id, variant_id, quantity, mode=QuantityMode.SET)
        return await self._sync(lambda: self.client.update_cart(product_id, variant_id, quantity))

    async def remove_from_cart(self, product_id: str, variant_id: str) -> Cart:
        self.cart_store.remove_line(product_id, variant_id)
        return await self._sync(lambda: self.client.update_cart(product_id, variant_id, 0))

    async def clear_cart(self) -> Cart:
        ticket = self._cart_requests.issue()
        await self.client.clear_cart()
        self.cart_store.clear()
        self._confirmed_ticket = max(self._confirmed_ticket, ticket)
        await self._refresh_checkout()
        return self.cart_store.cart

    async def _refresh_checkout(self) -> None:
        """Re-price an open checkout after the cart changed; a drained cart aborts it."""
        checkout = self.checkout
        if checkout is None or checkout.step not in EDITABLE_STEPS:
            return
        try:
            await checkout.refresh_preview()
        except EmptyCartError as e:
            logger.info(f"Checkout closed: {e}")

    # Identity

    async def login(self, credentials: AuthCredentials) -> User:
        """
        Log in and fold the guest cart into the account.

        The merge runs once, on the anonymous -> authenticated transition.
        Merge failures do not fail the login.
        """
        was_guest = not self.auth_manager.is_authenticated()
        guest_session_id = self.auth_manager.session_id

        token, user = await self.client.login(credentials)
        self.auth_manager.save_auth(token, user)
        await self._after_authentication(was_guest, guest_session_id)
        return user

    async def register(self, email: str, full_name: str, password: str) -> User:
        was_guest = not self.auth_manager.is_authenticated()
        guest_session_id = self.auth_manager.session_id

        token, user = await self.client.register(email, full_name, password)
        self.auth_manager.save_auth(token, user)
        await self._after_authentication(was_guest, guest_session_id)
        return user

    async def _after_authentication(self, was_guest: bool, guest_session_id: Optional[str]) -> None:
        if was_guest and guest_session_id:
            self._cart_requests.invalidate()
            self._confirmed_ticket = self._cart_requests.latest
            await self.reconciler.merge(guest_session_id)

    def logout(self) -> None:
        self.leave_checkout()
        self.auth_manager.clear_auth()
        logger.info("Logged out")

    async def refresh_user(self) -> User:
        user = await self.client.get_me()
        if self.auth_manager.token:
            self.auth_manager.save_auth(self.auth_manager.token, user)
        return user

    # Checkout

    def start_checkout(self) -> CheckoutOrchestrator:
        """
        Begin a new checkout attempt, replacing any active one.

        Raises:
            EmptyCartError: If the cart is empty
        """
        self.leave_checkout()
        self.pricing.reset()
        self.checkout = CheckoutOrchestrator(self.cart_store, self.pricing, self.client, self.auth_manager)
        return self.checkout

    def require_checkout(self) -> CheckoutOrchestrator:
        if self.checkout is None:
            raise CheckoutStateError("No checkout in progress")
        return self.checkout

    def leave_checkout(self) -> None:
        if self.checkout is not None:
            self.checkout.cancel()
            self.checkout = None

    async def close(self) -> None:
        self.leave_checkout()
        await self.client.close()


def build_storefront(api_url: Optional[str] = None, session_file: Optional[str] = None) -> Storefront:
    """Create the application root from environment configuration."""
    auth_manager = AuthManager(session_file=session_file or os.environ.get("TECHSTORE_SESSION_FILE"))
    client = TechStoreClient(
        auth_manager,
        api_url=api_url or os.environ.get("TECHSTORE_API_URL"),
        timeout=float(os.environ.get("TECHSTORE_TIMEOUT", "30")),
    )
    return Storefront(client, auth_manager)
