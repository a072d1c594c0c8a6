"""Guest cart merge after login."""

import logging
from typing import Optional

from .cart_store import CartStore
from .errors import TechStoreError
from .models import Cart
from .techstore_client import TechStoreClient

logger = logging.getLogger(__name__)


class CartMergeReconciler:
    """
    Folds a guest session's server cart into the authenticated user's cart.

    The server performs the merge (set-union on product/variant with quantities
    capped at stock); the client only adopts the result.
    """

    def __init__(self, client: TechStoreClient, cart_store: CartStore) -> None:
        self.client = client
        self.cart_store = cart_store

    async def merge(self, guest_session_id: str) -> Optional[Cart]:
        """
        Merge the guest cart and make the result the local cart.

        Failures are logged and swallowed: login must still succeed, and the
        guest cart simply stays orphaned on the server.

        Returns:
            The merged cart, or None if the merge failed
        """
        try:
            cart = await self.client.merge_cart(guest_session_id)
        except TechStoreError as e:
            logger.warning(f"Cart merge for session {guest_session_id} failed: {e}")
            return None

        self.cart_store.set_cart(cart)
        logger.info(f"Merged guest cart: {len(cart.items)} line(s), total={cart.total_amount}")
        return cart
