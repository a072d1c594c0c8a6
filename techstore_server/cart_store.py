"""Local cart store with optimistic and server-confirmed views."""

import logging
from decimal import Decimal
from enum import Enum
from typing import Optional

from .auth import AuthManager
from .errors import CartValidationError
from .models import Cart, CartLineItem, ProductSummary

logger = logging.getLogger(__name__)


class QuantityMode(str, Enum):
    """How a quantity passed to add_or_update_line is applied to an existing line."""

    ADD = "add"
    SET = "set"


class CartStore:
    """
    Holds the cart in two explicit representations.

    ``confirmed`` is the last snapshot returned by the server. It feeds pricing
    previews, order submission and persistence. ``cart`` is the optimistic
    projection used for instant display; local edits land here first and are
    replaced by the next confirmed snapshot.
    """

    def __init__(
        self,
        auth_manager: Optional[AuthManager] = None,
        quantity_policy: QuantityMode = QuantityMode.ADD,
    ) -> None:
        self.auth_manager = auth_manager
        self.quantity_policy = quantity_policy
        persisted = auth_manager.load_cart() if auth_manager else None
        self._confirmed = persisted.model_copy(deep=True) if persisted else Cart()
        self._optimistic = self._confirmed.model_copy(deep=True)

    @property
    def cart(self) -> Cart:
        return self._optimistic

    @property
    def confirmed(self) -> Cart:
        return self._confirmed

    @property
    def total_amount(self) -> Decimal:
        return self._optimistic.total_amount

    def set_cart(self, cart: Cart) -> None:
        """Replace both views with a server-confirmed snapshot."""
        self._confirmed = cart.model_copy(deep=True)
        self._optimistic = cart.model_copy(deep=True)
        self._persist()

    def confirm(self, cart: Cart) -> None:
        """Record a server snapshot as the revert baseline, keeping local edits on display."""
        self._confirmed = cart.model_copy(deep=True)
        self._persist()

    def add_or_update_line(
        self,
        product_id: str,
        variant_id: str,
        quantity: int,
        *,
        unit_price: Optional[Decimal] = None,
        product: Optional[ProductSummary] = None,
        mode: Optional[QuantityMode] = None,
    ) -> Cart:
        """
        Optimistically add to or overwrite a line's quantity.

        ADD increments an existing line, SET overwrites it. A resulting quantity
        below 1 removes the line.

        Raises:
            CartValidationError: If quantity is negative, or a new line has no price
        """
        if quantity < 0:
            raise CartValidationError(f"Quantity must not be negative, got {quantity}")
        mode = mode or self.quantity_policy

        existing = self._optimistic.find(product_id, variant_id)
        if existing is not None and mode == QuantityMode.ADD:
            new_quantity = existing.quantity + quantity
        else:
            new_quantity = quantity

        if new_quantity < 1:
            return self.remove_line(product_id, variant_id)

        if existing is not None:
            update: dict = {"quantity": new_quantity}
            if unit_price is not None:
                update["unit_price"] = Decimal(unit_price)
            line = existing.model_copy(update=update)
            items = [line if i.key == line.key else i for i in self._optimistic.items]
        else:
            if unit_price is None:
                raise CartValidationError(
                    f"A price is required to add product {product_id} variant {variant_id}"
                )
            line = CartLineItem(
                product_id=product_id,
                variant_id=variant_id,
                quantity=new_quantity,
                unit_price=Decimal(unit_price),
                product=product,
            )
            items = [*self._optimistic.items, line]

        self._optimistic = Cart(items=items)
        logger.debug(
            f"Optimistic {mode.value} {product_id}/{variant_id} -> {new_quantity}, "
            f"total={self._optimistic.total_amount}"
        )
        return self._optimistic

    def remove_line(self, product_id: str, variant_id: str) -> Cart:
        """Remove a line; absent lines are ignored."""
        items = [i for i in self._optimistic.items if i.key != (product_id, variant_id)]
        if len(items) != len(self._optimistic.items):
            self._optimistic = Cart(items=items)
        return self._optimistic

    def revert(self) -> Cart:
        """Drop optimistic edits and return to the confirmed snapshot."""
        self._optimistic = self._confirmed.model_copy(deep=True)
        return self._optimistic

    def clear(self) -> None:
        """Empty the cart, e.g. after a successful order."""
        self._confirmed = Cart()
        self._optimistic = Cart()
        self._persist()

    def _persist(self) -> None:
        if self.auth_manager is not None:
            self.auth_manager.save_cart(self._confirmed)
