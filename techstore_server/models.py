"""Data models for TechStore storefront entities."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from .errors import CartIntegrityError


class ProductSummary(BaseModel):
    """Display metadata for a cart line, owned by the catalog."""

    id: str = Field(description="Product ID")
    name: str = Field(default="", description="Product name")
    image_url: Optional[str] = Field(None, description="First product image URL")
    variant_name: Optional[str] = Field(None, description="Selected variant name")


class CartLineItem(BaseModel):
    """One (product, variant) entry in the cart with a price snapshot."""

    product_id: str = Field(description="Product ID")
    variant_id: str = Field(description="Variant ID")
    quantity: int = Field(ge=1, description="Quantity of the variant")
    unit_price: Decimal = Field(ge=0, description="Unit price snapshot at add-time")
    product: Optional[ProductSummary] = Field(None, description="Display metadata")

    @property
    def key(self) -> tuple[str, str]:
        return (self.product_id, self.variant_id)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Cart(BaseModel):
    """Shopping cart. The total is always derived from the lines."""

    items: list[CartLineItem] = Field(default_factory=list, description="Cart line items")

    @model_validator(mode="before")
    @classmethod
    def _check_declared_total(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        declared = data.pop("total_amount", data.pop("totalAmount", None))
        data.pop("item_count", None)
        if declared is None:
            return data

        total = Decimal("0")
        try:
            for item in data.get("items", []):
                if isinstance(item, CartLineItem):
                    total += item.line_total
                else:
                    total += Decimal(str(item["unit_price"])) * int(item["quantity"])
            declared = Decimal(str(declared))
        except (KeyError, TypeError, ValueError, ArithmeticError):
            # Malformed lines are reported by field validation
            return data
        if declared != total:
            raise CartIntegrityError(
                f"Cart total {declared} does not match line items sum {total}"
            )
        return data

    @model_validator(mode="after")
    def _check_unique_lines(self) -> "Cart":
        seen: set[tuple[str, str]] = set()
        for item in self.items:
            if item.key in seen:
                raise CartIntegrityError(
                    f"Duplicate cart line for product {item.product_id} variant {item.variant_id}"
                )
            seen.add(item.key)
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_amount(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def find(self, product_id: str, variant_id: str) -> Optional[CartLineItem]:
        for item in self.items:
            if item.key == (product_id, variant_id):
                return item
        return None

    def is_empty(self) -> bool:
        return not self.items


class PricingPreview(BaseModel):
    """Server-computed, advisory order totals for the checkout summary."""

    model_config = ConfigDict(frozen=True)

    subtotal: Decimal = Field(default=Decimal("0"))
    discount_code: Optional[str] = None
    discount_amount: Decimal = Field(default=Decimal("0"))
    points_requested: int = 0
    points_discount: Decimal = Field(default=Decimal("0"))
    tax_amount: Decimal = Field(default=Decimal("0"))
    shipping_fee: Decimal = Field(default=Decimal("0"))
    total_amount: Decimal = Field(default=Decimal("0"))
    points_earned: int = 0
    discount_valid: bool = False


class PreviewLine(BaseModel):
    """Line reference sent to the pricing service."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: str
    quantity: int


class PreviewRequest(BaseModel):
    """Inputs for one pricing preview call."""

    model_config = ConfigDict(frozen=True)

    lines: tuple[PreviewLine, ...] = ()
    discount_code: Optional[str] = None
    points_to_use: int = 0


class DiscountValidation(BaseModel):
    """Result of validating a discount code against a subtotal."""

    valid: bool
    discount_amount: Decimal = Field(default=Decimal("0"))
    message: Optional[str] = None


class PaymentMethod(str, Enum):
    """Supported payment methods."""

    COD = "cod"
    BANK_TRANSFER = "bank_transfer"


class CheckoutStep(str, Enum):
    """Checkout state machine states."""

    SHIPPING_INFO = "shipping_info"
    PAYMENT_METHOD = "payment_method"
    REVIEW = "review"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"


class ShippingAddress(BaseModel):
    """Shipping address draft."""

    full_name: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    province: str = ""
    country: str = "Vietnam"


class Address(ShippingAddress):
    """Saved address on a user profile."""

    id: Optional[str] = None
    is_default: bool = False


class GuestInfo(BaseModel):
    """Contact details for a guest checkout."""

    email: str
    full_name: str
    phone: str


class User(BaseModel):
    """Authenticated storefront user."""

    id: str = Field(description="User ID")
    email: str = Field(default="", description="User email")
    full_name: str = Field(default="", description="Display name")
    role: str = Field(default="customer", description="User role")
    loyalty_points: int = Field(default=0, ge=0, description="Redeemable loyalty points")
    addresses: list[Address] = Field(default_factory=list, description="Saved addresses")


class CheckoutSession(BaseModel):
    """Transient state of one checkout attempt."""

    step: CheckoutStep = CheckoutStep.SHIPPING_INFO
    shipping: ShippingAddress = Field(default_factory=ShippingAddress)
    payment_method: Optional[PaymentMethod] = PaymentMethod.COD
    guest_email: str = ""
    discount_code: str = ""
    points_requested: int = 0
    error: Optional[str] = None
    field_errors: dict[str, str] = Field(default_factory=dict)
    pricing_warning: Optional[str] = None
    order_id: Optional[str] = None
    history: list[CheckoutStep] = Field(default_factory=lambda: [CheckoutStep.SHIPPING_INFO])


class SessionIdentity(BaseModel):
    """Exactly one of an authenticated user id or an anonymous session id."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "SessionIdentity":
        if (self.user_id is None) == (self.session_id is None):
            raise ValueError("SessionIdentity needs exactly one of user_id or session_id")
        return self

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


class OrderItem(BaseModel):
    """Represents an item in an order."""

    product_name: str
    variant_name: Optional[str] = None
    variant_sku: Optional[str] = None
    quantity: int
    price: Decimal
    subtotal: Decimal


class Order(BaseModel):
    """Represents an order."""

    id: str = Field(description="Order ID")
    order_number: str = Field(description="Human-readable order number")
    status: str = Field(description="Order status (pending, confirmed, shipping, delivered, cancelled)")
    created_at: datetime = Field(description="Order creation timestamp")
    items: list[OrderItem] = Field(default_factory=list, description="Order items")
    subtotal: Decimal = Field(default=Decimal("0"))
    discount_code: Optional[str] = None
    discount_amount: Decimal = Field(default=Decimal("0"))
    points_used: int = 0
    points_discount: Decimal = Field(default=Decimal("0"))
    tax_amount: Decimal = Field(default=Decimal("0"))
    shipping_fee: Decimal = Field(default=Decimal("0"))
    total_amount: Decimal = Field(default=Decimal("0"), description="Order total value")
    points_earned: int = 0
    payment_method: Optional[str] = None
    is_paid: bool = False
    shipping_address: Optional[ShippingAddress] = None


class OrderPage(BaseModel):
    """One page of the user's order history."""

    orders: list[Order] = Field(default_factory=list)
    page: int = 1
    pages: int = 1
    total: int = 0


class OrderResult(BaseModel):
    """Response of a successful order submission."""

    order: Order
    token: Optional[str] = Field(None, description="Token for an account created by guest checkout")
    user: Optional[User] = None


class AuthCredentials(BaseModel):
    """Authentication credentials."""

    email: str
    password: str


class SessionData(BaseModel):
    """Client state persisted between runs."""

    session_id: Optional[str] = Field(None, description="Anonymous guest session ID")
    token: Optional[str] = Field(None, description="Bearer token")
    user: Optional[User] = Field(None, description="Cached user object")
    cart: Optional[Cart] = Field(None, description="Cached confirmed cart snapshot")
