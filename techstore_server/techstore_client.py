"""TechStore storefront REST API client."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from .auth import AuthManager
from .errors import (
    AuthenticationError,
    CartIntegrityError,
    CheckoutRejectedError,
    ServiceError,
    StalePricingError,
)
from .models import (
    Address,
    AuthCredentials,
    Cart,
    CartLineItem,
    DiscountValidation,
    Order,
    OrderItem,
    OrderPage,
    OrderResult,
    PreviewRequest,
    PricingPreview,
    ProductSummary,
    ShippingAddress,
    User,
)

logger = logging.getLogger(__name__)

STALE_PRICING_CODES = {"DISCOUNT_INVALID", "POINTS_INVALID", "PRICE_CHANGED"}
STALE_PRICING_KEYWORDS = ("discount", "coupon", "points", "giảm giá", "điểm")


class TechStoreClient:
    """Client for the TechStore storefront API."""

    DEFAULT_API_URL = "http://localhost:5000"

    def __init__(
        self,
        auth_manager: AuthManager,
        api_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the TechStore client.

        Args:
            auth_manager: Authentication manager instance
            api_url: Storefront API origin; requests go to {api_url}/api
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.auth_manager = auth_manager
        self.api_url = (api_url or self.DEFAULT_API_URL).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=f"{self.api_url}/api",
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    def _auth_headers(self) -> dict[str, str]:
        """Attach the bearer token and the guest session ID, as available."""
        headers = {}
        if self.auth_manager.token:
            headers["Authorization"] = f"Bearer {self.auth_manager.token}"
        if self.auth_manager.session_id:
            headers["x-session-id"] = self.auth_manager.session_id
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Raises:
            AuthenticationError: On HTTP 401; the stored token is cleared
            ServiceError: On transport failures and other non-2xx responses
        """
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise ServiceError(f"Could not reach the store: {e}") from e

        logger.info(f"{method} {path}: status={response.status_code}")
        payload = self._json(response)

        if response.status_code == 401:
            if self.auth_manager.token:
                logger.warning("Token rejected, clearing stored credentials")
                self.auth_manager.clear_auth()
            raise AuthenticationError(
                payload.get("message", "Authentication required"), status_code=401
            )
        if response.status_code >= 400:
            raise ServiceError(
                payload.get("message", f"Request failed with status {response.status_code}"),
                status_code=response.status_code,
                code=payload.get("code"),
            )
        return payload

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # Identity

    async def login(self, credentials: AuthCredentials) -> tuple[str, User]:
        """
        Authenticate with email and password.

        Returns:
            The bearer token and the user it belongs to
        """
        logger.info(f"=== LOGIN: email={credentials.email} ===")
        data = await self._request(
            "POST", "/auth/login", json={"email": credentials.email, "password": credentials.password}
        )
        return data["token"], self._parse_user(data["user"])

    async def register(self, email: str, full_name: str, password: str) -> tuple[str, User]:
        logger.info(f"=== REGISTER: email={email} ===")
        data = await self._request(
            "POST",
            "/auth/register",
            json={"email": email, "fullName": full_name, "password": password},
        )
        return data["token"], self._parse_user(data["user"])

    async def get_me(self) -> User:
        data = await self._request("GET", "/auth/me")
        return self._parse_user(data.get("user", data))

    async def update_profile(self, **fields: Any) -> User:
        data = await self._request("PUT", "/auth/me", json=self._camel(fields))
        return self._parse_user(data.get("user", data))

    async def change_password(self, current_password: str, new_password: str) -> None:
        await self._request(
            "PUT",
            "/auth/change-password",
            json={"currentPassword": current_password, "newPassword": new_password},
        )

    async def add_address(self, address: Address) -> User:
        data = await self._request("POST", "/users/me/addresses", json=self._address_payload(address))
        return self._parse_user(data.get("user", data))

    async def update_address(self, address_id: str, address: Address) -> User:
        data = await self._request(
            "PUT", f"/users/me/addresses/{address_id}", json=self._address_payload(address)
        )
        return self._parse_user(data.get("user", data))

    async def delete_address(self, address_id: str) -> User:
        data = await self._request("DELETE", f"/users/me/addresses/{address_id}")
        return self._parse_user(data.get("user", data))

    # Cart

    async def get_cart(self) -> Cart:
        """Get the server-side cart for the current identity."""
        logger.info("=== GET CART ===")
        data = await self._request("GET", "/cart")
        return self._parse_cart(data.get("cart", {}))

    async def update_cart(self, product_id: str, variant_id: str, quantity: int) -> Cart:
        """
        Upsert one cart line with an absolute quantity.

        Args:
            product_id: Product ID
            variant_id: Variant ID
            quantity: New quantity; 0 removes the line

        Returns:
            The cart as confirmed by the server
        """
        logger.info(
            f"=== UPDATE CART: product_id={product_id}, variant_id={variant_id}, quantity={quantity} ==="
        )
        data = await self._request(
            "POST",
            "/cart",
            json={"productId": product_id, "variantId": variant_id, "quantity": quantity},
        )
        return self._parse_cart(data.get("cart", {}))

    async def clear_cart(self) -> None:
        logger.info("=== CLEAR CART ===")
        await self._request("DELETE", "/cart")

    async def merge_cart(self, session_id: str) -> Cart:
        """Ask the server to merge a guest session cart into the user's cart."""
        logger.info(f"=== MERGE CART: session_id={session_id} ===")
        data = await self._request("POST", "/cart/merge", json={"sessionId": session_id})
        return self._parse_cart(data.get("cart", {}))

    # Checkout

    async def preview_checkout(self, request: PreviewRequest) -> PricingPreview:
        """Get server-computed totals for a prospective order."""
        logger.info(
            f"=== PREVIEW: lines={len(request.lines)}, code={request.discount_code}, "
            f"points={request.points_to_use} ==="
        )
        payload: dict[str, Any] = {
            "cartItems": [
                {"productId": line.product_id, "variantId": line.variant_id, "quantity": line.quantity}
                for line in request.lines
            ],
            "discountCode": request.discount_code or "",
            "pointsToUse": request.points_to_use,
        }
        data = await self._request("POST", "/checkout/preview", json=payload)
        return self._parse_preview(data.get("preview", {}), request)

    async def checkout(self, payload: dict[str, Any]) -> OrderResult:
        """
        Submit an order.

        Raises:
            StalePricingError: If the discount code or points were refused
            CheckoutRejectedError: If the server refused the order for another reason
            ServiceError: On transport or server failures
        """
        logger.info(f"=== CHECKOUT: lines={len(payload.get('cartItems', []))} ===")
        try:
            data = await self._request("POST", "/checkout", json=payload)
        except AuthenticationError:
            raise
        except ServiceError as e:
            raise self._classify_checkout_error(e) from e

        user = self._parse_user(data["user"]) if data.get("user") else None
        return OrderResult(order=self._parse_order(data["order"]), token=data.get("token"), user=user)

    async def validate_discount(self, code: str, subtotal: Decimal) -> DiscountValidation:
        logger.info(f"=== VALIDATE DISCOUNT: code={code}, subtotal={subtotal} ===")
        data = await self._request(
            "GET", f"/discounts/{code}/validate", params={"subtotal": str(subtotal)}
        )
        discount = data.get("discount") or {}
        return DiscountValidation(
            valid=bool(data.get("valid")),
            discount_amount=self._money(discount.get("discountAmount", discount.get("amount", 0))),
            message=data.get("message"),
        )

    # Orders

    async def get_orders(self, page: int = 1, limit: int = 10) -> OrderPage:
        logger.info(f"=== GET ORDERS: page={page} ===")
        data = await self._request("GET", "/orders", params={"page": page, "limit": limit})
        pagination = data.get("pagination") or {}
        orders = []
        for order_data in data.get("orders", []):
            try:
                orders.append(self._parse_order(order_data))
            except (KeyError, ValueError) as e:
                logger.warning(f"Failed to parse order: {e}")
        return OrderPage(
            orders=orders,
            page=int(pagination.get("page", page)),
            pages=int(pagination.get("pages", 1)),
            total=int(pagination.get("total", len(orders))),
        )

    async def get_order(self, order_id: str) -> Order:
        logger.info(f"=== GET ORDER: order_id={order_id} ===")
        data = await self._request("GET", f"/orders/{order_id}")
        return self._parse_order(data["order"])

    # Helper methods for parsing responses

    @staticmethod
    def _money(value: Any) -> Decimal:
        return Decimal(str(value if value is not None else 0))

    @staticmethod
    def _camel(fields: dict[str, Any]) -> dict[str, Any]:
        out = {}
        for key, value in fields.items():
            head, *rest = key.split("_")
            out[head + "".join(part.title() for part in rest)] = value
        return out

    def _address_payload(self, address: ShippingAddress) -> dict[str, Any]:
        return self._camel(address.model_dump(exclude={"id"}, exclude_none=True))

    def _classify_checkout_error(self, error: ServiceError) -> ServiceError:
        """Map a refused submission onto stale-pricing or plain rejection."""
        if error.status_code is None or error.status_code >= 500:
            return error
        message = error.message.lower()
        if (error.code or "").upper() in STALE_PRICING_CODES or any(
            keyword in message for keyword in STALE_PRICING_KEYWORDS
        ):
            return StalePricingError(error.message, status_code=error.status_code, code=error.code)
        return CheckoutRejectedError(error.message, status_code=error.status_code, code=error.code)

    def _parse_cart(self, data: dict[str, Any]) -> Cart:
        """
        Parse a cart payload.

        Raises:
            CartIntegrityError: If the declared total or line keys are inconsistent
        """
        try:
            items = [self._parse_cart_line(item_data) for item_data in data.get("items", [])]
            if "totalAmount" in data:
                return Cart(items=items, total_amount=self._money(data["totalAmount"]))
            return Cart(items=items)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            logger.error(f"Malformed cart payload: {e}")
            raise CartIntegrityError(f"Malformed cart payload: {e}") from e

    def _parse_cart_line(self, item_data: dict[str, Any]) -> CartLineItem:
        product_info = item_data.get("product") or {}
        if isinstance(product_info, str):
            product_info = {"_id": product_info}

        product_id = str(product_info.get("_id", product_info.get("id", item_data.get("productId", ""))))
        variant_id = str(item_data.get("variantId", ""))

        variant_name = None
        for variant in product_info.get("variants", []) or []:
            if str(variant.get("_id")) == variant_id:
                variant_name = variant.get("name")
                break

        images = product_info.get("images") or []
        return CartLineItem(
            product_id=product_id,
            variant_id=variant_id,
            quantity=int(item_data["quantity"]),
            unit_price=self._money(item_data["price"]),
            product=ProductSummary(
                id=product_id,
                name=product_info.get("name", ""),
                image_url=images[0].get("url") if images else None,
                variant_name=variant_name,
            ),
        )

    def _parse_preview(self, data: dict[str, Any], request: PreviewRequest) -> PricingPreview:
        return PricingPreview(
            subtotal=self._money(data.get("subtotal")),
            discount_code=data.get("discountCode") or request.discount_code,
            discount_amount=self._money(data.get("discountAmount")),
            points_requested=int(data.get("pointsToUse", request.points_to_use)),
            points_discount=self._money(data.get("pointsDiscount")),
            tax_amount=self._money(data.get("taxAmount")),
            shipping_fee=self._money(data.get("shippingFee")),
            total_amount=self._money(data.get("totalAmount")),
            points_earned=int(data.get("pointsEarned", 0)),
            discount_valid=bool(data.get("discountValid", False)),
        )

    def _parse_address(self, data: dict[str, Any]) -> Address:
        return Address(
            id=str(data["_id"]) if data.get("_id") else data.get("id"),
            full_name=data.get("fullName", ""),
            phone=data.get("phone", ""),
            street=data.get("street", ""),
            city=data.get("city", ""),
            province=data.get("province", ""),
            country=data.get("country", "Vietnam"),
            is_default=bool(data.get("isDefault", False)),
        )

    def _parse_user(self, data: dict[str, Any]) -> User:
        return User(
            id=str(data.get("id", data.get("_id", ""))),
            email=data.get("email", ""),
            full_name=data.get("fullName", ""),
            role=data.get("role", "customer"),
            loyalty_points=int(data.get("loyaltyPoints", 0)),
            addresses=[self._parse_address(a) for a in data.get("addresses", [])],
        )

    def _parse_order(self, data: dict[str, Any]) -> Order:
        items = [
            OrderItem(
                product_name=item.get("productName", item.get("name", "Unknown")),
                variant_name=item.get("variantName"),
                variant_sku=item.get("variantSku"),
                quantity=int(item.get("quantity", 1)),
                price=self._money(item.get("price")),
                subtotal=self._money(item.get("subtotal")),
            )
            for item in data.get("items", [])
        ]

        created_at_str = data.get("createdAt")
        if created_at_str:
            created_at = datetime.fromisoformat(created_at_str.replace("Z", "+00:00"))
        else:
            created_at = datetime.now()

        shipping = data.get("shippingAddress")
        return Order(
            id=str(data.get("_id", data.get("id", ""))),
            order_number=str(data.get("orderNumber", data.get("_id", ""))),
            status=data.get("currentStatus", data.get("status", "pending")),
            created_at=created_at,
            items=items,
            subtotal=self._money(data.get("subtotal")),
            discount_code=data.get("discountCode"),
            discount_amount=self._money(data.get("discountAmount")),
            points_used=int(data.get("pointsUsed", 0)),
            points_discount=self._money(data.get("pointsDiscount")),
            tax_amount=self._money(data.get("taxAmount")),
            shipping_fee=self._money(data.get("shippingFee")),
            total_amount=self._money(data.get("totalAmount")),
            points_earned=int(data.get("pointsEarned", 0)),
            payment_method=data.get("paymentMethod"),
            is_paid=bool(data.get("isPaid", False)),
            shipping_address=self._parse_address(shipping) if shipping else None,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
