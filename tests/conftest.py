import json
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import httpx
import pytest

from techstore_server.auth import AuthManager
from techstore_server.storefront import Storefront
from techstore_server.techstore_client import TechStoreClient

API = "http://techstore.test"


def _money(value: Decimal) -> Any:
    return int(value) if value == value.to_integral_value() else str(value)


class FakeTechStore:
    """In-memory stand-in for the storefront REST API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.products = {
            "p1": {"name": "Laptop Pro 14", "variants": {"v1": ("16GB / 512GB", Decimal("100"))}},
            "p2": {"name": "Wireless Mouse", "variants": {"v2": ("Black", Decimal("250000"))}},
            "p3": {"name": "USB-C Hub", "variants": {"v3": ("7-in-1", Decimal("40000"))}},
        }
        self.stock: dict[tuple[str, str], int] = {}
        self.carts: dict[str, dict[tuple[str, str], int]] = {}
        self.users = {
            "alice@example.com": {
                "_id": "u1",
                "email": "alice@example.com",
                "fullName": "Alice Nguyen",
                "password": "secret",
                "loyaltyPoints": 500,
                "addresses": [
                    {
                        "_id": "a1",
                        "fullName": "Alice Nguyen",
                        "phone": "0901234567",
                        "street": "1 Le Loi",
                        "city": "District 1",
                        "province": "Ho Chi Minh",
                        "country": "Vietnam",
                        "isDefault": True,
                    }
                ],
            }
        }
        self.tokens: dict[str, str] = {}
        self.discounts = {"SAVE10": 10}
        self.orders: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.failures: dict[tuple[str, str], list[tuple[int, dict]]] = {}
        self.hook: Optional[Callable[[httpx.Request], Awaitable[None]]] = None

    # Test controls

    def fail(self, method: str, path: str, status: int, body: Optional[dict] = None) -> None:
        """Queue one failing response for the next matching request."""
        self.failures.setdefault((method, path), []).append((status, body or {"message": "boom"}))

    def seed_cart(self, identity: str, lines: dict[tuple[str, str], int]) -> None:
        self.carts[identity] = dict(lines)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == f"/api{path}"]

    # Wire helpers

    def price(self, product_id: str, variant_id: str) -> Decimal:
        return self.products[product_id]["variants"][variant_id][1]

    def identity(self, request: httpx.Request) -> str:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer ") and auth[7:] in self.tokens:
            return f"user:{self.users[self.tokens[auth[7:]]]['_id']}"
        return f"session:{request.headers.get('x-session-id')}"

    def cart_payload(self, identity: str) -> dict:
        items = []
        total = Decimal("0")
        for (product_id, variant_id), quantity in self.carts.get(identity, {}).items():
            product = self.products[product_id]
            price = self.price(product_id, variant_id)
            total += price * quantity
            items.append(
                {
                    "product": {
                        "_id": product_id,
                        "name": product["name"],
                        "images": [{"url": f"https://cdn.test/{product_id}.jpg"}],
                        "variants": [{"_id": vid, "name": v[0]} for vid, v in product["variants"].items()],
                    },
                    "variantId": variant_id,
                    "quantity": quantity,
                    "price": _money(price),
                }
            )
        return {"cart": {"items": items, "totalAmount": _money(total)}}

    def user_payload(self, email: str) -> dict:
        user = dict(self.users[email])
        user.pop("password")
        return user

    def preview(self, body: dict) -> dict:
        subtotal = sum(
            (self.price(i["productId"], i["variantId"]) * i["quantity"] for i in body.get("cartItems", [])),
            Decimal("0"),
        )
        code = (body.get("discountCode") or "").upper()
        percent = self.discounts.get(code)
        discount = subtotal * percent / 100 if percent else Decimal("0")
        points = int(body.get("pointsToUse") or 0)
        points_discount = Decimal(points * 1000)
        taxable = max(subtotal - discount - points_discount, Decimal("0"))
        tax = taxable / 10
        shipping = Decimal("0") if subtotal >= 500000 else Decimal("30000")
        total = taxable + tax + shipping
        return {
            "subtotal": _money(subtotal),
            "discountCode": code or None,
            "discountAmount": _money(discount),
            "discountValid": percent is not None,
            "pointsToUse": points,
            "pointsDiscount": _money(points_discount),
            "taxAmount": _money(tax),
            "shippingFee": _money(shipping),
            "totalAmount": _money(total),
            "pointsEarned": int(total // 10000),
        }

    def order_payload(self, order_id: str, body: dict, preview: dict) -> dict:
        return {
            "_id": order_id,
            "orderNumber": f"TS{1000 + len(self.orders)}",
            "currentStatus": "pending",
            "createdAt": "2026-10-18T09:30:00.000Z",
            "items": [
                {
                    "productName": self.products[i["productId"]]["name"],
                    "variantName": self.products[i["productId"]]["variants"][i["variantId"]][0],
                    "quantity": i["quantity"],
                    "price": _money(self.price(i["productId"], i["variantId"])),
                    "subtotal": _money(self.price(i["productId"], i["variantId"]) * i["quantity"]),
                }
                for i in body["cartItems"]
            ],
            "subtotal": preview["subtotal"],
            "discountCode": preview["discountCode"],
            "discountAmount": preview["discountAmount"],
            "pointsUsed": preview["pointsToUse"],
            "pointsDiscount": preview["pointsDiscount"],
            "taxAmount": preview["taxAmount"],
            "shippingFee": preview["shippingFee"],
            "totalAmount": preview["totalAmount"],
            "paymentMethod": body.get("paymentMethod"),
            "isPaid": False,
            "shippingAddress": body.get("shippingAddress"),
        }

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.hook is not None:
            await self.hook(request)

        path = request.url.path[len("/api"):]
        queued = self.failures.get((request.method, path))
        if queued:
            status, body = queued.pop(0)
            return httpx.Response(status, json=body)

        body = json.loads(request.content) if request.content else {}
        identity = self.identity(request)
        route = (request.method, path)

        if route == ("POST", "/auth/login"):
            user = self.users.get(body.get("email"))
            if not user or user["password"] != body.get("password"):
                return httpx.Response(401, json={"message": "Invalid email or password"})
            token = f"token-{user['_id']}"
            self.tokens[token] = body["email"]
            return httpx.Response(200, json={"token": token, "user": self.user_payload(body["email"])})

        if route == ("GET", "/auth/me"):
            if not identity.startswith("user:"):
                return httpx.Response(401, json={"message": "Not authorized"})
            email = self.tokens[request.headers["Authorization"][7:]]
            return httpx.Response(200, json={"user": self.user_payload(email)})

        if route == ("PUT", "/auth/me"):
            if not identity.startswith("user:"):
                return httpx.Response(401, json={"message": "Not authorized"})
            email = self.tokens[request.headers["Authorization"][7:]]
            self.users[email].update(body)
            return httpx.Response(200, json={"user": self.user_payload(email)})

        if route == ("GET", "/cart"):
            return httpx.Response(200, json=self.cart_payload(identity))

        if route == ("POST", "/cart"):
            key = (body["productId"], body["variantId"])
            if body["productId"] not in self.products:
                return httpx.Response(404, json={"message": "Product not found"})
            cart = self.carts.setdefault(identity, {})
            if body["quantity"] <= 0:
                cart.pop(key, None)
            else:
                cart[key] = min(body["quantity"], self.stock.get(key, 99))
            return httpx.Response(200, json=self.cart_payload(identity))

        if route == ("DELETE", "/cart"):
            self.carts.pop(identity, None)
            return httpx.Response(200, json={"message": "Cart cleared"})

        if route == ("POST", "/cart/merge"):
            guest = self.carts.pop(f"session:{body['sessionId']}", {})
            cart = self.carts.setdefault(identity, {})
            for key, quantity in guest.items():
                cart[key] = min(cart.get(key, 0) + quantity, self.stock.get(key, 99))
            return httpx.Response(200, json=self.cart_payload(identity))

        if route == ("POST", "/checkout/preview"):
            return httpx.Response(200, json={"preview": self.preview(body)})

        if route == ("POST", "/checkout"):
            code = (body.get("discountCode") or "").upper()
            if code and code not in self.discounts:
                return httpx.Response(
                    400, json={"message": "Discount code is invalid or expired", "code": "DISCOUNT_INVALID"}
                )
            preview = self.preview(body)
            order_id = f"o{len(self.orders) + 1}"
            order = self.order_payload(order_id, body, preview)
            self.orders.append(order)
            self.carts.pop(identity, None)
            response: dict = {"order": order}
            guest = body.get("guestInfo")
            if guest:
                self.users.setdefault(
                    guest["email"],
                    {
                        "_id": f"u{len(self.users) + 1}",
                        "email": guest["email"],
                        "fullName": guest["fullName"],
                        "password": "",
                        "loyaltyPoints": 0,
                        "addresses": [],
                    },
                )
                self.tokens["token-guest"] = guest["email"]
                response["token"] = "token-guest"
            return httpx.Response(201, json=response)

        if route == ("GET", "/orders"):
            return httpx.Response(
                200,
                json={
                    "orders": self.orders,
                    "pagination": {"page": 1, "pages": 1, "total": len(self.orders)},
                },
            )

        if request.method == "GET" and path.startswith("/orders/"):
            order_id = path.rsplit("/", 1)[1]
            for order in self.orders:
                if order["_id"] == order_id:
                    return httpx.Response(200, json={"order": order})
            return httpx.Response(404, json={"message": "Order not found"})

        if request.method == "GET" and path.startswith("/discounts/"):
            code = path.split("/")[2]
            percent = self.discounts.get(code)
            if percent is None:
                return httpx.Response(404, json={"valid": False, "message": "Discount code not found"})
            subtotal = Decimal(request.url.params["subtotal"])
            return httpx.Response(
                200, json={"valid": True, "discount": {"discountAmount": _money(subtotal * percent / 100)}}
            )

        return httpx.Response(404, json={"message": f"No route for {request.method} {path}"})


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_api() -> FakeTechStore:
    return FakeTechStore()


@pytest.fixture
def session_file(tmp_path) -> str:
    return str(tmp_path / "session.json")


@pytest.fixture
def auth_manager(session_file) -> AuthManager:
    return AuthManager(session_file=session_file)


@pytest.fixture
def client(auth_manager, fake_api) -> TechStoreClient:
    return TechStoreClient(auth_manager, api_url=API, transport=httpx.MockTransport(fake_api.handler))


@pytest.fixture
def storefront(client, auth_manager) -> Storefront:
    return Storefront(client, auth_manager)
