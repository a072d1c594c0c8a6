import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from techstore_server.errors import (
    AuthenticationError,
    CartIntegrityError,
    CheckoutRejectedError,
    ServiceError,
    StalePricingError,
)
from techstore_server.models import AuthCredentials, User
from techstore_server.techstore_client import TechStoreClient

API = "http://techstore.test"


def _client_returning(auth_manager, response: httpx.Response) -> TechStoreClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    return TechStoreClient(auth_manager, api_url=API, transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_guest_requests_carry_session_header(client, fake_api, auth_manager) -> None:
    session_id = auth_manager.get_or_create_session_id()

    await client.get_cart()

    request = fake_api.requests[0]
    assert request.url == httpx.URL(f"{API}/api/cart")
    assert request.headers["x-session-id"] == session_id
    assert "Authorization" not in request.headers


@pytest.mark.anyio
async def test_authenticated_requests_carry_bearer_token(client, fake_api, auth_manager) -> None:
    token, user = await client.login(AuthCredentials(email="alice@example.com", password="secret"))
    auth_manager.save_auth(token, user)

    await client.get_cart()

    assert fake_api.requests[-1].headers["Authorization"] == f"Bearer {token}"
    assert user.loyalty_points == 500
    assert user.addresses[0].is_default is True


@pytest.mark.anyio
async def test_unauthorized_response_clears_token(client, fake_api, auth_manager) -> None:
    auth_manager.save_auth("expired", User(id="u1", email="alice@example.com"))
    fake_api.fail("GET", "/orders", 401, {"message": "Token expired"})

    with pytest.raises(AuthenticationError) as exc_info:
        await client.get_orders()

    assert exc_info.value.message == "Token expired"
    assert auth_manager.token is None
    assert not auth_manager.is_authenticated()


@pytest.mark.anyio
async def test_error_payload_is_mapped(client, fake_api) -> None:
    fake_api.fail("POST", "/cart", 400, {"message": "Out of stock", "code": "OUT_OF_STOCK"})

    with pytest.raises(ServiceError) as exc_info:
        await client.update_cart("p1", "v1", 3)

    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "OUT_OF_STOCK"
    assert exc_info.value.message == "Out of stock"


@pytest.mark.anyio
async def test_transport_failure_becomes_service_error(auth_manager) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = TechStoreClient(auth_manager, api_url=API, transport=httpx.MockTransport(handler))

    with pytest.raises(ServiceError) as exc_info:
        await client.get_cart()

    assert exc_info.value.status_code is None


@pytest.mark.anyio
async def test_cart_payload_is_parsed(client, fake_api) -> None:
    cart = await client.update_cart("p2", "v2", 2)

    line = cart.find("p2", "v2")
    assert line.quantity == 2
    assert line.unit_price == Decimal("250000")
    assert line.product.name == "Wireless Mouse"
    assert line.product.variant_name == "Black"
    assert line.product.image_url == "https://cdn.test/p2.jpg"
    assert cart.total_amount == Decimal("500000")


@pytest.mark.anyio
async def test_cart_with_wrong_total_is_rejected(auth_manager) -> None:
    client = _client_returning(
        auth_manager,
        httpx.Response(
            200,
            json={
                "cart": {
                    "items": [{"product": "p1", "variantId": "v1", "quantity": 2, "price": 100}],
                    "totalAmount": 300,
                }
            },
        ),
    )

    with pytest.raises(CartIntegrityError):
        await client.get_cart()


@pytest.mark.anyio
async def test_cart_with_malformed_line_is_rejected(auth_manager) -> None:
    client = _client_returning(
        auth_manager,
        httpx.Response(200, json={"cart": {"items": [{"product": "p1", "variantId": "v1", "quantity": 0, "price": 100}]}}),
    )

    with pytest.raises(CartIntegrityError):
        await client.get_cart()


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body, expected",
    [
        ({"message": "Mã giảm giá không hợp lệ"}, StalePricingError),
        ({"message": "Not enough points", "code": "POINTS_INVALID"}, StalePricingError),
        ({"message": "Prices changed", "code": "PRICE_CHANGED"}, StalePricingError),
        ({"message": "Insufficient stock"}, CheckoutRejectedError),
    ],
)
async def test_checkout_rejections_are_classified(auth_manager, body, expected) -> None:
    client = _client_returning(auth_manager, httpx.Response(400, json=body))

    with pytest.raises(expected) as exc_info:
        await client.checkout({"cartItems": []})

    assert type(exc_info.value) is expected


@pytest.mark.anyio
async def test_server_failure_on_checkout_stays_service_error(auth_manager) -> None:
    client = _client_returning(auth_manager, httpx.Response(500, json={"message": "discount service down"}))

    with pytest.raises(ServiceError) as exc_info:
        await client.checkout({"cartItems": []})

    assert not isinstance(exc_info.value, CheckoutRejectedError)


@pytest.mark.anyio
async def test_orders_are_parsed(client, fake_api) -> None:
    fake_api.orders.append(
        fake_api.order_payload(
            "o1",
            {"cartItems": [{"productId": "p3", "variantId": "v3", "quantity": 2}], "paymentMethod": "cod"},
            fake_api.preview({"cartItems": [{"productId": "p3", "variantId": "v3", "quantity": 2}]}),
        )
    )

    page = await client.get_orders()
    order = await client.get_order("o1")

    assert page.total == 1
    assert page.orders[0].order_number == "TS1000"
    assert order.status == "pending"
    assert order.created_at == datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
    assert order.items[0].variant_name == "7-in-1"
    assert order.subtotal == Decimal("80000")
    assert order.shipping_fee == Decimal("30000")
    assert order.total_amount == Decimal("118000")


@pytest.mark.anyio
async def test_update_profile_sends_camel_case(client, fake_api, auth_manager) -> None:
    auth_manager.save_auth("token-u1", User(id="u1", email="alice@example.com"))
    fake_api.tokens["token-u1"] = "alice@example.com"

    user = await client.update_profile(full_name="Alice N.")

    assert user.full_name == "Alice N."
    assert json.loads(fake_api.calls("PUT", "/auth/me")[0].content) == {"fullName": "Alice N."}
    assert (await client.get_me()).full_name == "Alice N."
