"""HTTP server for the TechStore storefront client with hot reloading support."""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .checkout import CheckoutOrchestrator
from .errors import (
    AuthenticationError,
    CartIntegrityError,
    CartValidationError,
    CheckoutStateError,
    CheckoutValidationError,
    EmptyCartError,
    ServiceError,
    TechStoreError,
)
from .models import AuthCredentials, ProductSummary
from . import storefront as storefront_module
from .storefront import Storefront

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("techstore-http-server")

# Global state
storefront: Optional[Storefront] = None
credentials: Optional[AuthCredentials] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    global storefront, credentials

    # Startup
    logger.info("Starting TechStore HTTP Server...")
    storefront = storefront_module.build_storefront()
    logger.info(f"Using storefront API at {storefront.client.api_url}")

    # Load credentials from environment variables
    email = os.environ.get("TECHSTORE_EMAIL")
    password = os.environ.get("TECHSTORE_PASSWORD")

    if email and password:
        credentials = AuthCredentials(email=email, password=password)
        logger.info(f"Credentials loaded from environment for: {email}")
    else:
        logger.warning("No credentials found in environment variables (TECHSTORE_EMAIL, TECHSTORE_PASSWORD)")

    yield

    # Shutdown
    logger.info("Shutting down TechStore HTTP Server...")
    await storefront.close()
    storefront = None


app = FastAPI(
    title="TechStore MCP Server",
    description="HTTP API for the TechStore cart and checkout workflow",
    version="0.1.0",
    lifespan=lifespan,
)


# Request/Response Models
class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class RegisterRequest(BaseModel):
    email: str
    full_name: str
    password: str


class AddToCartRequest(BaseModel):
    product_id: str
    variant_id: str
    quantity: int = 1
    unit_price: Decimal = Field(ge=0)
    name: Optional[str] = None


class UpdateCartRequest(BaseModel):
    product_id: str
    variant_id: str
    quantity: int


class RemoveFromCartRequest(BaseModel):
    product_id: str
    variant_id: str


class ShippingRequest(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    guest_email: Optional[str] = None


class PaymentRequest(BaseModel):
    payment_method: str


class DiscountRequest(BaseModel):
    code: Optional[str] = None


class PointsRequest(BaseModel):
    points: int


def to_http_exception(error: TechStoreError) -> HTTPException:
    """Map a client error onto the HTTP status the caller should see."""
    if isinstance(error, CheckoutValidationError):
        return HTTPException(
            status_code=422, detail={"message": error.message, "field_errors": error.field_errors}
        )
    if isinstance(error, AuthenticationError):
        return HTTPException(status_code=401, detail=error.message)
    if isinstance(error, CartValidationError):
        return HTTPException(status_code=400, detail=error.message)
    if isinstance(error, (EmptyCartError, CheckoutStateError)):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, CartIntegrityError):
        return HTTPException(status_code=502, detail=error.message)
    if isinstance(error, ServiceError) and error.status_code and 400 <= error.status_code < 500:
        return HTTPException(status_code=error.status_code, detail=error.message)
    return HTTPException(status_code=502, detail=error.message)


def get_storefront() -> Storefront:
    if storefront is None:
        raise HTTPException(status_code=503, detail="Server is starting up")
    return storefront


def checkout_state(checkout: CheckoutOrchestrator) -> dict:
    return {
        "session": checkout.session.model_dump(mode="json"),
        "preview": checkout.preview.model_dump(mode="json") if checkout.preview else None,
        "available_points": checkout.available_points,
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "TechStore MCP Server",
        "version": "0.1.0",
        "description": "HTTP API for the TechStore cart and checkout workflow",
        "mcp_compatible": True,
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "auth": {
                "login": "POST /auth/login",
                "register": "POST /auth/register",
                "logout": "POST /auth/logout",
                "status": "GET /auth/status",
            },
            "cart": {
                "get": "GET /cart",
                "add": "POST /cart/add",
                "update": "POST /cart/update",
                "remove": "POST /cart/remove",
                "clear": "DELETE /cart",
            },
            "checkout": {
                "start": "POST /checkout",
                "state": "GET /checkout",
                "shipping": "POST /checkout/shipping",
                "payment": "POST /checkout/payment",
                "discount": "POST /checkout/discount",
                "points": "POST /checkout/points",
                "back": "POST /checkout/back",
                "submit": "POST /checkout/submit",
                "cancel": "DELETE /checkout",
            },
            "orders": {
                "list": "GET /orders",
                "details": "GET /orders/{order_id}",
            },
        },
        "authenticated": storefront.auth_manager.is_authenticated() if storefront else False,
    }


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "authenticated": storefront.auth_manager.is_authenticated() if storefront else False,
    }


# Authentication endpoints
@app.post("/auth/login")
async def login(request: LoginRequest):
    """Login and merge the guest cart into the account."""
    front = get_storefront()
    email = request.email or (credentials.email if credentials else None)
    password = request.password or (credentials.password if credentials else None)
    if not email or not password:
        raise HTTPException(status_code=400, detail="No credentials provided")

    try:
        user = await front.login(AuthCredentials(email=email, password=password))
    except TechStoreError as e:
        logger.warning(f"Login error: {e}")
        raise to_http_exception(e)
    return {
        "success": True,
        "message": f"Successfully logged in as {user.email}",
        "user": user.model_dump(mode="json"),
        "cart": front.cart.model_dump(mode="json"),
    }


@app.post("/auth/register")
async def register(request: RegisterRequest):
    """Create an account and merge the guest cart into it."""
    front = get_storefront()
    try:
        user = await front.register(request.email, request.full_name, request.password)
    except TechStoreError as e:
        logger.warning(f"Register error: {e}")
        raise to_http_exception(e)
    return {"success": True, "user": user.model_dump(mode="json"), "cart": front.cart.model_dump(mode="json")}


@app.post("/auth/logout")
async def logout():
    """Logout; the guest session is kept."""
    get_storefront().logout()
    return {"success": True, "message": "Successfully logged out"}


@app.get("/auth/status")
async def auth_status():
    """Get authentication status."""
    front = get_storefront()
    user = front.user if front.auth_manager.is_authenticated() else None
    return {
        "authenticated": user is not None,
        "email": user.email if user else None,
        "session_id": front.auth_manager.session_id,
    }


# Cart endpoints
@app.get("/cart")
async def get_cart():
    """Get the current shopping cart from the server."""
    front = get_storefront()
    try:
        cart = await front.load_cart()
    except TechStoreError as e:
        logger.error(f"Get cart error: {e}")
        raise to_http_exception(e)
    return cart.model_dump(mode="json")


@app.post("/cart/add")
async def add_to_cart(request: AddToCartRequest):
    """Add a product variant to the cart."""
    front = get_storefront()
    product = ProductSummary(id=request.product_id, name=request.name) if request.name else None
    try:
        cart = await front.add_to_cart(
            request.product_id, request.variant_id, request.quantity, request.unit_price, product
        )
    except TechStoreError as e:
        logger.error(f"Add to cart error: {e}")
        raise to_http_exception(e)
    return cart.model_dump(mode="json")


@app.post("/cart/update")
async def update_cart(request: UpdateCartRequest):
    """Set the quantity of a cart line."""
    front = get_storefront()
    try:
        cart = await front.update_quantity(request.product_id, request.variant_id, request.quantity)
    except TechStoreError as e:
        logger.error(f"Update cart error: {e}")
        raise to_http_exception(e)
    return cart.model_dump(mode="json")


@app.post("/cart/remove")
async def remove_from_cart(request: RemoveFromCartRequest):
    """Remove a product variant from the cart."""
    front = get_storefront()
    try:
        cart = await front.remove_from_cart(request.product_id, request.variant_id)
    except TechStoreError as e:
        logger.error(f"Remove from cart error: {e}")
        raise to_http_exception(e)
    return cart.model_dump(mode="json")


@app.delete("/cart")
async def clear_cart():
    """Empty the cart."""
    front = get_storefront()
    try:
        cart = await front.clear_cart()
    except TechStoreError as e:
        logger.error(f"Clear cart error: {e}")
        raise to_http_exception(e)
    return cart.model_dump(mode="json")


# Checkout endpoints
@app.post("/checkout")
async def start_checkout():
    """Start checkout for the current cart."""
    front = get_storefront()
    try:
        checkout = front.start_checkout()
        await checkout.refresh_preview()
    except TechStoreError as e:
        raise to_http_exception(e)
    return checkout_state(checkout)


@app.get("/checkout")
async def get_checkout():
    """Get the active checkout session."""
    try:
        checkout = get_storefront().require_checkout()
    except TechStoreError as e:
        raise to_http_exception(e)
    return checkout_state(checkout)


@app.delete("/checkout")
async def cancel_checkout():
    """Leave the active checkout."""
    get_storefront().leave_checkout()
    return {"success": True}


@app.post("/checkout/shipping")
async def set_shipping(request: ShippingRequest):
    """Fill in shipping details and continue to payment."""
    try:
        checkout = get_storefront().require_checkout()
        fields = request.model_dump(exclude_none=True, exclude={"guest_email"})
        if fields:
            checkout.update_shipping(**fields)
        if request.guest_email is not None:
            checkout.set_guest_email(request.guest_email)
        checkout.advance()
    except TechStoreError as e:
        raise to_http_exception(e)
    return checkout_state(checkout)


@app.post("/checkout/payment")
async def set_payment(request: PaymentRequest):
    """Choose the payment method and continue to review."""
    try:
        checkout = get_storefront().require_checkout()
        checkout.select_payment_method(request.payment_method)
        checkout.advance()
    except TechStoreError as e:
        raise to_http_exception(e)
    return checkout_state(checkout)


@app.post("/checkout/discount")
async def set_discount(request: DiscountRequest):
    """Apply a discount code; the pricing preview is refreshed."""
    try:
        checkout = get_storefront().require_checkout()
        await checkout.set_discount_code(request.code)
        validation = await checkout.validate_discount() if checkout.session.discount_code else None
    except TechStoreError as e:
        raise to_http_exception(e)
    state = checkout_state(checkout)
    state["discount"] = validation.model_dump(mode="json") if validation else None
    return state


@app.post("/checkout/points")
async def set_points(request: PointsRequest):
    """Redeem loyalty points; the pricing preview is refreshed."""
    try:
        checkout = get_storefront().require_checkout()
        await checkout.set_points(request.points)
    except TechStoreError as e:
        raise to_http_exception(e)
    return checkout_state(checkout)


@app.post("/checkout/back")
async def checkout_back():
    """Go back one checkout step."""
    try:
        checkout = get_storefront().require_checkout()
        checkout.back()
    except TechStoreError as e:
        raise to_http_exception(e)
    return checkout_state(checkout)


@app.post("/checkout/submit")
async def submit_order():
    """Place the order from the review step."""
    try:
        checkout = get_storefront().require_checkout()
        result = await checkout.submit()
    except TechStoreError as e:
        logger.warning(f"Order submission error: {e}")
        raise to_http_exception(e)

    state = checkout_state(checkout)
    state["order"] = result.order.model_dump(mode="json") if result else None
    return state


# Order endpoints
@app.get("/orders")
async def get_orders(page: int = 1, limit: int = 10):
    """Get the user's orders."""
    front = get_storefront()
    if not front.auth_manager.is_authenticated():
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        order_page = await front.client.get_orders(page=page, limit=limit)
    except TechStoreError as e:
        logger.error(f"Get orders error: {e}")
        raise to_http_exception(e)
    return order_page.model_dump(mode="json")


@app.get("/orders/{order_id}")
async def get_order_details(order_id: str):
    """Get detailed information for a specific order."""
    front = get_storefront()
    if not front.auth_manager.is_authenticated():
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        order = await front.client.get_order(order_id)
    except TechStoreError as e:
        logger.error(f"Get order details error: {e}")
        raise to_http_exception(e)
    return order.model_dump(mode="json")


def run_http_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """
    Run the HTTP server.

    Args:
        host: Host to bind to
        port: Port to bind to
        reload: Enable hot reloading
    """
    import uvicorn

    logger.info(f"Starting server on {host}:{port} (reload={'enabled' if reload else 'disabled'})")

    if reload:
        # Hot reloading - watches for file changes
        uvicorn.run(
            "techstore_server.http_server:app",
            host=host,
            port=port,
            reload=True,
            reload_dirs=["techstore_server"],
            log_level="info",
        )
    else:
        uvicorn.run(app, host=host, port=port, log_level="info")
