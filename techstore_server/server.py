"""MCP Server for the TechStore storefront."""

import asyncio
import json
import logging
import os
from decimal import Decimal
from typing import Any, Optional

from mcp.server import Server
from mcp.types import Resource, TextContent, Tool
from pydantic import AnyUrl

from .checkout import CheckoutOrchestrator
from .errors import CheckoutValidationError, TechStoreError
from .models import AuthCredentials, Cart, ProductSummary
from .storefront import Storefront, build_storefront
from .utils import format_currency

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("techstore-mcp-server")

# Initialize server
app = Server("techstore-mcp-server")

# Global state
storefront: Storefront
credentials: Optional[AuthCredentials] = None

NOT_AUTHENTICATED = (
    "Error: Not authenticated. Please configure TECHSTORE_EMAIL and TECHSTORE_PASSWORD, "
    "or use techstore_login first."
)


async def ensure_authenticated() -> bool:
    """Ensure the client is authenticated, auto-login if credentials are available."""
    if storefront.auth_manager.is_authenticated():
        return True

    if credentials:
        try:
            logger.info("Auto-logging in with configured credentials...")
            await storefront.login(credentials)
            logger.info("Auto-login successful")
            return True
        except TechStoreError as e:
            logger.error(f"Auto-login error: {e}")

    return False


def render_cart(cart: Cart) -> str:
    if cart.is_empty():
        return "Your cart is empty"

    result_lines = [f"Shopping Cart ({cart.item_count} items):\n"]
    for i, item in enumerate(cart.items, 1):
        name = item.product.name if item.product and item.product.name else item.product_id
        variant = item.product.variant_name if item.product and item.product.variant_name else item.variant_id
        result_lines.append(f"{i}. {name} ({variant})")
        result_lines.append(f"   Product ID: {item.product_id}, Variant ID: {item.variant_id}")
        result_lines.append(f"   {item.quantity} x {format_currency(item.unit_price)} = {format_currency(item.line_total)}")
    result_lines.append(f"\nTotal: {format_currency(cart.total_amount)}")
    return "\n".join(result_lines)


def render_checkout(checkout: CheckoutOrchestrator) -> str:
    session = checkout.session
    shipping = session.shipping
    result_lines = [f"Checkout step: {session.step.value}"]
    if session.error:
        result_lines.append(f"❌ {session.error}")
    for field, message in session.field_errors.items():
        result_lines.append(f"   - {field}: {message}")

    result_lines.append(
        f"\nShipping: {shipping.full_name or '-'}, {shipping.phone or '-'}, "
        f"{shipping.street or '-'}, {shipping.city or '-'}, {shipping.province or '-'}"
    )
    if not checkout.is_authenticated:
        result_lines.append(f"Guest email: {session.guest_email or '-'}")
    method = session.payment_method.value if session.payment_method else "-"
    result_lines.append(f"Payment: {method}")

    preview = checkout.preview
    if preview:
        result_lines.append(f"\nSubtotal: {format_currency(preview.subtotal)}")
        if preview.discount_amount > 0:
            result_lines.append(f"Discount ({preview.discount_code}): -{format_currency(preview.discount_amount)}")
        elif session.discount_code:
            result_lines.append(f"Discount code {session.discount_code} is not valid")
        if preview.points_discount > 0:
            result_lines.append(f"Points: -{format_currency(preview.points_discount)}")
        result_lines.append(f"VAT: {format_currency(preview.tax_amount)}")
        shipping_fee = "Free" if preview.shipping_fee == 0 else format_currency(preview.shipping_fee)
        result_lines.append(f"Shipping fee: {shipping_fee}")
        result_lines.append(f"Total: {format_currency(preview.total_amount)}")
        if preview.points_earned > 0:
            result_lines.append(f"You will earn {preview.points_earned} points")
    if session.pricing_warning:
        result_lines.append(f"⚠️ {session.pricing_warning}")
    if session.order_id:
        result_lines.append(f"\n✅ Order placed: {session.order_id}")
    return "\n".join(result_lines)


@app.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    resources = [
        Resource(
            uri=AnyUrl("techstore://cart"),
            name="Shopping Cart",
            mimeType="application/json",
            description="Current shopping cart contents",
        )
    ]

    if storefront.checkout is not None:
        resources.append(
            Resource(
                uri=AnyUrl("techstore://checkout"),
                name="Checkout",
                mimeType="application/json",
                description="Active checkout session and pricing preview",
            )
        )

    return resources


@app.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource by URI."""
    uri_str = str(uri)

    if uri_str == "techstore://cart":
        return storefront.cart.model_dump_json(indent=2)

    if uri_str == "techstore://checkout":
        checkout = storefront.require_checkout()
        preview = checkout.preview.model_dump(mode="json") if checkout.preview else None
        session = checkout.session.model_dump(mode="json")
        return json.dumps({"session": session, "preview": preview}, indent=2)

    raise ValueError(f"Unknown resource: {uri}")


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    line_schema = {
        "product_id": {"type": "string", "description": "Product ID"},
        "variant_id": {"type": "string", "description": "Variant ID"},
    }
    return [
        Tool(
            name="techstore_login",
            description="Authenticate with TechStore and merge the guest cart into the account",
            inputSchema={
                "type": "object",
                "properties": {
                    "email": {
                        "type": "string",
                        "description": "Email address (optional if TECHSTORE_EMAIL configured)",
                    },
                    "password": {
                        "type": "string",
                        "description": "Password (optional if TECHSTORE_PASSWORD configured)",
                    },
                },
            },
        ),
        Tool(
            name="techstore_logout",
            description="Logout and clear the stored token",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="techstore_get_cart",
            description="Get current shopping cart contents",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="techstore_add_to_cart",
            description="Add a product variant to the cart (adds to the existing quantity)",
            inputSchema={
                "type": "object",
                "properties": {
                    **line_schema,
                    "quantity": {"type": "integer", "description": "Quantity to add (default: 1)", "default": 1},
                    "unit_price": {"type": "number", "description": "Variant price shown in the catalog"},
                    "name": {"type": "string", "description": "Product name for display"},
                },
                "required": ["product_id", "variant_id", "unit_price"],
            },
        ),
        Tool(
            name="techstore_update_cart_quantity",
            description="Set the quantity of a cart line",
            inputSchema={
                "type": "object",
                "properties": {
                    **line_schema,
                    "quantity": {"type": "integer", "description": "New quantity (at least 1)"},
                },
                "required": ["product_id", "variant_id", "quantity"],
            },
        ),
        Tool(
            name="techstore_remove_from_cart",
            description="Remove a product variant from the cart",
            inputSchema={"type": "object", "properties": line_schema, "required": ["product_id", "variant_id"]},
        ),
        Tool(
            name="techstore_checkout_start",
            description="Start checkout for the current cart and fetch a pricing preview",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="techstore_checkout_set_shipping",
            description="Fill in shipping details (and guest email) and continue to payment",
            inputSchema={
                "type": "object",
                "properties": {
                    "full_name": {"type": "string"},
                    "phone": {"type": "string"},
                    "street": {"type": "string"},
                    "city": {"type": "string"},
                    "province": {"type": "string"},
                    "country": {"type": "string"},
                    "guest_email": {"type": "string", "description": "Required when not logged in"},
                },
            },
        ),
        Tool(
            name="techstore_checkout_set_payment",
            description="Choose the payment method and continue to review",
            inputSchema={
                "type": "object",
                "properties": {
                    "payment_method": {
                        "type": "string",
                        "enum": ["cod", "bank_transfer"],
                        "description": "cod (cash on delivery) or bank_transfer",
                    },
                },
                "required": ["payment_method"],
            },
        ),
        Tool(
            name="techstore_checkout_set_discount",
            description="Apply a discount code and refresh the pricing preview",
            inputSchema={
                "type": "object",
                "properties": {"code": {"type": "string", "description": "Discount code (empty to remove)"}},
                "required": ["code"],
            },
        ),
        Tool(
            name="techstore_checkout_set_points",
            description="Redeem loyalty points and refresh the pricing preview",
            inputSchema={
                "type": "object",
                "properties": {"points": {"type": "integer", "description": "Points to redeem"}},
                "required": ["points"],
            },
        ),
        Tool(
            name="techstore_checkout_back",
            description="Go back one checkout step",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="techstore_checkout_submit",
            description="Place the order from the review step",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="techstore_get_orders",
            description="Get the user's orders",
            inputSchema={
                "type": "object",
                "properties": {"page": {"type": "integer", "description": "Page number (default: 1)", "default": 1}},
            },
        ),
        Tool(
            name="techstore_get_order_details",
            description="Get detailed information for a specific order, including items",
            inputSchema={
                "type": "object",
                "properties": {"order_id": {"type": "string", "description": "Order ID"}},
                "required": ["order_id"],
            },
        ),
    ]


async def _handle_tool(name: str, arguments: dict[str, Any]) -> str:
    if name == "techstore_login":
        email = arguments.get("email") or (credentials.email if credentials else None)
        password = arguments.get("password") or (credentials.password if credentials else None)
        if not email or not password:
            return "Error: No credentials provided and TECHSTORE_EMAIL/TECHSTORE_PASSWORD not configured."

        user = await storefront.login(AuthCredentials(email=email, password=password))
        return (
            f"✅ Successfully logged in as {user.email}\n"
            f"Loyalty points: {user.loyalty_points}\n\n{render_cart(storefront.cart)}"
        )

    elif name == "techstore_logout":
        storefront.logout()
        return "✅ Successfully logged out"

    elif name == "techstore_get_cart":
        cart = await storefront.load_cart()
        return render_cart(cart)

    elif name == "techstore_add_to_cart":
        product = None
        if arguments.get("name"):
            product = ProductSummary(id=arguments["product_id"], name=arguments["name"])
        cart = await storefront.add_to_cart(
            arguments["product_id"],
            arguments["variant_id"],
            int(arguments.get("quantity", 1)),
            Decimal(str(arguments["unit_price"])),
            product,
        )
        return f"✅ Added to cart\n\n{render_cart(cart)}"

    elif name == "techstore_update_cart_quantity":
        cart = await storefront.update_quantity(
            arguments["product_id"], arguments["variant_id"], int(arguments["quantity"])
        )
        return f"✅ Cart updated\n\n{render_cart(cart)}"

    elif name == "techstore_remove_from_cart":
        cart = await storefront.remove_from_cart(arguments["product_id"], arguments["variant_id"])
        return f"✅ Removed from cart\n\n{render_cart(cart)}"

    elif name == "techstore_checkout_start":
        checkout = storefront.start_checkout()
        await checkout.refresh_preview()
        return render_checkout(checkout)

    elif name == "techstore_checkout_set_shipping":
        checkout = storefront.require_checkout()
        fields = {k: v for k, v in arguments.items() if k != "guest_email" and v is not None}
        if fields:
            checkout.update_shipping(**fields)
        if arguments.get("guest_email"):
            checkout.set_guest_email(arguments["guest_email"])
        checkout.advance()
        return render_checkout(checkout)

    elif name == "techstore_checkout_set_payment":
        checkout = storefront.require_checkout()
        checkout.select_payment_method(arguments["payment_method"])
        checkout.advance()
        return render_checkout(checkout)

    elif name == "techstore_checkout_set_discount":
        checkout = storefront.require_checkout()
        await checkout.set_discount_code(arguments.get("code"))
        return render_checkout(checkout)

    elif name == "techstore_checkout_set_points":
        checkout = storefront.require_checkout()
        await checkout.set_points(int(arguments["points"]))
        return render_checkout(checkout)

    elif name == "techstore_checkout_back":
        checkout = storefront.require_checkout()
        checkout.back()
        return render_checkout(checkout)

    elif name == "techstore_checkout_submit":
        checkout = storefront.require_checkout()
        try:
            await checkout.submit()
        except TechStoreError as e:
            logger.warning(f"Order submission failed: {e}")
        return render_checkout(checkout)

    elif name == "techstore_get_orders":
        if not await ensure_authenticated():
            return NOT_AUTHENTICATED

        page = await storefront.client.get_orders(page=int(arguments.get("page", 1)))
        if not page.orders:
            return "No orders found"

        result_lines = [f"Orders (page {page.page}/{page.pages}, {page.total} total):\n"]
        for order in page.orders:
            result_lines.append(
                f"- #{order.order_number} [{order.status}] {order.created_at.strftime('%Y-%m-%d %H:%M')} "
                f"{format_currency(order.total_amount)} ({len(order.items)} items) ID: {order.id}"
            )
        return "\n".join(result_lines)

    elif name == "techstore_get_order_details":
        if not await ensure_authenticated():
            return NOT_AUTHENTICATED

        order = await storefront.client.get_order(arguments["order_id"])
        result_lines = ["Order Details:\n"]
        result_lines.append(f"Order #{order.order_number}")
        result_lines.append(f"Status: {order.status}")
        result_lines.append(f"Date: {order.created_at.strftime('%Y-%m-%d %H:%M')}")
        result_lines.append(f"Payment: {order.payment_method or '-'} ({'paid' if order.is_paid else 'unpaid'})")
        if order.shipping_address:
            address = order.shipping_address
            result_lines.append(
                f"Delivery Address: {address.full_name}, {address.street}, {address.city}, {address.province}"
            )
        for i, item in enumerate(order.items, 1):
            result_lines.append(f"\n{i}. {item.product_name} {item.variant_name or ''}".rstrip())
            result_lines.append(f"   {item.quantity} x {format_currency(item.price)} = {format_currency(item.subtotal)}")
        result_lines.append(f"\nSubtotal: {format_currency(order.subtotal)}")
        if order.discount_amount > 0:
            result_lines.append(f"Discount ({order.discount_code}): -{format_currency(order.discount_amount)}")
        if order.points_discount > 0:
            result_lines.append(f"Points ({order.points_used}): -{format_currency(order.points_discount)}")
        result_lines.append(f"VAT: {format_currency(order.tax_amount)}")
        result_lines.append(f"Shipping fee: {format_currency(order.shipping_fee)}")
        result_lines.append(f"Total: {format_currency(order.total_amount)}")
        return "\n".join(result_lines)

    return f"Unknown tool: {name}"


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    try:
        text = await _handle_tool(name, arguments or {})
    except CheckoutValidationError as e:
        details = "\n".join(f"   - {field}: {message}" for field, message in e.field_errors.items())
        text = f"❌ {e.message}\n{details}"
    except TechStoreError as e:
        logger.warning(f"Tool {name} failed: {e}")
        text = f"❌ {e.message}"
    except Exception as e:
        logger.error(f"Error executing tool {name}: {e}", exc_info=True)
        text = f"Error: {str(e)}"
    return [TextContent(type="text", text=text)]


async def main() -> None:
    """Main entry point for the MCP server."""
    global storefront, credentials

    storefront = build_storefront()
    logger.info(f"Using storefront API at {storefront.client.api_url}")

    # Load credentials from environment variables
    email = os.environ.get("TECHSTORE_EMAIL")
    password = os.environ.get("TECHSTORE_PASSWORD")

    if email and password:
        credentials = AuthCredentials(email=email, password=password)
        logger.info(f"Credentials loaded from environment for: {email}")
    else:
        logger.warning("No credentials found in environment variables (TECHSTORE_EMAIL, TECHSTORE_PASSWORD)")
        logger.warning("Shopping works as a guest; order history requires techstore_login")

    logger.info("Starting TechStore MCP Server...")

    # Import and run the server
    from mcp.server.stdio import stdio_server

    try:
        async with stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options(),
            )
    finally:
        await storefront.close()


if __name__ == "__main__":
    asyncio.run(main())
