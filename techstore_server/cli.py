"""Command line entry point: run the storefront over MCP stdio or as a REST API."""

import argparse
import asyncio
import os


def main() -> None:
    parser = argparse.ArgumentParser(
        description="TechStore cart and checkout, served to MCP clients or over HTTP"
    )
    parser.add_argument(
        "--mode",
        choices=["stdio", "http"],
        default="stdio",
        help="stdio serves the cart and checkout tools to an MCP client; http starts the REST API",
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Interface for the REST API (http mode, default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the REST API (http mode, default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart the REST API when the package sources change (http mode)",
    )
    parser.add_argument(
        "--api-url",
        help="TechStore backend origin; overrides TECHSTORE_API_URL",
    )

    args = parser.parse_args()

    # build_storefront() reads the backend origin from the environment
    if args.api_url:
        os.environ["TECHSTORE_API_URL"] = args.api_url

    if args.mode == "http":
        from .http_server import run_http_server
        run_http_server(host=args.host, port=args.port, reload=args.reload)
    else:
        from .server import main as server_main
        asyncio.run(server_main())


if __name__ == "__main__":
    main()
