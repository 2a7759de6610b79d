# =============================================================================
# Trifecta Overlay - Relay Entry Point
# =============================================================================
# CLI entry point for starting the FastAPI relay under uvicorn.
# =============================================================================

import argparse
import logging

import uvicorn

from config import get_config


def main():
    """Parse CLI arguments, apply overrides, and start the relay."""
    parser = argparse.ArgumentParser(
        description="Trifecta Overlay - inference relay",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Relay bind address")
    parser.add_argument("--port", type=int, default=None, help="Relay bind port")
    parser.add_argument("--backend-url", type=str, default=None, help="Inference backend base URL")
    parser.add_argument("--mock", action="store_true", help="Serve synthetic annotations")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = get_config()

    if args.host is not None:
        config.server_host = args.host
    if args.port is not None:
        config.server_port = args.port
    if args.backend_url is not None:
        config.backend_base_url = args.backend_url
    if args.mock:
        config.use_mock = True

    config.refresh_urls()

    print("\n" + "=" * 60)
    print("  Trifecta Overlay - Relay")
    print("=" * 60)
    print(f"  Backend    : {'(mock)' if config.use_mock else config.backend_base_url}")
    print(f"  Transport  : {config.backend_transport}")
    print(f"  Timeout    : {config.backend_timeout_ms}ms")
    print(f"  Max calls  : {config.max_concurrent_calls}")
    print(f"  Listening  : {config.server_host}:{config.server_port}")
    print("=" * 60 + "\n")

    uvicorn.run(
        "server.app:app",
        host=config.server_host,
        port=config.server_port,
        log_level="debug" if args.debug else "info",
    )


if __name__ == "__main__":
    main()
