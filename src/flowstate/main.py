"""
Main entry point for the flowstate server.
"""

import argparse
import json
import sys

import uvicorn

from .config.container import setup_container
from .config.settings import get_settings
from .observability.logging import get_logger, setup_logging

logger = get_logger(__name__)


def main(argv=None):
    """Parse arguments and start the API server."""
    parser = argparse.ArgumentParser(description="flowstate orchestration server")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--workers", type=int, default=None, help="Number of workers")
    parser.add_argument(
        "--list-capabilities",
        action="store_true",
        help="Print the registered capabilities and exit",
    )
    parser.add_argument("--version", action="store_true", help="Show version")

    if argv is None:
        argv = []
    args = parser.parse_args(argv)

    if args.version:
        print("flowstate v1.0.0")
        return

    settings = get_settings()

    # Before logging setup so stdout carries only the JSON listing
    if args.list_capabilities:
        registry = setup_container(settings).get("registry")
        print(json.dumps([capability.describe() for capability in registry], indent=2))
        return

    setup_logging(settings.observability.log_level)

    logger.info(
        "flowstate initialized",
        config_hash=settings.config_hash()[:16] + "...",
        environment=settings.environment,
        store=settings.store.backend,
        tracing_enabled=settings.observability.enable_tracing,
    )

    uvicorn.run(
        "flowstate.api.server:app",
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        reload=args.reload or settings.api.reload,
        workers=args.workers or settings.api.workers,
    )


def cli_main():
    """CLI entry point."""
    try:
        main(sys.argv[1:])
        sys.exit(0)
    except KeyboardInterrupt:
        print("\nflowstate shutdown")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        print(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli_main()
