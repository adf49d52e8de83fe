"""Main entry point for the key pool proxy."""

import logging
import sys
from typing import NoReturn

import uvicorn

from keypool.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> NoReturn:
    """Run the proxy server."""
    if not settings.api_keys:
        logger.warning("No OPENROUTER_API_KEYS configured, add keys through /admin/keys")

    logger.info(f"Server is running on port {settings.api_port}")
    uvicorn.run(
        "keypool.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
    sys.exit(0)


if __name__ == "__main__":
    main()
