"""Run the chatsync server: ``python -m chatsync``."""
import logging

import uvicorn

from chatsync.config import get_config

logger = logging.getLogger(__name__)


def main() -> None:
    config = get_config()
    logger.info(f"Starting chatsync server on {config.server.host}:{config.server.port}")
    uvicorn.run(
        "chatsync.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
