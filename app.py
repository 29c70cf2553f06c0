import os
import sys

import uvicorn
from dotenv import load_dotenv

from config import ConfigError, load_settings
from server import create_app
from utils import configure_logging, logger

load_dotenv()


def main():
    try:
        settings = load_settings(os.getenv("CONFIG_PATH"))
    except ConfigError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        sys.exit(1)

    configure_logging(settings.server.log_level, settings.server.json_logs)
    logger.info(
        "Starting Dock Steward",
        host=settings.server.host,
        port=settings.server.port,
        docker_host=settings.docker.host,
    )
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        timeout_keep_alive=max(1, int(settings.server.read_timeout)),
        timeout_graceful_shutdown=int(settings.server.shutdown_timeout),
        log_config=None,
    )


if __name__ == "__main__":
    main()
