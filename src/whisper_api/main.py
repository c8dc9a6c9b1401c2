"""Process entry point: configure logging, load the model, serve.

Run with: whisper-api  (or python -m whisper_api.main)
"""

import logging
import sys

import uvicorn

from whisper_api.config import ServiceConfig
from whisper_api.errors import ModelLoadFailure
from whisper_api.server import build_app

logger = logging.getLogger("whisper_api.main")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    """Configure root logging once for the whole process."""
    logging.basicConfig(
        # uvicorn's "trace" is below DEBUG; stdlib logging has no such level
        level=logging.DEBUG if level == "trace" else getattr(logging, level.upper()),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def main() -> None:
    config = ServiceConfig.from_env()
    configure_logging(config.log_level)
    logger.info("Configuration loaded: %s", config)

    try:
        app = build_app(config)
    except ModelLoadFailure as e:
        logger.critical("Startup aborted: %s", e.detail)
        sys.exit(1)

    logger.info("Server listening on http://%s:%d", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level)


if __name__ == "__main__":
    main()
