# main.py

import logging
import sys
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from config import Config, ConfigError, load_config
from deploy_task import CommandRunner, DeployHistory
from logging_config import setup_logging
from notifications import Notifications
from utils import run_command

# Routers
from routers.health import router as health_router
from routers.status import router as status_router
from routers.webhook import router as webhook_router

logger = logging.getLogger(__name__)


def create_app(config: Config, runner: CommandRunner = run_command,
               notifier: Optional[Notifications] = None) -> FastAPI:
    """
    Build the application around an already loaded Config.

    Everything request handlers need lives on app.state and is read back
    through the dependencies module.
    """
    app = FastAPI(
        title="PushHook",
        description="Push webhook receiver that runs a deploy command for tracked branches",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None
    )

    app.state.config = config
    app.state.runner = runner
    app.state.history = DeployHistory()
    app.state.notifier = notifier or Notifications(config.notifications)

    app.include_router(health_router, prefix=config.mount_path)
    app.include_router(webhook_router, prefix=config.mount_path)
    app.include_router(status_router, prefix=config.mount_path)
    return app


def run():
    load_dotenv()
    setup_logging()

    try:
        config = load_config()
    except ConfigError as e:
        logger.critical(f"Refusing to start: {e}")
        sys.exit(1)

    setup_logging(config.debug, config.log_db_path)
    logger.info("Starting the PushHook application...")

    app = create_app(config)
    logger.info(f"Webhook server running on port {config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    run()
