# dependencies.py

from fastapi import Header, HTTPException, Request, status
import hmac
import logging
from typing import Optional

from config import Config
from deploy_task import CommandRunner, DeployHistory
from notifications import Notifications

logger = logging.getLogger(__name__)


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_runner(request: Request) -> CommandRunner:
    return request.app.state.runner


def get_history(request: Request) -> DeployHistory:
    return request.app.state.history


def get_notifier(request: Request) -> Notifications:
    return request.app.state.notifier


def get_endpoint(endpoint: str, request: Request) -> str:
    """Resolve the path segment to a configured endpoint name, or 404."""
    config = get_config(request)
    if endpoint not in config.endpoints:
        logger.warning(f"Request for unknown endpoint '{endpoint}'.")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown endpoint")
    return endpoint


def require_status_api_key(request: Request, api_key: Optional[str] = Header(None, alias="X-API-Key")):
    expected = get_config(request).status_api_key
    if not expected:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Status endpoint disabled")
    if api_key is None or not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("Invalid API Key for deployment status.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API Key")
    return api_key
