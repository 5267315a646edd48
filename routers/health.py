# routers/health.py

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
import logging

from config import Config
from dependencies import get_config

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", summary="Liveness Message", response_class=PlainTextResponse)
def liveness(config: Config = Depends(get_config)):
    return f"Webhook server running on port {config.port}"


@router.get("/health", summary="Health Check Endpoint")
def health_check():
    logger.info("Health check endpoint was called.")
    return {"status": "OK"}
