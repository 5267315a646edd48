# routers/status.py

from fastapi import APIRouter, Depends
import logging

from dependencies import get_endpoint, get_history, require_status_api_key
from deploy_task import DeployHistory

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/{endpoint}/status", summary="Last Deployment Result")
def deploy_status(
        api_key: str = Depends(require_status_api_key),
        endpoint: str = Depends(get_endpoint),
        history: DeployHistory = Depends(get_history),
):
    """
    Report the outcome of the most recent deploy for an endpoint. Only the
    latest run is kept, in memory, for the lifetime of the process.
    """
    result = history.latest(endpoint)
    if result is None:
        return {"endpoint": endpoint, "status": "never"}
    return result
