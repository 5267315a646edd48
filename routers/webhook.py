import asyncio
import functools
import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from config import Config
from dependencies import get_config, get_endpoint, get_history, get_notifier, get_runner
from deploy_task import CommandRunner, DeployHistory, execute_deploy
from models.github_webhook import PushEvent
from notifications import Notifications
from utils import verify_signature

router = APIRouter()
logger = logging.getLogger(__name__)


class DeployDecision(BaseModel):
    deploy: bool
    branch: str
    target: Optional[str] = None
    reason: str = ""


def parse_payload(body: bytes, content_type: str) -> Any:
    """
    Decode the webhook body. GitHub sends either raw JSON or a form with a
    single 'payload' field holding the JSON document.
    """
    if "application/x-www-form-urlencoded" in content_type:
        form_data = parse_qs(body.decode("utf-8"))
        if "payload" not in form_data:
            raise ValueError("No payload parameter in form data")
        return json.loads(form_data["payload"][0])
    return json.loads(body)


def decide_deploy(config: Config, event: PushEvent, endpoint: Optional[str] = None) -> DeployDecision:
    """
    Compare the pushed branch with the branch configured for the repository.

    The returned target is always a configured endpoint name, never text taken
    from the payload. When the request came in on a named endpoint the
    repository must be that endpoint.
    """
    repo_name = event.repository_name
    push_branch = event.branch

    if endpoint is not None and repo_name != endpoint:
        return DeployDecision(
            deploy=False,
            branch=push_branch,
            reason=f"Repository '{repo_name}' is not tracked by endpoint '{endpoint}', ignoring.",
        )

    target = next((name for name in config.endpoints if name == repo_name), None)
    required_branch = config.required_branch(target) if target else None
    if required_branch is None:
        return DeployDecision(
            deploy=False,
            branch=push_branch,
            reason=f"Repository '{repo_name}' is not configured for deployment, ignoring.",
        )

    if push_branch != required_branch:
        return DeployDecision(
            deploy=False,
            branch=push_branch,
            reason=f"Push to branch '{push_branch}' differs from '{required_branch}' for '{target}', ignoring.",
        )

    return DeployDecision(deploy=True, branch=push_branch, target=target)


async def receive_push(
        request: Request,
        background_tasks: BackgroundTasks,
        endpoint: Optional[str],
        signature: Optional[str],
        github_event: Optional[str],
        config: Config,
        runner: CommandRunner,
        history: DeployHistory,
        notifier: Notifications,
):
    body_bytes = await request.body()

    # 1. Verify signature before touching the payload.
    if not verify_signature(config.secret, body_bytes, signature):
        logger.warning(f"Invalid signature on webhook for '{endpoint or request.url.path}'.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    # 2. Parse payload. Malformed bodies are acknowledged so the sender does not keep retrying.
    try:
        payload = parse_payload(body_bytes, request.headers.get("Content-Type", ""))
    except (ValueError, RecursionError) as e:
        logger.error(f"Could not decode webhook payload: {e}")
        return {"message": "Error processing webhook: invalid JSON payload"}

    # 3. Handle ping events.
    if github_event == "ping" or (isinstance(payload, dict) and "zen" in payload):
        logger.info("Received ping event.")
        return {"message": "Ping successful."}

    # 4. Validate payload shape.
    if not isinstance(payload, dict):
        logger.warning("Webhook payload is not a JSON object.")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payload must be a JSON object"
        )
    try:
        event = PushEvent.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Invalid payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload: 'ref' and 'repository.name' must be strings"
        )
    if not event.ref:
        logger.warning("Webhook payload is missing 'ref'.")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing 'ref' in payload"
        )
    if not event.repository_name:
        logger.warning("Webhook payload is missing 'repository.name'.")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing 'repository.name' in payload"
        )

    logger.info(f"Received push for repo: {event.repository_name}, branch: {event.branch}")

    # 5. Decide.
    decision = decide_deploy(config, event, endpoint)
    if not decision.deploy:
        logger.info(decision.reason)
        return {"message": decision.reason}

    # 6. Deploy. The response only acknowledges receipt, whatever the command does.
    deploy = functools.partial(
        execute_deploy, config, decision.target, decision.branch, runner, history, notifier
    )
    if config.deploy_in_background:
        logger.info(f"Scheduling deployment of '{decision.target}' after acknowledging the webhook.")
        background_tasks.add_task(deploy)
    else:
        await asyncio.get_running_loop().run_in_executor(None, deploy)

    return {"message": "Webhook received"}


@router.post("/", summary="Push Webhook Endpoint (repository resolved from payload)")
async def handle_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        x_hub_signature_256: Optional[str] = Header(None),
        x_github_event: Optional[str] = Header(None),
        config: Config = Depends(get_config),
        runner: CommandRunner = Depends(get_runner),
        history: DeployHistory = Depends(get_history),
        notifier: Notifications = Depends(get_notifier),
):
    logger.info("Webhook endpoint was called.")
    return await receive_push(
        request, background_tasks, None, x_hub_signature_256, x_github_event,
        config, runner, history, notifier,
    )


@router.post("/{endpoint}", summary="Push Webhook Endpoint")
async def handle_endpoint_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        endpoint: str = Depends(get_endpoint),
        x_hub_signature_256: Optional[str] = Header(None),
        x_github_event: Optional[str] = Header(None),
        config: Config = Depends(get_config),
        runner: CommandRunner = Depends(get_runner),
        history: DeployHistory = Depends(get_history),
        notifier: Notifications = Depends(get_notifier),
):
    logger.info(f"Webhook endpoint '{endpoint}' was called.")
    return await receive_push(
        request, background_tasks, endpoint, x_hub_signature_256, x_github_event,
        config, runner, history, notifier,
    )
