import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from config import Config
from models.command_result import CommandResult
from models.deploy_result import DeployResult
from notifications import Notifications
from utils import build_deploy_command

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000

CommandRunner = Callable[..., CommandResult]


def _tail(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")[-OUTPUT_TAIL_CHARS:]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DeployHistory:
    """
    Most recent deploy result per endpoint, kept in memory for the status route.

    Deploys run in worker threads, so access goes through a lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._results: Dict[str, DeployResult] = {}

    def record(self, result: DeployResult):
        with self._lock:
            self._results[result.endpoint] = result

    def latest(self, endpoint: str) -> Optional[DeployResult]:
        with self._lock:
            return self._results.get(endpoint)


def execute_deploy(
        config: Config,
        endpoint: str,
        branch: str,
        runner: CommandRunner,
        history: DeployHistory,
        notifier: Notifications,
) -> DeployResult:
    """
    Run the deploy command for a configured endpoint and record the outcome.

    The command's exit status never propagates: failures are logged, recorded
    and sent to the configured notification channels.
    """
    command = build_deploy_command(config.deploy_command, endpoint, config.endpoints)
    started_at = _now()
    history.record(DeployResult(
        endpoint=endpoint, branch=branch, command=command, status="running", started_at=started_at
    ))
    logger.info(f"=== Deploying '{endpoint}' (branch '{branch}') ===")
    logger.info(f"Running deploy command: {command}")

    try:
        outcome = runner(command, timeout=config.deploy_timeout)
    except Exception as e:
        logger.error(f"Deploy command for '{endpoint}' could not be run: {e}", exc_info=True)
        outcome = CommandResult(exit_code=-1, stderr=str(e).encode())

    stdout, stderr = _tail(outcome.stdout), _tail(outcome.stderr)
    logger.info(f"Deploy command for '{endpoint}' exited with code {outcome.exit_code}")
    if outcome.succeeded:
        logger.info(f"Deployment successful for '{endpoint}'")
        if stdout:
            logger.info(f"Deploy stdout:\n{stdout}")
        if stderr:
            logger.warning(f"Deploy stderr:\n{stderr}")
    else:
        reason = "timed out" if outcome.timed_out else f"exit code {outcome.exit_code}"
        logger.error(f"Deployment failed for '{endpoint}' ({reason})")
        if stdout:
            logger.error(f"Deploy stdout:\n{stdout}")
        if stderr:
            logger.error(f"Deploy stderr:\n{stderr}")

    result = DeployResult(
        endpoint=endpoint,
        branch=branch,
        command=command,
        status="successful" if outcome.succeeded else "failed",
        started_at=started_at,
        finished_at=_now(),
        exit_code=outcome.exit_code,
        timed_out=outcome.timed_out,
        stdout_tail=stdout,
        stderr_tail=stderr,
    )
    history.record(result)

    if result.status == "successful":
        details = "Deploy command completed."
    elif result.timed_out:
        details = f"Deploy command timed out after {config.deploy_timeout} seconds.\n{stderr}"
    else:
        details = f"Deploy command exited with code {result.exit_code}.\n{stderr}"
    notifier.notify_deploy_event(endpoint, branch, result.status, details)

    logger.info(f"=== Finished deployment for '{endpoint}' ===")
    return result
