# utils.py

import hmac
import hashlib
import os
import signal
import subprocess
import logging
from typing import AbstractSet, Optional

from models.command_result import CommandResult

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_signature(secret: bytes, request_body: bytes, signature: Optional[str]) -> bool:
    """
    Check an X-Hub-Signature-256 header value against the raw request body.

    The digest must be computed over the bytes exactly as received; any
    re-serialization of the payload changes it.
    """
    if not signature:
        logger.warning("No signature provided.")
        return False

    if not signature.startswith(SIGNATURE_PREFIX):
        logger.warning(f"Unsupported signature type: {signature.split('=')[0]}")
        return False

    received = signature[len(SIGNATURE_PREFIX):]
    mac = hmac.new(secret, msg=request_body, digestmod=hashlib.sha256)
    is_valid = hmac.compare_digest(mac.hexdigest().encode(), received.encode())
    if is_valid:
        logger.debug("Webhook signature verified successfully.")
    else:
        logger.warning("Webhook signature verification failed.")
    return is_valid


def build_deploy_command(template: str, target: str, allowed: AbstractSet[str]) -> str:
    # target is interpolated into a shell string, so only configured names are accepted.
    if target not in allowed:
        raise ValueError(f"'{target}' is not a configured deploy target")
    return f"{template}-{target}"


def run_command(command: str, timeout: Optional[float] = None) -> CommandResult:
    """
    Run a command through the system shell and capture its exit code and output.

    A non-zero exit or a timeout is reported in the result, never raised.
    """
    logger.debug(f"Executing command: {command}")
    try:
        # Own session, so a timeout can kill everything the script started.
        process = subprocess.Popen(
            command,
            shell=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        logger.error(f"Could not start command '{command}': {e}")
        return CommandResult(exit_code=127, stderr=str(e).encode())

    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {command}")
        _kill_process_group(process)
        stdout, stderr = process.communicate()
        return CommandResult(exit_code=-1, stdout=stdout or b"", stderr=stderr or b"", timed_out=True)

    if process.returncode == 0:
        logger.debug(f"Command executed successfully: {command}")
    else:
        logger.debug(f"Command exited with code {process.returncode}: {command}")
    return CommandResult(exit_code=process.returncode, stdout=stdout, stderr=stderr)


def _kill_process_group(process: subprocess.Popen):
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
