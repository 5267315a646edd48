"""Shared fixtures for the PushHook test suite."""

import hashlib
import hmac
import json
from typing import Any, List, Optional, Tuple

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import Config
from main import create_app
from models.command_result import CommandResult
from notifications import Notifications

SECRET = b"It's a Secret to Everybody"


class RecordingRunner:
    """Stands in for utils.run_command and remembers every command it was given."""

    def __init__(self, result: Optional[CommandResult] = None):
        self.result = result or CommandResult(exit_code=0, stdout=b"deployed\n")
        self.calls: List[Tuple[str, Optional[float]]] = []

    def __call__(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        self.calls.append((command, timeout))
        return self.result

    @property
    def commands(self) -> List[str]:
        return [command for command, _ in self.calls]


def sign(body: bytes, secret: bytes = SECRET) -> str:
    return "sha256=" + hmac.new(secret, body, hashlib.sha256).hexdigest()


def push_body(ref: Optional[str] = "refs/heads/prod", repo: Optional[str] = "siteA", **extra: Any) -> bytes:
    payload: dict = dict(extra)
    if ref is not None:
        payload["ref"] = ref
    if repo is not None:
        payload["repository"] = {"name": repo}
    return json.dumps(payload).encode()


def make_config(**overrides: Any) -> Config:
    values = dict(
        port=8080,
        secret=SECRET,
        deploy_command="/opt/deploy/run",
        mount_path="/hooks",
        endpoints=frozenset({"siteA", "siteB"}),
        branch_by_endpoint={"siteA": "prod", "siteB": "main"},
        deploy_timeout=30.0,
    )
    values.update(overrides)
    return Config(**values)


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def app(config: Config, runner: RecordingRunner) -> FastAPI:
    return create_app(config, runner=runner, notifier=Notifications())


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def post_push(client: TestClient):
    """Send a signed push to the given path."""

    def _post(path: str, body: bytes, signature: Optional[str] = None, **headers: str):
        all_headers = {
            "Content-Type": "application/json",
            "X-Hub-Signature-256": sign(body) if signature is None else signature,
            "X-GitHub-Event": "push",
        }
        all_headers.update(headers)
        return client.post(path, content=body, headers=all_headers)

    return _post
