"""Tests for the push webhook endpoints."""

import json
from unittest.mock import MagicMock
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from main import create_app
from models.command_result import CommandResult
from models.github_webhook import PushEvent
from notifications import Notifications
from routers.webhook import decide_deploy

from .conftest import RecordingRunner, make_config, push_body, sign


class TestDeployDecision:
    def test_matching_branch_deploys(self, config):
        event = PushEvent.model_validate(json.loads(push_body()))
        decision = decide_deploy(config, event, "siteA")

        assert decision.deploy is True
        assert decision.target == "siteA"
        assert decision.branch == "prod"

    def test_branch_is_text_after_last_slash(self, config):
        event = PushEvent.model_validate({"ref": "refs/heads/feature/prod", "repository": {"name": "siteA"}})
        decision = decide_deploy(config, event)

        assert decision.branch == "prod"
        assert decision.deploy is True

    def test_other_branch_is_ignored(self, config):
        event = PushEvent.model_validate(json.loads(push_body(ref="refs/heads/main")))
        decision = decide_deploy(config, event, "siteA")

        assert decision.deploy is False
        assert "ignoring" in decision.reason

    def test_unconfigured_repository_is_ignored(self, config):
        event = PushEvent.model_validate(json.loads(push_body(repo="unknown")))
        decision = decide_deploy(config, event)

        assert decision.deploy is False
        assert decision.target is None

    def test_repository_must_match_endpoint(self, config):
        event = PushEvent.model_validate(json.loads(push_body(ref="refs/heads/main", repo="siteB")))
        decision = decide_deploy(config, event, "siteA")

        assert decision.deploy is False
        assert "not tracked by endpoint 'siteA'" in decision.reason


class TestEndpointWebhook:
    def test_other_branch_is_acknowledged_without_deploy(self, post_push, runner):
        response = post_push("/hooks/siteA", push_body(ref="refs/heads/main"))

        assert response.status_code == 200
        assert "ignoring" in response.json()["message"]
        assert runner.calls == []

    def test_tracked_branch_runs_deploy_once(self, post_push, runner):
        response = post_push("/hooks/siteA", push_body(ref="refs/heads/prod"))

        assert response.status_code == 200
        assert response.json() == {"message": "Webhook received"}
        assert runner.calls == [("/opt/deploy/run-siteA", 30.0)]

    def test_missing_repository_name_is_rejected(self, post_push, runner):
        body = json.dumps({"ref": "refs/heads/prod", "repository": {"id": 1}}).encode()
        response = post_push("/hooks/siteA", body)

        assert response.status_code == 400
        assert "repository.name" in response.json()["detail"]
        assert runner.calls == []

    def test_missing_repository_is_rejected(self, post_push, runner):
        response = post_push("/hooks/siteA", push_body(repo=None))

        assert response.status_code == 400
        assert "repository.name" in response.json()["detail"]
        assert runner.calls == []

    def test_missing_ref_is_rejected(self, post_push, runner):
        response = post_push("/hooks/siteA", push_body(ref=None))

        assert response.status_code == 400
        assert "'ref'" in response.json()["detail"]
        assert runner.calls == []

    def test_wrong_field_types_are_rejected(self, post_push, runner):
        body = json.dumps({"ref": 42, "repository": "siteA"}).encode()
        response = post_push("/hooks/siteA", body)

        assert response.status_code == 400
        assert runner.calls == []

    def test_non_object_payload_is_rejected(self, post_push, runner):
        response = post_push("/hooks/siteA", b'["refs/heads/prod"]')

        assert response.status_code == 400
        assert runner.calls == []

    def test_invalid_signature_short_circuits(self, post_push, runner, monkeypatch):
        parse = MagicMock()
        monkeypatch.setattr("routers.webhook.parse_payload", parse)

        response = post_push("/hooks/siteA", push_body(), signature="sha256=" + "0" * 64)

        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid signature"}
        parse.assert_not_called()
        assert runner.calls == []

    def test_missing_signature_is_rejected(self, client, runner):
        response = client.post(
            "/hooks/siteA", content=push_body(), headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 401
        assert runner.calls == []

    def test_signature_from_other_secret_is_rejected(self, post_push, runner):
        body = push_body()
        response = post_push("/hooks/siteA", body, signature=sign(body, b"another secret"))

        assert response.status_code == 401
        assert runner.calls == []

    def test_malformed_json_is_acknowledged(self, post_push, runner):
        response = post_push("/hooks/siteA", b"{not json")

        assert response.status_code == 200
        assert "invalid JSON" in response.json()["message"]
        assert runner.calls == []

    def test_deeply_nested_json_is_acknowledged(self, post_push, runner):
        response = post_push("/hooks/siteA", b"[" * 100000 + b"]" * 100000)

        assert response.status_code == 200
        assert "invalid JSON" in response.json()["message"]
        assert runner.calls == []

    def test_unknown_endpoint_is_not_found(self, post_push, runner):
        response = post_push("/hooks/siteC", push_body(repo="siteC"))

        assert response.status_code == 404
        assert runner.calls == []

    def test_repository_for_another_endpoint_is_ignored(self, post_push, runner):
        response = post_push("/hooks/siteA", push_body(ref="refs/heads/main", repo="siteB"))

        assert response.status_code == 200
        assert "ignoring" in response.json()["message"]
        assert runner.calls == []

    def test_ping_event(self, post_push, runner):
        body = json.dumps({"zen": "Keep it logically awesome.", "hook_id": 1}).encode()
        response = post_push("/hooks/siteA", body, **{"X-GitHub-Event": "ping"})

        assert response.status_code == 200
        assert response.json() == {"message": "Ping successful."}
        assert runner.calls == []

    def test_form_encoded_payload(self, post_push, runner):
        body = urlencode({"payload": push_body().decode()}).encode()
        response = post_push(
            "/hooks/siteA", body, **{"Content-Type": "application/x-www-form-urlencoded"}
        )

        assert response.status_code == 200
        assert runner.commands == ["/opt/deploy/run-siteA"]

    def test_form_without_payload_field_is_acknowledged(self, post_push, runner):
        body = urlencode({"other": "x"}).encode()
        response = post_push(
            "/hooks/siteA", body, **{"Content-Type": "application/x-www-form-urlencoded"}
        )

        assert response.status_code == 200
        assert "invalid JSON" in response.json()["message"]
        assert runner.calls == []

    def test_failed_deploy_still_acknowledged(self, config):
        runner = RecordingRunner(CommandResult(exit_code=1, stderr=b"boom"))
        client = TestClient(create_app(config, runner=runner, notifier=Notifications()))
        body = push_body()

        response = client.post(
            "/hooks/siteA", content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
        )

        assert response.status_code == 200
        assert response.json() == {"message": "Webhook received"}
        assert len(runner.calls) == 1

    def test_deploy_before_responding(self):
        runner = RecordingRunner()
        config = make_config(deploy_in_background=False)
        client = TestClient(create_app(config, runner=runner, notifier=Notifications()))
        body = push_body(ref="refs/heads/main", repo="siteB")

        response = client.post(
            "/hooks/siteB", content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
        )

        assert response.status_code == 200
        assert runner.commands == ["/opt/deploy/run-siteB"]


class TestRootWebhook:
    def test_repository_resolved_from_payload(self, post_push, runner):
        response = post_push("/hooks/", push_body(ref="refs/heads/main", repo="siteB"))

        assert response.status_code == 200
        assert runner.commands == ["/opt/deploy/run-siteB"]

    def test_untracked_repository_is_ignored(self, post_push, runner):
        response = post_push("/hooks/", push_body(repo="siteA; rm -rf /"))

        assert response.status_code == 200
        assert "not configured" in response.json()["message"]
        assert runner.calls == []


@pytest.mark.parametrize("mount_path,url", [("", "/siteA"), ("/", "/siteA"), ("/deploy/hooks", "/deploy/hooks/siteA")])
def test_mount_path(mount_path, url):
    runner = RecordingRunner()
    client = TestClient(create_app(make_config(mount_path=mount_path), runner=runner, notifier=Notifications()))
    body = push_body()

    response = client.post(
        url, content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
    )

    assert response.status_code == 200
    assert runner.commands == ["/opt/deploy/run-siteA"]
