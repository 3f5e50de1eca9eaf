"""Tests for the HTTP event endpoint."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from pipewright.dispatcher import Dispatcher
from pipewright.errors import CycleDetected
from pipewright.server.app import create_app


@pytest.fixture
def dispatcher(make_runner, load):
    comment = load("""
        name: comment
        on:
          issues:
            types: [opened]
        jobs:
          reply:
            steps:
              - run: echo issue ${{ github.event.issue.number }}
    """)
    manual = load("""
        name: deploy
        on:
          workflow_dispatch:
            inputs:
              target:
                type: choice
                options: [staging, production]
                required: true
        jobs:
          ship:
            steps:
              - run: |
                  sleep ${{ inputs.target == 'staging' && '0' || '5' }}
                  echo to ${{ inputs.target }}
    """)
    return Dispatcher([comment, manual], make_runner())


@pytest.fixture
def client(dispatcher):
    return TestClient(create_app(dispatcher))


class TestWorkflows:
    def test_list(self, client):
        resp = client.get("/workflows")
        assert resp.status_code == 200
        assert resp.json() == [
            {"name": "comment", "events": ["issues"], "jobs": ["reply"]},
            {"name": "deploy", "events": ["workflow_dispatch"], "jobs": ["ship"]},
        ]


class TestEvents:
    def test_github_style_delivery(self, client, dispatcher):
        resp = client.post(
            "/events",
            json={"action": "opened", "issue": {"number": 42}},
            headers={"X-GitHub-Event": "issues"},
        )
        assert resp.status_code == 202
        body = resp.json()
        assert body["workflows"] == ["comment"]
        result = dispatcher.get_run(body["run_ids"][0]).wait(10)
        assert "issue 42" in result.jobs["reply"].logs

    def test_envelope_delivery(self, client):
        resp = client.post("/events", json={"event": "issues", "payload": {"action": "opened", "issue": {"number": 1}}})
        assert resp.status_code == 202
        assert resp.json()["workflows"] == ["comment"]

    def test_unmatched_event(self, client):
        resp = client.post("/events", json={"action": "edited"}, headers={"X-GitHub-Event": "issues"})
        assert resp.status_code == 202
        assert resp.json() == {"run_ids": [], "workflows": []}

    def test_missing_event_name(self, client):
        resp = client.post("/events", json={"action": "opened"})
        assert resp.status_code == 422

    def test_workflow_that_cannot_start_does_not_block_others(self, client, dispatcher, load, monkeypatch):
        dispatcher.register(load("""
            name: triage
            on: issues
            jobs:
              label:
                steps:
                  - run: echo label
        """))
        start = dispatcher.runner.start

        def start_or_fail(workflow, event, **kwargs):
            if workflow.name == "triage":
                raise CycleDetected(["label", "label"])
            return start(workflow, event, **kwargs)

        monkeypatch.setattr(dispatcher.runner, "start", start_or_fail)
        resp = client.post(
            "/events",
            json={"action": "opened", "issue": {"number": 7}},
            headers={"X-GitHub-Event": "issues"},
        )
        assert resp.status_code == 202
        body = resp.json()
        assert body["workflows"] == ["comment"]
        assert dispatcher.get_run(body["run_ids"][0]).wait(10).status.value == "succeeded"


class TestDispatches:
    def test_manual_run(self, client, dispatcher):
        resp = client.post("/workflows/deploy/dispatches", json={"ref": "main", "inputs": {"target": "staging"}})
        assert resp.status_code == 202
        run_id = resp.json()["run_id"]
        dispatcher.get_run(run_id).wait(10)

        resp = client.get(f"/runs/{run_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "succeeded"
        assert body["event"] == "workflow_dispatch"
        assert body["jobs"] == {"ship": {"state": "succeeded", "reason": None}}

    def test_unknown_workflow(self, client):
        assert client.post("/workflows/nope/dispatches", json={}).status_code == 404

    def test_invalid_inputs(self, client):
        resp = client.post("/workflows/deploy/dispatches", json={"inputs": {"target": "moon"}})
        assert resp.status_code == 422
        assert "must be one of" in resp.json()["detail"]

    def test_missing_required_input(self, client):
        assert client.post("/workflows/deploy/dispatches", json={}).status_code == 422


class TestRuns:
    def test_unknown_run(self, client):
        assert client.get("/runs/999999").status_code == 404

    def test_cancel_running_run(self, client, dispatcher):
        run_id = client.post(
            "/workflows/deploy/dispatches", json={"inputs": {"target": "production"}}
        ).json()["run_id"]
        resp = client.post(f"/runs/{run_id}/cancel")
        assert resp.status_code == 200

        result = dispatcher.get_run(run_id).wait(10)
        assert result.status.value == "cancelled"
        assert client.get(f"/runs/{run_id}").json()["jobs"]["ship"]["state"] == "cancelled"

        # a finished run cannot be cancelled again
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409
