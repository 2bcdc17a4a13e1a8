"""
Unit tests for the GitHub reporter, using a fake HTTP session.
"""

import json
from datetime import datetime, timezone

import pytest
import requests

from cicd_dispatch.aggregator import JobSummary, PipelineSummary, RunReport
from cicd_dispatch.errors import DispatchError
from cicd_dispatch.reporting.github import (
    BOT_LOGIN,
    PREVIEW_MARKER,
    GitHubReporter,
    preview_comment_body,
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.requests = []

    def request(self, method, url, headers=None, json=None, timeout=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else FakeResponse(201, {})


@pytest.fixture
def report():
    return RunReport(
        run_id="run-1",
        event_id="e1",
        ref="refs/pull/3/merge",
        status="Failed",
        pipelines=[
            PipelineSummary(
                id="ci",
                type="ci",
                priority="high",
                status="Failed",
                reason="on pull_request",
                jobs=[
                    JobSummary("ci/test", "ci", "web", "test", "Succeeded"),
                    JobSummary("ci/build", "ci", "web", "build", "Failed"),
                ],
            ),
            PipelineSummary(
                id="preview",
                type="ci",
                priority="medium",
                status="Degraded",
                reason="on pull_request",
            ),
        ],
    )


def test_repo_must_be_owner_and_name():
    with pytest.raises(DispatchError):
        GitHubReporter("just-a-name", token="t", session=FakeSession())


def test_publish_statuses(report):
    session = FakeSession()
    reporter = GitHubReporter("acme/app", token="secret", session=session)

    posted = reporter.publish_statuses(report, "abc123def", target_url="https://ci/run-1")

    assert [p["state"] for p in posted] == ["failure", "success"]
    first = session.requests[0]
    assert first["method"] == "POST"
    assert first["url"] == "https://api.github.com/repos/acme/app/statuses/abc123def"
    assert first["json"]["context"] == "cicd-dispatch/ci"
    assert first["json"]["description"] == "Failed: 1/2 jobs succeeded"
    assert first["json"]["target_url"] == "https://ci/run-1"
    assert first["headers"]["Authorization"] == "Bearer secret"


def test_api_error_raises(report):
    session = FakeSession(responses=[FakeResponse(422, {"message": "bad"})])
    with pytest.raises(DispatchError, match="422"):
        GitHubReporter("acme/app", token="t", session=session).publish_statuses(report, "abc")


def test_network_error_raises(report):
    session = FakeSession(error=requests.ConnectionError("offline"))
    with pytest.raises(DispatchError, match="request failed"):
        GitHubReporter("acme/app", token="t", session=session).publish_statuses(report, "abc")


def test_preview_comment_replaces_bot_comments():
    existing = [
        {"id": 1, "user": {"login": BOT_LOGIN}, "body": f"{PREVIEW_MARKER} #preview-deployment-3"},
        {"id": 2, "user": {"login": "octocat"}, "body": f"{PREVIEW_MARKER} quoted"},
        {"id": 3, "user": {"login": BOT_LOGIN}, "body": "unrelated bot comment"},
    ]
    session = FakeSession(
        responses=[FakeResponse(200, existing), FakeResponse(204), FakeResponse(201, {"id": 9})]
    )
    reporter = GitHubReporter("acme/app", token="t", session=session)

    created = reporter.post_preview_comment(3, "body")

    methods = [(r["method"], r["url"].rsplit("/repos/acme/app/", 1)[1]) for r in session.requests]
    assert methods == [
        ("GET", "issues/3/comments?per_page=100"),
        ("DELETE", "issues/comments/1"),
        ("POST", "issues/3/comments"),
    ]
    assert created == {"id": 9}


def test_preview_comment_body_success():
    body = preview_comment_body(
        7,
        success=True,
        project_name="site",
        deployment_url="https://preview.example.com",
        project_url="https://dash.example.com/site",
        deployment_id="dpl_1",
        now=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
    )
    assert body.startswith(f"{PREVIEW_MARKER} #preview-deployment-7")
    assert "[site](https://dash.example.com/site/dpl_1)" in body
    assert "[Preview](https://preview.example.com)" in body
    assert "May 01, 2024 12:30" in body


def test_preview_comment_body_failure():
    body = preview_comment_body(7, success=False, run_url="https://ci/run/1")
    assert "Preview Build Failed" in body
    assert "[workflow logs](https://ci/run/1)" in body
