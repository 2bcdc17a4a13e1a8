#!/usr/bin/env python3
"""
GitHub Reporter

Publishes run results back to GitHub: one commit status per pipeline, and a
sticky preview-deployment comment on pull requests (older bot comments with
the same marker are deleted before the new one is posted).
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from ..aggregator import PipelineStatus, RunReport
from ..errors import DispatchError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
BOT_LOGIN = "github-actions[bot]"
PREVIEW_MARKER = "[preview-deployment]:"
STATUS_CONTEXT_PREFIX = "cicd-dispatch"

# Commit status state per pipeline status
COMMIT_STATES = {
    PipelineStatus.SUCCESS: "success",
    PipelineStatus.DEGRADED: "success",
    PipelineStatus.FAILED: "failure",
    PipelineStatus.CANCELLED: "error",
}


def preview_comment_body(
    pr_number: int,
    success: bool,
    project_name: str = "Project",
    deployment_url: Optional[str] = None,
    project_url: Optional[str] = None,
    deployment_id: Optional[str] = None,
    run_url: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    """Markdown body of the sticky preview comment."""
    marker = f"{PREVIEW_MARKER} #preview-deployment-{pr_number}"
    if not success:
        logs = f"[workflow logs]({run_url})" if run_url else "workflow logs"
        return (
            f"{marker}\n**Preview Build Failed**\n\n"
            f"The preview deployment could not be triggered. Check the {logs} for details."
        )

    project_url = project_url or deployment_url or ""
    preview_url = deployment_url or project_url
    inspector_url = f"{project_url}/{deployment_id}" if deployment_id else project_url
    timestamp = (now or datetime.now(timezone.utc)).strftime("%b %d, %Y %H:%M")
    return (
        f"{marker}\nDeployment preview from this PR\n\n"
        "| Project | Preview | Updated (UTC) |\n"
        "| :--- | :------ | :------ |\n"
        f"| [{project_name}]({inspector_url}) | [Preview]({preview_url}) | {timestamp} |\n\n"
        "*The preview will be ready shortly.*"
    )


class GitHubReporter:
    """Thin REST client for commit statuses and PR comments."""

    def __init__(
        self,
        repo: str,
        token: Optional[str] = None,
        api_base: str = GITHUB_API,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        if repo.count("/") != 1:
            raise DispatchError(f"Repository must be 'owner/name', got '{repo}'")
        self.repo = repo
        self.token = token if token is not None else os.environ.get("GITHUB_TOKEN")
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "cicd-dispatch/1.0",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> Any:
        url = f"{self.api_base}/repos/{self.repo}/{endpoint.lstrip('/')}"
        try:
            response = self.session.request(
                method, url, headers=self._headers(), json=data, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise DispatchError(f"GitHub API request failed: {e}") from e

        if response.status_code >= 400:
            raise DispatchError(
                f"GitHub API error {response.status_code} on {method} {endpoint}: "
                f"{response.text[:200]}"
            )
        return response.json() if response.content else None

    def publish_statuses(
        self, report: RunReport, sha: str, target_url: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """Post one commit status per pipeline of ``report``."""
        posted = []
        for pipeline in report.pipelines:
            status = PipelineStatus(pipeline.status)
            failed = [j.id for j in pipeline.jobs if j.status != "Succeeded"]
            succeeded = len(pipeline.jobs) - len(failed)
            description = f"{pipeline.status}: {succeeded}/{len(pipeline.jobs)} jobs succeeded"
            payload = {
                "state": COMMIT_STATES[status],
                "context": f"{STATUS_CONTEXT_PREFIX}/{pipeline.id}",
                "description": description[:140],
            }
            if target_url:
                payload["target_url"] = target_url
            self._request("POST", f"statuses/{sha}", payload)
            logger.info(f"Published {payload['state']} status for {pipeline.id} on {sha[:8]}")
            posted.append(payload)
        return posted

    def post_preview_comment(self, pr_number: int, body: str) -> Dict[str, Any]:
        """Replace previous preview comments on ``pr_number`` with ``body``."""
        comments = self._request("GET", f"issues/{pr_number}/comments?per_page=100") or []
        for comment in comments:
            author = (comment.get("user") or {}).get("login")
            if author == BOT_LOGIN and PREVIEW_MARKER in (comment.get("body") or ""):
                self._request("DELETE", f"issues/comments/{comment['id']}")
                logger.info(f"Deleted stale preview comment {comment['id']} on PR #{pr_number}")
        return self._request("POST", f"issues/{pr_number}/comments", {"body": body})
