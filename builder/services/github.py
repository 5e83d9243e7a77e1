"""Thin GitHub REST API client."""

import logging
from typing import Any

import httpx

from builder.core.config import settings
from builder.core.errors import GitHubError

logger = logging.getLogger(__name__)


class GitHubService:
    """GitHub REST calls authenticated with a user token.

    Every method raises GitHubError carrying the HTTP status on failure.
    """

    def __init__(self, token: str, client: httpx.Client | None = None):
        self.client = client or httpx.Client(
            base_url=settings.github_api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=30.0,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise GitHubError(f"GitHub request failed: {e}") from e

        if response.is_error:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            logger.warning(f"GitHub {method} {path} -> {response.status_code}: {message}")
            raise GitHubError(message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def get_repository(self, org_repo: str) -> dict:
        return self._request("GET", f"/repos/{org_repo}")

    def get_default_branch(self, org_repo: str) -> str:
        return self.get_repository(org_repo).get("default_branch") or "main"

    def get_branch_head(self, org_repo: str, branch: str) -> str | None:
        """SHA of the branch head, or None if the branch does not exist."""
        try:
            data = self._request("GET", f"/repos/{org_repo}/branches/{branch}")
        except GitHubError as e:
            if e.status_code == 404:
                return None
            raise
        return data["commit"]["sha"]

    def create_pull_request(
        self, org_repo: str, head: str, base: str, title: str, body: str = ""
    ) -> dict:
        return self._request(
            "POST",
            f"/repos/{org_repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )

    def get_pull_request(self, org_repo: str, number: int) -> dict:
        return self._request("GET", f"/repos/{org_repo}/pulls/{number}")

    def update_pull_request_state(self, org_repo: str, number: int, state: str) -> dict:
        return self._request(
            "PATCH", f"/repos/{org_repo}/pulls/{number}", json={"state": state}
        )

    def merge_pull_request(
        self,
        org_repo: str,
        number: int,
        merge_method: str = "squash",
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> dict:
        payload = {"merge_method": merge_method}
        if commit_title:
            payload["commit_title"] = commit_title
        if commit_message:
            payload["commit_message"] = commit_message
        return self._request(
            "PUT", f"/repos/{org_repo}/pulls/{number}/merge", json=payload
        )

    def list_check_runs(self, org_repo: str, ref: str) -> list[dict]:
        data = self._request(
            "GET",
            f"/repos/{org_repo}/commits/{ref}/check-runs",
            params={"per_page": 100},
        )
        return data.get("check_runs", [])
