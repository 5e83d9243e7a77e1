"""Pull-request lifecycle for task branches."""

import logging
import re
from dataclasses import dataclass

from builder.core.errors import GitHubError, PullRequestError, ValidationError
from builder.models import PullRequestStatus, Task
from builder.services.credentials import CredentialService
from builder.services.git import GitService
from builder.services.github import GitHubService
from builder.services.task import TaskService

logger = logging.getLogger(__name__)

MERGE_METHODS = ("merge", "squash", "rebase")

_PREVIEW_URL_RE = re.compile(r"https?://[^\s)\]]+\.vercel\.app")
_FEEDBACK_URL_RE = re.compile(r"vercel\.live/open-feedback/(.+)")

_CREATE_ERRORS = {
    422: "Pull request already exists or branch missing",
    403: "Permission denied. Check repository access.",
}
_MERGE_ERRORS = {
    405: "Pull request is not mergeable",
    409: "Merge conflict detected",
    403: "Permission denied. Check repository access.",
}


@dataclass
class PreviewResult:
    has_deployment: bool
    preview_url: str | None = None
    message: str | None = None
    cached: bool = False


def pr_status_from(data: dict) -> PullRequestStatus:
    """MERGED if merged, CLOSED if closed, otherwise OPEN."""
    if data.get("merged_at"):
        return PullRequestStatus.MERGED
    if data.get("state") == "closed":
        return PullRequestStatus.CLOSED
    return PullRequestStatus.OPEN


def convert_feedback_url(url: str) -> str:
    match = _FEEDBACK_URL_RE.search(url)
    return f"https://{match.group(1)}" if match else url


def extract_preview_url(check_runs: list[dict]) -> str | None:
    """Find a deployment preview URL among a commit's check runs."""

    def is_vercel(run: dict, name: str) -> bool:
        return (
            (run.get("app") or {}).get("slug") == "vercel"
            and run.get("name") == name
            and run.get("status") == "completed"
        )

    preview = next((r for r in check_runs if is_vercel(r, "Vercel Preview Comments")), None)
    deployment = next(
        (
            r
            for r in check_runs
            if is_vercel(r, "Vercel") and r.get("conclusion") == "success"
        ),
        None,
    )
    run = preview or deployment
    if run is None:
        return None

    output = run.get("output") or {}
    combined = f"{output.get('summary') or ''}\n{output.get('text') or ''}"
    match = _PREVIEW_URL_RE.search(combined)
    if match:
        return match.group(0)
    if run.get("details_url"):
        return convert_feedback_url(run["details_url"])
    return None


class PullRequestService:
    """Creates and tracks the pull request of a task's branch."""

    @staticmethod
    def _context(task_id: str, user_id: str) -> tuple[Task, str, GitHubService]:
        task = TaskService.get_task_by_id(task_id, user_id)
        try:
            _, org_repo = GitService.parse_github_url(task.repo_url)
        except ValueError as e:
            raise PullRequestError("Invalid GitHub repository URL") from e

        token = CredentialService.get_github_token(user_id)
        if not token:
            raise PullRequestError("GitHub account not connected")
        return task, org_repo, GitHubService(token)

    @staticmethod
    def _require_pr(task: Task) -> int:
        if not task.pr_number:
            raise ValidationError("Task does not have a pull request")
        return task.pr_number

    @staticmethod
    def create(
        task_id: str,
        user_id: str,
        title: str,
        body: str = "",
        base_branch: str | None = None,
    ) -> Task:
        task, org_repo, github = PullRequestService._context(task_id, user_id)
        if not task.branch_name:
            raise ValidationError("Task does not have a branch")
        if task.pr_number:
            raise ValidationError("Task already has a pull request")

        with github:
            try:
                base = base_branch or github.get_default_branch(org_repo)
                data = github.create_pull_request(
                    org_repo, task.branch_name, base, title, body
                )
            except GitHubError as e:
                logger.error(f"Failed to create pull request for task {task_id}: {e}")
                raise PullRequestError(
                    _CREATE_ERRORS.get(e.status_code, "Failed to create pull request")
                ) from e

        return TaskService.update_task(
            task_id,
            pr_url=data.get("html_url"),
            pr_number=data.get("number"),
            pr_status=PullRequestStatus.OPEN,
        )

    @staticmethod
    def merge(
        task_id: str,
        user_id: str,
        method: str = "squash",
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> Task:
        if method not in MERGE_METHODS:
            raise ValidationError(f"Merge method must be one of {', '.join(MERGE_METHODS)}")

        task, org_repo, github = PullRequestService._context(task_id, user_id)
        number = PullRequestService._require_pr(task)
        with github:
            try:
                data = github.merge_pull_request(
                    org_repo, number, method, commit_title, commit_message
                )
            except GitHubError as e:
                logger.error(f"Failed to merge pull request #{number}: {e}")
                raise PullRequestError(
                    _MERGE_ERRORS.get(e.status_code, "Failed to merge pull request")
                ) from e

        if not data.get("merged", True):
            raise PullRequestError(data.get("message") or "Failed to merge pull request")

        return TaskService.update_task(
            task_id,
            pr_status=PullRequestStatus.MERGED,
            pr_merge_commit_sha=data.get("sha"),
        )

    @staticmethod
    def _set_state(task_id: str, user_id: str, state: str) -> Task:
        verb = "close" if state == "closed" else "reopen"
        task, org_repo, github = PullRequestService._context(task_id, user_id)
        number = PullRequestService._require_pr(task)
        with github:
            try:
                data = github.update_pull_request_state(org_repo, number, state)
            except GitHubError as e:
                logger.error(f"Failed to {verb} pull request #{number}: {e}")
                if e.status_code == 403:
                    raise PullRequestError(_CREATE_ERRORS[403]) from e
                raise PullRequestError(f"Failed to {verb} pull request") from e

        return TaskService.update_task(task_id, pr_status=pr_status_from(data))

    @staticmethod
    def close(task_id: str, user_id: str) -> Task:
        return PullRequestService._set_state(task_id, user_id, "closed")

    @staticmethod
    def reopen(task_id: str, user_id: str) -> Task:
        return PullRequestService._set_state(task_id, user_id, "open")

    @staticmethod
    def sync_status(task_id: str, user_id: str) -> Task:
        """Refresh the recorded status and merge SHA from GitHub."""
        task, org_repo, github = PullRequestService._context(task_id, user_id)
        number = PullRequestService._require_pr(task)
        with github:
            try:
                data = github.get_pull_request(org_repo, number)
            except GitHubError as e:
                raise PullRequestError("Failed to fetch pull request status") from e

        fields = {"pr_status": pr_status_from(data)}
        if data.get("merge_commit_sha"):
            fields["pr_merge_commit_sha"] = data["merge_commit_sha"]
        if data.get("html_url"):
            fields["pr_url"] = data["html_url"]
        return TaskService.update_task(task_id, **fields)

    @staticmethod
    def list_check_runs(task_id: str, user_id: str) -> list[dict]:
        """Check runs of the branch head; empty when the branch is missing."""
        task, org_repo, github = PullRequestService._context(task_id, user_id)
        if not task.branch_name:
            raise ValidationError("Task does not have a branch")

        with github:
            try:
                sha = github.get_branch_head(org_repo, task.branch_name)
                if sha is None:
                    return []
                runs = github.list_check_runs(org_repo, sha)
            except GitHubError as e:
                raise PullRequestError("Failed to fetch check runs") from e

        return [
            {
                "id": run.get("id"),
                "name": run.get("name"),
                "status": run.get("status"),
                "conclusion": run.get("conclusion"),
                "html_url": run.get("html_url"),
                "started_at": run.get("started_at"),
                "completed_at": run.get("completed_at"),
            }
            for run in runs
        ]

    @staticmethod
    def find_preview_url(task_id: str, user_id: str) -> PreviewResult:
        """Look up the deployment preview of the branch head. Never raises."""
        task = TaskService.get_task_by_id(task_id, user_id)
        if task.preview_url:
            preview_url = convert_feedback_url(task.preview_url)
            if preview_url != task.preview_url:
                TaskService.update_task(task_id, preview_url=preview_url)
            return PreviewResult(True, preview_url=preview_url, cached=True)

        if not task.branch_name:
            return PreviewResult(
                False, message="Task does not have branch or repository information"
            )

        try:
            task, org_repo, github = PullRequestService._context(task_id, user_id)
            with github:
                sha = github.get_branch_head(org_repo, task.branch_name)
                if sha is None:
                    return PreviewResult(False, message="Branch not found")
                preview_url = extract_preview_url(github.list_check_runs(org_repo, sha))
        except (PullRequestError, GitHubError) as e:
            logger.warning(f"Preview lookup failed for task {task_id}: {e}")
            return PreviewResult(False, message=str(e))

        if not preview_url:
            return PreviewResult(
                False, message="No deployment detected for latest commit"
            )

        TaskService.update_task(task_id, preview_url=preview_url)
        return PreviewResult(True, preview_url=preview_url)
