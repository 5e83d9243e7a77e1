"""Git service for repository operations."""

import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

from builder.core.config import settings
from builder.services.sandbox import HOME_DIR, REPO_DIR, SandboxHandle, SandboxService

logger = logging.getLogger(__name__)

GITIGNORE_ENTRIES = ["node_modules", ".pnpm-store"]


class GitError(Exception):
    """Raised when git operations fail."""


@dataclass
class PushResult:
    """Outcome of committing and pushing the agent's changes."""

    changes: bool = False
    committed: bool = False
    pushed: bool = False
    error: str | None = None

    @property
    def push_failed(self) -> bool:
        return self.committed and not self.pushed


def commit_message_for(prompt: str) -> str:
    """First 50 characters of the prompt, with an ellipsis when truncated."""
    prompt = prompt.strip()
    return prompt[:50] + "..." if len(prompt) > 50 else prompt


class GitService:
    """Service for git-related operations."""

    @staticmethod
    def get_current_repo() -> tuple[str, str]:
        """Get current git repository URL and org/name.

        Returns:
            tuple[str, str]: (repository_url, org/name)

        Raises:
            GitError: If not in a git repository or no remote found
        """
        try:
            result = subprocess.run(
                ["git", "remote", "get-url", "origin"],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise GitError("Not in a git repository or no remote 'origin' found") from e

        try:
            return GitService.parse_github_url(result.stdout.strip())
        except ValueError as e:
            raise GitError(str(e)) from e

    @staticmethod
    def normalize_repo_url(repo: str) -> str:
        """Normalize repository input to HTTPS GitHub URL.

        Accepts "org/name", HTTPS, HTTP and SSH forms.
        """
        if not repo.startswith(("http://", "https://", "git@")):
            return f"https://github.com/{repo}.git"

        org_repo = GitService.parse_github_url(repo)[1]
        return f"https://github.com/{org_repo}.git"

    @staticmethod
    def parse_github_url(repo: str) -> tuple[str, str]:
        """Parse GitHub repository URL to extract org/repo.

        Returns:
            tuple[str, str]: (normalized_https_url, org/repo)

        Raises:
            ValueError: If URL cannot be parsed as a GitHub repository
        """
        match = re.search(r"github\.com[:/]([\w.-]+/[\w.-]+?)(?:\.git)?/?$", repo)
        if not match:
            raise ValueError(f"Could not parse GitHub repo from URL: {repo}")

        org_repo = match.group(1)
        return f"https://github.com/{org_repo}.git", org_repo

    @staticmethod
    def repo_name(repo: str) -> str | None:
        """Bare repository name, or None for non-GitHub URLs."""
        try:
            return GitService.parse_github_url(repo)[1].split("/")[1]
        except ValueError:
            return None

    @staticmethod
    def authenticated_repo_url(repo_url: str, token: str | None) -> str:
        """Embed a token in a github.com HTTPS URL for clone and push."""
        if not token:
            return repo_url
        parsed = urlparse(repo_url)
        if parsed.scheme != "https" or parsed.hostname != "github.com":
            return repo_url
        return urlunparse(parsed._replace(netloc=f"{token}:x-oauth-basic@github.com"))

    # Operations inside a sandbox

    @staticmethod
    def clone(handle: SandboxHandle, repo_url: str, token: str | None):
        """Clone the repository into the sandbox working directory."""
        url = GitService.authenticated_repo_url(repo_url, token)
        return SandboxService.run_command(
            handle, "git", ["clone", url, REPO_DIR], cwd=HOME_DIR
        )

    @staticmethod
    def configure(handle: SandboxHandle) -> None:
        """Set the commit author and ignore dependency directories."""
        SandboxService.run_command(
            handle, "git", ["config", "user.name", settings.git_author_name]
        )
        SandboxService.run_command(
            handle, "git", ["config", "user.email", settings.git_author_email]
        )

        for entry in GITIGNORE_ENTRIES:
            quoted = shlex.quote(entry)
            SandboxService.run_command(
                handle,
                f"grep -qxF {quoted} .gitignore 2>/dev/null || echo {quoted} >> .gitignore",
            )

    @staticmethod
    def checkout_branch(handle: SandboxHandle, branch_name: str) -> str:
        """Check out a branch, reusing a local or remote one when it exists.

        Returns:
            "local", "remote" or "new"

        Raises:
            GitError: If the branch cannot be checked out
        """
        local = SandboxService.run_command(
            handle, "git", ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"]
        )
        if local.success:
            result = SandboxService.run_command(handle, "git", ["checkout", branch_name])
            mode = "local"
        else:
            remote = SandboxService.run_command(
                handle, "git", ["ls-remote", "--heads", "origin", branch_name]
            )
            if remote.success and remote.stdout.strip():
                SandboxService.run_command(
                    handle,
                    "git",
                    ["fetch", "origin", f"{branch_name}:{branch_name}"],
                )
                result = SandboxService.run_command(
                    handle, "git", ["checkout", branch_name]
                )
                mode = "remote"
            else:
                result = SandboxService.run_command(
                    handle, "git", ["checkout", "-b", branch_name]
                )
                mode = "new"

        if not result.success:
            raise GitError(
                f"Failed to checkout branch {branch_name}: {result.stderr.strip()}"
            )
        return mode

    @staticmethod
    def has_changes(handle: SandboxHandle) -> bool:
        result = SandboxService.run_command(handle, "git", ["status", "--porcelain"])
        return result.success and bool(result.stdout.strip())

    @staticmethod
    def push_changes(
        handle: SandboxHandle, branch_name: str, commit_message: str
    ) -> PushResult:
        """Commit all changes and push them to the branch."""
        if not GitService.has_changes(handle):
            return PushResult()

        add = SandboxService.run_command(handle, "git", ["add", "."])
        if not add.success:
            return PushResult(changes=True, error=f"git add failed: {add.stderr.strip()}")

        commit = SandboxService.run_command(
            handle, "git", ["commit", "-m", commit_message]
        )
        if not commit.success:
            return PushResult(
                changes=True, error=f"git commit failed: {commit.stderr.strip()}"
            )

        push = SandboxService.run_command(
            handle, "git", ["push", "origin", branch_name]
        )
        if not push.success:
            logger.warning(
                f"Push to {branch_name} failed in sandbox {handle.sandbox_id}: "
                f"{push.stderr.strip()}"
            )
            return PushResult(
                changes=True, committed=True, error=push.stderr.strip() or None
            )

        return PushResult(changes=True, committed=True, pushed=True)

    @staticmethod
    def reset_changes(
        handle: SandboxHandle, branch_name: str, checkpoint_message: str
    ) -> bool:
        """Discard local work, resetting to the remote branch when it exists.

        Uncommitted changes are first committed locally as a checkpoint so
        they stay reachable through the reflog.

        Returns:
            True if there were local changes

        Raises:
            GitError: If the checkpoint, fetch or reset fails
        """
        had_changes = GitService.has_changes(handle)
        if had_changes:
            for args in (["add", "."], ["commit", "-m", checkpoint_message]):
                result = SandboxService.run_command(handle, "git", args)
                if not result.success:
                    raise GitError(f"git {args[0]} failed: {result.stderr.strip()}")

        target = "HEAD"
        remote = SandboxService.run_command(
            handle, "git", ["ls-remote", "--heads", "origin", branch_name]
        )
        if remote.success and remote.stdout.strip():
            fetch = SandboxService.run_command(
                handle, "git", ["fetch", "origin", branch_name]
            )
            if not fetch.success:
                raise GitError(f"Failed to fetch from remote: {fetch.stderr.strip()}")
            target = "FETCH_HEAD"

        reset = SandboxService.run_command(handle, "git", ["reset", "--hard", target])
        if not reset.success:
            raise GitError(f"Failed to reset changes: {reset.stderr.strip()}")

        clean = SandboxService.run_command(handle, "git", ["clean", "-fd"])
        if not clean.success:
            logger.warning(
                f"Failed to clean untracked files in sandbox {handle.sandbox_id}: "
                f"{clean.stderr.strip()}"
            )
        return had_changes
