"""Sandbox service for remote sandbox operations (E2B protocol)."""

import logging
import shlex
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from e2b import CommandExitException, TimeoutException
from e2b_code_interpreter import Sandbox

from builder.core.config import settings
from builder.core.errors import (
    SandboxConfigurationError,
    SandboxProvisionError,
    SandboxUnavailableError,
)
from builder.services.credentials import Credentials, current_credential_env

logger = logging.getLogger(__name__)

HOME_DIR = "/home/user"
REPO_DIR = f"{HOME_DIR}/repo"

# Exit code reported when a command exceeds its timeout
TIMEOUT_EXIT_CODE = 124

DEV_SERVER_PATTERN = "next dev|vite|npm run dev|pnpm dev|pnpm run dev|yarn dev"


@dataclass
class CommandResult:
    """Outcome of a sandbox command, returned for any exit code."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return self.stdout or self.stderr


@dataclass
class SandboxHandle:
    """A live sandbox owned by a task."""

    task_id: str
    sandbox_id: str
    sandbox: Any
    url: str | None = None


class SandboxRegistry:
    """Process-local map of task id to live sandbox handle."""

    def __init__(self):
        self._lock = threading.Lock()
        self._handles: dict[str, SandboxHandle] = {}

    def register(self, handle: SandboxHandle) -> None:
        with self._lock:
            self._handles[handle.task_id] = handle

    def unregister(self, task_id: str) -> SandboxHandle | None:
        """Remove and return a task's handle. Absent entries are ignored."""
        with self._lock:
            return self._handles.pop(task_id, None)

    def get(self, task_id: str) -> SandboxHandle | None:
        with self._lock:
            return self._handles.get(task_id)

    def task_ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


sandbox_registry = SandboxRegistry()


class SandboxService:
    """Service for sandbox provisioning, commands and teardown."""

    @staticmethod
    def connection_config() -> dict[str, str]:
        """Provider connection settings.

        Raises:
            SandboxConfigurationError: If the provider is not configured
        """
        missing = [
            name
            for name, value in (
                ("SANDBOX_API_KEY", settings.sandbox_api_key),
                ("SANDBOX_DOMAIN", settings.sandbox_domain),
                ("SANDBOX_TEMPLATE", settings.sandbox_template),
            )
            if not value
        ]
        if missing:
            raise SandboxConfigurationError(
                f"{', '.join(missing)} required for sandbox creation"
            )
        return {"api_key": settings.sandbox_api_key, "domain": settings.sandbox_domain}

    @staticmethod
    def provision(
        task_id: str,
        repo_url: str,
        credentials: Credentials,
        timeout_minutes: int | None = None,
        ports: list[int] | None = None,
        resources: dict | None = None,
        branch_name: str | None = None,
        task_logger=None,
    ) -> SandboxHandle:
        """Create a sandbox with the repository cloned and the branch checked out.

        Raises:
            SandboxConfigurationError: If provider settings are missing (not retryable)
            SandboxProvisionError: If the provider or the clone fails
        """
        from builder.services.git import GitService

        connection = SandboxService.connection_config()
        ports = ports or [settings.sandbox_port]
        timeout = settings.sandbox_max_timeout
        if timeout_minutes:
            timeout = min(timeout_minutes * 60, settings.sandbox_max_timeout)

        metadata = {"task_id": task_id}
        for key, value in (resources or {}).items():
            metadata[key] = str(value)

        try:
            sandbox = Sandbox.create(
                template=settings.sandbox_template,
                timeout=timeout,
                metadata=metadata,
                **connection,
            )
        except TimeoutException as e:
            raise SandboxProvisionError(
                "Sandbox creation timed out. Try with a smaller repository "
                "or fewer dependencies."
            ) from e
        except Exception as e:
            raise SandboxProvisionError(f"Sandbox creation failed: {e}") from e

        handle = SandboxHandle(
            task_id=task_id, sandbox_id=sandbox.sandbox_id, sandbox=sandbox
        )
        logger.info(
            f"Created sandbox {sandbox.sandbox_id} for task {task_id} "
            f"with {timeout}s timeout (resources: {resources or {}})"
        )
        if task_logger:
            task_logger.info("Sandbox created successfully")

        try:
            clone = GitService.clone(handle, repo_url, credentials.github_token)
            if not clone.success:
                raise SandboxProvisionError(
                    f"Failed to clone repository: {clone.stderr.strip()}"
                )
            if task_logger:
                task_logger.info("Repository cloned")

            GitService.configure(handle)
            if branch_name:
                mode = GitService.checkout_branch(handle, branch_name)
                if task_logger:
                    task_logger.info(f"Checked out branch {branch_name} ({mode})")

            handle.url = SandboxService.domain(handle, ports[0])
        except Exception:
            SandboxService.stop(handle)
            raise

        return handle

    @staticmethod
    def connect(task_id: str, sandbox_id: str) -> SandboxHandle:
        """Reconnect to a running sandbox by its durable id.

        Raises:
            SandboxUnavailableError: If the sandbox is gone or unreachable
        """
        connection = SandboxService.connection_config()
        try:
            sandbox = Sandbox.connect(sandbox_id, **connection)
            sandbox.commands.run("echo ok", timeout=30)
        except Exception as e:
            raise SandboxUnavailableError(
                f"Sandbox {sandbox_id} is not available: {e}"
            ) from e

        handle = SandboxHandle(task_id=task_id, sandbox_id=sandbox_id, sandbox=sandbox)
        handle.url = SandboxService.domain(handle, settings.sandbox_port)
        return handle

    @staticmethod
    def resolve(
        task_id: str,
        sandbox_id: str | None,
        registry: SandboxRegistry = sandbox_registry,
    ) -> SandboxHandle | None:
        """Find a task's sandbox: registry first, then one reconnect attempt."""
        handle = registry.get(task_id)
        if handle is not None:
            return handle
        if not sandbox_id:
            return None

        try:
            handle = SandboxService.connect(task_id, sandbox_id)
        except (SandboxUnavailableError, SandboxConfigurationError) as e:
            logger.warning(f"Could not reconnect sandbox for task {task_id}: {e}")
            return None

        registry.register(handle)
        return handle

    @staticmethod
    def run_command(
        handle: SandboxHandle,
        command: str,
        args: list[str] | None = None,
        cwd: str | None = REPO_DIR,
        timeout: int | None = None,
        envs: dict[str, str] | None = None,
        on_stdout: Callable[[str], None] | None = None,
        background: bool = False,
    ) -> CommandResult:
        """Run a command in the sandbox.

        Arguments are shell-quoted. The current credential scope is merged
        into the command's environment.

        Returns:
            CommandResult with exit_code, stdout, stderr (even for non-zero
            exit codes and timeouts)
        """
        if args:
            command = " ".join([command, *(shlex.quote(str(a)) for a in args)])

        command_envs = {**current_credential_env(), **(envs or {})}
        kwargs = {"timeout": timeout or settings.command_timeout}
        if cwd:
            kwargs["cwd"] = cwd
        if command_envs:
            kwargs["envs"] = command_envs
        if on_stdout:
            kwargs["on_stdout"] = on_stdout
        if background:
            kwargs["background"] = True

        try:
            result = handle.sandbox.commands.run(command, **kwargs)
        except CommandExitException as e:
            # Non-zero exit codes are raised, the output is still available
            return CommandResult(
                exit_code=e.exit_code,
                stdout=getattr(e, "stdout", "") or "",
                stderr=getattr(e, "stderr", "") or str(e),
            )
        except TimeoutException as e:
            logger.warning(f"Command timed out in sandbox {handle.sandbox_id}: {e}")
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE, stderr=f"Command timed out: {e}"
            )

        if background:
            return CommandResult(exit_code=0)
        return CommandResult(
            exit_code=result.exit_code,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    @staticmethod
    def file_exists(handle: SandboxHandle, path: str) -> bool:
        return SandboxService.run_command(handle, "test", ["-f", path]).success

    @staticmethod
    def write_file(handle: SandboxHandle, path: str, content: str) -> None:
        handle.sandbox.files.write(path, content)

    @staticmethod
    def read_file(handle: SandboxHandle, path: str) -> str:
        return handle.sandbox.files.read(path)

    @staticmethod
    def domain(handle: SandboxHandle, port: int) -> str:
        """Public URL of an exposed sandbox port."""
        return f"https://{handle.sandbox.get_host(port)}"

    @staticmethod
    def has_dev_script(handle: SandboxHandle) -> bool:
        if not SandboxService.file_exists(handle, "package.json"):
            return False
        check = SandboxService.run_command(
            handle,
            "node",
            ["-e", "process.exit(require('./package.json').scripts?.dev ? 0 : 1)"],
        )
        return check.success

    @staticmethod
    def _run_dev_script(handle: SandboxHandle, package_manager: str) -> None:
        command = "npm run dev" if package_manager == "npm" else f"{package_manager} dev"
        SandboxService.run_command(handle, command, background=True)
        logger.info(f"Started dev server in sandbox {handle.sandbox_id}")

    @staticmethod
    def start_dev_server(handle: SandboxHandle, package_manager: str = "npm") -> bool:
        """Start the project's dev script in the background, if it has one."""
        if not SandboxService.has_dev_script(handle):
            return False
        SandboxService._run_dev_script(handle, package_manager)
        return True

    @staticmethod
    def restart_dev_server(handle: SandboxHandle, package_manager: str = "npm") -> bool:
        """Kill whatever listens on the app port and start the dev script again.

        Returns False without touching running processes when the project
        has no dev script.
        """
        if not SandboxService.has_dev_script(handle):
            return False

        port = settings.sandbox_port
        SandboxService.run_command(
            handle, f"lsof -ti:{port} | xargs -r kill -9 2>/dev/null || true"
        )
        SandboxService._run_dev_script(handle, package_manager)
        return True

    @staticmethod
    def stop(handle: SandboxHandle) -> None:
        """Stop dev processes and kill the sandbox. Never raises."""
        try:
            handle.sandbox.commands.run(
                f"pkill -f {shlex.quote(DEV_SERVER_PATTERN)} || true", timeout=15
            )
        except Exception as e:
            logger.warning(f"Error stopping processes in sandbox {handle.sandbox_id}: {e}")

        try:
            handle.sandbox.kill()
            logger.info(f"Sandbox {handle.sandbox_id} killed")
        except Exception as e:
            logger.error(f"Error killing sandbox {handle.sandbox_id}: {e}")
