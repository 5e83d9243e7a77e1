"""Tests for SandboxService and the sandbox registry."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from e2b import CommandExitException, TimeoutException

from builder.core.errors import (
    SandboxConfigurationError,
    SandboxProvisionError,
    SandboxUnavailableError,
)
from builder.services import SandboxService
from builder.services.credentials import Credentials, credential_scope
from builder.services.git import GitService
from builder.services.sandbox import (
    TIMEOUT_EXIT_CODE,
    CommandResult,
    SandboxHandle,
    SandboxRegistry,
)


@pytest.fixture
def sandbox(mocker):
    sandbox = mocker.Mock()
    sandbox.sandbox_id = "sbx-1"
    sandbox.get_host.return_value = "3000-sbx-1.sandbox.dev"
    return sandbox


@pytest.fixture
def handle(sandbox):
    return SandboxHandle(task_id="task-1", sandbox_id="sbx-1", sandbox=sandbox)


@pytest.fixture
def configured(mocker):
    settings = "builder.services.sandbox.settings"
    mocker.patch(f"{settings}.sandbox_api_key", "key")
    mocker.patch(f"{settings}.sandbox_domain", "sandbox.dev")
    mocker.patch(f"{settings}.sandbox_template", "builder-agent")


def test_registry_register_and_unregister(handle):
    registry = SandboxRegistry()

    registry.register(handle)

    assert "task-1" in registry
    assert registry.get("task-1") is handle
    assert registry.task_ids() == ["task-1"]
    assert registry.unregister("task-1") is handle
    assert registry.unregister("task-1") is None
    assert len(registry) == 0


def test_run_command_quotes_args_and_merges_scope(handle, sandbox, mocker):
    sandbox.commands.run.return_value = mocker.Mock(exit_code=0, stdout="ok\n", stderr="")

    with credential_scope({"GITHUB_TOKEN": "ghp_x"}):
        result = SandboxService.run_command(
            handle, "git", ["commit", "-m", "it's done"], envs={"EXTRA": "1"}
        )

    assert result == CommandResult(exit_code=0, stdout="ok\n", stderr="")
    command = sandbox.commands.run.call_args.args[0]
    kwargs = sandbox.commands.run.call_args.kwargs
    assert command == "git commit -m 'it'\"'\"'s done'"
    assert kwargs["envs"] == {"GITHUB_TOKEN": "ghp_x", "EXTRA": "1"}
    assert kwargs["cwd"] == "/home/user/repo"


def test_run_command_without_scope_passes_no_env(handle, sandbox, mocker):
    sandbox.commands.run.return_value = mocker.Mock(exit_code=0, stdout="", stderr="")

    SandboxService.run_command(handle, "ls")

    assert "envs" not in sandbox.commands.run.call_args.kwargs


class FakeCommandExit(CommandExitException):
    exit_code = 2
    stdout = ""
    stderr = "fatal"

    def __init__(self):
        Exception.__init__(self, "exit status 2")


def test_run_command_nonzero_exit_returns_result(handle, sandbox):
    sandbox.commands.run.side_effect = FakeCommandExit()

    result = SandboxService.run_command(handle, "git", ["push"])

    assert result.exit_code == 2
    assert result.stderr == "fatal"
    assert result.success is False


def test_run_command_timeout(handle, sandbox):
    sandbox.commands.run.side_effect = TimeoutException("too slow")

    result = SandboxService.run_command(handle, "npm", ["install"])

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in result.stderr


def test_connection_config_missing(mocker):
    mocker.patch("builder.services.sandbox.settings.sandbox_api_key", None)

    with pytest.raises(SandboxConfigurationError, match="SANDBOX_API_KEY"):
        SandboxService.connection_config()


def test_provision_success(configured, sandbox, mocker):
    create = mocker.patch("builder.services.sandbox.Sandbox.create", return_value=sandbox)
    clone = mocker.patch.object(
        GitService, "clone", return_value=CommandResult(exit_code=0)
    )
    mocker.patch.object(GitService, "configure")
    checkout = mocker.patch.object(GitService, "checkout_branch", return_value="new")

    handle = SandboxService.provision(
        "task-1",
        "https://github.com/org/repo.git",
        Credentials(github_token="ghp_x"),
        timeout_minutes=10,
        resources={"vcpus": 4},
        branch_name="feature/x",
    )

    assert handle.sandbox_id == "sbx-1"
    assert handle.url == "https://3000-sbx-1.sandbox.dev"
    assert create.call_args.kwargs["timeout"] == 600
    assert create.call_args.kwargs["metadata"] == {"task_id": "task-1", "vcpus": "4"}
    clone.assert_called_once_with(handle, "https://github.com/org/repo.git", "ghp_x")
    checkout.assert_called_once_with(handle, "feature/x")


def test_provision_create_failure(configured, mocker):
    mocker.patch(
        "builder.services.sandbox.Sandbox.create", side_effect=RuntimeError("quota")
    )

    with pytest.raises(SandboxProvisionError, match="quota"):
        SandboxService.provision("task-1", "https://github.com/o/r", Credentials())


def test_provision_clone_failure_stops_sandbox(configured, sandbox, mocker):
    mocker.patch("builder.services.sandbox.Sandbox.create", return_value=sandbox)
    mocker.patch.object(
        GitService,
        "clone",
        return_value=CommandResult(exit_code=128, stderr="repository not found"),
    )

    with pytest.raises(SandboxProvisionError, match="repository not found"):
        SandboxService.provision("task-1", "https://github.com/o/r", Credentials())

    sandbox.kill.assert_called_once()


def test_connect_unavailable(configured, mocker):
    mocker.patch(
        "builder.services.sandbox.Sandbox.connect", side_effect=RuntimeError("gone")
    )

    with pytest.raises(SandboxUnavailableError):
        SandboxService.connect("task-1", "sbx-1")


def test_resolve_prefers_registry(handle, mocker):
    registry = SandboxRegistry()
    registry.register(handle)
    connect = mocker.patch.object(SandboxService, "connect")

    assert SandboxService.resolve("task-1", "sbx-1", registry) is handle
    connect.assert_not_called()


def test_resolve_reconnects_and_registers(handle, mocker):
    registry = SandboxRegistry()
    mocker.patch.object(SandboxService, "connect", return_value=handle)

    assert SandboxService.resolve("task-1", "sbx-1", registry) is handle
    assert "task-1" in registry


def test_resolve_gone_returns_none(mocker):
    mocker.patch.object(
        SandboxService, "connect", side_effect=SandboxUnavailableError("gone")
    )

    assert SandboxService.resolve("task-1", "sbx-1", SandboxRegistry()) is None


def test_stop_never_raises(handle, sandbox):
    sandbox.commands.run.side_effect = RuntimeError("dead")
    sandbox.kill.side_effect = RuntimeError("already gone")

    SandboxService.stop(handle)

    sandbox.kill.assert_called_once()


def test_registry_concurrent_register_and_unregister():
    registry = SandboxRegistry()
    workers = 16
    per_worker = 50
    barrier = threading.Barrier(workers)

    def churn(worker: int) -> None:
        barrier.wait()
        for i in range(per_worker):
            task_id = f"task-{worker}-{i}"
            registry.register(
                SandboxHandle(task_id=task_id, sandbox_id=f"sbx-{task_id}", sandbox=None)
            )
            assert registry.get(task_id).sandbox_id == f"sbx-{task_id}"
            if i % 2:
                assert registry.unregister(task_id) is not None

    with ThreadPoolExecutor(max_workers=workers) as pool:
        list(pool.map(churn, range(workers)))

    assert len(registry) == workers * per_worker // 2
    assert all(task_id.endswith(("0", "2", "4", "6", "8")) for task_id in registry.task_ids())


def _dev_project(mocker, has_dev_script=True):
    def run_command(handle, command, args=None, **kwargs):
        if command in ("test", "node"):
            return CommandResult(exit_code=0 if has_dev_script else 1)
        return CommandResult(exit_code=0)

    return mocker.patch.object(SandboxService, "run_command", side_effect=run_command)


def test_restart_dev_server_frees_port_then_starts(handle, mocker):
    run = _dev_project(mocker)

    assert SandboxService.restart_dev_server(handle, "pnpm") is True

    commands = [c.args[1] for c in run.call_args_list]
    assert commands[-2].startswith("lsof -ti:")
    assert commands[-1] == "pnpm dev"
    assert run.call_args_list[-1].kwargs == {"background": True}


def test_restart_dev_server_without_dev_script(handle, mocker):
    run = _dev_project(mocker, has_dev_script=False)

    assert SandboxService.restart_dev_server(handle) is False
    assert not any("lsof" in c.args[1] for c in run.call_args_list)
