"""Tests for TaskRunner."""

import pytest

from builder.core.errors import (
    BranchNameError,
    CredentialValidationError,
    InvalidTransitionError,
    SandboxProvisionError,
    ValidationError,
)
from builder.models import MessageRole, TaskStatus
from builder.services import (
    AgentExecutionService,
    BranchNameService,
    CredentialService,
    SandboxService,
    TaskRunner,
    TaskService,
)
from builder.services.agents import AgentExecutionResult
from builder.services.credentials import Credentials
from builder.services.dependencies import DependencyService
from builder.services.git import GitService, PushResult
from builder.services.sandbox import SandboxHandle, SandboxRegistry
from tests.conftest import create_test_task


@pytest.fixture
def registry():
    return SandboxRegistry()


@pytest.fixture
def sandbox_handle(mocker):
    return SandboxHandle(
        task_id="unset",
        sandbox_id="sbx-123",
        sandbox=mocker.Mock(),
        url="https://3000-sbx-123.sandbox.dev",
    )


@pytest.fixture
def pipeline(mocker, sandbox_handle):
    """Mock every external collaborator of the runner with a passing default."""

    def provision(task_id, **kwargs):
        sandbox_handle.task_id = task_id
        return sandbox_handle

    return {
        "resolve": mocker.patch.object(
            CredentialService,
            "resolve",
            return_value=Credentials(github_token="ghp_x", anthropic_api_key="sk-ant-x"),
        ),
        "validate": mocker.patch.object(CredentialService, "validate_for_agent"),
        "config": mocker.patch.object(SandboxService, "connection_config"),
        "branch": mocker.patch.object(
            BranchNameService, "generate", return_value="feature/add-readme-a1b2c3"
        ),
        "provision": mocker.patch.object(
            SandboxService, "provision", side_effect=provision
        ),
        "install": mocker.patch.object(DependencyService, "install", return_value=True),
        "execute": mocker.patch.object(
            AgentExecutionService,
            "execute",
            return_value=AgentExecutionResult(
                success=True,
                cli_name="claude",
                output="Claude CLI executed successfully (Changes detected)",
                agent_response="Added README",
                changes_detected=True,
                session_id="session-1",
            ),
        ),
        "push": mocker.patch.object(
            GitService,
            "push_changes",
            return_value=PushResult(changes=True, committed=True, pushed=True),
        ),
        "stop": mocker.patch.object(SandboxService, "stop"),
        "dev_server": mocker.patch.object(
            SandboxService, "start_dev_server", return_value=True
        ),
    }


def test_run_success(pipeline, registry):
    task = create_test_task(prompt="Add a README")

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.COMPLETED
    assert task.status == TaskStatus.COMPLETED
    assert task.progress == 100
    assert task.branch_name == "feature/add-readme-a1b2c3"
    assert task.agent_session_id == "session-1"
    assert task.completed_at is not None
    assert task.error is None

    # Sandbox released because keep_alive is off
    pipeline["stop"].assert_called_once()
    assert len(registry) == 0
    assert task.sandbox_id is None

    pipeline["push"].assert_called_once()
    assert pipeline["push"].call_args.args[1] == "feature/add-readme-a1b2c3"
    assert pipeline["push"].call_args.args[2] == "Add a README"
    pipeline["install"].assert_not_called()

    messages = TaskService.list_messages(task.id)
    assert messages[0].role == MessageRole.USER
    assert messages[0].content == "Add a README"
    assert any("Changes pushed" in entry["message"] for entry in task.logs)


def test_run_progress_is_monotonic(pipeline, registry, mocker):
    task = create_test_task()
    seen = []
    original = TaskService.append_logs

    def record(task_id, entries, progress=None):
        if progress is not None:
            seen.append(progress)
        original(task_id, entries, progress=progress)

    mocker.patch.object(TaskService, "append_logs", side_effect=record)

    TaskRunner(task.id, registry=registry).run()

    assert seen == sorted(seen)
    assert seen[-1] == 100


def test_run_keep_alive_keeps_sandbox(pipeline, registry):
    task = create_test_task(keep_alive=True, install_dependencies=True)

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.COMPLETED
    assert task.sandbox_id == "sbx-123"
    assert task.sandbox_url == "https://3000-sbx-123.sandbox.dev"
    assert task.id in registry
    pipeline["stop"].assert_not_called()
    pipeline["install"].assert_called_once()
    pipeline["dev_server"].assert_called_once()


def test_run_uses_fallback_branch_name(pipeline, registry):
    pipeline["branch"].side_effect = BranchNameError("gateway down")
    task = create_test_task()

    TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert task.status == TaskStatus.COMPLETED
    assert task.branch_name.startswith("agent/")


def test_run_keeps_existing_branch(pipeline, registry):
    task = create_test_task(branch_name="feature/existing")

    TaskRunner(task.id, registry=registry).run()

    pipeline["branch"].assert_not_called()
    assert pipeline["provision"].call_args.kwargs["branch_name"] == "feature/existing"


def test_run_missing_credentials_fails_before_sandbox(pipeline, registry):
    pipeline["validate"].side_effect = CredentialValidationError(
        "Anthropic API key is required"
    )
    task = create_test_task()

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.ERROR
    assert task.error == "Anthropic API key is required"
    pipeline["provision"].assert_not_called()


def test_run_provision_retried_once(pipeline, registry, sandbox_handle):
    pipeline["provision"].side_effect = [
        SandboxProvisionError("Sandbox creation failed: boom"),
        sandbox_handle,
    ]
    task = create_test_task()

    status = TaskRunner(task.id, registry=registry).run()

    assert status == TaskStatus.COMPLETED
    assert pipeline["provision"].call_count == 2


def test_run_provision_fails_twice(pipeline, registry):
    pipeline["provision"].side_effect = SandboxProvisionError(
        "Sandbox creation failed: boom"
    )
    task = create_test_task()

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.ERROR
    assert task.error == "Sandbox creation failed: boom"
    assert pipeline["provision"].call_count == 2
    assert len(registry) == 0
    pipeline["execute"].assert_not_called()


def test_run_agent_failure_marks_error(pipeline, registry):
    pipeline["execute"].return_value = AgentExecutionResult(
        success=False, cli_name="claude", error="Claude CLI failed (exit code 1): oops"
    )
    task = create_test_task()

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.ERROR
    assert task.error == "Claude CLI failed (exit code 1): oops"
    pipeline["push"].assert_not_called()
    pipeline["stop"].assert_called_once()
    assert len(registry) == 0


def test_run_push_failure_marks_error(pipeline, registry):
    pipeline["push"].return_value = PushResult(
        changes=True, committed=True, pushed=False, error="rejected"
    )
    task = create_test_task()

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.ERROR
    assert "Commit was created locally" in task.error


def test_run_cancelled_after_provisioning(pipeline, registry):
    task = create_test_task(keep_alive=True)
    calls = {"count": 0}

    def cancellation_check():
        calls["count"] += 1
        # First checkpoint is before sandbox creation
        return calls["count"] > 1

    status = TaskRunner(
        task.id, registry=registry, cancellation_check=cancellation_check
    ).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.CANCELLED
    assert task.status == TaskStatus.CANCELLED
    pipeline["provision"].assert_called_once()
    pipeline["execute"].assert_not_called()
    # Cancelled runs release the sandbox even when keep_alive is set
    pipeline["stop"].assert_called_once()
    assert len(registry) == 0


def test_run_cancelled_during_agent_execution(pipeline, registry):
    pipeline["execute"].return_value = AgentExecutionResult(
        success=False, cli_name="claude", error="Task was cancelled", cancelled=True
    )
    task = create_test_task()

    status = TaskRunner(task.id, registry=registry).run()

    assert status == TaskStatus.CANCELLED
    pipeline["push"].assert_not_called()


def test_run_skips_task_not_pending(pipeline, registry):
    task = create_test_task()
    TaskService.request_cancel(task.id)

    status = TaskRunner(task.id, registry=registry).run()

    assert status == TaskStatus.CANCELLED
    pipeline["resolve"].assert_not_called()


def test_run_not_started_when_cancelled_before_transition(pipeline, registry, mocker):
    task = create_test_task()
    stale = TaskService.get_task_by_id(task.id)
    TaskService.request_cancel(task.id)
    current = TaskService.get_task_by_id(task.id)
    mocker.patch.object(TaskService, "get_task_by_id", side_effect=[stale, current])

    status = TaskRunner(task.id, registry=registry).run()

    assert status == TaskStatus.CANCELLED
    assert current.status == TaskStatus.CANCELLED
    pipeline["resolve"].assert_not_called()
    pipeline["provision"].assert_not_called()


def test_run_releases_kept_sandbox_of_deleted_task(pipeline, registry):
    task = create_test_task(keep_alive=True)

    def delete_then_reject(*args, **kwargs):
        TaskService.soft_delete(task.id)
        return PushResult(changes=True, committed=True, pushed=False, error="rejected")

    pipeline["push"].side_effect = delete_then_reject

    status = TaskRunner(task.id, registry=registry).run()

    assert status == TaskStatus.ERROR
    assert task.id not in registry
    pipeline["stop"].assert_called_once()


def test_run_releases_kept_sandbox_when_cancel_requested_late(pipeline, registry):
    task = create_test_task(keep_alive=True)

    def cancel_then_push(*args, **kwargs):
        TaskService.request_cancel(task.id)
        return PushResult(changes=True, committed=True, pushed=True)

    pipeline["push"].side_effect = cancel_then_push

    status = TaskRunner(task.id, registry=registry).run()

    assert status == TaskStatus.COMPLETED
    assert task.id not in registry
    assert TaskService.get_task_by_id(task.id).sandbox_id is None


def test_run_recovers_interrupted_task(pipeline, registry, sandbox_handle):
    task = create_test_task()
    TaskService.transition(task.id, TaskStatus.PROCESSING)
    TaskService.update_task(task.id, sandbox_id="sbx-123")
    sandbox_handle.task_id = task.id
    registry.register(sandbox_handle)

    status = TaskRunner(task.id, registry=registry).run()

    task = TaskService.get_task_by_id(task.id)
    assert status == TaskStatus.ERROR
    assert task.status == TaskStatus.ERROR
    assert task.sandbox_id is None
    pipeline["stop"].assert_called_once_with(sandbox_handle)
    pipeline["provision"].assert_not_called()


def test_follow_up_runs_in_kept_sandbox(pipeline, registry, sandbox_handle):
    task = create_test_task(keep_alive=True)
    TaskRunner(task.id, registry=registry).run()
    pipeline["execute"].reset_mock()

    ok = TaskRunner(task.id, registry=registry).run_follow_up("Now add tests", "opus")

    assert ok is True
    kwargs = pipeline["execute"].call_args.kwargs
    assert pipeline["execute"].call_args.args[1] == "Now add tests"
    assert kwargs["resume"] is True
    assert kwargs["session_id"] == "session-1"
    assert kwargs["model"] == "opus"
    assert TaskService.get_task_by_id(task.id).status == TaskStatus.COMPLETED


def test_follow_up_without_sandbox_fails(pipeline, registry, mocker):
    task = create_test_task(keep_alive=True)
    mocker.patch.object(SandboxService, "resolve", return_value=None)

    ok = TaskRunner(task.id, registry=registry).run_follow_up("More")

    assert ok is False
    pipeline["execute"].assert_not_called()


def test_follow_up_agent_failure_recorded(pipeline, registry):
    task = create_test_task(keep_alive=True)
    TaskRunner(task.id, registry=registry).run()
    pipeline["execute"].return_value = AgentExecutionResult(
        success=False, cli_name="claude", error="agent broke"
    )

    ok = TaskRunner(task.id, registry=registry).run_follow_up("More")

    assert ok is False
    messages = TaskService.list_messages(task.id)
    assert messages[-1].role == MessageRole.SYSTEM
    assert messages[-1].content == "agent broke"
    assert TaskService.get_task_by_id(task.id).status == TaskStatus.COMPLETED


def _finished_keep_alive_task(**kwargs):
    task = create_test_task(keep_alive=True, branch_name="feature/add-readme", **kwargs)
    TaskService.transition(task.id, TaskStatus.PROCESSING)
    TaskService.transition(task.id, TaskStatus.COMPLETED)
    return task


def test_start_sandbox_on_existing_branch(pipeline, registry, mocker):
    task = _finished_keep_alive_task(install_dependencies=True)
    TaskService.update_task(task.id, sandbox_id="sbx-expired")
    mocker.patch.object(SandboxService, "resolve", return_value=None)

    task = TaskRunner(task.id, registry=registry).start_sandbox()

    assert task.sandbox_id == "sbx-123"
    assert task.sandbox_url == "https://3000-sbx-123.sandbox.dev"
    assert task.status == TaskStatus.COMPLETED
    assert registry.get(task.id).sandbox_id == "sbx-123"
    assert pipeline["provision"].call_args.kwargs["branch_name"] == "feature/add-readme"
    pipeline["install"].assert_called_once()
    pipeline["dev_server"].assert_called_once()


def test_start_sandbox_requires_keep_alive(pipeline, registry):
    task = create_test_task()
    TaskService.transition(task.id, TaskStatus.PROCESSING)
    TaskService.transition(task.id, TaskStatus.COMPLETED)

    with pytest.raises(ValidationError, match="Keep-alive"):
        TaskRunner(task.id, registry=registry).start_sandbox()

    pipeline["provision"].assert_not_called()


def test_start_sandbox_rejects_running_sandbox(pipeline, registry, sandbox_handle):
    task = _finished_keep_alive_task()
    TaskService.update_task(task.id, sandbox_id="sbx-123")
    sandbox_handle.task_id = task.id
    registry.register(sandbox_handle)

    with pytest.raises(ValidationError, match="already running"):
        TaskRunner(task.id, registry=registry).start_sandbox()

    pipeline["provision"].assert_not_called()


def test_start_sandbox_rejects_unfinished_task(pipeline, registry):
    task = create_test_task(keep_alive=True)
    TaskService.transition(task.id, TaskStatus.PROCESSING)

    with pytest.raises(InvalidTransitionError):
        TaskRunner(task.id, registry=registry).start_sandbox()
