"""Tests for task API endpoints."""

from builder.core.database import get_session
from builder.core.errors import SandboxProvisionError, SandboxUnavailableError
from builder.models import TaskStatus, UserQuota
from builder.services import SandboxService, TaskRunner, TaskService, sandbox_registry
from builder.services.dependencies import DependencyService
from builder.services.git import GitError, GitService, PushResult
from builder.services.sandbox import SandboxHandle
from tests.conftest import OTHER_USER_ID, TEST_USER_ID, create_test_task


def test_create_task(test_client, auth_headers, mock_celery_task):
    """Test POST /v1/tasks endpoint."""
    response = test_client.post(
        "/v1/tasks",
        json={
            "prompt": "Test task via API",
            "repo_url": "https://github.com/test/repo.git",
            "selected_agent": "codex",
            "keep_alive": True,
        },
        headers=auth_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["prompt"] == "Test task via API"
    assert data["repo_url"] == "https://github.com/test/repo.git"
    assert data["selected_agent"] == "codex"
    assert data["status"] == "PENDING"
    assert data["progress"] == 0
    assert data["logs"] == []
    assert data["keep_alive"] is True
    assert data["sandbox_id"] is None
    mock_celery_task["execute"].assert_called_once_with(data["id"])


def test_create_task_with_client_id(test_client, auth_headers):
    payload = {"id": "mytask001", "prompt": "x", "repo_url": "https://github.com/t/r"}

    first = test_client.post("/v1/tasks", json=payload, headers=auth_headers)
    second = test_client.post("/v1/tasks", json=payload, headers=auth_headers)

    assert first.status_code == 201
    assert first.json()["id"] == "mytask001"
    assert second.status_code == 409


def test_create_task_with_malformed_client_id(test_client, auth_headers, mock_celery_task):
    payload = {"id": "My-Task_1", "prompt": "x", "repo_url": "https://github.com/t/r"}

    response = test_client.post("/v1/tasks", json=payload, headers=auth_headers)

    assert response.status_code == 422
    mock_celery_task["execute"].assert_not_called()


def test_create_task_validation(test_client, auth_headers):
    response = test_client.post(
        "/v1/tasks",
        json={"prompt": "", "repo_url": "https://github.com/t/r", "selected_agent": "nope"},
        headers=auth_headers,
    )

    assert response.status_code == 422


def test_create_task_rate_limited(test_client, auth_headers, mock_celery_task):
    with get_session() as session:
        session.add(UserQuota(user_id=TEST_USER_ID, daily_limit=1))
    create_test_task()
    mock_celery_task["execute"].reset_mock()

    response = test_client.post(
        "/v1/tasks",
        json={"prompt": "one more", "repo_url": "https://github.com/t/r"},
        headers=auth_headers,
    )

    assert response.status_code == 429
    detail = response.json()["detail"]
    assert detail["remaining"] == 0
    assert detail["total"] == 1
    mock_celery_task["execute"].assert_not_called()


def test_requires_api_key(test_client):
    response = test_client.get("/v1/tasks", headers={"X-User-Id": TEST_USER_ID})

    assert response.status_code in (401, 403)


def test_requires_user_id(test_client, auth_headers):
    headers = {"X-API-Key": auth_headers["X-API-Key"]}

    response = test_client.get("/v1/tasks", headers=headers)

    assert response.status_code == 401


def test_get_task_with_messages(test_client, auth_headers):
    task = create_test_task(prompt="Task to retrieve via API")
    TaskService.create_message(task.id, "user", task.prompt)

    response = test_client.get(f"/v1/tasks/{task.id}", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == task.id
    assert data["messages"][0]["content"] == "Task to retrieve via API"


def test_get_task_of_other_user_not_found(test_client, auth_headers):
    task = create_test_task(user_id=OTHER_USER_ID)

    response = test_client.get(f"/v1/tasks/{task.id}", headers=auth_headers)

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_list_tasks(test_client, auth_headers):
    create_test_task(prompt="Task 1")
    create_test_task(prompt="Task 2")
    create_test_task(prompt="Other", user_id=OTHER_USER_ID)

    response = test_client.get("/v1/tasks", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert {t["prompt"] for t in data["tasks"]} == {"Task 1", "Task 2"}
    assert data["limit"] == 100
    assert data["offset"] == 0


def test_delete_task_stops_sandbox(test_client, auth_headers, mocker):
    task = create_test_task()
    TaskService.update_task(task.id, sandbox_id="sbx-1")
    handle = SandboxHandle(task_id=task.id, sandbox_id="sbx-1", sandbox=mocker.Mock())
    sandbox_registry.register(handle)
    stop = mocker.patch.object(SandboxService, "stop")

    response = test_client.delete(f"/v1/tasks/{task.id}", headers=auth_headers)

    assert response.status_code == 204
    stop.assert_called_once_with(handle)
    assert task.id not in sandbox_registry
    assert test_client.get(f"/v1/tasks/{task.id}", headers=auth_headers).status_code == 404


def test_cancel_task(test_client, auth_headers):
    task = create_test_task()

    response = test_client.post(f"/v1/tasks/{task.id}/cancel", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"

    again = test_client.post(f"/v1/tasks/{task.id}/cancel", headers=auth_headers)
    assert again.status_code == 409


def test_stop_sandbox(test_client, auth_headers, mocker):
    task = create_test_task(keep_alive=True)
    TaskService.update_task(task.id, sandbox_id="sbx-1", sandbox_url="https://x")
    sandbox_registry.register(
        SandboxHandle(task_id=task.id, sandbox_id="sbx-1", sandbox=mocker.Mock())
    )
    stop = mocker.patch.object(SandboxService, "stop")

    response = test_client.post(f"/v1/tasks/{task.id}/stop-sandbox", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["sandbox_id"] is None
    assert data["keep_alive"] is False
    stop.assert_called_once()


def test_stop_sandbox_without_sandbox(test_client, auth_headers):
    task = create_test_task()

    response = test_client.post(f"/v1/tasks/{task.id}/stop-sandbox", headers=auth_headers)

    assert response.status_code == 400


def test_reconnect_sandbox(test_client, auth_headers, mocker):
    task = create_test_task()
    TaskService.update_task(task.id, sandbox_id="sbx-1")
    handle = SandboxHandle(
        task_id=task.id, sandbox_id="sbx-1", sandbox=mocker.Mock(), url="https://3000-sbx-1"
    )
    mocker.patch.object(SandboxService, "connect", return_value=handle)

    response = test_client.post(
        f"/v1/tasks/{task.id}/reconnect-sandbox", headers=auth_headers
    )

    assert response.status_code == 200
    assert response.json()["keep_alive"] is True
    assert response.json()["sandbox_url"] == "https://3000-sbx-1"
    assert sandbox_registry.get(task.id) is handle


def test_reconnect_sandbox_gone(test_client, auth_headers, mocker):
    task = create_test_task()
    TaskService.update_task(task.id, sandbox_id="sbx-1")
    mocker.patch.object(
        SandboxService, "connect", side_effect=SandboxUnavailableError("gone")
    )

    response = test_client.post(
        f"/v1/tasks/{task.id}/reconnect-sandbox", headers=auth_headers
    )

    assert response.status_code == 410
    assert TaskService.get_task_by_id(task.id).sandbox_id is None


def _task_with_live_sandbox(mocker, **kwargs):
    task = create_test_task(keep_alive=True, branch_name="feature/x", **kwargs)
    TaskService.update_task(task.id, sandbox_id="sbx-1", sandbox_url="https://x")
    handle = SandboxHandle(task_id=task.id, sandbox_id="sbx-1", sandbox=mocker.Mock())
    sandbox_registry.register(handle)
    return task, handle


def test_start_sandbox(test_client, auth_headers, mocker):
    task = create_test_task(keep_alive=True)
    started = TaskService.update_task(task.id, sandbox_id="sbx-2", sandbox_url="https://y")
    start = mocker.patch.object(TaskRunner, "start_sandbox", return_value=started)

    response = test_client.post(f"/v1/tasks/{task.id}/start-sandbox", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["sandbox_id"] == "sbx-2"
    start.assert_called_once()


def test_start_sandbox_errors(test_client, auth_headers, mocker):
    task = create_test_task()
    mocker.patch.object(
        TaskRunner, "start_sandbox", side_effect=SandboxProvisionError("quota")
    )

    failed = test_client.post(f"/v1/tasks/{task.id}/start-sandbox", headers=auth_headers)
    other = test_client.post(
        f"/v1/tasks/{create_test_task(user_id=OTHER_USER_ID).id}/start-sandbox",
        headers=auth_headers,
    )

    assert failed.status_code == 502
    assert failed.json()["detail"] == "quota"
    assert other.status_code == 404


def test_restart_dev_server(test_client, auth_headers, mocker):
    task, handle = _task_with_live_sandbox(mocker)
    mocker.patch.object(DependencyService, "detect_package_manager", return_value="pnpm")
    restart = mocker.patch.object(SandboxService, "restart_dev_server", return_value=True)

    response = test_client.post(f"/v1/tasks/{task.id}/restart-dev", headers=auth_headers)

    assert response.status_code == 200
    restart.assert_called_once_with(handle, "pnpm")


def test_restart_dev_server_without_dev_script(test_client, auth_headers, mocker):
    task, _ = _task_with_live_sandbox(mocker)
    mocker.patch.object(DependencyService, "detect_package_manager", return_value="npm")
    mocker.patch.object(SandboxService, "restart_dev_server", return_value=False)

    response = test_client.post(f"/v1/tasks/{task.id}/restart-dev", headers=auth_headers)

    assert response.status_code == 400


def test_restart_dev_server_sandbox_gone(test_client, auth_headers, mocker):
    task = create_test_task()
    TaskService.update_task(task.id, sandbox_id="sbx-1")
    mocker.patch.object(SandboxService, "resolve", return_value=None)

    response = test_client.post(f"/v1/tasks/{task.id}/restart-dev", headers=auth_headers)

    assert response.status_code == 410
    assert TaskService.get_task_by_id(task.id).sandbox_id is None


def test_sync_changes(test_client, auth_headers, mocker):
    task, handle = _task_with_live_sandbox(mocker)
    push = mocker.patch.object(
        GitService,
        "push_changes",
        return_value=PushResult(changes=True, committed=True, pushed=True),
    )

    response = test_client.post(
        f"/v1/tasks/{task.id}/sync-changes",
        json={"commit_message": "Manual edits"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json() == {
        "committed": True,
        "pushed": True,
        "message": "Changes synced successfully",
    }
    push.assert_called_once_with(handle, "feature/x", "Manual edits")


def test_sync_changes_nothing_to_sync(test_client, auth_headers, mocker):
    task, handle = _task_with_live_sandbox(mocker)
    push = mocker.patch.object(GitService, "push_changes", return_value=PushResult())

    response = test_client.post(f"/v1/tasks/{task.id}/sync-changes", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["committed"] is False
    push.assert_called_once_with(handle, "feature/x", "Sync local changes")


def test_sync_changes_push_rejected(test_client, auth_headers, mocker):
    task, _ = _task_with_live_sandbox(mocker)
    mocker.patch.object(
        GitService,
        "push_changes",
        return_value=PushResult(changes=True, committed=True, error="rejected"),
    )

    response = test_client.post(f"/v1/tasks/{task.id}/sync-changes", headers=auth_headers)

    assert response.status_code == 500
    assert "rejected" in response.json()["detail"]


def test_sync_changes_requires_branch(test_client, auth_headers, mocker):
    task = create_test_task()
    TaskService.update_task(task.id, sandbox_id="sbx-1")

    response = test_client.post(f"/v1/tasks/{task.id}/sync-changes", headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Branch not available"


def test_reset_changes(test_client, auth_headers, mocker):
    task, handle = _task_with_live_sandbox(mocker)
    reset = mocker.patch.object(GitService, "reset_changes", return_value=True)

    response = test_client.post(f"/v1/tasks/{task.id}/reset-changes", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["had_local_changes"] is True
    reset.assert_called_once_with(handle, "feature/x", "Checkpoint before reset")


def test_reset_changes_failure(test_client, auth_headers, mocker):
    task, _ = _task_with_live_sandbox(mocker)
    mocker.patch.object(
        GitService, "reset_changes", side_effect=GitError("Failed to fetch from remote")
    )

    response = test_client.post(f"/v1/tasks/{task.id}/reset-changes", headers=auth_headers)

    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to fetch from remote"


def test_clear_logs(test_client, auth_headers):
    task = create_test_task()
    TaskService.append_logs(
        task.id, [{"level": "info", "message": "hello", "timestamp": "2025-01-01T00:00:00Z"}]
    )

    response = test_client.post(f"/v1/tasks/{task.id}/clear-logs", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["logs"] == []
    assert TaskService.get_task_by_id(task.id).logs == []


def test_list_sandboxes(test_client, auth_headers):
    live = create_test_task(prompt="live", keep_alive=True)
    TaskService.update_task(live.id, sandbox_id="sbx-1", sandbox_url="https://x")
    create_test_task(prompt="no sandbox")
    deleted = create_test_task(prompt="deleted")
    TaskService.update_task(deleted.id, sandbox_id="sbx-2")
    TaskService.soft_delete(deleted.id)
    theirs = create_test_task(user_id=OTHER_USER_ID)
    TaskService.update_task(theirs.id, sandbox_id="sbx-3")

    response = test_client.get("/v1/sandboxes", headers=auth_headers)

    assert response.status_code == 200
    sandboxes = response.json()
    assert [s["id"] for s in sandboxes] == [live.id]
    assert sandboxes[0]["sandbox_id"] == "sbx-1"
    assert sandboxes[0]["keep_alive"] is True


def test_continue_task(test_client, auth_headers, mock_celery_task):
    task = create_test_task(keep_alive=True)
    TaskService.update_task(task.id, sandbox_id="sbx-1")

    response = test_client.post(
        f"/v1/tasks/{task.id}/continue",
        json={"message": "Now add tests"},
        headers=auth_headers,
    )

    assert response.status_code == 202
    assert response.json()["is_follow_up"] is True
    mock_celery_task["continue"].assert_called_once_with(task.id, "Now add tests", None)


def test_continue_task_without_sandbox(test_client, auth_headers):
    task = create_test_task()

    response = test_client.post(
        f"/v1/tasks/{task.id}/continue",
        json={"message": "Now add tests"},
        headers=auth_headers,
    )

    assert response.status_code == 400


def test_retry_task(test_client, auth_headers):
    task = create_test_task()
    TaskService.transition(task.id, TaskStatus.PROCESSING)
    TaskService.transition(task.id, TaskStatus.ERROR, error="boom")

    response = test_client.post(f"/v1/tasks/{task.id}/retry", headers=auth_headers)

    assert response.status_code == 201
    data = response.json()
    assert data["parent_task_id"] == task.id
    assert data["status"] == "PENDING"


def test_retry_completed_task_conflict(test_client, auth_headers):
    task = create_test_task()
    TaskService.transition(task.id, TaskStatus.PROCESSING)
    TaskService.transition(task.id, TaskStatus.COMPLETED)

    response = test_client.post(f"/v1/tasks/{task.id}/retry", headers=auth_headers)

    assert response.status_code == 409


def test_rate_limit_endpoint(test_client, auth_headers):
    create_test_task()

    response = test_client.get("/v1/rate-limit", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["allowed"] is True
    assert data["remaining"] == data["total"] - 1


def test_api_keys_roundtrip(test_client, auth_headers):
    put = test_client.put(
        "/v1/api-keys/anthropic", json={"api_key": "sk-ant-x"}, headers=auth_headers
    )
    listed = test_client.get("/v1/api-keys", headers=auth_headers)
    deleted = test_client.delete("/v1/api-keys/anthropic", headers=auth_headers)
    missing = test_client.delete("/v1/api-keys/anthropic", headers=auth_headers)

    assert put.status_code == 204
    assert listed.json() == {"providers": ["anthropic"]}
    assert deleted.status_code == 204
    assert missing.status_code == 404


def test_create_connector_validation(test_client, auth_headers):
    response = test_client.post(
        "/v1/connectors", json={"name": "Linear", "mode": "remote"}, headers=auth_headers
    )

    assert response.status_code == 400


def test_create_connector(test_client, auth_headers):
    response = test_client.post(
        "/v1/connectors",
        json={
            "name": "Linear",
            "base_url": "https://mcp.linear.app/sse",
            "oauth_client_secret": "shh",
        },
        headers=auth_headers,
    )

    assert response.status_code == 201
    assert response.json()["status"] == "connected"
    assert "oauth_client_secret" not in response.json()


def test_pull_request_without_branch(test_client, auth_headers, mocker):
    task = create_test_task()
    mocker.patch(
        "builder.services.pull_request.CredentialService.get_github_token",
        return_value="ghp_x",
    )

    response = test_client.post(
        f"/v1/tasks/{task.id}/pr", json={"title": "PR"}, headers=auth_headers
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Task does not have a branch"


def test_health(test_client, auth_headers):
    response = test_client.get("/health", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
