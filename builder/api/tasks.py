"""Task API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from builder.api.errors import SERVICE_ERRORS, http_error
from builder.core.auth import get_current_user_id
from builder.core.errors import SandboxProvisionError, SandboxUnavailableError
from builder.core.ids import TASK_ID_PATTERN
from builder.models import (
    AgentType,
    MessageRole,
    PullRequestStatus,
    Task,
    TaskMessage,
    TaskStatus,
)
from builder.services import (
    RateLimitService,
    SandboxService,
    TaskRunner,
    TaskService,
    sandbox_registry,
)
from builder.services.dependencies import DependencyService
from builder.services.git import GitError, GitService
from builder.services.sandbox import SandboxHandle

router = APIRouter()


class TaskCreate(BaseModel):
    """Request model for creating a task."""

    id: str | None = Field(default=None, pattern=TASK_ID_PATTERN)
    prompt: str = Field(min_length=1)
    repo_url: str = Field(min_length=1)
    selected_agent: AgentType = AgentType.CLAUDE
    selected_model: str | None = None
    install_dependencies: bool = False
    max_duration: int | None = Field(default=None, ge=1, le=1440)
    keep_alive: bool = False
    mcp_connector_ids: list[str] = Field(default_factory=list)


class LogEntry(BaseModel):
    level: str
    message: str
    timestamp: str


class TaskResponse(BaseModel):
    """Response model for task data."""

    id: str
    prompt: str
    repo_url: str
    selected_agent: AgentType
    selected_model: str | None
    install_dependencies: bool
    max_duration: int
    keep_alive: bool
    status: TaskStatus
    progress: int
    logs: list[LogEntry]
    error: str | None
    branch_name: str | None
    sandbox_id: str | None
    sandbox_url: str | None
    agent_session_id: str | None
    parent_task_id: str | None
    pr_url: str | None
    pr_number: int | None
    pr_status: PullRequestStatus | None
    pr_merge_commit_sha: str | None
    preview_url: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls.model_validate(task, from_attributes=True)


class MessageResponse(BaseModel):
    id: str
    role: MessageRole
    content: str
    is_follow_up: bool
    created_at: datetime

    @classmethod
    def from_message(cls, message: TaskMessage) -> "MessageResponse":
        return cls.model_validate(message, from_attributes=True)


class TaskDetailResponse(TaskResponse):
    messages: list[MessageResponse]


class TaskListResponse(BaseModel):
    """Response model for list of tasks."""

    tasks: list[TaskResponse]
    total: int
    limit: int
    offset: int


class ContinueRequest(BaseModel):
    message: str = Field(min_length=1)
    selected_model: str | None = None


class RateLimitResponse(BaseModel):
    allowed: bool
    remaining: int
    total: int
    reset_at: datetime


class SyncRequest(BaseModel):
    commit_message: str | None = None


class SyncResponse(BaseModel):
    committed: bool
    pushed: bool
    message: str


class ResetResponse(BaseModel):
    had_local_changes: bool
    message: str


class SandboxResponse(BaseModel):
    id: str
    prompt: str
    repo_url: str
    branch_name: str | None
    sandbox_id: str
    sandbox_url: str | None
    status: TaskStatus
    keep_alive: bool
    max_duration: int
    created_at: datetime


def _check_rate_limit(user_id: str) -> None:
    limit = RateLimitService.check(user_id)
    if not limit.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Rate limit exceeded",
                "message": f"You have reached the daily limit of {limit.total} "
                "messages (including tasks and follow-ups).",
                "remaining": limit.remaining,
                "total": limit.total,
                "reset_at": limit.reset_at.isoformat(),
            },
        )


def _get_task(task_id: str, user_id: str) -> Task:
    try:
        return TaskService.get_task_by_id(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e


def _stop_sandbox(task: Task) -> bool:
    """Tear down a task's sandbox wherever it lives. Returns True if one was found."""
    handle = SandboxService.resolve(task.id, task.sandbox_id, sandbox_registry)
    if handle is None:
        return False
    sandbox_registry.unregister(task.id)
    SandboxService.stop(handle)
    return True


def _live_sandbox(task: Task, require_branch: bool = False) -> SandboxHandle:
    """Handle of the task's running sandbox, or the HTTP error explaining its absence."""
    if not task.sandbox_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Sandbox is not active"
        )
    if require_branch and not task.branch_name:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Branch not available"
        )

    handle = SandboxService.resolve(task.id, task.sandbox_id, sandbox_registry)
    if handle is None:
        TaskService.update_task(task.id, sandbox_id=None, sandbox_url=None)
        raise HTTPException(
            status_code=status.HTTP_410_GONE, detail="Sandbox is no longer available"
        )
    return handle


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(task_data: TaskCreate, user_id: str = Depends(get_current_user_id)):
    """Create a task and queue it for execution."""
    _check_rate_limit(user_id)

    if task_data.id and TaskService.task_exists(task_data.id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Task with id {task_data.id} already exists",
        )

    try:
        task = TaskService.create_task(
            user_id=user_id,
            prompt=task_data.prompt,
            repo_url=task_data.repo_url,
            selected_agent=task_data.selected_agent,
            selected_model=task_data.selected_model,
            install_dependencies=task_data.install_dependencies,
            max_duration=task_data.max_duration,
            keep_alive=task_data.keep_alive,
            mcp_connector_ids=task_data.mcp_connector_ids,
            task_id=task_data.id,
        )
    except SERVICE_ERRORS as e:
        raise http_error(e) from e

    return TaskResponse.from_task(task)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    limit: int = 100, offset: int = 0, user_id: str = Depends(get_current_user_id)
):
    """List the caller's tasks with pagination."""
    tasks, total = TaskService.list_tasks(user_id, limit=limit, offset=offset)
    return TaskListResponse(
        tasks=[TaskResponse.from_task(task) for task in tasks],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/tasks/{task_id}", response_model=TaskDetailResponse)
def get_task(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Get a task with its messages."""
    task = _get_task(task_id, user_id)
    messages = TaskService.list_messages(task_id)
    return TaskDetailResponse(
        **TaskResponse.from_task(task).model_dump(),
        messages=[MessageResponse.from_message(m) for m in messages],
    )


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Tear down the task's sandbox and soft-delete it."""
    task = _get_task(task_id, user_id)
    _stop_sandbox(task)
    try:
        TaskService.soft_delete(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
def cancel_task(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Request cooperative cancellation of a task."""
    try:
        task = TaskService.request_cancel(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/stop-sandbox", response_model=TaskResponse)
def stop_sandbox(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Stop a kept-alive sandbox."""
    task = _get_task(task_id, user_id)
    if not task.sandbox_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Task does not have an active sandbox",
        )

    _stop_sandbox(task)
    task = TaskService.update_task(
        task_id, sandbox_id=None, sandbox_url=None, keep_alive=False
    )
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/reconnect-sandbox", response_model=TaskResponse)
def reconnect_sandbox(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Reconnect to a task's sandbox by its id and keep it alive."""
    task = _get_task(task_id, user_id)
    if not task.sandbox_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Task does not have a sandbox to reconnect",
        )

    try:
        handle = SandboxService.connect(task_id, task.sandbox_id)
    except SERVICE_ERRORS as e:
        if isinstance(e, SandboxUnavailableError):
            TaskService.update_task(task_id, sandbox_id=None, sandbox_url=None)
        raise http_error(e) from e

    sandbox_registry.register(handle)
    task = TaskService.update_task(task_id, sandbox_url=handle.url, keep_alive=True)
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/start-sandbox", response_model=TaskResponse)
def start_sandbox(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Provision a new sandbox for a kept-alive task on its existing branch."""
    _get_task(task_id, user_id)
    try:
        task = TaskRunner(task_id).start_sandbox()
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    except (SandboxProvisionError, GitError) as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/restart-dev")
def restart_dev_server(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Restart the dev server inside the task's sandbox."""
    handle = _live_sandbox(_get_task(task_id, user_id))
    manager = DependencyService.detect_package_manager(handle)
    if not SandboxService.restart_dev_server(handle, manager):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No dev script found in package.json",
        )
    return {"message": "Dev server restarted successfully"}


@router.post("/tasks/{task_id}/sync-changes", response_model=SyncResponse)
def sync_changes(
    task_id: str,
    body: SyncRequest | None = None,
    user_id: str = Depends(get_current_user_id),
):
    """Commit the sandbox's working tree and push it to the task's branch."""
    task = _get_task(task_id, user_id)
    handle = _live_sandbox(task, require_branch=True)

    message = (body.commit_message if body else None) or "Sync local changes"
    push = GitService.push_changes(handle, task.branch_name, message)
    if push.error:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to sync changes: {push.error}",
        )
    if not push.changes:
        return SyncResponse(committed=False, pushed=False, message="No changes to sync")
    return SyncResponse(
        committed=True, pushed=True, message="Changes synced successfully"
    )


@router.post("/tasks/{task_id}/reset-changes", response_model=ResetResponse)
def reset_changes(
    task_id: str,
    body: SyncRequest | None = None,
    user_id: str = Depends(get_current_user_id),
):
    """Reset the sandbox's working tree to the task's branch."""
    task = _get_task(task_id, user_id)
    handle = _live_sandbox(task, require_branch=True)

    message = (body.commit_message if body else None) or "Checkpoint before reset"
    try:
        had_changes = GitService.reset_changes(handle, task.branch_name, message)
    except GitError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e)
        ) from e
    return ResetResponse(
        had_local_changes=had_changes, message="Changes reset successfully"
    )


@router.post("/tasks/{task_id}/clear-logs", response_model=TaskResponse)
def clear_logs(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Remove all log entries of a task."""
    try:
        task = TaskService.clear_logs(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.get("/sandboxes", response_model=list[SandboxResponse])
def list_sandboxes(user_id: str = Depends(get_current_user_id)):
    """List the caller's tasks that hold a sandbox."""
    return [
        SandboxResponse.model_validate(task, from_attributes=True)
        for task in TaskService.list_sandbox_tasks(user_id)
    ]


@router.post(
    "/tasks/{task_id}/continue",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def continue_task(
    task_id: str, body: ContinueRequest, user_id: str = Depends(get_current_user_id)
):
    """Send a follow-up instruction to a kept-alive task."""
    _get_task(task_id, user_id)
    _check_rate_limit(user_id)
    try:
        message = TaskService.continue_task(
            task_id, user_id, body.message, body.selected_model
        )
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return MessageResponse.from_message(message)


@router.post(
    "/tasks/{task_id}/retry",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
)
def retry_task(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Create a new task repeating a failed or cancelled one."""
    _get_task(task_id, user_id)
    _check_rate_limit(user_id)
    try:
        task = TaskService.create_retry_task(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.get("/tasks/{task_id}/messages", response_model=list[MessageResponse])
def list_messages(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Get the transcript of a task."""
    _get_task(task_id, user_id)
    return [MessageResponse.from_message(m) for m in TaskService.list_messages(task_id)]


@router.get("/rate-limit", response_model=RateLimitResponse)
def get_rate_limit(user_id: str = Depends(get_current_user_id)):
    """Get the caller's remaining daily quota."""
    limit = RateLimitService.check(user_id)
    return RateLimitResponse(
        allowed=limit.allowed,
        remaining=limit.remaining,
        total=limit.total,
        reset_at=limit.reset_at,
    )
