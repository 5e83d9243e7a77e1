"""Pull-request endpoints of a task."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from builder.api.errors import SERVICE_ERRORS, http_error
from builder.api.tasks import TaskResponse
from builder.core.auth import get_current_user_id
from builder.services import PullRequestService

router = APIRouter()


class PullRequestCreate(BaseModel):
    title: str = Field(min_length=1)
    body: str = ""
    base_branch: str | None = None


class PullRequestMerge(BaseModel):
    merge_method: str = "squash"
    commit_title: str | None = None
    commit_message: str | None = None


class CheckRun(BaseModel):
    id: int | None
    name: str | None
    status: str | None
    conclusion: str | None
    html_url: str | None
    started_at: str | None
    completed_at: str | None


class CheckRunsResponse(BaseModel):
    check_runs: list[CheckRun]


class DeploymentResponse(BaseModel):
    has_deployment: bool
    preview_url: str | None = None
    message: str | None = None
    cached: bool = False


@router.post("/tasks/{task_id}/pr", response_model=TaskResponse)
def create_pull_request(
    task_id: str, body: PullRequestCreate, user_id: str = Depends(get_current_user_id)
):
    """Open a pull request from the task's branch."""
    try:
        task = PullRequestService.create(
            task_id, user_id, body.title, body.body, body.base_branch
        )
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/merge-pr", response_model=TaskResponse)
def merge_pull_request(
    task_id: str,
    body: PullRequestMerge | None = None,
    user_id: str = Depends(get_current_user_id),
):
    body = body or PullRequestMerge()
    try:
        task = PullRequestService.merge(
            task_id, user_id, body.merge_method, body.commit_title, body.commit_message
        )
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/close-pr", response_model=TaskResponse)
def close_pull_request(task_id: str, user_id: str = Depends(get_current_user_id)):
    try:
        task = PullRequestService.close(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/reopen-pr", response_model=TaskResponse)
def reopen_pull_request(task_id: str, user_id: str = Depends(get_current_user_id)):
    try:
        task = PullRequestService.reopen(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.post("/tasks/{task_id}/sync-pr", response_model=TaskResponse)
def sync_pull_request(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Refresh the recorded pull-request status from GitHub."""
    try:
        task = PullRequestService.sync_status(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return TaskResponse.from_task(task)


@router.get("/tasks/{task_id}/check-runs", response_model=CheckRunsResponse)
def list_check_runs(task_id: str, user_id: str = Depends(get_current_user_id)):
    try:
        runs = PullRequestService.list_check_runs(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return CheckRunsResponse(check_runs=[CheckRun(**run) for run in runs])


@router.get("/tasks/{task_id}/deployment", response_model=DeploymentResponse)
def get_deployment(task_id: str, user_id: str = Depends(get_current_user_id)):
    """Preview deployment of the task branch's latest commit."""
    try:
        result = PullRequestService.find_preview_url(task_id, user_id)
    except SERVICE_ERRORS as e:
        raise http_error(e) from e
    return DeploymentResponse(
        has_deployment=result.has_deployment,
        preview_url=result.preview_url,
        message=result.message,
        cached=result.cached,
    )
