"""FastAPI application."""

from fastapi import Depends, FastAPI

from builder.api.api_keys import router as api_keys_router
from builder.api.pull_requests import router as pull_requests_router
from builder.api.tasks import router as tasks_router
from builder.core.auth import verify_api_key
from builder.core.log_config import configure_logging

configure_logging()

app = FastAPI(
    title="Builder API",
    description="Runs AI coding agents against git repositories in remote sandboxes",
    version="0.1.0",
)

app.include_router(tasks_router, prefix="/v1", tags=["tasks"])
app.include_router(pull_requests_router, prefix="/v1", tags=["pull-requests"])
app.include_router(api_keys_router, prefix="/v1", tags=["api-keys"])


@app.get("/health")
def health_check(api_key: str = Depends(verify_api_key)):
    """Health check endpoint."""
    return {"status": "healthy"}
