"""API client service for interacting with the Builder API."""

import os
import time
from typing import Any

import httpx

TERMINAL_STATUSES = ("COMPLETED", "ERROR", "CANCELLED")


class ApiClientService:
    """Service for Builder API client operations."""

    @staticmethod
    def get_client(
        base_url: str | None = None,
        api_key: str | None = None,
        user_id: str | None = None,
    ) -> httpx.Client:
        """Get configured HTTP client.

        Args:
            base_url: API base URL (defaults to BUILDER_URL env var or http://localhost:8000)
            api_key: API key for authentication (defaults to API_SECRET_KEY env var)
            user_id: Caller identity (defaults to BUILDER_USER_ID env var)

        Returns:
            Configured httpx.Client with base_url, headers, and timeout
        """
        if base_url is None:
            base_url = os.getenv("BUILDER_URL", "http://localhost:8000")
        if api_key is None:
            api_key = os.getenv("API_SECRET_KEY", "")
        if user_id is None:
            user_id = os.getenv("BUILDER_USER_ID", "")

        return httpx.Client(
            base_url=base_url,
            headers={"X-API-Key": api_key, "X-User-Id": user_id},
            timeout=30.0,
        )

    @staticmethod
    def request(
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        client: httpx.Client | None = None,
    ) -> Any:
        """Send a request and return the decoded body (None for 204).

        Raises:
            httpx.HTTPStatusError: If API request fails
        """
        should_close = client is None
        if client is None:
            client = ApiClientService.get_client()

        try:
            response = client.request(method, path, json=json, params=params)
            response.raise_for_status()
            if response.status_code == 204:
                return None
            return response.json()
        finally:
            if should_close:
                client.close()

    @staticmethod
    def create_task(
        prompt: str,
        repo_url: str,
        selected_agent: str = "claude",
        selected_model: str | None = None,
        install_dependencies: bool = False,
        max_duration: int | None = None,
        keep_alive: bool = False,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        """Create a new task.

        Returns:
            Task data as dict with id, status, prompt, repo_url, etc.

        Raises:
            httpx.HTTPStatusError: If API request fails (429 when rate limited)
        """
        payload: dict[str, Any] = {
            "prompt": prompt,
            "repo_url": repo_url,
            "selected_agent": selected_agent,
            "install_dependencies": install_dependencies,
            "keep_alive": keep_alive,
        }
        if selected_model is not None:
            payload["selected_model"] = selected_model
        if max_duration is not None:
            payload["max_duration"] = max_duration

        return ApiClientService.request("POST", "/v1/tasks", json=payload, client=client)

    @staticmethod
    def get_task(task_id: str, client: httpx.Client | None = None) -> dict[str, Any]:
        """Get task by ID, including its messages.

        Raises:
            httpx.HTTPStatusError: If API request fails (e.g., 404 for not found)
        """
        return ApiClientService.request("GET", f"/v1/tasks/{task_id}", client=client)

    @staticmethod
    def list_tasks(
        limit: int = 10, offset: int = 0, client: httpx.Client | None = None
    ) -> dict[str, Any]:
        return ApiClientService.request(
            "GET", "/v1/tasks", params={"limit": limit, "offset": offset}, client=client
        )

    @staticmethod
    def cancel_task(task_id: str, client: httpx.Client | None = None) -> dict[str, Any]:
        return ApiClientService.request(
            "POST", f"/v1/tasks/{task_id}/cancel", client=client
        )

    @staticmethod
    def continue_task(
        task_id: str,
        message: str,
        selected_model: str | None = None,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": message}
        if selected_model is not None:
            payload["selected_model"] = selected_model
        return ApiClientService.request(
            "POST", f"/v1/tasks/{task_id}/continue", json=payload, client=client
        )

    @staticmethod
    def retry_task(task_id: str, client: httpx.Client | None = None) -> dict[str, Any]:
        return ApiClientService.request(
            "POST", f"/v1/tasks/{task_id}/retry", client=client
        )

    @staticmethod
    def pull_request_action(
        task_id: str,
        action: str,
        payload: dict[str, Any] | None = None,
        client: httpx.Client | None = None,
    ) -> dict[str, Any]:
        """Call one of the pull-request endpoints (pr, merge-pr, close-pr, ...)."""
        return ApiClientService.request(
            "POST", f"/v1/tasks/{task_id}/{action}", json=payload, client=client
        )

    @staticmethod
    def wait_for_task(
        task_id: str,
        timeout: int = 600,
        poll_interval: int = 5,
    ) -> dict[str, Any]:
        """Wait for task to reach a terminal status with polling.

        Args:
            task_id: Task ID to wait for
            timeout: Maximum time to wait in seconds (default: 600)
            poll_interval: Time between status checks in seconds (default: 5)

        Returns:
            Final task data when completed, failed or cancelled

        Raises:
            TimeoutError: If task doesn't finish within timeout period
            httpx.HTTPStatusError: If the API returns an error
        """
        start_time = time.time()

        while True:
            if time.time() - start_time > timeout:
                raise TimeoutError(f"Task {task_id} did not complete within {timeout}s")

            task = ApiClientService.get_task(task_id)
            if task["status"] in TERMINAL_STATUSES:
                return task

            time.sleep(poll_interval)
