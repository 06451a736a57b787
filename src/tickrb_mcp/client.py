"""
TickTick Open API client.

Reads (projects, tasks) are cached for CACHE_TTL_SECONDS behind a single
shared timestamp; any write clears the whole cache so the next read goes
back to the server.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from . import __version__
from .token_store import TokenStore

BASE_URL = "https://api.ticktick.com/open/v1"
USER_AGENT = f"TickRb/{__version__}"
CACHE_TTL_SECONDS = 100
SUPPORTED_METHODS = frozenset({"GET", "POST", "DELETE"})

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Any failure talking to the TickTick API."""


class TickTickClient:
    """Authenticated, caching client for the TickTick Open API."""

    def __init__(
        self,
        token: str | None = None,
        *,
        token_store: TokenStore | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token = token or (token_store or TokenStore()).load_token()
        if not self._token:
            raise ApiError(
                "No authentication token available. Please run authentication first."
            )

        self._clock = clock
        self._projects_cache: list[dict[str, Any]] | None = None
        self._tasks_cache: list[dict[str, Any]] | None = None
        self._cache_timestamp: float | None = None

        # No timeout: requests are issued one at a time and block until done
        self._http = httpx.Client(
            base_url=BASE_URL,
            transport=transport,
            timeout=None,
            headers={
                "Authorization": f"Bearer {self._token}",
                "User-Agent": USER_AGENT,
            },
        )

    def __enter__(self) -> "TickTickClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # ============================================
    # Reads
    # ============================================

    def get_projects(self) -> list[dict[str, Any]]:
        """Return all projects, served from cache while it is fresh."""
        if self._cache_valid() and self._projects_cache:
            return self._projects_cache

        response = self._request("GET", "/project")
        self._projects_cache = response if isinstance(response, list) else []
        self._cache_timestamp = self._clock()
        return self._projects_cache

    def get_tasks(self) -> list[dict[str, Any]]:
        """
        Return the tasks of every project, in project order.

        Each task's projectId is overwritten with the id of the project it
        was fetched from.
        """
        if self._cache_valid() and self._tasks_cache:
            return self._tasks_cache

        all_tasks: list[dict[str, Any]] = []
        for project in self.get_projects():
            project_tasks = self.get_tasks_for_project(project["id"])
            for task in project_tasks:
                task["projectId"] = project["id"]
            all_tasks.extend(project_tasks)

        self._tasks_cache = all_tasks
        self._cache_timestamp = self._clock()
        return all_tasks

    def get_tasks_for_project(self, project_id: str) -> list[dict[str, Any]]:
        response = self._request("GET", f"/project/{project_id}/data")
        if isinstance(response, dict) and response.get("tasks"):
            return response["tasks"]
        return []

    # ============================================
    # Writes
    # ============================================

    def create_task(
        self,
        title: str,
        content: str | None = None,
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a task.

        Args:
            title: Task title
            content: Optional task body
            project_id: Optional project to file the task under (inbox if omitted)

        Returns:
            The created task as returned by the API
        """
        task_data = {
            key: value
            for key, value in (
                ("title", title),
                ("content", content),
                ("projectId", project_id),
            )
            if value is not None
        }

        result = self._request("POST", "/task", task_data)
        self._invalidate_cache()
        return result

    def complete_task(self, task_id: str, project_id: str) -> dict[str, Any]:
        result = self._request(
            "POST", f"/project/{project_id}/task/{task_id}/complete"
        )
        self._invalidate_cache()
        return result

    def delete_task(self, task_id: str, project_id: str) -> dict[str, Any]:
        result = self._request("DELETE", f"/project/{project_id}/task/{task_id}")
        self._invalidate_cache()
        return result

    # ============================================
    # Internals
    # ============================================

    def _cache_valid(self) -> bool:
        if self._cache_timestamp is None:
            return False
        return self._clock() - self._cache_timestamp < CACHE_TTL_SECONDS

    def _invalidate_cache(self) -> None:
        self._projects_cache = None
        self._tasks_cache = None
        self._cache_timestamp = None

    def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Issue one API call and decode the JSON body."""
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ApiError(f"Unsupported HTTP method: {method}")

        logger.debug("%s %s", method, endpoint)
        try:
            response = self._http.request(
                method,
                endpoint,
                json=data if method == "POST" else None,
            )
        except httpx.HTTPError as e:
            raise ApiError(f"API request failed: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ApiError(f"Invalid JSON in API response: {e}") from e
        if status == 401:
            raise ApiError("Authentication failed. Token may be expired.")
        if status == 404:
            raise ApiError("Resource not found")
        raise ApiError(f"API request failed: {status} {response.reason_phrase}")
