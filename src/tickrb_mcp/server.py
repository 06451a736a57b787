"""
TickRb MCP Server - TickTick tasks for MCP hosts over stdio

Speaks line-delimited JSON-RPC 2.0 on stdin/stdout, one request at a time.

Tools:
- ping: Connectivity check
- list_tasks: All tasks across all projects
- create_task: Create a new task
- complete_task: Mark a task as completed
- delete_task: Delete a task
- list_projects: All projects

Resources:
- tickrb://server/info: Server name, version and tool names

Task operations that fail against the TickTick API still return a normal
tool result, with success=false and an error message. Only malformed or
unroutable requests produce JSON-RPC errors.
"""

import argparse
import json
import logging
import os
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, TextIO

from dotenv import find_dotenv, load_dotenv
from mcp import types

from . import __version__
from .auth import OAuthFlow
from .client import TickTickClient
from .token_store import TokenStore

JSONRPC = "2.0"
PROTOCOL_VERSION = "2024-11-05"
SERVER_INFO = {"name": "tickrb-mcp-server", "version": __version__}
DEFAULT_MIME_TYPE = "text/plain"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tool:
    """A named operation the host can call."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[[dict[str, Any]], Any]

    def describe(self) -> dict[str, Any]:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.input_schema,
        ).model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class Resource:
    """A readable text artifact, addressed by uri."""

    name: str
    description: str
    uri: str
    handler: Callable[[], str]
    mime_type: str | None = None

    def describe(self) -> dict[str, Any]:
        return types.Resource(
            uri=self.uri,
            name=self.name,
            description=self.description,
            mimeType=self.mime_type or DEFAULT_MIME_TYPE,
        ).model_dump(mode="json", by_alias=True, exclude_none=True)


def _result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC, "result": result, "id": request_id}


def _error(
    request_id: Any, code: int, message: str, data: Any = None
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC, "error": error, "id": request_id}


class TickRbServer:
    """
    JSON-RPC dispatcher over a fixed tool/resource registry.

    The registry is built once here and never changes. The TickTick client
    is created on the first tool call that needs it and reused afterwards.
    """

    def __init__(
        self,
        client_factory: Callable[[], TickTickClient] = TickTickClient,
        tools: Iterable[Tool] | None = None,
        resources: Iterable[Resource] | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._client: TickTickClient | None = None

        tools = self._builtin_tools() if tools is None else tools
        resources = self._builtin_resources() if resources is None else resources
        self.tools: Mapping[str, Tool] = MappingProxyType({t.name: t for t in tools})
        self.resources: Mapping[str, Resource] = MappingProxyType(
            {r.name: r for r in resources}
        )

    # ============================================
    # Transport
    # ============================================

    def serve(self, stdin: TextIO, stdout: TextIO) -> None:
        """Answer requests line by line until stdin reaches EOF."""
        logger.info("TickRb MCP server ready (%d tools)", len(self.tools))

        # Undecodable bytes become U+FFFD and fail JSON parsing instead of the read
        reconfigure = getattr(stdin, "reconfigure", None)
        if reconfigure is not None:
            reconfigure(errors="replace")

        for line in iter(stdin.readline, ""):
            line = line.strip()
            if not line:
                continue

            response = self.handle_line(line)
            if response is None:
                continue
            stdout.write(self.encode_response(response) + "\n")
            stdout.flush()
        logger.info("stdin closed, shutting down")

    def handle_line(self, line: str) -> dict[str, Any] | None:
        """Parse and handle one raw request line."""
        try:
            request = json.loads(line)
        except (ValueError, RecursionError) as e:
            logger.warning("Unparseable request: %s", e)
            return _error(None, types.PARSE_ERROR, "Parse error", str(e))

        try:
            return self.handle_request(request)
        except Exception as e:
            logger.exception("Internal error handling request")
            request_id = request.get("id") if isinstance(request, dict) else None
            return _error(request_id, types.INTERNAL_ERROR, "Internal error", str(e))

    def encode_response(self, response: dict[str, Any]) -> str:
        """Serialize a response, falling back to an internal error envelope."""
        try:
            return json.dumps(response)
        except (TypeError, ValueError, RecursionError) as e:
            logger.exception("Unserializable response")
            return json.dumps(
                _error(response.get("id"), types.INTERNAL_ERROR, "Internal error", str(e))
            )

    def handle_request(self, request: dict[str, Any]) -> dict[str, Any] | None:
        if not isinstance(request, dict):
            raise TypeError("Request must be a JSON object")

        method = request.get("method")
        params = request.get("params") or {}
        request_id = request.get("id")
        logger.debug("-> %s (id=%r)", method, request_id)

        if method == "initialize":
            return _result(
                request_id,
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}, "resources": {}},
                    "serverInfo": SERVER_INFO,
                },
            )
        if method == "tools/list":
            return _result(
                request_id, {"tools": [t.describe() for t in self.tools.values()]}
            )
        if method == "tools/call":
            return self._call_tool(params, request_id)
        if method == "resources/list":
            return _result(
                request_id,
                {"resources": [r.describe() for r in self.resources.values()]},
            )
        if method == "resources/read":
            return self._read_resource(params, request_id)

        return _error(request_id, types.METHOD_NOT_FOUND, "Method not found")

    def _call_tool(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        name = params.get("name")
        tool = self.tools.get(name)
        if tool is None:
            return _error(request_id, types.INVALID_PARAMS, f"Tool not found: {name}")

        result = tool.handler(params.get("arguments") or {})

        # Mappings are sent as JSON text; anything else goes through as-is
        text = json.dumps(dict(result)) if isinstance(result, Mapping) else result
        return _result(request_id, {"content": [{"type": "text", "text": text}]})

    def _read_resource(
        self, params: dict[str, Any], request_id: Any
    ) -> dict[str, Any]:
        uri = params.get("uri")

        # Registry is keyed by name, so find by uri in registration order
        resource = next((r for r in self.resources.values() if r.uri == uri), None)
        if resource is None:
            return _error(
                request_id, types.INVALID_PARAMS, f"Resource not found: {uri}"
            )

        return _result(
            request_id,
            {
                "contents": [
                    {
                        "uri": uri,
                        "mimeType": resource.mime_type or DEFAULT_MIME_TYPE,
                        "text": resource.handler(),
                    }
                ]
            },
        )

    def get_client(self) -> TickTickClient:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ============================================
    # Built-in tools
    # ============================================

    def _builtin_tools(self) -> list[Tool]:
        return [
            Tool(
                name="ping",
                description="Simple ping tool to test server connectivity",
                input_schema={
                    "type": "object",
                    "properties": {
                        "message": {
                            "type": "string",
                            "description": "Message to echo back",
                        },
                    },
                },
                handler=self.ping,
            ),
            Tool(
                name="list_tasks",
                description="Get all tasks from TickTick",
                input_schema={"type": "object", "properties": {}},
                handler=self.list_tasks,
            ),
            Tool(
                name="create_task",
                description="Create a new task in TickTick",
                input_schema={
                    "type": "object",
                    "properties": {
                        "title": {"type": "string", "description": "Task title"},
                        "content": {
                            "type": "string",
                            "description": "Task description/content",
                        },
                        "project_id": {
                            "type": "string",
                            "description": "Project ID to add task to",
                        },
                    },
                    "required": ["title"],
                },
                handler=self.create_task,
            ),
            Tool(
                name="complete_task",
                description="Mark a task as completed in TickTick",
                input_schema=_task_ref_schema("complete"),
                handler=self.complete_task,
            ),
            Tool(
                name="delete_task",
                description="Delete a task in TickTick",
                input_schema=_task_ref_schema("delete"),
                handler=self.delete_task,
            ),
            Tool(
                name="list_projects",
                description="Get all projects from TickTick",
                input_schema={"type": "object", "properties": {}},
                handler=self.list_projects,
            ),
        ]

    def ping(self, arguments: dict[str, Any]) -> dict[str, Any]:
        message = arguments.get("message")
        if message is None:
            message = "Hello from TickRb MCP Server"
        return {"message": f"Pong! {message}"}

    def list_tasks(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        List every task across all projects.

        Returns:
            Tasks with id, title, project_id, due_date, description and status
        """
        try:
            tasks = self.get_client().get_tasks()
            return {
                "success": True,
                "tasks": [
                    {
                        "id": task.get("id"),
                        "title": task.get("title"),
                        "project_id": task.get("projectId"),
                        "due_date": task.get("dueDate"),
                        "description": task.get("desc"),
                        "status": _default(task.get("status"), "open"),
                    }
                    for task in tasks
                ],
                "count": len(tasks),
            }
        except Exception as e:
            logger.warning("list_tasks failed: %s", e)
            return {"success": False, "error": str(e), "tasks": [], "count": 0}

    def create_task(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """
        Create a task.

        Args:
            arguments: title (required), content, project_id

        Returns:
            The created task's id, title, content and project_id
        """
        try:
            task = self.get_client().create_task(
                title=arguments["title"],
                content=arguments.get("content"),
                project_id=arguments.get("project_id"),
            )
            return {
                "success": True,
                "task": {
                    "id": task.get("id"),
                    "title": task.get("title"),
                    "content": task.get("content"),
                    "project_id": task.get("projectId"),
                },
            }
        except Exception as e:
            logger.warning("create_task failed: %s", e)
            return {"success": False, "error": str(e), "task": None}

    def complete_task(self, arguments: dict[str, Any]) -> dict[str, Any]:
        task_id = arguments.get("task_id")
        try:
            self.get_client().complete_task(task_id, arguments.get("project_id"))
            return {
                "success": True,
                "message": "Task marked as completed",
                "task_id": task_id,
            }
        except Exception as e:
            logger.warning("complete_task %s failed: %s", task_id, e)
            return {"success": False, "error": str(e), "task_id": task_id}

    def delete_task(self, arguments: dict[str, Any]) -> dict[str, Any]:
        task_id = arguments.get("task_id")
        try:
            self.get_client().delete_task(task_id, arguments.get("project_id"))
            return {
                "success": True,
                "message": "Task deleted successfully",
                "task_id": task_id,
            }
        except Exception as e:
            logger.warning("delete_task %s failed: %s", task_id, e)
            return {"success": False, "error": str(e), "task_id": task_id}

    def list_projects(self, arguments: dict[str, Any]) -> dict[str, Any]:
        try:
            projects = self.get_client().get_projects()
            return {
                "success": True,
                "projects": [
                    {"id": project.get("id"), "name": project.get("name")}
                    for project in projects
                ],
                "count": len(projects),
            }
        except Exception as e:
            logger.warning("list_projects failed: %s", e)
            return {"success": False, "error": str(e), "projects": [], "count": 0}

    # ============================================
    # Built-in resources
    # ============================================

    def _builtin_resources(self) -> list[Resource]:
        return [
            Resource(
                name="server_info",
                description="Server name, version and available tools",
                uri="tickrb://server/info",
                mime_type="application/json",
                handler=self._server_info,
            ),
        ]

    def _server_info(self) -> str:
        return json.dumps({**SERVER_INFO, "tools": list(self.tools)})


def _default(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


def _task_ref_schema(action: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "task_id": {
                "type": "string",
                "description": f"ID of the task to {action}",
            },
            "project_id": {
                "type": "string",
                "description": "ID of the project containing the task",
            },
        },
        "required": ["task_id", "project_id"],
    }


def main(argv: list[str] | None = None) -> None:
    """Entry point for the TickRb MCP server."""
    # CLIENT_ID, CLIENT_SECRET and REDIRECT_URI may come from a .env file
    load_dotenv(find_dotenv(usecwd=True))

    parser = argparse.ArgumentParser(
        prog="tickrb-mcp-server",
        description="Serve TickTick tasks to MCP hosts over stdio.",
    )
    parser.add_argument("--client-id", help="OAuth client id (env: CLIENT_ID)")
    parser.add_argument(
        "--client-secret", help="OAuth client secret (env: CLIENT_SECRET)"
    )
    parser.add_argument(
        "--redirect-uri", help="OAuth redirect URI (env: REDIRECT_URI)"
    )
    args = parser.parse_args(argv)

    # stdout carries the protocol, so logs go to stderr
    logging.basicConfig(
        level=os.environ.get("TICKRB_LOG_LEVEL", "INFO").upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    token_store = TokenStore()
    if token_store.load_token() is None:
        logger.info("No valid token at %s, starting authorization", token_store.path)
        OAuthFlow(
            client_id=args.client_id,
            client_secret=args.client_secret,
            redirect_uri=args.redirect_uri,
            token_store=token_store,
        ).run()

    server = TickRbServer(
        client_factory=lambda: TickTickClient(token_store=token_store)
    )
    try:
        server.serve(sys.stdin, sys.stdout)
    finally:
        server.close()


if __name__ == "__main__":
    main()
