"""
TickRb MCP - TickTick tasks for MCP hosts

Serves the TickTick Open API to AI-assistant hosts as MCP tools over stdio.
- list_tasks / list_projects read through a 100-second cache
- create_task / complete_task / delete_task write and clear that cache
"""

__version__ = "1.0.0"

from .server import main  # noqa: E402

__all__ = ["__version__", "main"]
