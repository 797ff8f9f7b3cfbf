from __future__ import annotations

import atexit
import os
from typing import Any

from mcp.server.fastmcp import FastMCP

from .capture import resolve_project
from .config import load_config
from .log import configure_logging
from .service import MemoryService


def build_service() -> MemoryService:
    return MemoryService.from_config(load_config())


def build_server(service: MemoryService | None = None) -> FastMCP:
    mcp = FastMCP("sessionmem")
    service = service or build_service()
    atexit.register(service.close)
    default_project = os.environ.get("SESSIONMEM_PROJECT") or resolve_project(
        None, None, os.getcwd()
    )

    @mcp.tool()
    def memory_search(
        query: str,
        limit: int = 20,
        project: str | None = None,
        all_projects: bool = False,
    ) -> dict[str, Any]:
        """Find observations by keyword, most recent first.

        Words are AND-ed; use OR between words and "double quotes" for phrases.
        """
        scope = None if all_projects else (project or default_project)
        return {"items": service.search(query, project=scope, limit=limit)}

    @mcp.tool()
    def memory_get(observation_id: int) -> dict[str, Any]:
        observation = service.get_observation(observation_id)
        if observation is None:
            return {"error": "not_found"}
        return observation.to_dict()

    @mcp.tool()
    def memory_context(project: str | None = None) -> dict[str, Any]:
        return {"context": service.get_context(project or default_project)}

    @mcp.tool()
    def memory_projects() -> dict[str, Any]:
        return {"projects": service.list_projects()}

    return mcp


def run() -> None:
    config = load_config()
    configure_logging(config.log_level, config.log_dir)
    server = build_server(MemoryService.from_config(config))
    server.run()


if __name__ == "__main__":
    run()
