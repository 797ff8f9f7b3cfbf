from __future__ import annotations

import logging
import re
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlparse

from . import __version__
from .errors import NotFoundError, StorageError, ValidationError
from .service import MemoryService
from .worker_http import (
    body_field,
    int_param,
    query_param,
    read_json_body,
    reject_cross_origin,
    send_json_response,
    send_text_response,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKER_HOST = "127.0.0.1"
DEFAULT_WORKER_PORT = 37779

OBSERVATION_PATH_RE = re.compile(r"^/api/observations/(\d+)$")


class WorkerHandler(BaseHTTPRequestHandler):
    service: MemoryService
    started_at: float = 0.0

    def _send_json(self, payload: dict[str, Any], status: int = 200) -> None:
        send_json_response(self, payload, status=status)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        logger.debug("%s %s", self.address_string(), format % args)

    def _dispatch(self, route: Any, *args: Any) -> None:
        try:
            if not route(*args):
                self._send_json({"error": "not found"}, status=404)
        except ValidationError as exc:
            self._send_json({"error": str(exc)}, status=400)
        except NotFoundError as exc:
            self._send_json({"error": str(exc)}, status=404)
        except StorageError as exc:
            logger.exception("%s %s failed", self.command, self.path)
            self._send_json({"error": str(exc)}, status=500)
        except Exception:
            logger.exception("%s %s failed", self.command, self.path)
            self._send_json({"error": "internal server error"}, status=500)

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        self._dispatch(self._handle_get, parsed.path, parsed.query)

    def do_POST(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if reject_cross_origin(self, missing_origin_policy="reject_if_unsafe"):
            return
        payload = read_json_body(self)
        if payload is None:
            self._send_json({"error": "invalid json body"}, status=400)
            return
        self._dispatch(self._handle_post, parsed.path, payload)

    def _handle_get(self, path: str, query: str) -> bool:
        if path == "/api/health":
            uptime_ms = int((time.monotonic() - self.started_at) * 1000)
            self._send_json({"status": "ok", "uptime": uptime_ms})
            return True
        if path == "/api/version":
            self._send_json({"version": __version__})
            return True
        if path == "/api/context/inject":
            project = query_param(query, "project")
            if not project:
                self._send_json({"error": "project parameter is required"}, status=400)
                return True
            context = self.service.get_context(project, cwd=query_param(query, "cwd"))
            send_text_response(self, context)
            return True
        if path == "/api/search":
            q = query_param(query, "q")
            if not q:
                self._send_json({"error": "query parameter q is required"}, status=400)
                return True
            results = self.service.search(
                q, project=query_param(query, "project"), limit=int_param(query, "limit", 20)
            )
            self._send_json({"results": results, "count": len(results)})
            return True
        if path == "/api/projects":
            self._send_json({"projects": self.service.list_projects()})
            return True
        match = OBSERVATION_PATH_RE.match(path)
        if match:
            observation = self.service.get_observation(int(match.group(1)))
            if observation is None:
                self._send_json({"error": "observation not found"}, status=404)
                return True
            self._send_json(observation.to_dict())
            return True
        return False

    def _handle_post(self, path: str, payload: dict[str, Any]) -> bool:
        session_id = body_field(payload, "sessionId", "session_id", "claudeSessionId")
        if path == "/api/sessions/init":
            result = self.service.init_session(
                session_id,
                body_field(payload, "project"),
                body_field(payload, "userPrompt", "user_prompt") or "",
            )
            self._send_json({"success": True, **result.to_dict()})
            return True
        if path == "/api/sessions/observations":
            observation_id = self.service.record_observation(
                session_id,
                str(body_field(payload, "tool_name", "toolName") or ""),
                body_field(payload, "tool_input", "toolInput"),
                body_field(payload, "tool_response", "tool_output", "toolOutput"),
                project=body_field(payload, "project"),
                cwd=body_field(payload, "cwd"),
            )
            self._send_json(
                {"success": True, "id": observation_id, "skipped": observation_id is None}
            )
            return True
        if path == "/api/sessions/summarize":
            summary_id = self.service.finalize_summary(
                session_id,
                body_field(payload, "last_user_message", "lastUserMessage"),
                body_field(payload, "last_assistant_message", "lastAssistantMessage"),
            )
            self._send_json({"success": True, "summaryId": summary_id})
            return True
        return False


def make_handler(service: MemoryService) -> type[WorkerHandler]:
    return type(
        "BoundWorkerHandler",
        (WorkerHandler,),
        {"service": service, "started_at": time.monotonic()},
    )


def create_server(
    service: MemoryService,
    host: str = DEFAULT_WORKER_HOST,
    port: int = DEFAULT_WORKER_PORT,
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), make_handler(service))
    server.daemon_threads = True
    return server


def is_port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.2)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def start_worker(
    service: MemoryService,
    host: str = DEFAULT_WORKER_HOST,
    port: int = DEFAULT_WORKER_PORT,
    background: bool = False,
) -> ThreadingHTTPServer | None:
    """Serve the worker API; returns None when another worker already owns the port."""

    if is_port_in_use(host, port):
        logger.warning("port %s already in use, worker may already be running", port)
        return None
    server = create_server(service, host, port)
    logger.info("worker listening on %s:%s", host, port)
    if background:
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        return server
    try:
        server.serve_forever()
    finally:
        server.server_close()
        logger.info("worker stopped")
    return server
