from __future__ import annotations

import json
from http.server import BaseHTTPRequestHandler
from typing import Any, Literal
from urllib.parse import parse_qs, urlparse

_ALLOWED_ORIGIN_HOSTS = {"127.0.0.1", "localhost", "::1"}

MissingOriginPolicy = Literal["allow", "reject_if_unsafe"]


def _is_allowed_loopback_origin_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        _ = parsed.port
    except ValueError:
        return False
    if parsed.scheme != "http":
        return False
    if parsed.username is not None or parsed.password is not None:
        return False
    return hostname in _ALLOWED_ORIGIN_HOSTS


def _is_unsafe_missing_origin(handler: BaseHTTPRequestHandler) -> bool:
    # Browsers send fetch metadata or a referer; plain hook clients send neither.
    sec_fetch_site = (handler.headers.get("Sec-Fetch-Site") or "").strip().lower()
    if sec_fetch_site and sec_fetch_site not in {"same-origin", "same-site", "none"}:
        return True
    referer = handler.headers.get("Referer")
    if referer:
        return not _is_allowed_loopback_origin_url(referer)
    return False


def send_json_response(
    handler: BaseHTTPRequestHandler,
    payload: dict[str, Any],
    status: int = 200,
) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_text_response(handler: BaseHTTPRequestHandler, text: str, status: int = 200) -> None:
    body = text.encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "text/plain; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any] | None:
    # JSONDecodeError and UnicodeDecodeError are both ValueErrors.
    try:
        length = int(handler.headers.get("Content-Length", "0") or 0)
        raw = handler.rfile.read(length).decode("utf-8") if length > 0 else ""
        if not raw:
            return None
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def query_param(query: str, name: str, default: str | None = None) -> str | None:
    values = parse_qs(query).get(name)
    if not values:
        return default
    return values[0]


def int_param(query: str, name: str, default: int) -> int:
    value = query_param(query, name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def body_field(payload: dict[str, Any], *names: str) -> Any:
    """Return the first present field, accepting camelCase and snake_case spellings."""

    for name in names:
        value = payload.get(name)
        if value is not None:
            return value
    return None


def reject_cross_origin(
    handler: BaseHTTPRequestHandler,
    *,
    missing_origin_policy: MissingOriginPolicy = "allow",
) -> bool:
    origin = handler.headers.get("Origin")
    if not origin:
        if missing_origin_policy == "allow" or not _is_unsafe_missing_origin(handler):
            return False
        send_json_response(handler, {"error": "forbidden"}, status=403)
        return True
    if _is_allowed_loopback_origin_url(origin):
        return False
    send_json_response(handler, {"error": "forbidden"}, status=403)
    return True
