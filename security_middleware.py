"""
HTTP middleware that runs the request-defense pipeline in front of routing.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import parse_qs

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Match

from request_defense import DefensePipeline, RequestContext

logger = logging.getLogger("security")


def get_client_ip(request: Request) -> str:
    """Proxy headers first, then the socket peer."""
    for header in ("x-client-ip", "x-real-ip"):
        value = request.headers.get(header, "").strip()
        if value:
            return value
    forwarded_for = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded_for:
        return forwarded_for
    return request.client.host if request.client else "unknown"


def get_principal_id(request: Request) -> Optional[str]:
    if "session" in request.scope:
        user_id = request.session.get("userid")
    else:
        user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id else None


def collapse_single(values: Dict[str, List[str]]) -> Dict[str, Any]:
    """Unwrap keys sent once; repeated keys keep every value so each gets scanned."""
    return {key: items[0] if len(items) == 1 else items for key, items in values.items()}


def get_query(request: Request) -> Dict[str, Any]:
    params = request.query_params
    return collapse_single({key: params.getlist(key) for key in params.keys()})


def get_path_params(request: Request) -> Dict[str, Any]:
    # routing has not run yet, so match the routes ourselves
    router = getattr(request.app, "router", None)
    for route in getattr(router, "routes", []):
        match, child_scope = route.matches(request.scope)
        if match == Match.FULL:
            return dict(child_scope.get("path_params", {}))
    return {}


async def read_body(request: Request) -> Any:
    """
    Parsed JSON or urlencoded body, or None

    Malformed or unsupported bodies are skipped, never raised.
    """
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return None
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    raw = await request.body()
    if not raw:
        return None

    if content_type == "application/json" or content_type.endswith("+json"):
        try:
            return json.loads(raw)
        except ValueError:
            logger.debug(f"Ignoring malformed JSON body on {request.url.path}")
            return None
    if content_type == "application/x-www-form-urlencoded":
        try:
            return collapse_single(parse_qs(raw.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError:
            return None
    return None


class DefenseMiddleware(BaseHTTPMiddleware):
    """
    Rejects blocked, rate-limited and malicious requests with a JSON body;
    annotates the rest with ``request.state.security_info`` and
    ``request.state.security_analysis``.
    """

    def __init__(self, app, pipeline: DefensePipeline, exempt_paths: Iterable[str] = ()):
        super().__init__(app)
        self.pipeline = pipeline
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        ctx = RequestContext(
            ip=get_client_ip(request),
            endpoint=str(request.url.path) + (f"?{request.url.query}" if request.url.query else ""),
            method=request.method,
            user_agent=request.headers.get("user-agent", ""),
            principal_id=get_principal_id(request),
            body=await read_body(request),
            query=get_query(request),
            params=get_path_params(request),
        )

        outcome = await self.pipeline.evaluate(ctx)
        if not outcome.allowed:
            return JSONResponse(
                status_code=outcome.status_code,
                content=outcome.response_body(),
                headers=outcome.headers,
            )

        request.state.security_info = outcome.security_info
        request.state.security_analysis = outcome.security_analysis
        response = await call_next(request)
        for name, value in outcome.headers.items():
            response.headers[name] = value
        return response
