#!/usr/bin/env python3
"""
Request-defense service
=======================

FastAPI application that puts the request-defense pipeline in front of
every route and exposes the editorial content-lock API plus a small admin
surface for operators.

Endpoints:
    GET    /                      service info
    POST   /locks/heartbeat       mark the editor present
    POST   /locks/disconnect      release everything the editor holds
    GET    /locks/me              lock currently held by the editor
    POST   /locks/{article_id}    acquire or refresh a lock
    GET    /locks/{article_id}    lock status for the editor
    DELETE /locks/{article_id}    release a lock

Admin (``X-Admin-Token``; 404 when ADMIN_TOKEN is unset):
    GET    /security/ip/{ip}      block status in both namespaces
    DELETE /security/ip/{ip}      lift both blocks
    POST   /security/analyze      classify a JSON payload (log-only detector)
    POST   /locks/sweep           release locks of idle editors

Run:
    python defense_service.py --host 0.0.0.0 --port 8080
"""

import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from content_lock import ContentLockManager
from kv_store import STORE_ERRORS, close_store, create_store
from request_defense import DefensePipeline
from security_config import DefenseConfig, setup_logging
from security_middleware import DefenseMiddleware

logger = logging.getLogger("defense_service")

SERVICE_NAME = "request-defense"
SERVICE_VERSION = "1.0.0"


# ============================================================
# Models
# ============================================================

class Editor(BaseModel):
    """Authenticated editor as seen by the lock API"""
    id: str
    name: str = ""


class AnalyzeRequest(BaseModel):
    data: Any
    query: Optional[dict] = None


def session_editor(request: Request) -> Optional[Editor]:
    """Editor identity from the session, or from ``request.state`` when no session middleware runs."""
    if "session" in request.scope:
        user_id = request.session.get("userid")
        username = request.session.get("username")
    else:
        user_id = getattr(request.state, "user_id", None)
        username = getattr(request.state, "username", None)
    if not user_id:
        return None
    return Editor(id=str(user_id), name=username or str(user_id))


# ============================================================
# Dependencies
# ============================================================

def get_pipeline(request: Request) -> DefensePipeline:
    return request.app.state.pipeline


def get_locks(request: Request) -> ContentLockManager:
    return request.app.state.locks


def current_editor(request: Request) -> Editor:
    editor = request.app.state.editor_resolver(request)
    if editor is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return editor


def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)):
    expected = request.app.state.config.ADMIN_TOKEN
    if not expected:
        raise HTTPException(status_code=404, detail="Not Found")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Invalid admin token")


async def store_unavailable(request: Request, exc: Exception):
    logger.error(f"Store error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"success": False, "message": "Service temporarily unavailable"},
    )


# ============================================================
# Application factory
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    store = app.state.store
    try:
        await store.ping()
        logger.info("Store reachable")
    except STORE_ERRORS as e:
        logger.warning(f"Store unreachable at startup, defensive checks will fail open: {e}")
    yield
    await app.state.pipeline.drain()
    await close_store(store)
    logger.info("Request-defense service stopped")


def create_app(config: Optional[DefenseConfig] = None, store=None,
               editor_resolver: Optional[Callable[[Request], Optional[Editor]]] = None,
               clock: Callable[[], float] = time.time) -> FastAPI:
    config = config or DefenseConfig()
    store = store if store is not None else create_store(config, clock)
    pipeline = DefensePipeline(config, store, clock=clock)
    locks = ContentLockManager(store, lang_prefix=config.WEBSITE_LANG,
                               lock_duration=config.LOCK_DURATION, clock=clock)

    app = FastAPI(
        title="Request Defense Service",
        description="Threat detection, IP blocking, rate limiting and editorial content locks",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.pipeline = pipeline
    app.state.locks = locks
    app.state.editor_resolver = editor_resolver or session_editor

    # operators submit raw attack samples here
    app.add_middleware(DefenseMiddleware, pipeline=pipeline, exempt_paths=("/security/analyze",))
    for error_type in STORE_ERRORS:
        app.add_exception_handler(error_type, store_unavailable)

    # --- service ---

    @app.get("/")
    async def root():
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "running",
            "store_backend": config.STORE_BACKEND,
            "pattern_table": pipeline.detector.version,
        }

    # --- content locks ---

    @app.post("/locks/heartbeat")
    async def heartbeat(editor: Editor = Depends(current_editor),
                        locks: ContentLockManager = Depends(get_locks)):
        await locks.mark_connected(editor.id)
        current = await locks.get_holder_current_lock(editor.id)
        return {"success": True, **current.to_dict()}

    @app.post("/locks/disconnect")
    async def disconnect(editor: Editor = Depends(current_editor),
                         locks: ContentLockManager = Depends(get_locks)):
        result = await locks.release_all(editor.id)
        return result.to_dict()

    @app.post("/locks/sweep", dependencies=[Depends(require_admin)])
    async def sweep(max_idle: Optional[float] = None,
                    locks: ContentLockManager = Depends(get_locks)):
        idle = max_idle if max_idle is not None else config.PRESENCE_MAX_IDLE
        swept = await locks.sweep_stale_holders(idle)
        return {"success": True, "swept": swept}

    @app.get("/locks/me")
    async def my_lock(editor: Editor = Depends(current_editor),
                      locks: ContentLockManager = Depends(get_locks)):
        current = await locks.get_holder_current_lock(editor.id)
        return current.to_dict()

    @app.post("/locks/{article_id}")
    async def acquire_lock(article_id: str, editor: Editor = Depends(current_editor),
                           locks: ContentLockManager = Depends(get_locks)):
        result = await locks.acquire(editor.id, article_id, editor.name)
        return JSONResponse(status_code=200 if result.success else 409, content=result.to_dict())

    @app.get("/locks/{article_id}")
    async def lock_status(article_id: str, editor: Editor = Depends(current_editor),
                          locks: ContentLockManager = Depends(get_locks)):
        status = await locks.check_status(article_id, editor.id)
        return status.to_dict()

    @app.delete("/locks/{article_id}")
    async def release_lock(article_id: str, editor: Editor = Depends(current_editor),
                           locks: ContentLockManager = Depends(get_locks)):
        result = await locks.release(editor.id, article_id)
        return JSONResponse(status_code=200 if result.success else 404, content=result.to_dict())

    # --- admin ---

    @app.get("/security/ip/{ip}", dependencies=[Depends(require_admin)])
    async def ip_status(ip: str, pipeline: DefensePipeline = Depends(get_pipeline)):
        overuse = await pipeline.overuse_blocks.is_blocked(ip)
        threat = await pipeline.threat_blocks.is_blocked(ip)
        return {
            "ip": ip,
            "blocked": overuse.blocked or threat.blocked,
            "overuse": overuse.to_dict(),
            "threat": threat.to_dict(),
        }

    @app.delete("/security/ip/{ip}", dependencies=[Depends(require_admin)])
    async def unblock_ip(ip: str, pipeline: DefensePipeline = Depends(get_pipeline)):
        overuse = await pipeline.overuse_blocks.unblock(ip)
        threat = await pipeline.threat_blocks.unblock(ip)
        if not (overuse or threat):
            raise HTTPException(status_code=404, detail=f"IP {ip} is not blocked")
        logger.info(f"IP {ip} unblocked by admin (overuse={overuse}, threat={threat})")
        return {"success": True, "ip": ip, "unblocked": {"overuse": overuse, "threat": threat}}

    @app.post("/security/analyze", dependencies=[Depends(require_admin)])
    async def analyze(payload: AnalyzeRequest, pipeline: DefensePipeline = Depends(get_pipeline)):
        analysis = pipeline.analyzer.inspect(body=payload.data, query=payload.query)
        return analysis.to_dict()

    return app


# ============================================================
# Entry point
# ============================================================

if __name__ == "__main__":
    import argparse

    config = DefenseConfig()
    parser = argparse.ArgumentParser(description="Request-defense service")
    parser.add_argument("--host", default=config.HOST, help="listen address")
    parser.add_argument("--port", type=int, default=config.PORT, help="listen port")
    parser.add_argument("--store", choices=["redis", "memory"], default=config.STORE_BACKEND,
                        help="state store backend")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args()

    config.STORE_BACKEND = args.store
    config.LOG_LEVEL = args.log_level.upper()
    setup_logging(config)

    logger.info(f"Starting {SERVICE_NAME} on {args.host}:{args.port} (store={config.STORE_BACKEND})")
    uvicorn.run(create_app(config), host=args.host, port=args.port,
                log_level=config.LOG_LEVEL.lower())
