#!/usr/bin/env python3
"""FastAPI 服务：为管理后台提供 RouterOS 网关接口

Endpoints (mounted at / and under /api):
    POST   /proxy               run one live command on a router
    POST   /sync                refresh one cached resource kind
    GET    /cache               read a cached resource kind (never touches the network)
    DELETE /cache               explicit cache clear
    POST   /active/disconnect   force-close a subscriber's active PPP session
    GET    /routers             registered routers and session state
    GET    /health              gateway health

Reads come from the cache, writes go live. A write does not refresh the
cache unless the caller sends "resync": true or RESYNC_AFTER_WRITE=1.
"""
import asyncio
import logging
import sys
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Add script directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from cache_store import ResourceCacheStore
from command_proxy import CommandProxy, validate_words
from gateway_config import GatewayConfig, load_router_descriptors
from router_errors import RouterError, UnknownRouterError
from routeros_client import ConnectionManager, RouterDescriptor
from session_terminator import ActiveSessionTerminator
from sync_engine import SyncEngine

logger = logging.getLogger(__name__)

# 错误类型 -> HTTP 状态码
STATUS_BY_KIND = {
    "network": 502,
    "protocol": 502,
    "timeout": 504,
    "auth": 401,
    "command": 400,
}


@dataclass
class GatewayServices:
    """网关核心组件（显式注入，不使用模块级全局状态）"""
    manager: ConnectionManager
    proxy: CommandProxy
    store: ResourceCacheStore
    engine: SyncEngine
    terminator: ActiveSessionTerminator

    @classmethod
    def build(
        cls,
        store: ResourceCacheStore,
        manager: Optional[ConnectionManager] = None,
        sync_timeout: Optional[float] = None,
    ) -> "GatewayServices":
        manager = manager or ConnectionManager()
        proxy = CommandProxy(manager)
        engine = SyncEngine(proxy, store, sync_timeout) if sync_timeout else SyncEngine(proxy, store)
        return cls(manager, proxy, store, engine, ActiveSessionTerminator(proxy))

    @classmethod
    def from_config(cls, config: GatewayConfig) -> "GatewayServices":
        manager = ConnectionManager(idle_timeout=config.idle_timeout)
        if config.routers_config:
            for descriptor in load_router_descriptors(config.routers_config, config.default_timeout):
                manager.register(descriptor)
        return cls.build(ResourceCacheStore(config.db_path), manager, config.sync_timeout)


# ============ 请求模型 ============

class RouterFields(BaseModel):
    """路由器描述字段（host 存在时注册/更新，否则按 serverId 查找）"""
    serverId: Optional[str] = Field(None, description="Router id")
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    user: Optional[str] = None
    password: Optional[str] = None
    timeout: Optional[float] = Field(None, gt=0, description="Seconds")
    server: Optional[Dict[str, Any]] = Field(None, description="Dashboard server record (id, ip, port, username, password)")


class ProxyRequest(RouterFields):
    command: Union[List[str], str] = Field(..., description='e.g. ["/ppp/active/print", "?name=bob"]')
    resync: Optional[bool] = Field(None, description="Resync the cached kind after a write")


class SyncRequest(RouterFields):
    resourceKind: Optional[str] = None
    resource: Optional[str] = None


class DisconnectRequest(RouterFields):
    username: str = Field(..., min_length=1, description="Subscriber (PPP secret) name")


def error_response(status_code: int, message: str, kind: str, **extra) -> JSONResponse:
    return JSONResponse({"error": message, "kind": kind, **extra}, status_code=status_code)


def resolve_router(request: Request, body: RouterFields) -> str:
    """Register/update the router described by the body, return its id

    The body's timeout applies to this request only; a registered
    router keeps the timeout it was registered with.

    Raises:
        ValueError: neither host nor serverId given
        UnknownRouterError: serverId only, and not registered
    """
    services: GatewayServices = request.app.state.services
    config: GatewayConfig = request.app.state.config

    fields: Dict[str, Any] = dict(body.server or {})
    fields.pop("timeout", None)
    for key in ("host", "port", "user", "password"):
        value = getattr(body, key)
        if value is not None:
            fields[key] = value
    router_id = body.serverId or (str(fields["id"]) if fields.get("id") else None)

    if fields.get("host") or fields.get("ip"):
        descriptor = RouterDescriptor.from_dict(fields, router_id=router_id)
        if descriptor.router_id in services.manager:
            timeout = services.manager.get_descriptor(descriptor.router_id).timeout
        else:
            timeout = config.default_timeout
        descriptor = replace(descriptor, timeout=timeout)
        services.manager.register(descriptor)
        return descriptor.router_id

    if not router_id:
        raise ValueError("serverId or host is required")
    if router_id not in services.manager:
        raise UnknownRouterError(router_id)
    return router_id


router = APIRouter()


@router.post("/proxy")
async def api_proxy(body: ProxyRequest, request: Request):
    """执行一条实时命令，返回解码后的记录数组"""
    services: GatewayServices = request.app.state.services
    config: GatewayConfig = request.app.state.config
    try:
        router_id = resolve_router(request, body)
        words = validate_words(body.command)
    except ValueError as e:
        return error_response(400, str(e), "invalid")

    reply = await services.proxy.execute_words(router_id, words, timeout=body.timeout)
    # add 等命令只在 !done 上返回 ret
    payload = reply.records or ([reply.done_attributes] if reply.done_attributes else [])

    headers = {}
    resync = body.resync if body.resync is not None else config.resync_after_write
    if resync:
        result = await services.engine.resync_after_write(router_id, words[0])
        if result is not None:
            headers["X-Cache-Resync"] = f"{result.resource_kind}:{'ok' if result.ok else 'failed'}"
    return JSONResponse(payload, headers=headers)


@router.post("/sync")
@router.post("/mikrotik/sync")
async def api_sync(body: SyncRequest, request: Request):
    """从路由器拉取整个资源集合并替换缓存"""
    services: GatewayServices = request.app.state.services
    kind = body.resourceKind or body.resource
    if not kind:
        return error_response(400, "resourceKind is required", "invalid")
    try:
        router_id = resolve_router(request, body)
        result = await services.engine.sync_resource(router_id, kind, timeout=body.timeout)
    except ValueError as e:
        return error_response(400, str(e), "invalid")

    if result.ok:
        return result.to_dict()
    return JSONResponse(result.to_dict(), status_code=STATUS_BY_KIND.get(result.error_kind, 502))


@router.get("/cache")
@router.get("/mikrotik/data")
def api_cache(
    request: Request,
    serverId: str = Query(..., min_length=1),
    resource: str = Query(..., min_length=1),
):
    """读取缓存（不访问网络；从未同步过时返回空的 stale 数据）"""
    services: GatewayServices = request.app.state.services
    entry = services.store.get(serverId, resource)
    return {
        "data": [dict(r) for r in entry.records],
        "stale": entry.stale,
        "syncedAt": entry.synced_at,
        "generation": entry.generation,
        "lastError": entry.last_error,
    }


@router.delete("/cache")
def api_cache_clear(
    request: Request,
    serverId: Optional[str] = Query(None),
    resource: Optional[str] = Query(None),
):
    services: GatewayServices = request.app.state.services
    removed = services.store.clear(serverId, resource)
    return {"ok": True, "removed": removed}


@router.post("/active/disconnect")
async def api_disconnect_active(body: DisconnectRequest, request: Request):
    """断开用户的在线 PPP 会话（不存在时 removed=0）"""
    services: GatewayServices = request.app.state.services
    try:
        router_id = resolve_router(request, body)
    except ValueError as e:
        return error_response(400, str(e), "invalid")
    removed = await services.terminator.disconnect_active(router_id, body.username)
    return {"ok": True, "removed": removed}


@router.get("/routers")
async def api_routers(request: Request):
    services: GatewayServices = request.app.state.services
    return {"routers": services.manager.status()}


@router.get("/health")
async def api_health(request: Request, check: bool = False):
    """健康检查；check=true 时逐个 ping 路由器"""
    services: GatewayServices = request.app.state.services
    entries = services.store.entries()
    result: Dict[str, Any] = {
        "status": "healthy",
        "routers": len(services.manager.descriptors()),
        "cache_entries": len(entries),
        "stale_entries": sum(1 for e in entries if e.stale),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if check:
        ids = [d.router_id for d in services.manager.descriptors()]
        reachable = await asyncio.gather(*(services.manager.ping(rid) for rid in ids))
        result["reachable"] = dict(zip(ids, reachable))
        if not all(reachable):
            result["status"] = "degraded"
    return result


async def handle_router_error(request: Request, exc: RouterError) -> JSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 502)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed ({exc.kind}): {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=status_code)


async def handle_unknown_router(request: Request, exc: UnknownRouterError) -> JSONResponse:
    return error_response(404, str(exc), "unknown_router", serverId=exc.router_id)


def create_app(
    config: Optional[GatewayConfig] = None,
    services: Optional[GatewayServices] = None,
) -> FastAPI:
    config = config or GatewayConfig.from_env()
    services = services or GatewayServices.from_config(config)

    app = FastAPI(title="RouterOS Gateway API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config
    app.state.services = services
    app.add_exception_handler(RouterError, handle_router_error)
    app.add_exception_handler(UnknownRouterError, handle_unknown_router)
    app.include_router(router)
    app.include_router(router, prefix="/api")

    @app.on_event("startup")
    async def startup_event():
        app.state.sync_stop = asyncio.Event()
        app.state.sync_task = None
        if config.sync_interval > 0:
            app.state.sync_task = asyncio.create_task(
                services.engine.run_periodic(config.sync_interval, app.state.sync_stop)
            )
        logger.info(f"Gateway started: {len(services.manager.descriptors())} routers, "
                    f"{len(services.store)} cache entries")

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.sync_stop.set()
        if app.state.sync_task is not None:
            await app.state.sync_task
        await services.manager.shutdown()

    return app


if __name__ == "__main__":
    import uvicorn
    from log_config import setup_logging

    setup_logging()
    cfg = GatewayConfig.from_env()
    uvicorn.run(
        "api_server:create_app",
        host=cfg.web_host,
        port=cfg.web_port,
        reload=False,
        factory=True,
    )
