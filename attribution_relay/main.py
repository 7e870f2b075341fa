import asyncio
import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import CONFIG, debounce_settings, get_setting
from .db import cleanup_old_engines, get_session
from .routers.admin import router as admin_router
from .routers.apple import router as apple_router
from .routers.attribution import router as attribution_router
from .routers.click import router as click_router
from .routers.postback import router as postback_router
from .schemas import APIResponse, HealthResponse
from .services.audit import persist_event
from .services.connector import cleanup_client
from .services.debounce import build_debouncer
from .services.facebook import FacebookConversions
from .services.forwarder import BackgroundDispatcher
from .services.tenants import TenantResolver
from .utils.events import EventLog
from .utils.logger import info, warning

VERSION = "1.0.0"


def create_app(config=None) -> FastAPI:
    """创建应用；事件缓冲、去抖、后台发送等组件挂在 app.state 上"""
    config = config or CONFIG

    app = FastAPI(
        title="Attribution Relay",
        description="Ad click → install attribution relay",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    capacity = int(get_setting("events.capacity", 200, config))
    app.state.events = EventLog(capacity=capacity, sink=persist_event)
    app.state.debouncer = build_debouncer(debounce_settings(config))
    app.state.dispatcher = BackgroundDispatcher()
    app.state.tenants = TenantResolver(config)
    app.state.facebook = FacebookConversions(app.state.events, config)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """鉴权等依赖抛出的异常统一成 success/code/message"""
        return JSONResponse(
            status_code=exc.status_code,
            content=APIResponse(success=False, code=exc.status_code, message=str(exc.detail)).model_dump(),
            headers=getattr(exc, "headers", None),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """健康检查：数据库探测 + 去抖组件状态"""
        db_ok = False
        try:
            async def _probe_db():
                async with await get_session() as session:
                    await session.execute(text("SELECT 1"))
            await asyncio.wait_for(_probe_db(), timeout=1.5)
            db_ok = True
        except asyncio.TimeoutError:
            warning("Database health probe timed out")
        except Exception as e:
            warning(f"Database connectivity check failed: {e}")

        debouncer = request.app.state.debouncer
        debounce_ok = None
        if debouncer is not None:
            try:
                debounce_ok = await asyncio.wait_for(debouncer.ping(), timeout=0.5)
            except asyncio.TimeoutError:
                warning("Debouncer ping timed out")
                debounce_ok = False

        return HealthResponse(
            ok=db_ok,
            timestamp=int(time.time()),
            version=VERSION,
            db_ok=db_ok,
            debounce_ok=debounce_ok,
        )

    app.include_router(apple_router, tags=["Apple"])
    app.include_router(attribution_router, tags=["Attribution"])
    app.include_router(postback_router, tags=["Postback"])
    app.include_router(admin_router, tags=["Admin"])
    # 根路径放最后，避免吞掉其它路由
    app.include_router(click_router, tags=["Click"])

    @app.on_event("startup")
    async def startup_event():
        """应用启动事件 - 每个进程独立初始化"""
        pid = os.getpid()
        info(f"Attribution relay starting up in process {pid}...")

        try:
            async with await get_session() as session:
                await session.execute(text("SELECT 1"))
            info(f"Database connection preheated for process {pid}")
        except Exception as e:
            warning(f"Failed to preheat database connection: {e}")

        debouncer = app.state.debouncer
        if debouncer is not None:
            await debouncer.start()
        else:
            info(f"Click debounce disabled in process {pid}")

        await app.state.events.log("system", f"Server started (pid {pid})")

    @app.on_event("shutdown")
    async def shutdown_event():
        """应用关闭事件 - 每个进程独立清理"""
        pid = os.getpid()
        info(f"Attribution relay shutting down in process {pid}...")

        try:
            await app.state.dispatcher.drain()
        except Exception as e:
            warning(f"Dispatcher drain failed in process {pid}: {e}")

        try:
            await cleanup_client()
        except Exception as e:
            warning(f"HTTP client cleanup failed in process {pid}: {e}")

        if app.state.debouncer is not None:
            try:
                await app.state.debouncer.shutdown()
            except Exception as e:
                warning(f"Debouncer shutdown failed in process {pid}: {e}")

        try:
            await cleanup_old_engines()
        except Exception as e:
            warning(f"Database cleanup failed in process {pid}: {e}")

        info(f"Attribution relay shutdown complete in process {pid}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    enable_logging = os.getenv("ENABLE_LOGGING", "false").lower() in ("true", "1", "yes", "on")

    uvicorn.run(
        "attribution_relay.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="critical" if not enable_logging else "info",
        access_log=enable_logging,
    )
