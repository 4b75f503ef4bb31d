"""
漫画阅读器 - Web应用主文件

FastAPI应用的主入口，集成所有API路由和WebSocket处理。
/api/* 受固定的请求频率限制（slowapi），错误统一以 {"error": message} 返回。
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from core.bookmark_store import BookmarkError
from core.catalog_client import CatalogError
from core.config import config
from web.api import bookmarks, cache, chapter, image_proxy, manga, reader
from web.core_interface import CoreInterface, get_core_interface, set_core_interface
from web.reader_manager import cleanup_all_sessions
from web.websocket.handlers import websocket_endpoint
from utils import manga_logger as log


def create_app(interface: Optional[CoreInterface] = None, rate_limit: Optional[str] = None) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        interface: 替换全局 Core 接口（测试中注入内存存储和模拟上游）
        rate_limit: 覆盖配置中的请求频率限制，例如 "1000/minute"
    """
    if interface is not None:
        set_core_interface(interface)

    app = FastAPI(
        title="MangaDex Reader",
        description="MangaDex 漫画阅读器后端：目录代理、书签、离线缓存和阅读会话",
        version="1.0.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 请求频率限制
    limiter = Limiter(key_func=get_remote_address, default_limits=[rate_limit or config.rate_limit.value])
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)

    # ==================== 错误处理 ====================

    @app.exception_handler(RateLimitExceeded)
    def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        log.warning(f"请求过于频繁: {get_remote_address(request)} {request.url.path}")
        return JSONResponse(status_code=429,
                            content={"error": "Too many requests from this IP, please try again later."})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = "Route not found" if exc.status_code == 404 and exc.detail == "Not Found" else exc.detail
        return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        log.error(f"上游请求失败 {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(BookmarkError)
    async def bookmark_error_handler(request: Request, exc: BookmarkError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    # ==================== 生命周期 ====================

    @app.on_event("startup")
    async def startup_event():
        log.info("Web应用启动中...")
        get_core_interface()
        log.info("Web应用启动完成")

    @app.on_event("shutdown")
    async def shutdown_event():
        """应用关闭时的清理"""
        log.info("Web应用关闭中...")
        cleanup_all_sessions()
        await get_core_interface().close()
        log.info("Web应用已关闭")

    # ==================== 基础端点 ====================

    @app.get("/health")
    async def health_check():
        """健康检查接口"""
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/cache/clear")
    async def clear_upstream_cache():
        """清空上游响应缓存，仅开发环境可用"""
        if config.is_production():
            raise HTTPException(status_code=403, detail="Cache clearing is only available in development")
        get_core_interface().catalog_client.clear_cache()
        return {"message": "Cache cleared successfully"}

    # ==================== 路由注册 ====================

    app.include_router(manga.router, prefix="/api/manga", tags=["漫画"])
    app.include_router(chapter.router, prefix="/api/chapter", tags=["章节"])
    app.include_router(bookmarks.router, prefix="/api/bookmarks", tags=["书签"])
    app.include_router(cache.router, prefix="/api/offline", tags=["离线缓存"])
    app.include_router(reader.router, prefix="/api/reader", tags=["阅读器"])
    app.include_router(image_proxy.router, prefix="/api/image-proxy", tags=["图片代理"])

    limiter.exempt(health_check)
    # 页面图片请求数量与章节页数相关，不计入频率限制
    limiter.exempt(reader.get_blob)
    limiter.exempt(image_proxy.proxy_image)

    app.add_websocket_route("/ws", websocket_endpoint)
    log.info("API路由注册完成")
    return app


app = create_app()

__all__ = ["app", "create_app"]

if __name__ == "__main__":
    """直接运行时启动服务器"""
    log.info("直接运行 web/app.py, 启动uvicorn服务器...")
    uvicorn.run(
        "web.app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
