"""
阅读器 API 路由层

提供基于会话的章节阅读接口：
- 会话管理（创建、关闭、列表）
- 打开章节、翻页、输入事件分发
- 单页错误上报与重试
- 离线缓存、书签
- 会话内对象URL的数据读取
"""

import asyncio
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from pydantic import BaseModel

from core.bookmark_store import BookmarkError
from core.reader_session import ReaderSession
from web.auth import AuthUser, verify_auth
from web.core_interface import CoreInterface, get_core_interface
from web.reader_manager import (
    cleanup_session, get_active_sessions, get_dispatcher, get_reader_session,
    open_reader_session, resolve_blob, session_snapshot, to_http_url,
)
from utils import manga_logger as log

router = APIRouter()

# ==================== 数据模型 ====================

class OpenChapterRequest(BaseModel):
    """打开章节请求模型"""
    chapterId: str
    mangaId: Optional[str] = None
    mangaTitle: Optional[str] = None


class PageRequest(BaseModel):
    """单页操作请求模型"""
    page: int

# ==================== 辅助函数 ====================

def get_interface() -> CoreInterface:
    return get_core_interface()


def get_session_id_from_header(x_session_id: Optional[str] = Header(None)) -> str:
    """从请求头获取或生成会话ID"""
    if x_session_id:
        return x_session_id
    return str(uuid.uuid4())


def require_session(x_session_id: Optional[str] = Header(None)) -> ReaderSession:
    if not x_session_id:
        raise HTTPException(status_code=400, detail="缺少 X-Session-Id 请求头")
    session = get_reader_session(x_session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"会话不存在: {x_session_id}")
    return session

# ==================== 会话 ====================

@router.post("/session/create", dependencies=[Depends(verify_auth)])
async def create_session():
    """创建新的阅读会话ID，打开章节时通过 X-Session-Id 携带"""
    session_id = str(uuid.uuid4())
    log.info(f"创建新阅读会话: {session_id}")
    return {"success": True, "session_id": session_id}


@router.get("/session/list", dependencies=[Depends(verify_auth)])
async def list_sessions():
    sessions = get_active_sessions()
    return {"success": True, "sessions": sessions, "count": len(sessions)}


@router.delete("/session/{session_id}", dependencies=[Depends(verify_auth)])
async def delete_session(session_id: str):
    """删除阅读会话"""
    if not cleanup_session(session_id):
        raise HTTPException(status_code=404, detail=f"会话不存在: {session_id}")
    return {"success": True, "message": f"会话 {session_id} 已删除"}

# ==================== 章节 ====================

@router.post("/chapter/open", dependencies=[Depends(verify_auth)])
async def open_chapter(body: OpenChapterRequest, request: Request,
                       session_id: str = Depends(get_session_id_from_header),
                       interface: CoreInterface = Depends(get_interface)):
    """打开章节并完成首次加载；加载失败时返回 failed 状态而不是错误码"""
    session = open_reader_session(
        interface,
        body.chapterId,
        manga_id=body.mangaId,
        manga_title=body.mangaTitle,
        session_id=session_id,
        auth_token=getattr(request.state, "token", None),
    )
    await session.load()
    return session_snapshot(session)


@router.post("/chapter/retry", dependencies=[Depends(verify_auth)])
async def retry_chapter(session: ReaderSession = Depends(require_session)):
    """整章加载失败后重试"""
    await session.retry_load()
    return session_snapshot(session)


@router.get("/state", dependencies=[Depends(verify_auth)])
async def get_state(session: ReaderSession = Depends(require_session)):
    return session_snapshot(session)

# ==================== 翻页与输入 ====================

@router.post("/advance", dependencies=[Depends(verify_auth)])
async def advance(session: ReaderSession = Depends(require_session)):
    changed = session.advance()
    return {"changed": changed, "state": session_snapshot(session)}


@router.post("/retreat", dependencies=[Depends(verify_auth)])
async def retreat(session: ReaderSession = Depends(require_session)):
    changed = session.retreat()
    return {"changed": changed, "state": session_snapshot(session)}


@router.post("/input", dependencies=[Depends(verify_auth)])
async def dispatch_input(event: Dict[str, Any], session: ReaderSession = Depends(require_session)):
    """
    分发输入事件（键盘、滑动、点击、指针移动）

    关闭类输入会结束会话，响应中的 navigateTo 为跳转目标。
    """
    dispatcher = get_dispatcher(session.session_id)
    try:
        result = dispatcher.dispatch(event)
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result.navigate_to is not None:
        cleanup_session(session.session_id)
        return {**result.to_dict(), "state": None}
    return {**result.to_dict(), "state": session_snapshot(session)}

# ==================== 单页错误 ====================

@router.post("/page/error", dependencies=[Depends(verify_auth)])
async def report_page_error(body: PageRequest, session: ReaderSession = Depends(require_session)):
    session.report_page_error(body.page)
    return session_snapshot(session)


@router.post("/page/loaded", dependencies=[Depends(verify_auth)])
async def report_page_loaded(body: PageRequest, session: ReaderSession = Depends(require_session)):
    session.report_page_loaded(body.page)
    return session_snapshot(session)


@router.post("/page/retry", dependencies=[Depends(verify_auth)])
async def retry_page(body: PageRequest, session: ReaderSession = Depends(require_session)):
    """重试单页，返回附加防缓存标记后的地址"""
    url = session.retry_page(body.page)
    return {"url": to_http_url(url), "state": session_snapshot(session)}

# ==================== 离线缓存 / 书签 / 关闭 ====================

@router.post("/cache", dependencies=[Depends(verify_auth)])
async def cache_offline(session: ReaderSession = Depends(require_session)):
    """把当前章节写入离线缓存"""
    success = await session.request_offline_cache()
    report = session.last_cache_report
    return {
        "success": success,
        "report": report.to_dict() if report else None,
        "state": session_snapshot(session),
    }


@router.post("/bookmark")
async def bookmark_chapter(user: AuthUser = Depends(verify_auth),
                           session: ReaderSession = Depends(require_session),
                           interface: CoreInterface = Depends(get_interface)):
    """为当前章节添加书签"""
    try:
        payload = session.bookmark_payload()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        bookmark = await asyncio.to_thread(interface.bookmark_store.upsert, user.uid, payload)
    except BookmarkError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    log.info(f"会话 {session.session_id}: 已添加书签 {payload['chapterId']}")
    return {"success": True, "bookmark": bookmark}


@router.post("/close", dependencies=[Depends(verify_auth)])
async def close_reader(session: ReaderSession = Depends(require_session)):
    """关闭阅读器，返回跳转目标"""
    target = session.close_target()
    cleanup_session(session.session_id)
    return {"success": True, "navigateTo": target}

# ==================== 对象URL ====================

@router.get("/blob/{token}")
async def get_blob(token: str):
    """读取会话内对象URL的数据；令牌本身不可猜测，图片标签无法携带鉴权头"""
    resolved = resolve_blob(token)
    if resolved is None:
        raise HTTPException(status_code=404, detail="对象URL不存在或已撤销")
    blob, mime_type = resolved
    return Response(content=blob, media_type=mime_type, headers={"Cache-Control": "no-store"})
