"""
阅读会话管理器

按会话ID保存阅读会话及其输入分发器，负责会话的创建、查找与清理。
章节数据来源：
- 默认在进程内调用上游客户端
- 配置了 Reader.BackendUrl 时，通过 HTTP 调用远程后端，并携带创建会话时的鉴权 token
"""

import asyncio
import threading
import uuid
from typing import Any, Dict, List, Optional, Tuple

from core.chapter_source import BackendApiClient, ChapterSource, LocalChapterSource
from core.config import config
from core.input_dispatch import InputDispatcher
from core.object_urls import OBJECT_URL_SCHEME, is_object_url
from core.reader_session import ReaderSession
from web.core_interface import CoreInterface
from utils import manga_logger as log

_sessions: Dict[str, ReaderSession] = {}
_dispatchers: Dict[str, InputDispatcher] = {}
_session_lock = threading.RLock()


def _build_chapter_source(interface: CoreInterface, auth_token: Optional[str]) -> ChapterSource:
    backend_url = config.reader_backend_url.value
    if backend_url:
        return BackendApiClient(backend_url, token_provider=lambda: auth_token)
    return LocalChapterSource(interface.catalog_client)


def open_reader_session(interface: CoreInterface, chapter_id: str, manga_id: Optional[str] = None,
                        manga_title: Optional[str] = None, session_id: Optional[str] = None,
                        auth_token: Optional[str] = None, **session_kwargs) -> ReaderSession:
    """
    打开章节；同一会话ID切换章节时，旧会话被丢弃并清理
    """
    session_id = session_id or str(uuid.uuid4())
    session = ReaderSession(
        chapter_id,
        source=_build_chapter_source(interface, auth_token),
        cache=interface.offline_cache,
        manga_id=manga_id,
        manga_title=manga_title,
        session_id=session_id,
        **session_kwargs,
    )
    with _session_lock:
        previous = _sessions.pop(session_id, None)
        _dispatchers.pop(session_id, None)
        _sessions[session_id] = session
        _dispatchers[session_id] = InputDispatcher(session)
    if previous is not None:
        previous.teardown()
        _release_source(previous)
    log.info(f"会话 {session_id}: 打开章节 {chapter_id}")
    return session


def get_reader_session(session_id: str) -> Optional[ReaderSession]:
    with _session_lock:
        return _sessions.get(session_id)


def get_dispatcher(session_id: str) -> Optional[InputDispatcher]:
    with _session_lock:
        return _dispatchers.get(session_id)


def _release_source(session: ReaderSession) -> None:
    # 远程后端客户端持有连接池，需要在事件循环中关闭
    if not isinstance(session.source, BackendApiClient):
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    loop.create_task(session.source.aclose())


def cleanup_session(session_id: str) -> bool:
    """清理指定会话"""
    with _session_lock:
        session = _sessions.pop(session_id, None)
        _dispatchers.pop(session_id, None)
    if session is None:
        return False
    session.teardown()
    _release_source(session)
    log.info(f"会话已清理: {session_id}")
    return True


def cleanup_all_sessions() -> None:
    for session_id in get_active_sessions():
        cleanup_session(session_id)


def get_active_sessions() -> List[str]:
    """获取活跃会话列表"""
    with _session_lock:
        return list(_sessions.keys())


# ==================== 对外状态 ====================

BLOB_ROUTE = "/api/reader/blob/"


def to_http_url(url: Optional[str]) -> Optional[str]:
    """把会话内的对象URL(blob:<token>)映射为可由浏览器请求的地址"""
    if url and is_object_url(url):
        return BLOB_ROUTE + url[len(OBJECT_URL_SCHEME):]
    return url


def session_snapshot(session: ReaderSession) -> Dict[str, Any]:
    """会话状态快照，对象URL已替换为 HTTP 地址"""
    state = session.to_dict()
    for image in state["images"]:
        image["url"] = to_http_url(image["url"])
    state["currentImageUrl"] = to_http_url(state["currentImageUrl"])
    return state


def resolve_blob(token: str) -> Optional[Tuple[bytes, str]]:
    """在所有活跃会话中查找对象URL对应的数据，已撤销时返回 None"""
    with _session_lock:
        sessions = list(_sessions.values())
    for session in sessions:
        resolved = session.registry.resolve(token)
        if resolved is not None:
            return resolved
    return None
