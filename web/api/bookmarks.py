"""书签 API：当前用户的书签增删改查"""

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from core.bookmark_store import BookmarkError
from web.auth import AuthUser, verify_auth
from web.core_interface import CoreInterface, get_core_interface

router = APIRouter()


class BookmarkRequest(BaseModel):
    """创建书签请求模型"""
    mangaId: Optional[str] = None
    mangaTitle: Optional[str] = None
    coverUrl: Optional[str] = None
    chapterId: Optional[str] = None
    chapterNumber: Optional[str] = None
    chapterTitle: Optional[str] = None
    totalPages: Optional[int] = None


def get_interface() -> CoreInterface:
    return get_core_interface()


async def _call(func, *args):
    try:
        return await asyncio.to_thread(func, *args)
    except BookmarkError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("")
async def list_bookmarks(user: AuthUser = Depends(verify_auth), interface: CoreInterface = Depends(get_interface)):
    return await _call(interface.bookmark_store.list_for_user, user.uid)


@router.post("")
async def create_bookmark(request: BookmarkRequest, user: AuthUser = Depends(verify_auth),
                          interface: CoreInterface = Depends(get_interface)):
    return await _call(interface.bookmark_store.upsert, user.uid, request.model_dump())


@router.put("/{bookmark_id}")
async def update_bookmark(bookmark_id: str, updates: Dict[str, Any], user: AuthUser = Depends(verify_auth),
                          interface: CoreInterface = Depends(get_interface)):
    return await _call(interface.bookmark_store.update, user.uid, bookmark_id, updates)


@router.delete("/{bookmark_id}")
async def delete_bookmark(bookmark_id: str, user: AuthUser = Depends(verify_auth),
                          interface: CoreInterface = Depends(get_interface)):
    await _call(interface.bookmark_store.delete, user.uid, bookmark_id)
    return {"message": "Bookmark deleted successfully"}


@router.get("/manga/{manga_id}")
async def check_manga_bookmark(manga_id: str, user: AuthUser = Depends(verify_auth),
                               interface: CoreInterface = Depends(get_interface)):
    """检查漫画是否已加入书签"""
    bookmark = await _call(interface.bookmark_store.find_for_manga, user.uid, manga_id)
    return {"bookmarked": bookmark is not None, "bookmark": bookmark}
