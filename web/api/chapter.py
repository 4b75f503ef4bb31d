"""章节 API：章节详情与 MangaDex@Home 页面清单"""

from typing import Literal

from fastapi import APIRouter, Depends, Query

from core.chapter_source import LocalChapterSource
from web.auth import verify_auth
from web.core_interface import CoreInterface, get_core_interface

router = APIRouter(dependencies=[Depends(verify_auth)])


def get_interface() -> CoreInterface:
    return get_core_interface()


@router.get("/{chapter_id}")
async def get_chapter(chapter_id: str, interface: CoreInterface = Depends(get_interface)):
    """获取章节详情"""
    return await LocalChapterSource(interface.catalog_client).get_chapter_metadata(chapter_id)


@router.get("/{chapter_id}/images")
async def get_chapter_images(chapter_id: str,
                             quality: Literal["data", "dataSaver"] = Query("data"),
                             interface: CoreInterface = Depends(get_interface)):
    """获取章节页面清单；quality=dataSaver 时返回压缩图"""
    source = LocalChapterSource(interface.catalog_client)
    return await source.get_chapter_images(chapter_id, quality)
