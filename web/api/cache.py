"""
离线缓存管理 API

离线章节和漫画元数据保存在本地存储中，本模块提供查看、统计和删除接口。
存储层失败时核心模块只返回 False / 空结果，这里再转换为 500。
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from web.auth import verify_auth
from web.core_interface import CoreInterface, get_core_interface
from utils import manga_logger as log

router = APIRouter(dependencies=[Depends(verify_auth)])


def get_interface() -> CoreInterface:
    return get_core_interface()


@router.get("/health")
async def cache_health():
    """缓存模块健康检查"""
    return {"status": "healthy", "module": "offline"}


@router.get("/chapters")
async def list_cached_chapters(interface: CoreInterface = Depends(get_interface)):
    """获取已离线缓存的章节ID列表"""
    chapter_ids = await interface.offline_cache.get_cached_chapter_ids()
    return {"chapters": chapter_ids, "count": len(chapter_ids)}


@router.get("/size")
async def get_cache_size(interface: CoreInterface = Depends(get_interface)):
    """获取离线缓存占用空间"""
    size = await interface.offline_cache.get_cache_size()
    return size.to_dict()


@router.get("/chapters/{chapter_id}/status")
async def get_chapter_status(chapter_id: str, interface: CoreInterface = Depends(get_interface)):
    cached = await interface.offline_cache.is_chapter_cached(chapter_id)
    return {"chapterId": chapter_id, "cached": cached}


@router.delete("/chapters/{chapter_id}")
async def remove_cached_chapter(chapter_id: str, interface: CoreInterface = Depends(get_interface)):
    """删除单个离线章节"""
    if not await interface.offline_cache.remove_cached_chapter(chapter_id):
        raise HTTPException(status_code=500, detail=f"删除缓存章节失败: {chapter_id}")
    log.info(f"已删除离线章节: {chapter_id}")
    return {"success": True, "message": f"章节 {chapter_id} 已从离线缓存删除"}


@router.delete("/chapters")
async def clear_cached_chapters(interface: CoreInterface = Depends(get_interface)):
    """清空全部离线章节"""
    if not await interface.offline_cache.clear_all_cached_chapters():
        raise HTTPException(status_code=500, detail="清空离线缓存失败")
    log.info("离线缓存已清空")
    return {"success": True, "message": "离线缓存已清空"}


@router.get("/metadata/{manga_id}")
async def get_manga_metadata(manga_id: str, interface: CoreInterface = Depends(get_interface)):
    """读取离线保存的漫画元数据"""
    data = await interface.metadata_cache.get_cached_manga_metadata(manga_id)
    if data is None:
        raise HTTPException(status_code=404, detail=f"未缓存的漫画: {manga_id}")
    return data


@router.put("/metadata/{manga_id}")
async def put_manga_metadata(manga_id: str, data: Dict[str, Any],
                             interface: CoreInterface = Depends(get_interface)):
    if not await interface.metadata_cache.cache_manga_metadata(manga_id, data):
        raise HTTPException(status_code=500, detail=f"保存漫画元数据失败: {manga_id}")
    return {"success": True}


@router.delete("/metadata/{manga_id}")
async def delete_manga_metadata(manga_id: str, interface: CoreInterface = Depends(get_interface)):
    if not await interface.metadata_cache.remove_manga_metadata(manga_id):
        raise HTTPException(status_code=500, detail=f"删除漫画元数据失败: {manga_id}")
    return {"success": True}
