"""
漫画目录 API

代理上游 MangaDex 的搜索、详情、章节列表和标签接口，
并把响应整理为前端使用的结构（封面地址、作者、画师等）。
"""

import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from core.catalog_client import shape_chapter, shape_manga, shape_tags
from web.auth import verify_auth
from web.core_interface import CoreInterface, get_core_interface

router = APIRouter(dependencies=[Depends(verify_auth)])

# 列表型查询参数：客户端可能使用 name 或 name[] 两种形式
ARRAY_FILTERS = {
    "includedTags": "includedTags[]",
    "excludedTags": "excludedTags[]",
    "status": "status[]",
    "publicationDemographic": "publicationDemographic[]",
    "contentRating": "contentRating[]",
}


def get_interface() -> CoreInterface:
    """获取Core接口实例"""
    return get_core_interface()


def _multi(request: Request, name: str) -> List[str]:
    return request.query_params.getlist(name) + request.query_params.getlist(f"{name}[]")


def _parse_int(value: Optional[str], default: int, name: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name}: {value}")


def _parse_order(value: str) -> Dict[str, Any]:
    try:
        order = json.loads(value)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail=f"Invalid order: {value}")
    if not isinstance(order, dict):
        raise HTTPException(status_code=400, detail=f"Invalid order: {value}")
    return order


@router.get("/search")
async def search_manga(request: Request, interface: CoreInterface = Depends(get_interface)):
    """带筛选条件搜索漫画，只返回有英文翻译的作品"""
    query = request.query_params
    params: Dict[str, Any] = {
        "limit": _parse_int(query.get("limit"), 20, "limit"),
        "offset": _parse_int(query.get("offset"), 0, "offset"),
        "availableTranslatedLanguage[]": ["en"],
        "includes[]": ["cover_art", "author", "artist"],
    }
    if query.get("title"):
        params["title"] = query["title"]
    for name, upstream_name in ARRAY_FILTERS.items():
        values = _multi(request, name)
        if values:
            params[upstream_name] = values
    if query.get("order"):
        params["order"] = _parse_order(query["order"])

    data = await interface.catalog_client.search_manga(params)
    return {
        "data": [shape_manga(manga) for manga in data.get("data", [])],
        "limit": data.get("limit"),
        "offset": data.get("offset"),
        "total": data.get("total"),
    }


@router.get("/tags/all")
async def get_tags(interface: CoreInterface = Depends(get_interface)):
    """获取所有可用标签"""
    data = await interface.catalog_client.get_tags()
    return shape_tags(data)


@router.get("/{manga_id}")
async def get_manga(manga_id: str, interface: CoreInterface = Depends(get_interface)):
    """获取漫画详情"""
    data = await interface.catalog_client.get_manga_by_id(manga_id)
    return shape_manga(data["data"])


@router.get("/{manga_id}/feed")
async def get_manga_feed(manga_id: str, request: Request, interface: CoreInterface = Depends(get_interface)):
    """获取漫画章节列表"""
    query = request.query_params
    params = {
        "limit": _parse_int(query.get("limit"), 100, "limit"),
        "offset": _parse_int(query.get("offset"), 0, "offset"),
        "translatedLanguage[]": query.get("translatedLanguage", "en"),
        "includes[]": ["scanlation_group"],
        "order": _parse_order(query.get("order", '{"chapter":"desc"}')),
    }
    data = await interface.catalog_client.get_manga_feed(manga_id, params)
    return {
        "data": [shape_chapter(chapter) for chapter in data.get("data", [])],
        "limit": data.get("limit"),
        "offset": data.get("offset"),
        "total": data.get("total"),
    }
