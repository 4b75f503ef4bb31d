# core/catalog_client.py
"""
MangaDex 目录 API 客户端

- 基于 httpx.AsyncClient 访问上游 API
- 使用 cachetools.TTLCache 对响应做短时缓存（标签列表使用更长的 TTL）
- 提供将上游 JSON 整理为前端所需结构的辅助函数
"""

import json
from typing import Any, Dict, List, Optional

import httpx
from cachetools import TTLCache

from core.config import config
from utils import manga_logger as log

COVER_BASE_URL = "https://uploads.mangadex.org/covers"
UNKNOWN = "Unknown"


class CatalogError(Exception):
    """上游目录 API 请求失败"""
    def __init__(self, message: str, status_code: int = 502, payload: Any = None):
        self.message = message
        self.status_code = status_code
        self.payload = payload
        super().__init__(self.message)


def _flatten_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """将嵌套字典展开为 key[sub]=value 形式，例如 order[chapter]=desc"""
    flat: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[f"{key}[{sub_key}]"] = sub_value
        else:
            flat[key] = value
    return flat


def _cache_key(prefix: str, params: Optional[Dict[str, Any]] = None) -> str:
    if params is None:
        return prefix
    return f"{prefix}_{json.dumps(params, sort_keys=True, ensure_ascii=False)}"


# ==================== 响应整理 ====================

def find_relationship(entity: Dict[str, Any], rel_type: str) -> Optional[Dict[str, Any]]:
    for rel in entity.get("relationships") or []:
        if rel.get("type") == rel_type:
            return rel
    return None


def _related_name(entity: Dict[str, Any], rel_type: str) -> str:
    rel = find_relationship(entity, rel_type)
    if rel and rel.get("attributes") and rel["attributes"].get("name"):
        return rel["attributes"]["name"]
    return UNKNOWN


def get_cover_url(manga_id: str, file_name: Optional[str]) -> Optional[str]:
    """封面地址，文件名已包含扩展名"""
    if not file_name:
        return None
    return f"{COVER_BASE_URL}/{manga_id}/{file_name}"


def shape_manga(manga: Dict[str, Any]) -> Dict[str, Any]:
    cover_art = find_relationship(manga, "cover_art")
    cover_file = (cover_art.get("attributes") or {}).get("fileName") if cover_art else None
    return {
        "id": manga["id"],
        **(manga.get("attributes") or {}),
        "coverUrl": get_cover_url(manga["id"], cover_file) if cover_art else None,
        "author": _related_name(manga, "author"),
        "artist": _related_name(manga, "artist"),
    }


def shape_chapter(chapter: Dict[str, Any], include_manga_id: bool = False) -> Dict[str, Any]:
    result = {
        "id": chapter["id"],
        **(chapter.get("attributes") or {}),
        "scanlationGroup": _related_name(chapter, "scanlation_group"),
    }
    if include_manga_id:
        manga = find_relationship(chapter, "manga")
        result["mangaId"] = manga.get("id") if manga else None
    return result


def shape_tags(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {
            "id": tag["id"],
            "name": tag["attributes"]["name"],
            "group": tag["attributes"]["group"],
        }
        for tag in data.get("data", [])
    ]


def build_chapter_manifest(data: Dict[str, Any], quality: str = "data") -> Dict[str, Any]:
    """根据 at-home 服务器响应生成页面清单"""
    base_url = data["baseUrl"]
    chapter_hash = data["chapter"]["hash"]
    files = data["chapter"]["dataSaver"] if quality == "dataSaver" else data["chapter"]["data"]
    images = [
        {"url": f"{base_url}/{quality}/{chapter_hash}/{file_name}", "fileName": file_name}
        for file_name in files
    ]
    return {
        "baseUrl": base_url,
        "hash": chapter_hash,
        "images": images,
        "totalPages": len(images),
    }


# ==================== 客户端 ====================

class MangaDexClient:
    """上游目录 API 客户端，带短时响应缓存"""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 cache_ttl: Optional[int] = None, tags_cache_ttl: Optional[int] = None,
                 max_entries: Optional[int] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url or config.api_base_url.value
        self.timeout = timeout or config.api_request_timeout.value
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._cache: TTLCache = TTLCache(maxsize=max_entries or config.api_cache_max_entries.value,
                                         ttl=cache_ttl or config.api_cache_ttl.value)
        self._tags_cache: TTLCache = TTLCache(maxsize=4, ttl=tags_cache_ttl or config.api_tags_cache_ttl.value)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        log.info(f"MangaDex API Request: GET {path}")
        try:
            response = await self.client.get(path, params=_flatten_params(params or {}))
        except (httpx.RequestError, httpx.InvalidURL) as e:
            log.error(f"MangaDex API Error: 无响应 {path}: {e}")
            raise CatalogError(f"上游请求失败: {e}", 502)

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            log.error(f"MangaDex API Error: {response.status_code} {payload}")
            raise CatalogError(f"上游返回错误状态 {response.status_code}", response.status_code, payload)

        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"上游响应不是有效的JSON: {e}", 502)

    async def _cached_get(self, key: str, path: str, params: Optional[Dict[str, Any]] = None,
                          cache: Optional[TTLCache] = None) -> Dict[str, Any]:
        cache = self._cache if cache is None else cache
        cached = cache.get(key)
        if cached is not None:
            log.debug(f"返回缓存的上游响应: {key}")
            return cached
        data = await self._get(path, params)
        cache[key] = data
        return data

    async def search_manga(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._cached_get(_cache_key("search", params), "/manga", params)

    async def get_manga_by_id(self, manga_id: str,
                              includes: Optional[List[str]] = None) -> Dict[str, Any]:
        params = {"includes[]": includes or ["cover_art", "author", "artist"]}
        return await self._cached_get(f"manga_{manga_id}", f"/manga/{manga_id}", params)

    async def get_manga_feed(self, manga_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._cached_get(_cache_key(f"feed_{manga_id}", params), f"/manga/{manga_id}/feed", params)

    async def get_chapter_by_id(self, chapter_id: str,
                                includes: Optional[List[str]] = None) -> Dict[str, Any]:
        params = {"includes[]": includes or ["scanlation_group", "manga", "user"]}
        return await self._cached_get(f"chapter_{chapter_id}", f"/chapter/{chapter_id}", params)

    async def get_chapter_images(self, chapter_id: str) -> Dict[str, Any]:
        return await self._cached_get(f"images_{chapter_id}", f"/at-home/server/{chapter_id}")

    async def get_tags(self) -> Dict[str, Any]:
        return await self._cached_get("tags_all", "/manga/tag", cache=self._tags_cache)

    def clear_cache(self, key: Optional[str] = None) -> None:
        """清除指定键或全部缓存"""
        if key:
            self._cache.pop(key, None)
            self._tags_cache.pop(key, None)
        else:
            self._cache.clear()
            self._tags_cache.clear()
        log.info(f"上游响应缓存已清除: {key or '全部'}")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

