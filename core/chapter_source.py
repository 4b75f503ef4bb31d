# core/chapter_source.py
"""
阅读器使用的章节数据来源

ChapterSource 只暴露阅读器需要的两个操作：
- get_chapter_metadata(chapter_id) -> {chapter, title, scanlationGroup, mangaId, ...}
- get_chapter_images(chapter_id, quality) -> {baseUrl, hash, images: [{url, fileName}], totalPages}

两种实现：
- LocalChapterSource: 进程内直接调用 MangaDexClient
- BackendApiClient: 通过 HTTP 调用本服务的 /api 接口，鉴权 token 由构造时传入的 token_provider 提供
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx

from core.catalog_client import CatalogError, MangaDexClient, build_chapter_manifest, shape_chapter
from utils import manga_logger as log

TokenProvider = Callable[[], Optional[str]]


class ChapterSource(ABC):

    @abstractmethod
    async def get_chapter_metadata(self, chapter_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_chapter_images(self, chapter_id: str, quality: str = "data") -> Dict[str, Any]:
        pass


class LocalChapterSource(ChapterSource):
    """在进程内复用上游客户端（及其响应缓存）"""

    def __init__(self, client: MangaDexClient):
        self.client = client

    async def get_chapter_metadata(self, chapter_id: str) -> Dict[str, Any]:
        data = await self.client.get_chapter_by_id(chapter_id)
        try:
            return shape_chapter(data["data"], include_manga_id=True)
        except (KeyError, TypeError) as e:
            raise CatalogError(f"章节 {chapter_id} 的上游数据格式无效: {e}")

    async def get_chapter_images(self, chapter_id: str, quality: str = "data") -> Dict[str, Any]:
        data = await self.client.get_chapter_images(chapter_id)
        try:
            return build_chapter_manifest(data, quality)
        except (KeyError, TypeError) as e:
            raise CatalogError(f"章节 {chapter_id} 的页面清单格式无效: {e}")


class BackendApiClient(ChapterSource):
    """本服务 /api 接口的 HTTP 客户端"""

    def __init__(self, base_url: str, token_provider: Optional[TokenProvider] = None,
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/") + "/api"
        self.token_provider = token_provider
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    def _headers(self, path: str) -> Dict[str, str]:
        token = self.token_provider() if self.token_provider else None
        if not token:
            log.warning(f"[API] 请求 {path} 时没有可用的鉴权 token")
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, headers=self._headers(path), **kwargs)
        except (httpx.RequestError, httpx.InvalidURL) as e:
            log.error(f"Network Error: 未收到响应 {path}: {e}")
            raise CatalogError(f"请求 {path} 失败: {e}", 502)
        if response.status_code >= 400:
            log.error(f"API Error: {response.status_code} {response.text}")
            raise CatalogError(f"请求 {path} 返回 {response.status_code}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            log.error(f"API Error: {path} 返回了无法解析的响应: {e}")
            raise CatalogError(f"请求 {path} 返回了无效的JSON", 502)

    async def get_chapter_metadata(self, chapter_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/chapter/{chapter_id}")

    async def get_chapter_images(self, chapter_id: str, quality: str = "data") -> Dict[str, Any]:
        return await self._request("GET", f"/chapter/{chapter_id}/images", params={"quality": quality})

    async def aclose(self) -> None:
        await self._client.aclose()
