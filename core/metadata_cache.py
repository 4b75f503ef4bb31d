# core/metadata_cache.py
"""漫画元数据缓存（metadata 命名空间，键为 manga_<id>），无过期策略。"""

import asyncio
from typing import Any, Dict, Optional

from core.storage import METADATA_NS, StorageInterface, StorageResult
from core.chapter_cache import utc_timestamp


def metadata_key(manga_id: str) -> str:
    return f"manga_{manga_id}"


class MetadataCache:

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    async def cache_manga_metadata(self, manga_id: str, data: Dict[str, Any]) -> bool:
        record = {**data, "cachedAt": utc_timestamp()}
        result = await asyncio.to_thread(
            StorageResult.capture,
            lambda: self.storage.set(METADATA_NS, metadata_key(manga_id), record),
            f"缓存漫画元数据 {manga_id} ",
        )
        return result.ok

    async def get_cached_manga_metadata(self, manga_id: str) -> Optional[Dict[str, Any]]:
        result = await asyncio.to_thread(
            StorageResult.capture,
            lambda: self.storage.get(METADATA_NS, metadata_key(manga_id)),
            f"读取漫画元数据 {manga_id} ",
        )
        return result.value if result.ok else None

    async def remove_manga_metadata(self, manga_id: str) -> bool:
        result = await asyncio.to_thread(
            StorageResult.capture,
            lambda: self.storage.remove(METADATA_NS, metadata_key(manga_id)),
            f"删除漫画元数据 {manga_id} ",
        )
        return result.ok
