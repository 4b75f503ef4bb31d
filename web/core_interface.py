"""
Web 层与 Core 模块的统一接口层

这个接口层负责：
1. 懒加载并持有 core 模块中的共享实例（离线存储、上游客户端、书签存储）
2. 统一错误处理
3. 为路由提供可替换的依赖（测试中可注入内存存储和模拟上游）
"""

from typing import Optional

from core.bookmark_store import BookmarkStore
from core.catalog_client import MangaDexClient
from core.chapter_cache import HttpxBytesFetcher, OfflineChapterCache
from core.config import config
from core.metadata_cache import MetadataCache
from core.storage import SqliteStorage, StorageError, StorageInterface
from utils import manga_logger as log


class CoreInterfaceError(Exception):
    """接口层专用异常"""
    def __init__(self, message: str, original_error: Exception = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


class CoreInterface:
    """Web 层与 Core 模块的统一接口"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 catalog_client: Optional[MangaDexClient] = None,
                 bookmark_store: Optional[BookmarkStore] = None,
                 fetcher=None):
        self._storage = storage
        self._catalog_client = catalog_client
        self._bookmark_store = bookmark_store
        self._fetcher = fetcher
        self._offline_cache: Optional[OfflineChapterCache] = None
        self._metadata_cache: Optional[MetadataCache] = None

    @property
    def storage(self) -> StorageInterface:
        """离线存储（懒加载）"""
        if self._storage is None:
            try:
                self._storage = SqliteStorage(config.database_path.value)
            except StorageError as e:
                log.error(f"离线存储初始化失败: {e}")
                raise CoreInterfaceError("离线存储初始化失败", e)
        return self._storage

    @property
    def offline_cache(self) -> OfflineChapterCache:
        if self._offline_cache is None:
            self._offline_cache = OfflineChapterCache(self.storage, self._fetcher or HttpxBytesFetcher())
        return self._offline_cache

    @property
    def metadata_cache(self) -> MetadataCache:
        if self._metadata_cache is None:
            self._metadata_cache = MetadataCache(self.storage)
        return self._metadata_cache

    @property
    def catalog_client(self) -> MangaDexClient:
        if self._catalog_client is None:
            self._catalog_client = MangaDexClient()
        return self._catalog_client

    @property
    def bookmark_store(self) -> BookmarkStore:
        if self._bookmark_store is None:
            try:
                self._bookmark_store = BookmarkStore(config.bookmark_database_path.value)
            except OSError as e:
                log.error(f"书签存储初始化失败: {e}")
                raise CoreInterfaceError("书签存储初始化失败", e)
        return self._bookmark_store

    async def close(self) -> None:
        """释放所有资源"""
        if self._catalog_client is not None:
            await self._catalog_client.aclose()
        if self._storage is not None:
            self._storage.close()
        if self._bookmark_store is not None:
            self._bookmark_store.close()
        log.info("Core接口已关闭")


_core_interface: Optional[CoreInterface] = None


def get_core_interface() -> CoreInterface:
    """获取全局Core接口实例"""
    global _core_interface
    if _core_interface is None:
        _core_interface = CoreInterface()
    return _core_interface


def set_core_interface(interface: Optional[CoreInterface]) -> None:
    """替换全局Core接口实例（主要用于测试）"""
    global _core_interface
    _core_interface = interface


__all__ = [
    'CoreInterface',
    'CoreInterfaceError',
    'get_core_interface',
    'set_core_interface',
]
