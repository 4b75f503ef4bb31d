# 核心业务逻辑模块
# 包含离线存储、上游客户端、阅读会话状态机和输入分发

from .config import config
from .storage import StorageError, SqliteStorage, MemoryStorage
from .chapter_cache import OfflineChapterCache, CacheOutcome, CacheReport
from .metadata_cache import MetadataCache
from .catalog_client import MangaDexClient, CatalogError
from .reader_session import ReaderSession, ReaderState
from .input_dispatch import InputDispatcher

__all__ = [
    'config',
    'StorageError',
    'SqliteStorage',
    'MemoryStorage',
    'OfflineChapterCache',
    'CacheOutcome',
    'CacheReport',
    'MetadataCache',
    'MangaDexClient',
    'CatalogError',
    'ReaderSession',
    'ReaderState',
    'InputDispatcher',
]
