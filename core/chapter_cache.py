# core/chapter_cache.py
"""
离线章节缓存

将章节的每一页图片下载为二进制数据并整体持久化，供离线阅读：
- cache_chapter: 并发下载各页，失败的页单独丢弃，成功的页一次性写入
- get_cached_chapter: 读取章节，为每页签发新的会话级对象URL
- is_chapter_cached / remove_cached_chapter / clear_all_cached_chapters
- get_cache_size: 遍历统计占用空间

所有公开方法都不会向调用方抛出存储异常：失败时返回 False / None / 空结果，
并记录日志。内部通过 StorageResult 保留失败原因。
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import httpx

from core.object_urls import ObjectUrlRegistry, PageHandle, is_object_url
from core.storage import CHAPTERS_NS, StorageError, StorageInterface, StorageResult
from utils import manga_logger as log


class TransientFetchError(Exception):
    """单页/单个资源下载失败，只影响该资源本身"""
    def __init__(self, url: str, message: str, original_error: Exception = None):
        self.url = url
        self.message = message
        self.original_error = original_error
        super().__init__(f"{message}: {url}")


class CacheOutcome(Enum):
    FULL = "full"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class CacheReport:
    """cache_chapter 的详细结果，PARTIAL 表示部分页面下载失败被丢弃"""
    chapter_id: str
    outcome: CacheOutcome
    stored_pages: List[str] = field(default_factory=list)
    dropped_pages: List[str] = field(default_factory=list)
    error: Optional[StorageError] = None

    @property
    def success(self) -> bool:
        return self.outcome != CacheOutcome.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapterId": self.chapter_id,
            "outcome": self.outcome.value,
            "storedPages": self.stored_pages,
            "droppedPages": self.dropped_pages,
            "error": self.error.message if self.error else None,
        }


@dataclass
class CachedPage:
    """持久化的一页，blob 归缓存独占"""
    file_name: str
    blob: bytes
    source_url: str


@dataclass
class CachedChapter:
    chapter_id: str
    pages: List[CachedPage]
    cached_at: str

    def to_record(self) -> Dict[str, Any]:
        return {
            "images": [
                {"fileName": page.file_name, "blob": page.blob, "url": page.source_url}
                for page in self.pages
            ],
            "cachedAt": self.cached_at,
        }

    @classmethod
    def from_record(cls, chapter_id: str, record: Any) -> "CachedChapter":
        try:
            pages = [
                CachedPage(file_name=item["fileName"], blob=item["blob"], source_url=item.get("url", ""))
                for item in record["images"]
            ]
            cached_at = record["cachedAt"]
        except (KeyError, TypeError) as e:
            raise StorageError(f"章节 {chapter_id} 的缓存记录格式无效", e)
        if not pages or any(not isinstance(page.blob, bytes) or not page.blob for page in pages):
            raise StorageError(f"章节 {chapter_id} 的缓存记录不完整")
        return cls(chapter_id=chapter_id, pages=pages, cached_at=cached_at)

    @property
    def size_bytes(self) -> int:
        return sum(len(page.blob) for page in self.pages)


@dataclass
class ChapterSnapshot:
    """get_cached_chapter 的返回值：会话级句柄 + 缓存时间"""
    images: List[PageHandle]
    cached_at: str


@dataclass
class CacheSize:
    chapter_count: int = 0
    total_bytes: int = 0

    @property
    def size_mb(self) -> str:
        return f"{self.total_bytes / (1024 * 1024):.2f}"

    def to_dict(self) -> Dict[str, Any]:
        return {"chapters": self.chapter_count, "sizeBytes": self.total_bytes, "sizeMB": self.size_mb}


ManifestEntry = Union[PageHandle, Dict[str, Any]]


def _normalize_entry(entry: ManifestEntry) -> Tuple[str, str]:
    """返回 (fileName, url)"""
    if isinstance(entry, PageHandle):
        return entry.file_name, entry.url
    return entry["fileName"], entry["url"]


def _source_url(entry: ManifestEntry, url: str) -> str:
    # 从缓存读出的页面保留其原始远程地址
    if isinstance(entry, PageHandle) and entry.original_url:
        return entry.original_url
    if isinstance(entry, dict) and entry.get("originalUrl"):
        return entry["originalUrl"]
    return url


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class HttpxBytesFetcher:
    """通过 httpx 下载原始字节"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._timeout = timeout

    async def fetch(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                    response = await client.get(url)
            response.raise_for_status()
            return response.content
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransientFetchError(url, "下载页面失败", e)


class OfflineChapterCache:
    """离线章节缓存（chapters 命名空间）"""

    def __init__(self, storage: StorageInterface, fetcher=None):
        self.storage = storage
        self.fetcher = fetcher or HttpxBytesFetcher()

    # ==================== 内部：保留失败原因 ====================

    async def _run(self, operation, description: str) -> StorageResult:
        return await asyncio.to_thread(StorageResult.capture, operation, description)

    async def _read_chapter(self, chapter_id: str) -> StorageResult:
        def operation():
            record = self.storage.get(CHAPTERS_NS, chapter_id)
            if record is None:
                return None
            return CachedChapter.from_record(chapter_id, record)
        return await self._run(operation, f"读取缓存章节 {chapter_id} ")

    async def _fetch_page(self, entry: ManifestEntry,
                          registry: Optional[ObjectUrlRegistry]) -> Optional[CachedPage]:
        file_name, url = _normalize_entry(entry)
        try:
            if is_object_url(url):
                resolved = registry.resolve(url) if registry is not None else None
                if resolved is None:
                    raise TransientFetchError(url, "对象URL已失效")
                blob = resolved[0]
            else:
                blob = await self.fetcher.fetch(url)
        except TransientFetchError as e:
            log.error(f"缓存页面 {file_name} 失败: {e}")
            return None
        except Exception as e:
            # 单页失败不能影响其余页面
            log.error(f"缓存页面 {file_name} 时出现意外错误: {e!r}")
            return None
        if not blob:
            log.error(f"缓存页面 {file_name} 失败: 内容为空")
            return None
        return CachedPage(file_name=file_name, blob=blob, source_url=_source_url(entry, url))

    # ==================== 公开接口 ====================

    async def cache_chapter_detailed(self, chapter_id: str, manifest: Iterable[ManifestEntry],
                                     registry: Optional[ObjectUrlRegistry] = None) -> CacheReport:
        """
        下载并缓存章节，返回区分完整/部分/失败的详细结果

        Args:
            chapter_id: 章节ID
            manifest: 有序的 {fileName, url} 列表或 PageHandle 列表
            registry: 解析对象URL所用的会话注册表（缓存来源的会话再次缓存时需要）
        """
        entries = list(manifest)
        results = await asyncio.gather(*(self._fetch_page(entry, registry) for entry in entries))

        pages = [page for page in results if page is not None]
        dropped = [_normalize_entry(entry)[0] for entry, page in zip(entries, results) if page is None]

        if not pages:
            log.warning(f"章节 {chapter_id} 没有任何页面下载成功，不写入缓存")
            return CacheReport(chapter_id, CacheOutcome.FAILED, dropped_pages=dropped)

        chapter = CachedChapter(chapter_id=chapter_id, pages=pages, cached_at=utc_timestamp())
        record = chapter.to_record()
        result = await self._run(lambda: self.storage.set(CHAPTERS_NS, chapter_id, record),
                                 f"写入缓存章节 {chapter_id} ")
        if not result.ok:
            return CacheReport(chapter_id, CacheOutcome.FAILED, dropped_pages=dropped, error=result.error)

        outcome = CacheOutcome.PARTIAL if dropped else CacheOutcome.FULL
        if dropped:
            log.warning(f"章节 {chapter_id} 部分页面缓存失败: {dropped}")
        log.info(f"章节 {chapter_id} 已缓存 {len(pages)} 页")
        return CacheReport(chapter_id, outcome, stored_pages=[page.file_name for page in pages], dropped_pages=dropped)

    async def cache_chapter(self, chapter_id: str, manifest: Iterable[ManifestEntry],
                            registry: Optional[ObjectUrlRegistry] = None) -> bool:
        """缓存章节；部分页面失败仍视为成功，全部失败或存储失败返回 False"""
        report = await self.cache_chapter_detailed(chapter_id, manifest, registry)
        return report.success

    async def get_cached_chapter(self, chapter_id: str,
                                 registry: ObjectUrlRegistry) -> Optional[ChapterSnapshot]:
        """
        读取缓存章节

        每次调用都会在 registry 中签发新的对象URL，句柄只在该会话内有效。
        未命中或读取失败时返回 None。
        """
        result = await self._read_chapter(chapter_id)
        if not result.ok or result.value is None:
            return None

        chapter: CachedChapter = result.value
        images = [
            PageHandle(
                url=registry.create_object_url(page.blob),
                file_name=page.file_name,
                original_url=page.source_url,
                cached=True,
            )
            for page in chapter.pages
        ]
        return ChapterSnapshot(images=images, cached_at=chapter.cached_at)

    async def is_chapter_cached(self, chapter_id: str) -> bool:
        result = await self._run(lambda: self.storage.keys(CHAPTERS_NS), "检查缓存状态")
        return result.ok and chapter_id in result.value

    async def get_cached_chapter_ids(self) -> List[str]:
        result = await self._run(lambda: self.storage.keys(CHAPTERS_NS), "获取缓存章节列表")
        return result.value if result.ok else []

    async def remove_cached_chapter(self, chapter_id: str) -> bool:
        result = await self._run(lambda: self.storage.remove(CHAPTERS_NS, chapter_id),
                                 f"删除缓存章节 {chapter_id} ")
        return result.ok

    async def clear_all_cached_chapters(self) -> bool:
        result = await self._run(lambda: self.storage.clear(CHAPTERS_NS), "清空缓存章节")
        return result.ok

    async def get_cache_size(self) -> CacheSize:
        def operation():
            size = CacheSize()
            for key in self.storage.keys(CHAPTERS_NS):
                try:
                    record = self.storage.get(CHAPTERS_NS, key)
                    if record is None:
                        continue
                    chapter = CachedChapter.from_record(key, record)
                except StorageError as e:
                    log.warning(f"跳过无法读取的缓存章节 {key}: {e}")
                    continue
                size.chapter_count += 1
                size.total_bytes += chapter.size_bytes
            return size

        result = await self._run(operation, "计算缓存大小")
        return result.value if result.ok else CacheSize()
