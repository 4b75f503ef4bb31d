# core/reader_session.py
"""
阅读会话状态机 - 一个打开的章节对应一个会话

负责：
- 章节加载：优先读取离线缓存，未命中时并发获取章节信息和页面清单
- 翻页：advance / retreat，边界处为空操作
- 预载：当前页之后的若干页以"发出即忘"的方式加载，失败静默忽略
- 单页错误：当前显示页加载失败时记录，可单独重试（附加防缓存标记）
- 离线缓存：用户主动触发时，以当前已加载的页面列表做一次快照缓存

状态：IDLE -> LOADING -> READY -> (READING | ERRORING)
      LOADING 失败 -> FAILED（只能重试回到 LOADING）
      页面列表为空 -> EMPTY（只能关闭）
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from core.catalog_client import CatalogError
from core.chapter_cache import CacheReport, OfflineChapterCache, TransientFetchError
from core.chapter_source import ChapterSource
from core.config import config
from core.controls import ControlsController
from core.object_urls import ObjectUrlRegistry, PageHandle, is_object_url
from utils import manga_logger as log


class ReaderState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    READING = "reading"
    ERRORING = "erroring"
    FAILED = "failed"
    EMPTY = "empty"


class ManifestLoadError(Exception):
    """整章加载失败"""
    def __init__(self, chapter_id: str, message: str, original_error: Exception = None):
        self.chapter_id = chapter_id
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


LOAD_FAILED_MESSAGE = "Failed to load chapter. Please try again."
NO_PAGES_MESSAGE = "No images found for this chapter."
NAVIGATE_BACK = "back"


def cache_bust(url: str) -> str:
    """附加唯一标记，绕过浏览器/上游对失败请求的负缓存"""
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}retry={uuid.uuid4().hex}"


class HttpImageLoader:
    """
    页面图片加载器

    远程地址通过 fetcher 下载（丢弃内容，仅用于确认可加载并预热上游缓存），
    对象URL在会话注册表中解析。
    """

    def __init__(self, fetcher, registry: ObjectUrlRegistry):
        self.fetcher = fetcher
        self.registry = registry

    async def load(self, url: str) -> None:
        if is_object_url(url):
            if self.registry.resolve(url) is None:
                raise TransientFetchError(url, "对象URL已失效")
            return
        await self.fetcher.fetch(url)


class ReaderSession:
    """阅读会话"""

    def __init__(self, chapter_id: str, source: ChapterSource, cache: OfflineChapterCache,
                 manga_id: Optional[str] = None, manga_title: Optional[str] = None,
                 session_id: Optional[str] = None, image_loader=None,
                 controls: Optional[ControlsController] = None, quality: Optional[str] = None,
                 prefetch_count: Optional[int] = None,
                 scroll_to_top: Optional[Callable[[], None]] = None):
        self.session_id = session_id or str(uuid.uuid4())
        self.chapter_id = chapter_id
        self.manga_id = manga_id
        self.manga_title = manga_title
        self.source = source
        self.cache = cache
        self.registry = ObjectUrlRegistry(owner=self.session_id)
        self.image_loader = image_loader if image_loader is not None else HttpImageLoader(cache.fetcher, self.registry)
        self.controls = controls or ControlsController()
        self.quality = quality or config.image_quality.value
        self.prefetch_count = config.prefetch_count.value if prefetch_count is None else prefetch_count
        self.scroll_to_top = scroll_to_top

        self.state = ReaderState.IDLE
        self.images: List[PageHandle] = []
        self.current_page = 0
        self.prefetched: Set[int] = set()
        self.page_errors: Set[int] = set()
        self.chapter: Optional[Dict[str, Any]] = None
        self.error: Optional[ManifestLoadError] = None
        self.is_cached = False
        self.cache_sourced = False
        self.cached_at: Optional[str] = None
        self.caching = False
        self.last_cache_report: Optional[CacheReport] = None
        self.closed = False

        self._generation = 0
        self._prefetching: Set[int] = set()
        self._display_urls: Dict[int, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Callable[["ReaderSession"], None]] = []

        self.controls.add_listener(lambda _visible: self._notify())

    # ==================== 监听 ====================

    def add_listener(self, listener: Callable[["ReaderSession"], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[["ReaderSession"], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    @property
    def controls_visible(self) -> bool:
        return self.controls.visible

    # ==================== 加载 ====================

    async def load(self) -> ReaderState:
        """加载章节；重复调用时只有最后一次的结果生效"""
        self._generation += 1
        generation = self._generation
        self.state = ReaderState.LOADING
        self.error = None
        self.controls.show_temporarily()
        self._notify()

        snapshot = await self.cache.get_cached_chapter(self.chapter_id, self.registry)
        if generation != self._generation:
            if snapshot:
                for handle in snapshot.images:
                    self.registry.revoke(handle.url)
            return self.state

        if snapshot:
            log.info(f"会话 {self.session_id}: 从离线缓存加载章节 {self.chapter_id}")
            self.cached_at = snapshot.cached_at
            self._apply_images(snapshot.images, cache_sourced=True)
            return self.state

        try:
            chapter, manifest = await asyncio.gather(
                self.source.get_chapter_metadata(self.chapter_id),
                self.source.get_chapter_images(self.chapter_id, self.quality),
            )
            images = [PageHandle(url=item["url"], file_name=item["fileName"]) for item in manifest["images"]]
        except (CatalogError, KeyError, TypeError) as e:
            if generation != self._generation:
                return self.state
            log.error(f"会话 {self.session_id}: 加载章节 {self.chapter_id} 失败: {e}")
            self.error = ManifestLoadError(self.chapter_id, LOAD_FAILED_MESSAGE, e)
            self.state = ReaderState.FAILED
            self._notify()
            return self.state

        if generation != self._generation:
            return self.state

        self.chapter = chapter
        if not self.manga_id and chapter.get("mangaId"):
            self.manga_id = chapter["mangaId"]
        self._apply_images(images, cache_sourced=False)
        self.is_cached = await self.cache.is_chapter_cached(self.chapter_id)
        self._notify()
        return self.state

    async def retry_load(self) -> ReaderState:
        """FAILED 状态下唯一的恢复操作"""
        return await self.load()

    def _apply_images(self, images: List[PageHandle], cache_sourced: bool) -> None:
        for handle in self.images:
            if handle.cached:
                self.registry.revoke(handle.url)
        self.images = images
        self.cache_sourced = cache_sourced
        self.is_cached = cache_sourced
        self.current_page = 0
        self.prefetched.clear()
        self.page_errors.clear()
        self._prefetching.clear()
        self._display_urls.clear()
        self.state = ReaderState.READY if images else ReaderState.EMPTY
        if images:
            self._schedule_prefetch()
        self._notify()

    # ==================== 翻页 ====================

    def advance(self) -> bool:
        if not self.images or self.current_page >= len(self.images) - 1:
            return False
        self.current_page += 1
        self._page_changed()
        return True

    def retreat(self) -> bool:
        if not self.images or self.current_page <= 0:
            return False
        self.current_page -= 1
        self._page_changed()
        return True

    def _page_changed(self) -> None:
        if self.scroll_to_top:
            self.scroll_to_top()
        self.controls.show_temporarily()
        self.state = ReaderState.ERRORING if self.current_page in self.page_errors else ReaderState.READING
        self._schedule_prefetch()
        self._notify()

    @property
    def has_previous(self) -> bool:
        return bool(self.images) and self.current_page > 0

    @property
    def has_next(self) -> bool:
        return bool(self.images) and self.current_page < len(self.images) - 1

    @property
    def current_image_url(self) -> Optional[str]:
        if not self.images:
            return None
        return self._display_urls.get(self.current_page, self.images[self.current_page].url)

    # ==================== 预载 ====================

    def _spawn(self, coro) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            log.debug(f"会话 {self.session_id}: 没有运行中的事件循环，跳过后台加载")
            return False
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    def _schedule_prefetch(self) -> None:
        generation = self._generation
        start = self.current_page + 1
        for index in range(start, min(start + self.prefetch_count, len(self.images))):
            if index in self.prefetched or index in self._prefetching:
                continue
            self._prefetching.add(index)
            if not self._spawn(self._prefetch(index, self.images[index].url, generation)):
                self._prefetching.discard(index)

    async def _prefetch(self, index: int, url: str, generation: int) -> None:
        try:
            await self.image_loader.load(url)
            loaded = True
        except TransientFetchError as e:
            log.debug(f"会话 {self.session_id}: 预载页面 {index} 失败: {e}")
            loaded = False
        except Exception as e:
            log.warning(f"会话 {self.session_id}: 预载页面 {index} 出现意外错误: {e!r}")
            loaded = False

        if generation != self._generation:
            return
        self._prefetching.discard(index)
        if loaded:
            self.prefetched.add(index)
            self._notify()

    async def wait_idle(self) -> None:
        """等待所有后台加载结束"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ==================== 单页错误 ====================

    def report_page_error(self, index: int) -> None:
        """显示端报告某页加载失败"""
        if not 0 <= index < len(self.images):
            return
        log.error(f"会话 {self.session_id}: 第 {index + 1} 页加载失败")
        self.page_errors.add(index)
        if index == self.current_page:
            self.state = ReaderState.ERRORING
        self._notify()

    def report_page_loaded(self, index: int) -> None:
        if 0 <= index < len(self.images) and index != self.current_page:
            self.prefetched.add(index)
            self._notify()

    async def display_current_page(self) -> bool:
        """加载当前页，失败时记录为页面错误"""
        if not self.images:
            return False
        index = self.current_page
        return await self._load_display(index, self.current_image_url, self._generation)

    async def _load_display(self, index: int, url: str, generation: int) -> bool:
        try:
            await self.image_loader.load(url)
        except Exception as e:
            if generation == self._generation:
                log.warning(f"会话 {self.session_id}: 显示第 {index + 1} 页失败: {e}")
                self.report_page_error(index)
            return False
        return True

    def retry_page(self, index: int) -> Optional[str]:
        """
        重试某页：无条件移出错误集合，并返回附加了防缓存标记的新地址

        若重试的是当前页，会在后台重新加载，再次失败时重新记录错误。
        """
        self.page_errors.discard(index)
        if not 0 <= index < len(self.images):
            self._notify()
            return None

        url = cache_bust(self.images[index].url)
        self._display_urls[index] = url
        if index == self.current_page:
            if self.state == ReaderState.ERRORING:
                self.state = ReaderState.READING
            self._spawn(self._load_display(index, url, self._generation))
        self._notify()
        return url

    # ==================== 离线缓存 ====================

    async def request_offline_cache(self) -> bool:
        """以当前页面列表为快照写入离线缓存"""
        if not self.images or self.caching:
            return False
        self.caching = True
        self._notify()
        try:
            report = await self.cache.cache_chapter_detailed(self.chapter_id, list(self.images), self.registry)
        finally:
            self.caching = False
        self.last_cache_report = report
        if report.success:
            self.is_cached = True
        self._notify()
        return report.success

    # ==================== 书签 / 关闭 ====================

    def bookmark_payload(self) -> Dict[str, Any]:
        if not self.manga_id:
            raise ValueError("Cannot bookmark: manga information missing")
        chapter = self.chapter or {}
        return {
            "mangaId": self.manga_id,
            "mangaTitle": self.manga_title or "Unknown",
            "coverUrl": None,
            "chapterId": self.chapter_id,
            "chapterNumber": chapter.get("chapter") or "Unknown",
            "chapterTitle": chapter.get("title") or "",
            "totalPages": len(self.images),
        }

    def close_target(self) -> str:
        """关闭阅读器时的跳转目标：有所属漫画时回到漫画详情，否则返回上一页"""
        if self.manga_id:
            return f"/manga/{self.manga_id}"
        return NAVIGATE_BACK

    def teardown(self) -> None:
        """离开会话：取消空闲计时器，撤销对象URL，后续到达的异步结果全部丢弃"""
        self._generation += 1
        self.closed = True
        self.controls.teardown()
        self.registry.revoke_all()
        self._listeners.clear()
        log.info(f"会话 {self.session_id}: 资源清理完成")

    # ==================== 状态快照 ====================

    def to_dict(self) -> Dict[str, Any]:
        error_message = None
        if self.state == ReaderState.FAILED and self.error:
            error_message = self.error.message
        elif self.state == ReaderState.EMPTY:
            error_message = NO_PAGES_MESSAGE
        return {
            "sessionId": self.session_id,
            "state": self.state.value,
            "chapterId": self.chapter_id,
            "mangaId": self.manga_id,
            "mangaTitle": self.manga_title,
            "chapter": self.chapter,
            "images": [handle.to_dict() for handle in self.images],
            "currentPage": self.current_page,
            "totalPages": len(self.images),
            "currentImageUrl": self.current_image_url,
            "hasPrevious": self.has_previous,
            "hasNext": self.has_next,
            "prefetched": sorted(self.prefetched),
            "pageErrors": sorted(self.page_errors),
            "controlsVisible": self.controls_visible,
            "isCached": self.is_cached,
            "cacheSourced": self.cache_sourced,
            "cachedAt": self.cached_at,
            "caching": self.caching,
            "error": error_message,
        }
