import os
import tempfile

# 配置和日志目录必须在导入 core 之前指向临时目录
_TEST_HOME = tempfile.mkdtemp(prefix="manga-reader-tests-")
os.environ.setdefault("MANGA_READER_CONFIG_DIR", os.path.join(_TEST_HOME, "config"))
os.environ.setdefault("MANGA_READER_LOG_DIR", os.path.join(_TEST_HOME, "log"))

import asyncio
from io import BytesIO
from typing import Dict, List, Optional

import pytest
from PIL import Image

from core.catalog_client import CatalogError
from core.chapter_cache import OfflineChapterCache, TransientFetchError
from core.chapter_source import ChapterSource
from core.config import config
from core.controls import ControlsController
from core.reader_session import ReaderSession
from core.storage import MemoryStorage, StorageError


class ManualHandle:
    def __init__(self, scheduler, when, callback):
        self.scheduler = scheduler
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """手动推进的时钟，替代事件循环的 call_later"""

    def __init__(self):
        self.now = 0.0
        self.handles: List[ManualHandle] = []

    def call_later(self, delay, callback):
        handle = ManualHandle(self, self.now + delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return len([h for h in self.handles if not h.cancelled])

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = [h for h in self.handles if not h.cancelled and h.when <= self.now]
        for handle in sorted(due, key=lambda h: h.when):
            self.handles.remove(handle)
            if not handle.cancelled:
                handle.callback()


class FakeFetcher:
    """按URL返回预设内容；忽略查询参数，便于测试防缓存重试"""

    def __init__(self, pages: Optional[Dict[str, bytes]] = None):
        self.pages: Dict[str, bytes] = dict(pages or {})
        self.failing: set = set()
        self.calls: List[str] = []

    async def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        base = url.split("?", 1)[0]
        if base in self.failing or base not in self.pages:
            raise TransientFetchError(url, "下载失败")
        return self.pages[base]


class FakeChapterSource(ChapterSource):
    def __init__(self, manifests: Optional[Dict[str, List[dict]]] = None, manga_id: Optional[str] = "manga-1"):
        self.manifests = dict(manifests or {})
        self.manga_id = manga_id
        self.fail = False
        self.calls = 0
        # 设置后，下一次 get_chapter_images 会等待该事件
        self.gate: Optional[asyncio.Event] = None

    async def get_chapter_metadata(self, chapter_id):
        if self.fail:
            raise CatalogError("上游不可用", 500)
        return {"id": chapter_id, "chapter": "7", "title": "Pilot", "mangaId": self.manga_id}

    async def get_chapter_images(self, chapter_id, quality="data"):
        self.calls += 1
        gate, self.gate = self.gate, None
        images = list(self.manifests.get(chapter_id, []))
        if gate is not None:
            await gate.wait()
        if self.fail:
            raise CatalogError("上游不可用", 500)
        return {"baseUrl": "https://uploads.example", "hash": "h", "images": images, "totalPages": len(images)}


class FailingStorage(MemoryStorage):
    """所有操作都失败的存储"""

    def get(self, namespace, key):
        raise StorageError("磁盘错误")

    def set(self, namespace, key, value):
        raise StorageError("磁盘错误")

    def remove(self, namespace, key):
        raise StorageError("磁盘错误")

    def keys(self, namespace):
        raise StorageError("磁盘错误")

    def clear(self, namespace):
        raise StorageError("磁盘错误")


def page_url(chapter_id: str, name: str) -> str:
    return f"https://uploads.example/data/h/{chapter_id}-{name}"


def make_manifest(chapter_id: str, names) -> List[dict]:
    return [{"url": page_url(chapter_id, name), "fileName": name} for name in names]


def png_bytes(color="red") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (4, 4), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def fetcher():
    pages = {}
    for chapter_id in ("ch-1", "ch-2"):
        for name in ("a.png", "b.png", "c.png", "d.png"):
            pages[page_url(chapter_id, name)] = f"{chapter_id}:{name}".encode()
    return FakeFetcher(pages)


@pytest.fixture
def cache(storage, fetcher):
    return OfflineChapterCache(storage, fetcher)


@pytest.fixture
def source():
    return FakeChapterSource({
        "ch-1": make_manifest("ch-1", ["a.png", "b.png", "c.png", "d.png"]),
        "ch-2": make_manifest("ch-2", ["a.png", "b.png"]),
        "empty": [],
    })


@pytest.fixture
def make_session(source, cache, scheduler):
    def factory(chapter_id="ch-1", **kwargs):
        kwargs.setdefault("manga_id", "manga-1")
        kwargs.setdefault("controls", ControlsController(delay=3.0, scheduler=scheduler))
        kwargs.setdefault("prefetch_count", 2)
        kwargs.setdefault("quality", "data")
        return ReaderSession(chapter_id, source=kwargs.pop("source", source), cache=cache, **kwargs)
    return factory


@pytest.fixture
def auth_disabled():
    previous = config.auth_enabled.value
    config.auth_enabled.value = False
    yield
    config.auth_enabled.value = previous
