import asyncio

from conftest import FailingStorage, png_bytes

from core.metadata_cache import MetadataCache, metadata_key
from core.object_urls import ObjectUrlRegistry, PageHandle, sniff_mime_type
from core.storage import METADATA_NS


def test_metadata_round_trip(storage):
    cache = MetadataCache(storage)

    async def scenario():
        assert await cache.cache_manga_metadata("m1", {"title": "One Piece"})
        stored = await cache.get_cached_manga_metadata("m1")
        assert await cache.remove_manga_metadata("m1")
        return stored, await cache.get_cached_manga_metadata("m1")

    stored, after_remove = asyncio.run(scenario())

    assert stored["title"] == "One Piece"
    assert "cachedAt" in stored
    assert after_remove is None
    assert metadata_key("m1") == "manga_m1"


def test_metadata_is_kept_under_prefixed_key(storage):
    asyncio.run(MetadataCache(storage).cache_manga_metadata("m2", {"title": "Two"}))
    assert storage.keys(METADATA_NS) == ["manga_m2"]


def test_metadata_storage_failure_is_absorbed():
    cache = MetadataCache(FailingStorage())

    async def scenario():
        return (
            await cache.cache_manga_metadata("m1", {"title": "x"}),
            await cache.get_cached_manga_metadata("m1"),
            await cache.remove_manga_metadata("m1"),
        )

    assert asyncio.run(scenario()) == (False, None, False)


def test_object_url_registry_sniffs_and_revokes():
    registry = ObjectUrlRegistry("s1")
    url = registry.create_object_url(png_bytes())

    blob, mime = registry.resolve(url)
    assert mime == "image/png"
    # 重试时追加的查询参数不影响解析
    assert registry.resolve(url + "?retry=1") is not None

    registry.revoke(url)
    assert registry.resolve(url) is None
    assert len(registry) == 0


def test_unknown_bytes_fall_back_to_octet_stream():
    assert sniff_mime_type(b"not an image") == "application/octet-stream"


def test_page_handle_serialization():
    remote = PageHandle(url="https://x/a.png", file_name="a.png")
    cached = PageHandle(url="blob:abc", file_name="a.png", original_url="https://x/a.png", cached=True)

    assert remote.to_dict() == {"url": "https://x/a.png", "fileName": "a.png"}
    assert cached.to_dict() == {
        "url": "blob:abc", "fileName": "a.png", "originalUrl": "https://x/a.png", "cached": True,
    }
