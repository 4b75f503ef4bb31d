import asyncio

import httpx
import pytest

from core.catalog_client import (
    CatalogError, MangaDexClient, _flatten_params, build_chapter_manifest, get_cover_url,
    shape_chapter, shape_manga, shape_tags,
)
from core.chapter_source import BackendApiClient, LocalChapterSource

MANGA = {
    "id": "m1",
    "type": "manga",
    "attributes": {"title": {"en": "Blue"}, "status": "ongoing"},
    "relationships": [
        {"id": "c1", "type": "cover_art", "attributes": {"fileName": "cover.jpg"}},
        {"id": "a1", "type": "author", "attributes": {"name": "Alice"}},
        {"id": "a2", "type": "artist"},
    ],
}

CHAPTER = {
    "id": "ch-1",
    "attributes": {"chapter": "3", "title": "Start", "pages": 2},
    "relationships": [
        {"id": "g1", "type": "scanlation_group", "attributes": {"name": "Group"}},
        {"id": "m1", "type": "manga"},
    ],
}

AT_HOME = {
    "baseUrl": "https://node.example",
    "chapter": {"hash": "abc123", "data": ["1.png", "2.png"], "dataSaver": ["1.jpg", "2.jpg"]},
}


def make_client(handler, **kwargs):
    return MangaDexClient(base_url="https://api.example", timeout=5, cache_ttl=60, tags_cache_ttl=600,
                          max_entries=100, transport=httpx.MockTransport(handler), **kwargs)


def test_shape_manga_fills_unknown_names():
    shaped = shape_manga(MANGA)

    assert shaped["id"] == "m1"
    assert shaped["status"] == "ongoing"
    assert shaped["coverUrl"] == "https://uploads.mangadex.org/covers/m1/cover.jpg"
    assert shaped["author"] == "Alice"
    assert shaped["artist"] == "Unknown"


def test_shape_manga_without_cover():
    shaped = shape_manga({"id": "m2", "attributes": {}, "relationships": []})
    assert shaped["coverUrl"] is None
    assert get_cover_url("m2", None) is None


def test_shape_chapter_and_tags():
    chapter = shape_chapter(CHAPTER, include_manga_id=True)
    assert chapter["scanlationGroup"] == "Group"
    assert chapter["mangaId"] == "m1"
    assert "mangaId" not in shape_chapter(CHAPTER)

    tags = shape_tags({"data": [{"id": "t1", "attributes": {"name": {"en": "Action"}, "group": "genre"}}]})
    assert tags == [{"id": "t1", "name": {"en": "Action"}, "group": "genre"}]


def test_manifest_urls_follow_quality():
    full = build_chapter_manifest(AT_HOME, "data")
    saver = build_chapter_manifest(AT_HOME, "dataSaver")

    assert full["images"][0] == {"url": "https://node.example/data/abc123/1.png", "fileName": "1.png"}
    assert saver["images"][1]["url"] == "https://node.example/dataSaver/abc123/2.jpg"
    assert full["totalPages"] == 2


def test_flatten_params_expands_nested_order():
    assert _flatten_params({"order": {"chapter": "desc"}, "limit": 10, "title": None}) == {
        "order[chapter]": "desc", "limit": 10,
    }


def test_search_is_cached_until_cleared():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"data": [MANGA], "limit": 20, "offset": 0, "total": 1})

    client = make_client(handler)
    params = {"title": "blue", "includes[]": ["cover_art", "author"], "order": {"rating": "desc"}}

    async def scenario():
        await client.search_manga(params)
        await client.search_manga(params)
        client.clear_cache()
        await client.search_manga(params)
        await client.aclose()

    asyncio.run(scenario())

    assert len(requests) == 2
    query = requests[0].url.params
    assert requests[0].url.path == "/manga"
    assert query.get_list("includes[]") == ["cover_art", "author"]
    assert query["order[rating]"] == "desc"


def test_tags_use_their_own_cache():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"data": []})

    client = make_client(handler)

    async def scenario():
        await client.get_tags()
        await client.get_tags()
        client.clear_cache("tags_all")
        await client.get_tags()

    asyncio.run(scenario())
    assert calls == ["/manga/tag", "/manga/tag"]


def test_upstream_error_status_is_preserved():
    client = make_client(lambda request: httpx.Response(404, json={"result": "error"}))

    with pytest.raises(CatalogError) as excinfo:
        asyncio.run(client.get_manga_by_id("missing"))

    assert excinfo.value.status_code == 404
    assert excinfo.value.payload == {"result": "error"}


def test_network_error_maps_to_bad_gateway():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(CatalogError) as excinfo:
        asyncio.run(make_client(handler).get_chapter_by_id("ch-1"))

    assert excinfo.value.status_code == 502


def test_local_chapter_source_builds_manifest():
    def handler(request):
        if request.url.path == "/at-home/server/ch-1":
            return httpx.Response(200, json=AT_HOME)
        return httpx.Response(200, json={"data": CHAPTER})

    source = LocalChapterSource(make_client(handler))

    async def scenario():
        return (await source.get_chapter_metadata("ch-1"),
                await source.get_chapter_images("ch-1", "dataSaver"))

    metadata, manifest = asyncio.run(scenario())

    assert metadata["mangaId"] == "m1"
    assert [image["fileName"] for image in manifest["images"]] == ["1.jpg", "2.jpg"]


def test_backend_client_sends_token_from_provider():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers.get("Authorization")))
        return httpx.Response(200, json={"images": [], "totalPages": 0})

    tokens = iter(["first", None])
    client = BackendApiClient("https://backend.example/", token_provider=lambda: next(tokens),
                              transport=httpx.MockTransport(handler))

    async def scenario():
        await client.get_chapter_images("ch-1", "data")
        await client.get_chapter_metadata("ch-1")
        await client.aclose()

    asyncio.run(scenario())

    assert seen == [
        ("/api/chapter/ch-1/images", "Bearer first"),
        ("/api/chapter/ch-1", None),
    ]


def test_backend_client_maps_error_status():
    client = BackendApiClient("https://backend.example", transport=httpx.MockTransport(
        lambda request: httpx.Response(401, json={"error": "Unauthorized: No token provided"})))

    with pytest.raises(CatalogError) as excinfo:
        asyncio.run(client.get_chapter_metadata("ch-1"))

    assert excinfo.value.status_code == 401


def test_backend_client_rejects_non_json_reply():
    client = BackendApiClient("https://backend.example", token_provider=lambda: "t", transport=httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html>gateway</html>")))

    with pytest.raises(CatalogError) as excinfo:
        asyncio.run(client.get_chapter_images("ch-1"))

    assert excinfo.value.status_code == 502
