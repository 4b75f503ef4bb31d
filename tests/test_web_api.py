import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeFetcher

from core.bookmark_store import BookmarkStore
from core.catalog_client import MangaDexClient
from core.config import config
from core.storage import MemoryStorage
from web.api.image_proxy import get_proxied_image_url
from web.app import create_app
from web.auth import ConfiguredTokenVerifier, set_token_verifier
from web.core_interface import CoreInterface, set_core_interface
from web.reader_manager import cleanup_all_sessions

TOKEN = "good-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}

MANGA = {
    "id": "m1",
    "attributes": {"title": {"en": "Blue"}},
    "relationships": [
        {"id": "c1", "type": "cover_art", "attributes": {"fileName": "cover.jpg"}},
        {"id": "a1", "type": "author", "attributes": {"name": "Alice"}},
    ],
}
CHAPTER = {
    "id": "ch-1",
    "attributes": {"chapter": "1", "title": "Start"},
    "relationships": [{"id": "m1", "type": "manga"}],
}
AT_HOME = {
    "baseUrl": "https://node.example",
    "chapter": {"hash": "abc", "data": ["1.png", "2.png"], "dataSaver": ["1.jpg", "2.jpg"]},
}


def upstream(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/manga":
        return httpx.Response(200, json={"data": [MANGA], "limit": 20, "offset": 0, "total": 1})
    if path == "/manga/tag":
        return httpx.Response(200, json={"data": [
            {"id": "t1", "attributes": {"name": {"en": "Action"}, "group": "genre"}},
        ]})
    if path == "/manga/m1":
        return httpx.Response(200, json={"data": MANGA})
    if path == "/manga/m1/feed":
        return httpx.Response(200, json={"data": [CHAPTER], "limit": 100, "offset": 0, "total": 1})
    if path == "/chapter/ch-1":
        return httpx.Response(200, json={"data": CHAPTER})
    if path == "/at-home/server/ch-1":
        return httpx.Response(200, json=AT_HOME)
    return httpx.Response(404, json={"result": "error"})


@pytest.fixture
def interface(tmp_path):
    fetcher = FakeFetcher({
        "https://node.example/data/abc/1.png": b"page-one",
        "https://node.example/data/abc/2.png": b"page-two",
    })
    return CoreInterface(
        storage=MemoryStorage(),
        catalog_client=MangaDexClient(base_url="https://api.example", transport=httpx.MockTransport(upstream)),
        bookmark_store=BookmarkStore(str(tmp_path / "bookmarks.db")),
        fetcher=fetcher,
    )


@pytest.fixture
def client(interface):
    set_token_verifier(ConfiguredTokenVerifier({TOKEN: "user-1"}))
    app = create_app(interface=interface, rate_limit="1000/minute")
    with TestClient(app) as test_client:
        yield test_client
    cleanup_all_sessions()
    set_core_interface(None)
    set_token_verifier(ConfiguredTokenVerifier())


def test_health_is_public(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "OK"


def test_missing_and_invalid_tokens(client):
    missing = client.get("/api/manga/search")
    invalid = client.get("/api/manga/search", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json() == {"error": "Unauthorized: No token provided"}
    assert invalid.status_code == 401
    assert invalid.json() == {"error": "Unauthorized: Invalid token"}


def test_auth_can_be_disabled(client, auth_disabled):
    assert client.get("/api/manga/tags/all").status_code == 200


def test_search_shapes_results(client):
    response = client.get("/api/manga/search", params={"title": "blue", "includedTags[]": ["t1"]}, headers=AUTH)

    body = response.json()
    assert response.status_code == 200
    assert body["total"] == 1
    assert body["data"][0]["coverUrl"] == "https://uploads.mangadex.org/covers/m1/cover.jpg"
    assert body["data"][0]["artist"] == "Unknown"


def test_manga_detail_feed_and_tags(client):
    assert client.get("/api/manga/m1", headers=AUTH).json()["author"] == "Alice"
    assert client.get("/api/manga/m1/feed", headers=AUTH).json()["data"][0]["id"] == "ch-1"
    assert client.get("/api/manga/tags/all", headers=AUTH).json() == [
        {"id": "t1", "name": {"en": "Action"}, "group": "genre"},
    ]


def test_bad_order_parameter_is_rejected(client):
    response = client.get("/api/manga/search", params={"order": "{oops"}, headers=AUTH)
    assert response.status_code == 400


def test_upstream_status_is_forwarded(client):
    response = client.get("/api/manga/missing", headers=AUTH)
    assert response.status_code == 404
    assert "error" in response.json()


def test_unknown_route(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.json() == {"error": "Route not found"}


def test_chapter_endpoints(client):
    chapter = client.get("/api/chapter/ch-1", headers=AUTH).json()
    images = client.get("/api/chapter/ch-1/images", params={"quality": "dataSaver"}, headers=AUTH).json()

    assert chapter["mangaId"] == "m1"
    assert images["images"][0]["url"] == "https://node.example/dataSaver/abc/1.jpg"
    assert client.get("/api/chapter/ch-1/images", params={"quality": "huge"}, headers=AUTH).status_code == 422


def test_cache_clear_is_development_only(client):
    assert client.post("/api/cache/clear").json() == {"message": "Cache cleared successfully"}

    previous = config.environment.value
    config.environment.value = "production"
    try:
        response = client.post("/api/cache/clear")
    finally:
        config.environment.value = previous
    assert response.status_code == 403


def test_bookmark_routes(client):
    created = client.post("/api/bookmarks", json={"mangaId": "m1", "chapterId": "ch-1"}, headers=AUTH).json()
    assert created["mangaTitle"] == "Unknown"

    listed = client.get("/api/bookmarks", headers=AUTH).json()
    assert [b["id"] for b in listed] == [created["id"]]

    check = client.get("/api/bookmarks/manga/m1", headers=AUTH).json()
    assert check["bookmarked"] is True

    updated = client.put(f"/api/bookmarks/{created['id']}", json={"chapterNumber": "2"}, headers=AUTH).json()
    assert updated["chapterNumber"] == "2"

    deleted = client.delete(f"/api/bookmarks/{created['id']}", headers=AUTH)
    assert deleted.json() == {"message": "Bookmark deleted successfully"}
    assert client.delete(f"/api/bookmarks/{created['id']}", headers=AUTH).status_code == 404
    assert client.post("/api/bookmarks", json={"mangaId": "m1"}, headers=AUTH).status_code == 400


def test_reader_session_flow(client):
    headers = {**AUTH, "X-Session-Id": "s1"}
    opened = client.post("/api/reader/chapter/open", json={"chapterId": "ch-1", "mangaTitle": "Blue"},
                         headers=headers).json()

    assert opened["state"] == "ready"
    assert opened["mangaId"] == "m1"
    assert opened["totalPages"] == 2

    advanced = client.post("/api/reader/advance", headers=headers).json()
    assert advanced["changed"] and advanced["state"]["currentPage"] == 1
    assert not client.post("/api/reader/advance", headers=headers).json()["changed"]

    back = client.post("/api/reader/input", json={"type": "swipe", "direction": "right"}, headers=headers).json()
    assert back["action"] == "retreat" and back["state"]["currentPage"] == 0
    assert client.post("/api/reader/input", json={"type": "wheel"}, headers=headers).status_code == 400

    cached = client.post("/api/reader/cache", headers=headers).json()
    assert cached["success"] and cached["report"]["outcome"] == "full"

    bookmark = client.post("/api/reader/bookmark", headers=headers).json()
    assert bookmark["bookmark"]["mangaTitle"] == "Blue"
    assert bookmark["bookmark"]["totalPages"] == 2

    closed = client.post("/api/reader/close", headers=headers).json()
    assert closed["navigateTo"] == "/manga/m1"
    assert client.get("/api/reader/state", headers=headers).status_code == 404


def test_cached_chapter_is_served_through_blob_route(client):
    headers = {**AUTH, "X-Session-Id": "s2"}
    client.post("/api/reader/chapter/open", json={"chapterId": "ch-1"}, headers=headers)
    client.post("/api/reader/cache", headers=headers)

    reopened = client.post("/api/reader/chapter/open", json={"chapterId": "ch-1"}, headers=headers).json()
    blob_url = reopened["images"][0]["url"]

    assert reopened["cacheSourced"] is True
    assert blob_url.startswith("/api/reader/blob/")
    blob = client.get(blob_url)
    assert blob.status_code == 200
    assert blob.content == b"page-one"

    client.post("/api/reader/close", headers=headers)
    assert client.get(blob_url).status_code == 404


def test_page_error_report_and_retry(client):
    headers = {**AUTH, "X-Session-Id": "s3"}
    client.post("/api/reader/chapter/open", json={"chapterId": "ch-1"}, headers=headers)

    errored = client.post("/api/reader/page/error", json={"page": 0}, headers=headers).json()
    assert errored["state"] == "erroring"
    assert errored["pageErrors"] == [0]

    retried = client.post("/api/reader/page/retry", json={"page": 0}, headers=headers).json()
    assert "retry=" in retried["url"]
    assert retried["state"]["pageErrors"] == []


def test_reader_requires_session_header(client):
    assert client.get("/api/reader/state", headers=AUTH).status_code == 400
    assert client.get("/api/reader/state", headers={**AUTH, "X-Session-Id": "unknown"}).status_code == 404


def test_offline_routes(client, interface):
    manifest = [{"url": "https://node.example/data/abc/1.png", "fileName": "1.png"}]
    assert asyncio.run(interface.offline_cache.cache_chapter("ch-1", manifest))

    assert client.get("/api/offline/chapters", headers=AUTH).json() == {"chapters": ["ch-1"], "count": 1}
    assert client.get("/api/offline/size", headers=AUTH).json()["sizeBytes"] == len(b"page-one")
    assert client.get("/api/offline/chapters/ch-1/status", headers=AUTH).json()["cached"] is True

    assert client.delete("/api/offline/chapters/ch-1", headers=AUTH).json()["success"]
    assert client.get("/api/offline/chapters/ch-1/status", headers=AUTH).json()["cached"] is False
    assert client.delete("/api/offline/chapters", headers=AUTH).json()["success"]


def test_offline_metadata_routes(client):
    assert client.get("/api/offline/metadata/m1", headers=AUTH).status_code == 404
    client.put("/api/offline/metadata/m1", json={"title": "Blue"}, headers=AUTH)
    stored = client.get("/api/offline/metadata/m1", headers=AUTH).json()
    assert stored["title"] == "Blue" and "cachedAt" in stored


def test_image_proxy_validation(client):
    missing = client.get("/api/image-proxy")
    foreign = client.get("/api/image-proxy", params={"url": "https://example.com/cat.png"})

    assert missing.status_code == 400
    assert foreign.status_code == 403


def test_proxied_image_url_depends_on_environment():
    cover = "https://uploads.mangadex.org/covers/m1/cover.jpg"

    assert get_proxied_image_url(cover, "development") == cover
    assert get_proxied_image_url(cover, "production").startswith("/api/image-proxy?url=https%3A%2F%2F")
    assert get_proxied_image_url("https://node.example/data/abc/1.png", "production") == \
        "https://node.example/data/abc/1.png"
    assert get_proxied_image_url(None, "production") is None


def test_rate_limit_applies_to_api_routes(interface):
    set_token_verifier(ConfiguredTokenVerifier({TOKEN: "user-1"}))
    app = create_app(interface=interface, rate_limit="2/minute")
    try:
        with TestClient(app) as limited:
            statuses = [limited.get("/api/manga/tags/all", headers=AUTH).status_code for _ in range(3)]
            health = [limited.get("/health").status_code for _ in range(3)]
    finally:
        set_core_interface(None)
        set_token_verifier(ConfiguredTokenVerifier())

    assert statuses == [200, 200, 429]
    assert health == [200, 200, 200]


def test_websocket_reader_channel(client):
    headers = {**AUTH, "X-Session-Id": "ws-1"}
    client.post("/api/reader/chapter/open", json={"chapterId": "ch-1"}, headers=headers)

    with client.websocket_connect("/ws") as websocket:
        assert websocket.receive_json()["type"] == "connection"

        websocket.send_json({"type": "reader_subscribe", "sessionId": "ws-1"})
        assert websocket.receive_json()["type"] == "reader_state"

        websocket.send_json({"type": "reader_input", "sessionId": "ws-1",
                             "event": {"type": "key", "key": "ArrowRight"}})
        result = None
        pages = []
        while result is None or 1 not in pages:
            message = websocket.receive_json()
            if message["type"] == "reader_input_result":
                result = message["data"]
            elif message["type"] == "reader_state":
                pages.append(message["data"]["currentPage"])

        assert result == {"action": "advance", "changed": True, "navigateTo": None}

        websocket.send_json({"type": "reader_subscribe", "sessionId": "missing"})
        message = websocket.receive_json()
        while message["type"] == "reader_state":
            message = websocket.receive_json()
        assert message["type"] == "error"
