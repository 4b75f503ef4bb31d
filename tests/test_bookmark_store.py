import time

import pytest

from core.bookmark_store import (
    BookmarkForbiddenError, BookmarkNotFoundError, BookmarkStore, BookmarkValidationError,
)


@pytest.fixture
def store(tmp_path):
    store = BookmarkStore(str(tmp_path / "bookmarks.db"))
    yield store
    store.close()


def test_upsert_applies_defaults(store):
    bookmark = store.upsert("u1", {"mangaId": "m1", "chapterId": "c1"})

    assert bookmark["mangaTitle"] == "Unknown"
    assert bookmark["chapterNumber"] == "Unknown"
    assert bookmark["chapterTitle"] == ""
    assert bookmark["totalPages"] == 0
    assert bookmark["coverUrl"] is None
    assert bookmark["lastReadAt"]


def test_one_bookmark_per_manga(store):
    first = store.upsert("u1", {"mangaId": "m1", "chapterId": "c1"})
    second = store.upsert("u1", {"mangaId": "m1", "chapterId": "c2", "totalPages": 20})

    assert first["id"] == second["id"]
    bookmarks = store.list_for_user("u1")
    assert len(bookmarks) == 1
    assert bookmarks[0]["chapterId"] == "c2"
    assert bookmarks[0]["totalPages"] == 20


def test_list_is_most_recent_first_and_per_user(store):
    store.upsert("u1", {"mangaId": "m1", "chapterId": "c1"})
    time.sleep(0.01)
    store.upsert("u1", {"mangaId": "m2", "chapterId": "c9"})
    store.upsert("u2", {"mangaId": "m3", "chapterId": "c3"})

    assert [b["mangaId"] for b in store.list_for_user("u1")] == ["m2", "m1"]
    assert [b["mangaId"] for b in store.list_for_user("u2")] == ["m3"]


def test_missing_ids_are_rejected(store):
    with pytest.raises(BookmarkValidationError) as excinfo:
        store.upsert("u1", {"mangaId": "m1"})
    assert excinfo.value.status_code == 400


def test_update_only_whitelisted_fields(store):
    bookmark = store.upsert("u1", {"mangaId": "m1", "chapterId": "c1"})

    updated = store.update("u1", bookmark["id"], {"chapterId": "c5", "userId": "attacker"})

    assert updated["chapterId"] == "c5"
    assert updated["userId"] == "u1"


def test_ownership_and_missing_bookmarks(store):
    bookmark = store.upsert("u1", {"mangaId": "m1", "chapterId": "c1"})

    with pytest.raises(BookmarkForbiddenError):
        store.update("u2", bookmark["id"], {"chapterId": "c2"})
    with pytest.raises(BookmarkForbiddenError):
        store.delete("u2", bookmark["id"])
    with pytest.raises(BookmarkNotFoundError) as excinfo:
        store.delete("u1", "nope")
    assert excinfo.value.status_code == 404


def test_delete_and_find(store):
    bookmark = store.upsert("u1", {"mangaId": "m1", "chapterId": "c1"})
    assert store.find_for_manga("u1", "m1")["id"] == bookmark["id"]
    assert store.find_for_manga("u2", "m1") is None

    store.delete("u1", bookmark["id"])

    assert store.find_for_manga("u1", "m1") is None
