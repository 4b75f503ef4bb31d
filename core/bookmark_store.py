# core/bookmark_store.py
import json
import os
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from utils import manga_logger as log

TABLE_NAME = "bookmarks"

# 可由客户端更新的字段
BOOKMARK_FIELDS = (
    "mangaId", "mangaTitle", "coverUrl", "chapterId",
    "chapterNumber", "chapterTitle", "totalPages", "currentPage",
)


class BookmarkError(Exception):
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class BookmarkValidationError(BookmarkError):
    status_code = 400


class BookmarkForbiddenError(BookmarkError):
    status_code = 403


class BookmarkNotFoundError(BookmarkError):
    status_code = 404


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BookmarkStore:
    """用户书签存储，基于SQLite数据库。每个用户对同一部漫画只保留一条书签。"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._init_db()
        log.info(f"BookmarkStore 初始化完成，数据库路径: {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        if self.conn is None:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row  # Access columns by name
        return self.conn

    def _init_db(self):
        with self._lock:
            conn = self._connect()
            conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                manga_id TEXT NOT NULL,
                data TEXT NOT NULL,
                last_read_at TEXT NOT NULL
            )
            """)
            conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_user ON {TABLE_NAME} (user_id, manga_id)")
            conn.commit()

    @staticmethod
    def _row_to_bookmark(row: sqlite3.Row) -> Dict[str, Any]:
        return {"id": row["id"], **json.loads(row["data"])}

    def _get_row(self, bookmark_id: str) -> Optional[sqlite3.Row]:
        return self._connect().execute(
            f"SELECT * FROM {TABLE_NAME} WHERE id = ?", (bookmark_id,)
        ).fetchone()

    def _get_owned_row(self, user_id: str, bookmark_id: str) -> sqlite3.Row:
        row = self._get_row(bookmark_id)
        if row is None:
            raise BookmarkNotFoundError("Bookmark not found")
        if row["user_id"] != user_id:
            raise BookmarkForbiddenError("Forbidden")
        return row

    def _write(self, bookmark_id: str, user_id: str, data: Dict[str, Any]) -> None:
        conn = self._connect()
        conn.execute(f"""
        INSERT OR REPLACE INTO {TABLE_NAME} (id, user_id, manga_id, data, last_read_at)
        VALUES (?, ?, ?, ?, ?)
        """, (bookmark_id, user_id, data["mangaId"], json.dumps(data, ensure_ascii=False), data["lastReadAt"]))
        conn.commit()

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """按最近阅读时间倒序返回用户的所有书签"""
        with self._lock:
            rows = self._connect().execute(
                f"SELECT * FROM {TABLE_NAME} WHERE user_id = ? ORDER BY last_read_at DESC", (user_id,)
            ).fetchall()
        return [self._row_to_bookmark(row) for row in rows]

    def upsert(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """创建书签；该漫画已有书签时覆盖更新"""
        if not payload.get("mangaId") or not payload.get("chapterId"):
            raise BookmarkValidationError("mangaId and chapterId are required")

        data = {
            "userId": user_id,
            "mangaId": payload["mangaId"],
            "mangaTitle": payload.get("mangaTitle") or "Unknown",
            "coverUrl": payload.get("coverUrl") or None,
            "chapterId": payload["chapterId"],
            "chapterNumber": payload.get("chapterNumber") or "Unknown",
            "chapterTitle": payload.get("chapterTitle") or "",
            "totalPages": payload.get("totalPages") or 0,
            "lastReadAt": _now(),
        }
        with self._lock:
            existing = self.find_for_manga(user_id, data["mangaId"])
            bookmark_id = existing["id"] if existing else uuid.uuid4().hex
            self._write(bookmark_id, user_id, data)
        log.info(f"用户 {user_id} 的书签已保存: {data['mangaId']} / {data['chapterId']}")
        return {"id": bookmark_id, **data}

    def update(self, user_id: str, bookmark_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = self._get_owned_row(user_id, bookmark_id)
            data = json.loads(row["data"])
            data.update({key: value for key, value in updates.items() if key in BOOKMARK_FIELDS})
            data["lastReadAt"] = _now()
            self._write(bookmark_id, user_id, data)
        return {"id": bookmark_id, **data}

    def delete(self, user_id: str, bookmark_id: str) -> None:
        with self._lock:
            self._get_owned_row(user_id, bookmark_id)
            conn = self._connect()
            conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (bookmark_id,))
            conn.commit()
        log.info(f"用户 {user_id} 的书签已删除: {bookmark_id}")

    def find_for_manga(self, user_id: str, manga_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._connect().execute(
                f"SELECT * FROM {TABLE_NAME} WHERE user_id = ? AND manga_id = ? LIMIT 1", (user_id, manga_id)
            ).fetchone()
        return self._row_to_bookmark(row) if row else None

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
