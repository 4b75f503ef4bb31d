# core/storage.py
"""
命名空间键值存储

为离线章节缓存和元数据缓存提供统一的持久化能力：
- get(ns, key) / set(ns, key, value) / remove(ns, key) / keys(ns) / clear(ns)
- value 可以是二进制数据(bytes)，也可以是结构化记录(dict/list)，记录中允许嵌套 bytes

后端实现：
- SqliteStorage: 基于 SQLite 的持久化存储
- MemoryStorage: 进程内存储，用于测试和临时会话
"""

import base64
import binascii
import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from utils import manga_logger as log

TABLE_NAME = "kv_store"

# 已使用的命名空间
CHAPTERS_NS = "chapters"
METADATA_NS = "metadata"

T = TypeVar("T")


class StorageError(Exception):
    """存储层专用异常"""
    def __init__(self, message: str, original_error: Exception = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


@dataclass
class StorageResult(Generic[T]):
    """存储操作结果，内部使用；对外边界再转换为 bool / None"""
    value: Optional[T] = None
    error: Optional[StorageError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def capture(cls, operation: Callable[[], T], description: str) -> "StorageResult[T]":
        """执行存储操作，将 StorageError 收敛为结果对象"""
        try:
            return cls(value=operation())
        except StorageError as e:
            log.error(f"{description}失败: {e.message}")
            return cls(error=e)


class StorageInterface(ABC):
    """
    命名空间键值存储接口
    """

    @abstractmethod
    def get(self, namespace: str, key: str) -> Optional[Any]:
        """获取值，不存在时返回 None"""
        pass

    @abstractmethod
    def set(self, namespace: str, key: str, value: Any) -> None:
        """写入值，单次写入是原子的"""
        pass

    @abstractmethod
    def remove(self, namespace: str, key: str) -> None:
        """删除键，键不存在时不报错"""
        pass

    @abstractmethod
    def keys(self, namespace: str) -> List[str]:
        """列出命名空间下所有键"""
        pass

    @abstractmethod
    def clear(self, namespace: str) -> None:
        """清空命名空间"""
        pass

    def close(self) -> None:
        """关闭存储资源，例如数据库连接。"""
        pass


# ==================== 序列化 ====================

_BYTES_MARKER = "__bytes__"


def _encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_MARKER: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {k: _encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value.keys()) == {_BYTES_MARKER}:
            try:
                return base64.b64decode(value[_BYTES_MARKER], validate=True)
            except (binascii.Error, TypeError, ValueError) as e:
                raise StorageError(f"二进制数据已损坏: {e}", e)
        return {k: _decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    return value


def serialize(value: Any) -> tuple:
    """返回 (kind, payload)；bytes 原样存储，其余转为 JSON"""
    if isinstance(value, (bytes, bytearray)):
        return "blob", bytes(value)
    try:
        return "json", json.dumps(_encode_value(value), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise StorageError(f"无法序列化存储值: {e}", e)


def deserialize(kind: str, payload: bytes) -> Any:
    if kind == "blob":
        return bytes(payload)
    try:
        return _decode_value(json.loads(bytes(payload).decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StorageError(f"解析存储数据失败: {e}", e)


# ==================== SQLite 实现 ====================

class SqliteStorage(StorageInterface):
    """基于SQLite数据库的命名空间键值存储。"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._ensure_dir_exists()
        self._init_db()
        log.info(f"SqliteStorage 初始化完成，数据库路径: {self.db_path}")

    def _ensure_dir_exists(self):
        """确保数据库目录存在"""
        directory = os.path.dirname(self.db_path)
        if directory and not os.path.exists(directory):
            try:
                os.makedirs(directory)
                log.info(f"创建存储目录: {directory}")
            except OSError as e:
                log.error(f"创建存储目录 {directory} 失败: {e}")
                raise StorageError(f"创建存储目录失败: {directory}", e)

    def _connect(self) -> sqlite3.Connection:
        """连接到 SQLite 数据库"""
        if self.conn is None:
            try:
                # 存储操作会经由 asyncio.to_thread 在工作线程中执行
                self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            except sqlite3.Error as e:
                raise StorageError(f"连接到数据库 {self.db_path} 失败: {e}", e)
        return self.conn

    def _init_db(self):
        """初始化数据库和表"""
        with self._lock:
            try:
                conn = self._connect()
                conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    payload BLOB NOT NULL,
                    last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (namespace, key)
                )
                """)
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"初始化数据库表 {TABLE_NAME} 失败: {e}", e)

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            try:
                row = self._connect().execute(
                    f"SELECT kind, payload FROM {TABLE_NAME} WHERE namespace = ? AND key = ?",
                    (namespace, key),
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageError(f"读取 {namespace}/{key} 失败: {e}", e)
        if row is None:
            return None
        return deserialize(row[0], row[1])

    def set(self, namespace: str, key: str, value: Any) -> None:
        kind, payload = serialize(value)
        with self._lock:
            try:
                conn = self._connect()
                conn.execute(f"""
                INSERT OR REPLACE INTO {TABLE_NAME} (namespace, key, kind, payload, last_updated)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                """, (namespace, key, kind, sqlite3.Binary(payload)))
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"写入 {namespace}/{key} 失败: {e}", e)

    def remove(self, namespace: str, key: str) -> None:
        with self._lock:
            try:
                conn = self._connect()
                conn.execute(f"DELETE FROM {TABLE_NAME} WHERE namespace = ? AND key = ?", (namespace, key))
                conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"删除 {namespace}/{key} 失败: {e}", e)

    def keys(self, namespace: str) -> List[str]:
        with self._lock:
            try:
                rows = self._connect().execute(
                    f"SELECT key FROM {TABLE_NAME} WHERE namespace = ? ORDER BY last_updated, key",
                    (namespace,),
                ).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"列出 {namespace} 键失败: {e}", e)
        return [row[0] for row in rows]

    def clear(self, namespace: str) -> None:
        with self._lock:
            try:
                conn = self._connect()
                conn.execute(f"DELETE FROM {TABLE_NAME} WHERE namespace = ?", (namespace,))
                conn.commit()
                log.info(f"命名空间 '{namespace}' 已清空")
            except sqlite3.Error as e:
                raise StorageError(f"清空 {namespace} 失败: {e}", e)

    def close(self) -> None:
        """关闭数据库连接。"""
        with self._lock:
            if self.conn:
                try:
                    self.conn.close()
                    self.conn = None
                    log.info("离线存储数据库连接已关闭")
                except sqlite3.Error as e:
                    log.error(f"关闭离线存储数据库连接失败: {e}")


# ==================== 内存实现 ====================

class MemoryStorage(StorageInterface):
    """进程内存储。值在写入时序列化，保证与持久化后端相同的隔离语义。"""

    def __init__(self):
        self._data: Dict[str, Dict[str, tuple]] = {}
        self._lock = threading.RLock()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(namespace, {}).get(key)
        if entry is None:
            return None
        return deserialize(*entry)

    def set(self, namespace: str, key: str, value: Any) -> None:
        entry = serialize(value)
        with self._lock:
            self._data.setdefault(namespace, {})[key] = entry

    def remove(self, namespace: str, key: str) -> None:
        with self._lock:
            self._data.get(namespace, {}).pop(key, None)

    def keys(self, namespace: str) -> List[str]:
        with self._lock:
            return list(self._data.get(namespace, {}).keys())

    def clear(self, namespace: str) -> None:
        with self._lock:
            self._data.pop(namespace, None)
