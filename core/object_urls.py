# core/object_urls.py
"""
会话级对象URL

持久化的页面数据(bytes)归离线缓存所有；阅读会话只持有由本模块签发的
临时句柄(blob:<uuid>)。句柄只在签发它的注册表(即会话)内有效，
注册表撤销或会话结束后即失效，不能跨会话复用。
"""

import threading
import uuid
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from utils import manga_logger as log

OBJECT_URL_SCHEME = "blob:"
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class PageHandle:
    """阅读会话中的一页。url 可能是远程地址，也可能是会话内的对象URL"""
    url: str
    file_name: str
    original_url: Optional[str] = None
    cached: bool = False

    def to_dict(self) -> Dict[str, object]:
        data = {"url": self.url, "fileName": self.file_name}
        if self.cached:
            data["originalUrl"] = self.original_url
            data["cached"] = True
        return data


def sniff_mime_type(blob: bytes) -> str:
    """根据图片内容判断 MIME 类型"""
    try:
        with Image.open(BytesIO(blob)) as image:
            return Image.MIME.get(image.format, DEFAULT_MIME_TYPE)
    except (UnidentifiedImageError, OSError):
        return DEFAULT_MIME_TYPE


def is_object_url(url: str) -> bool:
    return url.startswith(OBJECT_URL_SCHEME)


def strip_object_url(url: str) -> str:
    """去掉对象URL上追加的查询参数（例如重试时附加的防缓存标记）"""
    return url.split("?", 1)[0]


class ObjectUrlRegistry:
    """对象URL注册表，一个阅读会话一个"""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self._entries: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.RLock()

    def create_object_url(self, blob: bytes, mime_type: Optional[str] = None) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._entries[token] = (blob, mime_type or sniff_mime_type(blob))
        return f"{OBJECT_URL_SCHEME}{token}"

    def resolve(self, url_or_token: str) -> Optional[Tuple[bytes, str]]:
        """返回 (bytes, mime_type)，已撤销或不存在时返回 None"""
        token = strip_object_url(url_or_token)
        if token.startswith(OBJECT_URL_SCHEME):
            token = token[len(OBJECT_URL_SCHEME):]
        with self._lock:
            return self._entries.get(token)

    def revoke(self, url: str) -> None:
        token = strip_object_url(url)
        if token.startswith(OBJECT_URL_SCHEME):
            token = token[len(OBJECT_URL_SCHEME):]
        with self._lock:
            self._entries.pop(token, None)

    def revoke_all(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        if count:
            log.debug(f"会话 {self.owner}: 已撤销 {count} 个对象URL")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
