"""
图片代理 API

在服务端请求 MangaDex 图片（封面和 MangaDex@Home 页面），
附带 Referer 头以绕过防盗链，只允许 MangaDex 地址。
"""

import re
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Query, Response
from fastapi.responses import JSONResponse

from core.config import Environment
from utils import manga_logger as log

router = APIRouter()

COVER_PREFIX = "https://uploads.mangadex.org/"
PROXY_PATH = "/api/image-proxy"
AT_HOME_PATTERN = re.compile(r"https?://[^/]+/data(-saver)?/[a-f0-9]+/")
PROXY_TIMEOUT = 10.0
PROXY_HEADERS = {
    "User-Agent": "MangaDexReader/1.0",
    "Referer": "https://mangadex.org/",
}


def is_mangadex_image_url(url: str) -> bool:
    return url.startswith(COVER_PREFIX) or "mangadex.org" in url or bool(AT_HOME_PATTERN.match(url))


def get_proxied_image_url(url: Optional[str], environment: str) -> Optional[str]:
    """生产环境下把封面地址改写为代理地址，其余情况原样返回"""
    if not url:
        return None
    if environment != Environment.PRODUCTION.value:
        return url
    if url.startswith(COVER_PREFIX):
        return f"{PROXY_PATH}?url={quote(url, safe='')}"
    return url


@router.get("")
async def proxy_image(url: Optional[str] = Query(None)):
    if not url:
        return JSONResponse(status_code=400, content={"error": "Missing url parameter"})
    if not is_mangadex_image_url(url):
        return JSONResponse(status_code=403,
                            content={"error": "Invalid image URL. Only MangaDex URLs are allowed."})

    log.info(f"[Image Proxy] Fetching: {url}")
    try:
        async with httpx.AsyncClient(timeout=PROXY_TIMEOUT, follow_redirects=True) as client:
            response = await client.get(url, headers=PROXY_HEADERS)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        log.error(f"[Image Proxy] Error: {status} {url}")
        return JSONResponse(status_code=status,
                            content={"error": "Failed to fetch image from MangaDex", "status": status})
    except httpx.HTTPError as e:
        log.error(f"[Image Proxy] Error: {e}")
        return JSONResponse(status_code=500,
                            content={"error": "Internal server error while fetching image", "message": str(e)})

    return Response(
        content=response.content,
        media_type=response.headers.get("content-type", "image/jpeg"),
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
