"""
鉴权依赖

从 Authorization: Bearer <token> 头中取出 token 并交给 TokenVerifier 校验。
默认的 ConfiguredTokenVerifier 使用配置项 Auth.Tokens (token -> 用户) 校验；
关闭 Auth.Enabled 时所有请求视为本地匿名用户。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException, Request

from core.config import config
from utils import manga_logger as log

BEARER_PREFIX = "Bearer "


@dataclass
class AuthUser:
    uid: str
    email: Optional[str] = None
    email_verified: bool = False


LOCAL_USER = AuthUser(uid="local")


class InvalidTokenError(Exception):
    pass


class TokenVerifier(ABC):

    @abstractmethod
    def verify_token(self, token: str) -> AuthUser:
        """校验 token，失败时抛出 InvalidTokenError"""
        pass


class ConfiguredTokenVerifier(TokenVerifier):
    """按配置文件中的 token 表校验"""

    def __init__(self, tokens: Optional[Dict[str, Any]] = None):
        self._tokens = tokens

    @property
    def tokens(self) -> Dict[str, Any]:
        return self._tokens if self._tokens is not None else config.auth_tokens.value

    def verify_token(self, token: str) -> AuthUser:
        entry = self.tokens.get(token)
        if entry is None:
            raise InvalidTokenError("unknown token")
        if isinstance(entry, str):
            return AuthUser(uid=entry)
        return AuthUser(
            uid=entry["uid"],
            email=entry.get("email"),
            email_verified=bool(entry.get("emailVerified", False)),
        )


_verifier: TokenVerifier = ConfiguredTokenVerifier()


def set_token_verifier(verifier: TokenVerifier) -> None:
    global _verifier
    _verifier = verifier


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    return authorization[len(BEARER_PREFIX):].strip() or None


async def verify_auth(request: Request, authorization: Optional[str] = Header(None)) -> AuthUser:
    """必须鉴权"""
    if not config.auth_enabled.value:
        request.state.user = LOCAL_USER
        return LOCAL_USER

    token = extract_bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Unauthorized: No token provided")
    try:
        user = _verifier.verify_token(token)
    except InvalidTokenError as e:
        log.warning(f"Auth verification error: {e}")
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid token")

    request.state.user = user
    request.state.token = token
    return user
