from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from sockauth.config import Settings
from sockauth.logging import get_logger
from sockauth.service.errors import NotAuthenticated, ServiceError, TokenStoreError

logger = get_logger(__name__)


@dataclass
class Token:
    """An issued access token plus the metadata returned to the client."""

    access_token: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"access_token": self.access_token, **self.metadata}


class TokenStore(Protocol):
    async def add_token(self, jti: str, subject: str, expires_at: datetime) -> None: ...

    async def is_active(self, jti: str) -> bool: ...

    async def revoke_token(self, jti: str, ttl_seconds: int) -> bool: ...

    async def is_denylisted(self, jti: str) -> bool: ...

    async def close(self) -> None: ...


class TokenService(Protocol):
    async def issue(self, principal: Dict[str, Any], params: Dict[str, Any]) -> Token: ...

    async def invalidate(self, access_token: str, params: Dict[str, Any]) -> Token: ...

    async def verify(self, access_token: str) -> Optional[Dict[str, Any]]: ...


def subject_for(principal: Dict[str, Any]) -> str:
    """Pick the token subject from strategy output such as ``{"user": {"id": ...}}``."""
    if principal.get("id") is not None:
        return str(principal["id"])
    for value in principal.values():
        if isinstance(value, dict) and value.get("id") is not None:
            return str(value["id"])
    return "anonymous"


class JWTTokenService:
    """HS256 access tokens whose lifetime is tracked in a token store."""

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    async def issue(self, principal: Dict[str, Any], params: Dict[str, Any]) -> Token:
        now = time.time()
        exp = round(now + self.settings.token_ttl_seconds, 3)
        jti = str(uuid.uuid4())
        subject = str(params.get("sub") or subject_for(principal))
        payload: Dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "jti": jti,
            "iat": int(now),
            "exp": exp,
            "token_type": "access",
        }
        if params.get("strategy"):
            payload["strategy"] = params["strategy"]
        access_token = self._encode_jwt(payload)
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        await self._store_call("add_token", self.store.add_token(jti, subject, expires_at))
        self.logger.debug("access_token_issued", subject=subject, jti=jti)
        return Token(
            access_token=access_token,
            metadata={
                "token_type": "bearer",
                "jti": jti,
                "expires_at": expires_at.isoformat(),
            },
        )

    async def invalidate(self, access_token: str, params: Dict[str, Any]) -> Token:
        """Revoke ``access_token``; expired but correctly signed tokens are accepted."""
        payload = self._decode_jwt(access_token, verify_exp=False)
        if not payload or not payload.get("jti"):
            raise NotAuthenticated("Invalid access token")
        jti = payload["jti"]
        ttl = max(0, int(float(payload.get("exp", 0)) - time.time()) + 1)
        was_active = await self._store_call("revoke_token", self.store.revoke_token(jti, ttl))
        self.logger.debug("access_token_revoked", jti=jti, was_active=was_active)
        return Token(
            access_token=access_token,
            metadata={
                "token_type": "bearer",
                "jti": jti,
                "expires_at": datetime.fromtimestamp(
                    float(payload["exp"]), tz=timezone.utc
                ).isoformat(),
                "revoked": True,
            },
        )

    async def verify(self, access_token: str) -> Optional[Dict[str, Any]]:
        payload = self._decode_jwt(access_token)
        if not payload:
            return None
        jti = payload.get("jti")
        if not jti or not await self._store_call("is_active", self.store.is_active(jti)):
            return None
        return payload

    async def _store_call(self, operation: str, awaitable: Any) -> Any:
        try:
            return await awaitable
        except ServiceError:
            raise
        except Exception as exc:
            self.logger.error(
                "token_store_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TokenStoreError(
                "token store unavailable", detail={"operation": operation}
            ) from exc

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _b64url_encode(digest)

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        segments = [
            _b64url_encode(json.dumps(part, separators=(",", ":")).encode())
            for part in (_JWT_HEADER, payload)
        ]
        signing_input = ".".join(segments)
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, verify_exp: bool = True) -> Optional[Dict[str, Any]]:
        """Return the claims of a token signed by this service, or ``None``."""
        if not isinstance(token, str) or token.count(".") != 2:
            return None
        header_b64, payload_b64, signature = token.split(".")
        try:
            header = json.loads(_b64url_decode(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        # Only HS256; anything else is an algorithm-confusion attempt
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), signature):
            return None
        try:
            claims = json.loads(_b64url_decode(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(claims, dict):
            return None
        if claims.get("iss") != self.settings.jwt_issuer:
            return None
        if claims.get("aud") != self.settings.jwt_audience:
            return None
        try:
            expires = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if verify_exp and expires <= time.time():
            return None
        return claims


_JWT_HEADER = {"alg": "HS256", "typ": "JWT"}


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
