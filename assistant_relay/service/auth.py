from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import httpx

from assistant_relay.config import AuthMode, Settings
from assistant_relay.logging import get_logger
from assistant_relay.service.errors import AuthenticationRequired

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


class AuthService:
    """Resolves a bearer credential to the identity provider's user.

    In ``jwt`` mode the provider's HS256 access tokens are verified locally
    with the shared secret. In ``remote`` mode the provider's user endpoint
    is asked to resolve the token. A credential is checked once; there are
    no retries.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock_skew_leeway: timedelta = timedelta(seconds=30),
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._clock_skew_leeway = clock_skew_leeway
        self.logger = logger

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        if self.settings.auth_mode == AuthMode.REMOTE:
            return await self._authenticate_remote(token)
        payload = self._decode_jwt(token)
        if not payload or not payload.get("sub"):
            return None
        return AuthContext(
            user_id=str(payload["sub"]),
            email=payload.get("email"),
            role=payload.get("role"),
        )

    async def require(self, authorization: Optional[str]) -> AuthContext:
        ctx = await self.authenticate(authorization)
        if ctx is None:
            raise AuthenticationRequired("Unauthorized")
        return ctx

    async def _authenticate_remote(self, token: str) -> Optional[AuthContext]:
        base_url = self.settings.identity_provider_url
        if not base_url:
            self.logger.error("identity_provider_not_configured")
            return None
        headers = {"Authorization": f"Bearer {token}"}
        if self.settings.identity_provider_api_key:
            headers["apikey"] = self.settings.identity_provider_api_key
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(10.0, connect=5.0), transport=self._transport
            ) as client:
                resp = await client.get(f"{base_url.rstrip('/')}/auth/v1/user", headers=headers)
        except httpx.HTTPError as exc:
            self.logger.warning("identity_provider_unreachable", error=str(exc))
            return None
        if resp.status_code != 200:
            self.logger.info("identity_provider_rejected", status_code=resp.status_code)
            return None
        try:
            body = resp.json()
        except ValueError:
            self.logger.warning("identity_provider_bad_body")
            return None
        user_id = body.get("id") if isinstance(body, dict) else None
        if not user_id:
            return None
        return AuthContext(user_id=str(user_id), email=body.get("email"), role=body.get("role"))

    def encode_token(
        self, user_id: str, *, ttl_seconds: int = 3600, **claims: Any
    ) -> str:
        """Mint an access token in the provider's format (dev tooling and tests)."""
        now = int(time.time())
        payload = {
            "sub": user_id,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + ttl_seconds,
            **claims,
        }
        if self.settings.jwt_issuer:
            payload.setdefault("iss", self.settings.jwt_issuer)
        return self._encode_jwt(payload)

    def _secret(self) -> bytes:
        if not self.settings.jwt_secret:
            raise AuthenticationRequired("Unauthorized")
        return self.settings.jwt_secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not self.settings.jwt_secret:
            self.logger.error("jwt_secret_not_configured")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # pin the algorithm; "none" and RS/HS confusion are rejected here
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if self.settings.jwt_issuer and payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None
