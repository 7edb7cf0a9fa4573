from __future__ import annotations
import asyncio
import aiohttp
import jwt
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .config import HttpConfig, SearchConsoleConfig
from .fetch import request_with_retry

LOGGER = logging.getLogger(__name__)

SCOPE_WEBMASTERS = "https://www.googleapis.com/auth/webmasters"
SCOPE_INDEXING = "https://www.googleapis.com/auth/indexing"

@dataclass
class AccessToken:
    access_token: str
    expires_at: float

    def is_expiring_soon(self, now: float, buffer_seconds: int = 60) -> bool:
        return now >= self.expires_at - buffer_seconds

class ServiceAccountTokenProvider:
    """OAuth2 JWT-bearer flow for a Google service account, one cached token per scope."""

    def __init__(self, cfg: SearchConsoleConfig, session: aiohttp.ClientSession,
                 http: Optional[HttpConfig] = None, clock: Callable[[], float] = time.time):
        self.cfg = cfg
        self.session = session
        self.http = http or HttpConfig()
        self.clock = clock
        self.last_error: Optional[str] = None
        self._tokens: Dict[str, AccessToken] = {}
        self._lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self.cfg.configured

    def _assertion(self, scope: str) -> str:
        now = int(self.clock())
        claims = {
            "iss": self.cfg.client_email,
            "scope": scope,
            "aud": self.cfg.token_url,
            "iat": now,
            "exp": now + 3600,
        }
        return jwt.encode(claims, self.cfg.private_key, algorithm="RS256")

    async def get_token(self, scope: str) -> Optional[str]:
        """Return a bearer token for ``scope`` or ``None`` (reason in ``last_error``)."""
        if not self.configured:
            self.last_error = "Search Console service account not configured"
            return None
        async with self._lock:
            cached = self._tokens.get(scope)
            if cached and not cached.is_expiring_soon(self.clock()):
                return cached.access_token

            try:
                assertion = self._assertion(scope)
            except (jwt.PyJWTError, ValueError, TypeError) as e:
                self.last_error = f"Failed to sign JWT: {e}"
                LOGGER.error(self.last_error)
                return None

            resp = await request_with_retry(
                self.session, "POST", self.cfg.token_url, cfg=self.http,
                data={
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                },
            )
            payload = resp.json()
            if resp.status != 200 or not isinstance(payload, dict) or "access_token" not in payload:
                self.last_error = f"Token request failed ({resp.status}): {(resp.error or resp.text)[:200]}"
                LOGGER.error(self.last_error)
                return None

            token = AccessToken(
                access_token=payload["access_token"],
                expires_at=self.clock() + int(payload.get("expires_in", 3600)),
            )
            self._tokens[scope] = token
            self.last_error = None
            LOGGER.debug("Fetched access token for scope %s", scope)
            return token.access_token
