# ilovevideo/identity.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import requests
from fastapi import Request

logger = logging.getLogger(__name__)


class Tier:
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    PRO = "pro"


@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None


@dataclass
class IdentityContext:
    key: str
    tier: str = Tier.ANONYMOUS
    user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_pro(self) -> bool:
        return self.tier == Tier.PRO


class IdentityProvider:
    """Thin client for the Supabase auth + ``profiles`` REST endpoints."""

    def __init__(self, base_url: str, service_key: str, timeout: float = 10.0) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.service_key = service_key or ""
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.service_key)

    def _headers(self, bearer: Optional[str] = None) -> dict:
        return {
            "apikey": self.service_key,
            "Authorization": f"Bearer {bearer or self.service_key}",
        }

    def get_user(self, token: str) -> Optional[AuthUser]:
        if not self.enabled or not token:
            return None
        r = requests.get(
            f"{self.base_url}/auth/v1/user",
            headers=self._headers(token),
            timeout=self.timeout,
        )
        if r.status_code != 200:
            return None
        body = r.json() or {}
        if not body.get("id"):
            return None
        return AuthUser(id=str(body["id"]), email=body.get("email"))

    def is_pro(self, user_id: str) -> bool:
        if not self.enabled:
            return False
        r = requests.get(
            f"{self.base_url}/rest/v1/profiles",
            params={"id": f"eq.{user_id}", "select": "is_pro"},
            headers=self._headers(),
            timeout=self.timeout,
        )
        r.raise_for_status()
        rows = r.json() or []
        return bool(rows and rows[0].get("is_pro"))

    def activate_pro(self, user_id: str, reference: str) -> None:
        if not self.enabled:
            logger.warning("identity provider not configured; cannot activate pro for %s", user_id)
            return
        r = requests.patch(
            f"{self.base_url}/rest/v1/profiles",
            params={"id": f"eq.{user_id}"},
            json={
                "is_pro": True,
                "pro_since": datetime.now(timezone.utc).isoformat(),
                "paystack_ref": reference,
            },
            headers={**self._headers(), "Prefer": "return=minimal"},
            timeout=self.timeout,
        )
        r.raise_for_status()


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    if not header.startswith("Bearer "):
        return None
    return header[7:].strip() or None


def client_ip(request: Request) -> str:
    # first hop of X-Forwarded-For; only trustworthy behind a proxy that sets it
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def authenticate(request: Request, provider: IdentityProvider) -> Optional[AuthUser]:
    token = bearer_token(request)
    if not token:
        return None
    try:
        return await asyncio.to_thread(provider.get_user, token)
    except Exception as e:
        logger.warning("token verification failed: %s", e)
        return None


async def resolve_identity(request: Request, provider: IdentityProvider) -> IdentityContext:
    """Work out the quota key and tier for a request. Never raises."""
    user = await authenticate(request, provider)
    if user is None:
        return IdentityContext(key=client_ip(request))

    tier = Tier.AUTHENTICATED
    try:
        if await asyncio.to_thread(provider.is_pro, user.id):
            tier = Tier.PRO
    except Exception as e:
        logger.warning("pro lookup failed for %s, treating as non-pro: %s", user.id, e)
    return IdentityContext(key=f"user:{user.id}", tier=tier, user_id=user.id, email=user.email)
