"""Pass/fail authorization for the admin API.

Identity verification (e.g. an access-proxy JWT) is an external concern;
the admin routes only consume a yes/no answer from an ``Authorizer``.
"""

from __future__ import annotations

import hmac
from typing import Protocol

from aiohttp import web

from moltkeeper.config import AdminConfig


class Authorizer(Protocol):
    async def authorize(self, request: web.Request) -> bool: ...


class BearerTokenAuthorizer:
    """Accepts ``Authorization: Bearer <token>`` matching the configured token."""

    def __init__(self, token: str) -> None:
        self._token = token.encode()

    async def authorize(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value:
            return False
        return hmac.compare_digest(value.strip().encode(), self._token)


class AllowAllAuthorizer:
    """Local development only."""

    async def authorize(self, request: web.Request) -> bool:
        return True


class DenyAllAuthorizer:
    """Used when no admin credential is configured."""

    async def authorize(self, request: web.Request) -> bool:
        return False


def authorizer_from_config(config: AdminConfig) -> Authorizer:
    if config.token is not None:
        return BearerTokenAuthorizer(config.token.get_secret_value())
    if config.allow_unauthenticated:
        return AllowAllAuthorizer()
    return DenyAllAuthorizer()
