"""
A scripted backend for RequestPipeline tests, served through httpx.MockTransport.
"""
import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import httpx

BASE_URL = "https://api.example.test"
REFRESH_PATH = "/api/auth/refresh"


def success(data: Any = None, message: str = "OK") -> Dict[str, Any]:
    return {
        "status": "SUCCESS",
        "data": data,
        "message": message,
        "timestamp": "2025-01-15T12:00:00Z",
    }


def failure(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    return {
        "status": "ERROR",
        "message": message,
        "error": {"code": code, "details": details},
        "timestamp": "2025-01-15T12:00:00Z",
    }


def pair_payload(pair) -> Dict[str, str]:
    return {
        "accessToken": pair.access_token,
        "refreshToken": pair.refresh_token,
        "accessTokenExpiresAt": pair.access_expires_at,
        "refreshTokenExpiresAt": pair.refresh_expires_at,
    }


class FakeBackend:
    """
    Routes requests by path to handlers and records every request.

    Handlers receive the httpx.Request and return an httpx.Response.
    The renewal handler counts its calls separately; `refresh_delay` keeps a
    renewal open long enough for concurrent requests to pile up behind it.
    """

    def __init__(self):
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []
        self.calls: Dict[str, int] = defaultdict(int)
        self.refresh_delay = 0.0

    def route(self, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[path] = handler

    def authorizations(self, path: str) -> List[Optional[str]]:
        return [r.headers.get("Authorization") for r in self.requests if r.url.path == path]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        # The pipeline re-arms the same Request object on replay; keep what was sent
        self.requests.append(
            httpx.Request(
                request.method, request.url, headers=dict(request.headers), content=request.content
            )
        )
        self.calls[path] += 1
        if path == REFRESH_PATH and self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        handler = self.routes.get(path)
        if handler is None:
            return httpx.Response(404, json=failure("NOT_FOUND", "No such route"))
        return handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def bearer_only(token: str, data: Any = None):
    """Handler that accepts exactly one access credential and 401s otherwise."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") == f"Bearer {token}":
            return httpx.Response(200, json=success(data))
        return httpx.Response(401, json=failure("AUTH_TOKEN_INVALID", "Invalid token"))

    return handler
