"""Request deduplication middleware.

Identical concurrent requests share a single downstream execution. The
response is captured once and replayed to every caller, so the handler
runs one time no matter how many duplicates arrive while it is in flight.
"""

import asyncio
import hashlib
import inspect
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from fastapi import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from careerguard.app.core.logging import get_logger
from careerguard.app.exceptions import ThrottleException
from careerguard.app.middleware.identity import get_client_ip
from careerguard.app.services.dedup import DeduplicationCoordinator

logger = get_logger(__name__)

KeyGenerator = Callable[[Request], Union[Optional[str], Awaitable[Optional[str]]]]

# Methods the default key generator coalesces
DEDUP_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

# Larger bodies are streamed through without deduplication
MAX_DEDUP_BODY_BYTES = 1024 * 1024


@dataclass
class CapturedResponse:
    """A fully buffered ASGI response that can be replayed."""
    status: int = 500
    headers: List[Tuple[bytes, bytes]] = field(default_factory=list)
    body: bytes = b""

    async def replay(self, send: Send) -> None:
        await send({"type": "http.response.start", "status": self.status, "headers": list(self.headers)})
        await send({"type": "http.response.body", "body": self.body, "more_body": False})


def _replay_body(body: bytes, receive: Optional[Receive] = None, more_body: bool = False) -> Receive:
    """Receive callable that yields the buffered body first.

    Later calls defer to ``receive`` when given; otherwise they wait
    forever, as a shared execution is not tied to any one client.
    ``more_body`` marks a partial buffer whose rest is still on ``receive``.
    """
    sent = False

    async def wrapped() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": more_body}
        if receive is not None:
            return await receive()
        await asyncio.Event().wait()
        return {"type": "http.disconnect"}

    return wrapped


async def _read_body(receive: Receive, limit: int) -> Tuple[bytes, bool]:
    """Buffer the request body up to ``limit`` bytes.

    Returns the bytes read and whether that is the whole body.
    """
    chunks = []
    size = 0
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return b"".join(chunks), True
        chunk = message.get("body", b"")
        chunks.append(chunk)
        size += len(chunk)
        if not message.get("more_body", False):
            return b"".join(chunks), True
        if size > limit:
            return b"".join(chunks), False


async def default_key_generator(request: Request) -> Optional[str]:
    """Key from method, path, query, caller identity and body hash.

    Only state-changing methods are coalesced. The caller is identified by
    a hash of the Authorization header, or by client IP when there is none.
    """
    if request.method not in DEDUP_METHODS:
        return None
    body = await request.body()
    caller = request.headers.get("Authorization") or get_client_ip(request)
    digest = hashlib.sha256()
    for part in (request.method, request.url.path, request.url.query, caller):
        digest.update(part.encode())
        digest.update(b"\x00")
    digest.update(hashlib.sha256(body).digest())
    return f"dedup:{request.method}:{request.url.path}:{digest.hexdigest()[:32]}"


class DeduplicationMiddleware:
    """Pure ASGI middleware around a DeduplicationCoordinator.

    Example:
        app.add_middleware(DeduplicationMiddleware, coordinator=DeduplicationCoordinator(30.0))
    """

    def __init__(
        self,
        app: ASGIApp,
        coordinator: DeduplicationCoordinator,
        key_generator: Optional[KeyGenerator] = None,
        max_body_bytes: int = MAX_DEDUP_BODY_BYTES,
    ):
        self.app = app
        self.coordinator = coordinator
        self.key_generator = key_generator or default_key_generator
        self.max_body_bytes = max_body_bytes

    async def _key_for(self, scope: Scope, body: bytes) -> Optional[str]:
        request = Request(scope, receive=_replay_body(body))
        key = self.key_generator(request)
        if inspect.isawaitable(key):
            key = await key
        return key

    async def _capture(self, scope: Scope, body: bytes) -> CapturedResponse:
        captured = CapturedResponse()
        chunks: List[bytes] = []

        async def capture_send(message: Message) -> None:
            if message["type"] == "http.response.start":
                captured.status = message["status"]
                captured.headers = list(message.get("headers", []))
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))

        await self.app(scope, _replay_body(body), capture_send)
        captured.body = b"".join(chunks)
        return captured

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if self.key_generator is default_key_generator and scope.get("method") not in DEDUP_METHODS:
            await self.app(scope, receive, send)
            return

        body, complete = await _read_body(receive, self.max_body_bytes)
        if not complete:
            await self.app(scope, _replay_body(body, receive, more_body=True), send)
            return

        key = await self._key_for(scope, body)
        if key is None:
            await self.app(scope, _replay_body(body, receive), send)
            return

        try:
            response = await self.coordinator.run(key, lambda: self._capture(scope, body))
        except ThrottleException as e:
            # Raised outside the app's exception handlers, so render it here
            logger.warning(f"Deduplicated request failed: {e.message}")
            error = JSONResponse(
                status_code=e.status_code,
                content={"error": type(e).__name__, "message": e.message},
            )
            await error(scope, receive, send)
            return
        await response.replay(send)
