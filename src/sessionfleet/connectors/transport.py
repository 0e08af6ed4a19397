"""
Network session collaborator.

The state machine only needs a narrow view of the wire: open a handle,
read a stream of events, send text, close. ``SessionTransport`` and
``SessionHandle`` describe that view; ``WebSocketTransport`` implements it
over a text WebSocket with aiohttp.

Event stream contract (per handle):
- ``Established`` first, once the session is usable
- any number of ``InboundText``, ``TransportError`` and ``Kicked``
- ``SessionEnd`` last, always
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import aiohttp

from sessionfleet.connectors.signals import error_code_for, normalize_reason

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sessionfleet.connectors.types import Identity, ServerConfig

logger = logging.getLogger(__name__)

# Close codes that mean the server sent us away rather than a clean goodbye
_KICK_CLOSE_CODES = frozenset(
    {
        int(aiohttp.WSCloseCode.POLICY_VIOLATION),
        int(aiohttp.WSCloseCode.TRY_AGAIN_LATER),
        int(aiohttp.WSCloseCode.MESSAGE_TOO_BIG),
        int(aiohttp.WSCloseCode.UNSUPPORTED_DATA),
    }
)


@dataclass(frozen=True)
class Established:
    """Session is open and ready for commands."""


@dataclass(frozen=True)
class InboundText:
    """Text received from the server."""

    text: str


@dataclass(frozen=True)
class TransportError:
    """Transport-level error. ``code`` is symbolic (e.g. "ECONNRESET") when known."""

    code: str | None
    message: str


@dataclass(frozen=True)
class Kicked:
    """Server ended the session with a reason."""

    reason: str


@dataclass(frozen=True)
class SessionEnd:
    """Session is over; no more events follow."""

    reason: str = ""


SessionEvent = Established | InboundText | TransportError | Kicked | SessionEnd


class SessionHandle(Protocol):
    """One live network session for one identity."""

    @property
    def closed(self) -> bool: ...

    def events(self) -> AsyncIterator[SessionEvent]: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self) -> None: ...


class SessionTransport(Protocol):
    """Factory for session handles."""

    async def open(self, identity: Identity, server: ServerConfig) -> SessionHandle: ...

    async def close(self) -> None: ...


@dataclass
class WebSocketTransportConfig:
    """Configuration for the WebSocket transport."""

    connect_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 30000
    identity_header: str = "X-Session-Identity"

    def __post_init__(self) -> None:
        if self.connect_timeout_ms <= 0:
            raise ValueError(f"connect_timeout_ms must be > 0, got {self.connect_timeout_ms}")
        if self.heartbeat_interval_ms <= 0:
            raise ValueError(
                f"heartbeat_interval_ms must be > 0, got {self.heartbeat_interval_ms}"
            )


class WebSocketHandle:
    """SessionHandle over an aiohttp client WebSocket."""

    def __init__(self, identity: Identity, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._identity = identity
        self._ws = ws
        self._closing = False
        self._close_reason: str = ""

    @property
    def closed(self) -> bool:
        return self._closing or self._ws.closed

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise ConnectionError(f"Session for {self._identity.name} is closed")
        await self._ws.send_str(text)

    async def close(self) -> None:
        """Close the WebSocket. Safe to call more than once."""
        self._closing = True
        if not self._ws.closed:
            await self._ws.close()

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Yield session events until the socket closes."""
        yield Established()

        end_reason = ""
        try:
            while True:
                msg = await self._ws.receive()

                if msg.type == aiohttp.WSMsgType.TEXT:
                    yield InboundText(text=msg.data)

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    yield InboundText(text=msg.data.decode("utf-8", errors="replace"))

                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    self._close_reason = normalize_reason(msg.extra) if msg.extra else ""
                    break

                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    exc = msg.data if isinstance(msg.data, BaseException) else self._ws.exception()
                    yield TransportError(
                        code=error_code_for(exc) if exc is not None else None,
                        message=str(exc) if exc is not None else "WebSocket error",
                    )
                    end_reason = "error"
                    break

        except asyncio.CancelledError:
            raise
        except Exception as e:
            yield TransportError(code=error_code_for(e), message=str(e))
            end_reason = "error"

        if not self._closing:
            reason = self._kick_reason()
            if reason is not None:
                yield Kicked(reason=reason)
                end_reason = end_reason or "kicked"

        yield SessionEnd(reason=end_reason or "closed")

    def _kick_reason(self) -> str | None:
        """Reason text if the server closed us with a kick-like close."""
        if self._close_reason:
            return self._close_reason
        code = self._ws.close_code
        if code is not None and code in _KICK_CLOSE_CODES:
            return f"closed by server (code {code})"
        return None


class WebSocketTransport:
    """
    SessionTransport over text WebSockets.

    One aiohttp ClientSession is shared by all handles; ``close()`` releases
    it and should be called at shutdown.
    """

    def __init__(self, config: WebSocketTransportConfig | None = None) -> None:
        self._config = config or WebSocketTransportConfig()
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def open(self, identity: Identity, server: ServerConfig) -> SessionHandle:
        """
        Connect a WebSocket session for an identity.

        Raises:
            aiohttp.ClientError, OSError, TimeoutError: If the connection fails.
        """
        session = self._get_session()
        ws = await asyncio.wait_for(
            session.ws_connect(
                server.url,
                heartbeat=self._config.heartbeat_interval_ms / 1000,
                headers={self._config.identity_header: identity.name},
            ),
            timeout=self._config.connect_timeout_ms / 1000,
        )
        logger.debug("WebSocket opened", extra={"identity": identity.name})
        return WebSocketHandle(identity, ws)

    async def close(self) -> None:
        """Release the shared HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
