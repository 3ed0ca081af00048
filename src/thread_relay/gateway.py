"""Minimal Discord gateway listener delivering dispatch events."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import sys
from typing import Any, AsyncIterator, Mapping

import aiohttp

_GATEWAY_VERSION = 10

INTENT_GUILDS = 1 << 0
INTENT_GUILD_MESSAGES = 1 << 9
INTENT_MESSAGE_CONTENT = 1 << 15
DEFAULT_INTENTS = INTENT_GUILDS | INTENT_GUILD_MESSAGES | INTENT_MESSAGE_CONTENT

_OP_DISPATCH = 0
_OP_HEARTBEAT = 1
_OP_IDENTIFY = 2
_OP_RECONNECT = 7
_OP_INVALID_SESSION = 9
_OP_HELLO = 10
_OP_HEARTBEAT_ACK = 11

# Close code sent when a heartbeat went unacknowledged.
_ZOMBIE_CLOSE_CODE = 4000

# Close codes after which reconnecting with the same settings cannot succeed.
_FATAL_CLOSE_CODES = {4004, 4010, 4011, 4012, 4013, 4014}

logger = logging.getLogger(__name__)


class GatewayFatalError(RuntimeError):
    """The gateway rejected the session in a way a reconnect will not fix."""

    def __init__(self, close_code: int) -> None:
        super().__init__(f"Discord gateway closed the connection with code {close_code}")
        self.close_code = close_code


class GatewayListener:
    """Connect to the gateway and yield ``(event_name, data)`` dispatches.

    One call to :meth:`events` covers one connection; it returns when Discord
    asks for a reconnect or the socket closes, and the caller reconnects.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        gateway_url: str = "wss://gateway.discord.gg",
        intents: int = DEFAULT_INTENTS,
    ) -> None:
        self._session = session
        self._token = _raw_token(token)
        self._gateway_url = gateway_url.rstrip("/")
        self._intents = intents
        self._sequence: int | None = None
        self._awaiting_ack = False

    def set_gateway_url(self, url: str) -> None:
        self._gateway_url = url.rstrip("/")

    async def events(self) -> AsyncIterator[tuple[str, Mapping[str, Any]]]:
        url = f"{self._gateway_url}/?v={_GATEWAY_VERSION}&encoding=json"
        self._sequence = None
        self._awaiting_ack = False
        async with self._session.ws_connect(url, autoping=True, max_msg_size=0) as ws:
            hello = await ws.receive_json()
            if hello.get("op") != _OP_HELLO:
                raise RuntimeError(f"Unexpected first gateway frame: {hello!r}")
            interval = float(hello["d"]["heartbeat_interval"]) / 1000.0
            heartbeat = asyncio.create_task(
                self._heartbeat_loop(ws, interval), name="gateway-heartbeat"
            )
            try:
                await ws.send_json(self._identify_payload())
                async for frame in ws:
                    if frame.type != aiohttp.WSMsgType.TEXT:
                        if frame.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                            break
                        continue
                    data = json.loads(frame.data)
                    op = data.get("op")
                    if data.get("s") is not None:
                        self._sequence = int(data["s"])
                    if op == _OP_DISPATCH:
                        yield str(data.get("t") or ""), data.get("d") or {}
                    elif op == _OP_HEARTBEAT:
                        await self._send_heartbeat(ws)
                    elif op == _OP_RECONNECT:
                        logger.info("Gateway asked for a reconnect")
                        return
                    elif op == _OP_INVALID_SESSION:
                        logger.warning("Gateway invalidated the session, reconnecting")
                        await asyncio.sleep(random.uniform(1.0, 5.0))
                        return
                    elif op == _OP_HEARTBEAT_ACK:
                        self._awaiting_ack = False
                        logger.debug("Gateway heartbeat acknowledged")
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat

            close_code = ws.close_code
            if close_code in _FATAL_CLOSE_CODES:
                raise GatewayFatalError(close_code)
            logger.warning("Gateway connection closed (code=%s)", close_code)

    async def _heartbeat_loop(self, ws: aiohttp.ClientWebSocketResponse, interval: float) -> None:
        await asyncio.sleep(interval * random.random())
        while not ws.closed:
            if self._awaiting_ack:
                logger.warning(
                    "Gateway did not acknowledge the last heartbeat, dropping the connection"
                )
                await ws.close(code=_ZOMBIE_CLOSE_CODE)
                return
            await self._send_heartbeat(ws)
            await asyncio.sleep(interval)

    async def _send_heartbeat(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            await ws.send_json({"op": _OP_HEARTBEAT, "d": self._sequence})
            self._awaiting_ack = True
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.warning("Could not send gateway heartbeat: %s", exc)

    def _identify_payload(self) -> dict[str, Any]:
        return {
            "op": _OP_IDENTIFY,
            "d": {
                "token": self._token,
                "intents": self._intents,
                "properties": {
                    "os": sys.platform,
                    "browser": "thread_relay",
                    "device": "thread_relay",
                },
            },
        }


def _raw_token(token: str) -> str:
    candidate = (token or "").strip()
    if candidate.lower().startswith("bot "):
        return candidate[4:].strip()
    return candidate
