"""Application bootstrap for Thread Relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Mapping

import aiohttp

from .backfill import BackfillEngine, HistorySourceProtocol
from .commands import CommandHandler, classify
from .config import Settings
from .discord import DiscordClient, is_relayable_payload, parse_message
from .errors import DeliveryFailure
from .gateway import GatewayFatalError, GatewayListener
from .mapping import MappingStore
from .models import InboundMessage
from .relay import DeliveryAPIProtocol, RelayDispatcher
from .utils import ChannelProcessingGuard

logger = logging.getLogger(__name__)


def skip_during_backfill(message: InboundMessage) -> bool:
    """Bot posts and operator commands are not part of the copied history."""

    return message.author_is_bot or classify(message.body_text) is not None


class ThreadRelayApp:
    """High level coordinator tying together the gateway, the store and delivery."""

    def __init__(self, settings: Settings, *, store: MappingStore | None = None):
        self._settings = settings
        if store is None:
            store = MappingStore()
            store.load(settings.mapping_entries)
        self._store = store
        self._guard = ChannelProcessingGuard()
        self._event_tasks: set[asyncio.Task[None]] = set()
        self._dispatcher: RelayDispatcher | None = None
        self._commands: CommandHandler | None = None
        self._engine: BackfillEngine | None = None

    @property
    def store(self) -> MappingStore:
        return self._store

    @property
    def engine(self) -> BackfillEngine | None:
        return self._engine

    @property
    def commands(self) -> CommandHandler | None:
        return self._commands

    def attach(
        self,
        api: DeliveryAPIProtocol,
        history: HistorySourceProtocol,
    ) -> None:
        """Build the relay components on top of a delivery API and history source."""

        self._dispatcher = RelayDispatcher(self._store, api, guard=self._guard)
        self._engine = BackfillEngine(
            self._store,
            api,
            history,
            guard=self._guard,
            options=self._settings.backfill,
            skip=skip_during_backfill,
        )
        self._commands = CommandHandler(
            self._store,
            api,
            self._engine,
            admin_ids=self._settings.admin_ids,
        )

    async def run(self) -> None:
        async with aiohttp.ClientSession() as session:
            client = DiscordClient(session, self._settings.discord_token)
            listener = GatewayListener(session, self._settings.discord_token)
            self.attach(client, client)
            logger.info("Thread Relay started with %d mappings", len(self._store))
            try:
                await self._supervise(
                    "discord-gateway", lambda: self._gateway_loop(client, listener)
                )
            finally:
                await self._drain()

    async def _gateway_loop(self, client: DiscordClient, listener: GatewayListener) -> None:
        try:
            listener.set_gateway_url(await client.fetch_gateway_url())
        except DeliveryFailure as exc:
            logger.warning("Gateway lookup failed, using the default URL: %s", exc)
        async for event_name, data in listener.events():
            self._spawn(self.handle_event(event_name, data), name=f"event-{event_name}")

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Task %s stopped", name)
                raise
            except GatewayFatalError:
                logger.critical("Task %s cannot recover, shutting down", name)
                raise
            except Exception:
                logger.exception("Task %s failed", name)
            else:
                logger.warning("Task %s ended, restarting", name)
            await asyncio.sleep(retry_delay)

    def _spawn(self, coro: Awaitable[None], *, name: str) -> None:
        async def runner() -> None:
            try:
                await coro
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unhandled error while processing %s", name)

        task = asyncio.create_task(runner(), name=name)
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _drain(self) -> None:
        for task in list(self._event_tasks):
            task.cancel()
        if self._event_tasks:
            await asyncio.gather(*self._event_tasks, return_exceptions=True)
        if self._commands is not None:
            await self._commands.close()

    async def handle_event(self, event_name: str, data: Mapping[str, Any]) -> None:
        if event_name == "READY":
            user = data.get("user") or {}
            logger.info(
                "Connected to Discord as %s (%s)",
                user.get("username") or "?",
                user.get("id") or "?",
            )
            return
        if event_name == "MESSAGE_CREATE":
            await self.handle_message_payload(data)
            return
        logger.debug("Ignoring gateway event %s", event_name)

    async def handle_message_payload(self, payload: Mapping[str, Any]) -> None:
        if self._dispatcher is None or self._commands is None:
            raise RuntimeError("ThreadRelayApp.attach() must be called first")

        thread_id = str(payload.get("channel_id") or "")
        if not thread_id:
            return
        message = parse_message(payload)
        # Relayed posts come back as webhook or bot messages; never loop them.
        if message.author_is_bot:
            return

        command = classify(message.body_text)
        if command is not None and self._commands.applies(command, thread_id):
            logger.info("Command %s received in thread %s", type(command).__name__, thread_id)
            await self._commands.handle(command, thread_id, message)
            return

        if not is_relayable_payload(payload):
            return
        await self._dispatcher.on_message(message, thread_id)
