"""In-memory routing table mapping source threads to destinations."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .errors import ConfigParseError, NotMapped
from .models import RoutingRule

logger = logging.getLogger(__name__)

ENTRY_DELIMITER = ":"
BACKFILL_FLAG = "all"

_SNOWFLAKE_RE = re.compile(r"^[0-9]{1,20}$")
_WEBHOOK_URL_RE = re.compile(
    r"^https?://[A-Za-z0-9.\-]+(?::[0-9]+)?/api(?:/v[0-9]+)?/webhooks/[0-9]+/[A-Za-z0-9_\-]+/?$"
)


@dataclass(slots=True)
class LoadReport:
    """Result of a bulk load: accepted rules and per-entry failures."""

    loaded: list[RoutingRule] = field(default_factory=list)
    errors: list[ConfigParseError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def is_valid_id(value: str) -> bool:
    return bool(_SNOWFLAKE_RE.match(value))


def is_webhook_url(value: str) -> bool:
    return bool(_WEBHOOK_URL_RE.match(value))


def parse_mapping_entry(entry: str) -> RoutingRule:
    """Parse ``thread:channel[:endpoint][:all]`` into a routing rule.

    The endpoint is a URL and carries its own colons, so everything between the
    channel id and the optional trailing flag is joined back together.
    """

    raw = (entry or "").strip()
    if not raw:
        raise ConfigParseError(entry, "empty mapping entry")
    parts = [part.strip() for part in raw.split(ENTRY_DELIMITER)]
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise ConfigParseError(entry, "expected thread_id:channel_id[:endpoint][:all]")

    thread_id, channel_id, rest = parts[0], parts[1], parts[2:]
    if not is_valid_id(thread_id):
        raise ConfigParseError(entry, f"invalid thread id {thread_id!r}")
    if not is_valid_id(channel_id):
        raise ConfigParseError(entry, f"invalid channel id {channel_id!r}")

    backfill_requested = False
    if rest and rest[-1] == BACKFILL_FLAG:
        backfill_requested = True
        rest = rest[:-1]

    endpoint: str | None = None
    if rest:
        candidate = ENTRY_DELIMITER.join(rest)
        if not is_webhook_url(candidate):
            raise ConfigParseError(entry, "unrecognised trailing field")
        endpoint = candidate

    return RoutingRule(
        source_thread_id=thread_id,
        destination_channel_id=channel_id,
        delivery_endpoint=endpoint,
        backfill_requested=backfill_requested,
    )


class MappingStore:
    """Routing rules keyed by source thread id.

    Writes swap in a fresh dict under a lock; ``resolve`` reads whatever dict
    is current, so it never sees a half-applied update.
    """

    def __init__(self, rules: Iterable[RoutingRule] = ()) -> None:
        self._write_lock = threading.Lock()
        self._rules: Mapping[str, RoutingRule] = {
            rule.source_thread_id: rule for rule in rules
        }

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._rules

    def rules(self) -> list[RoutingRule]:
        return list(self._rules.values())

    def resolve(self, thread_id: str) -> RoutingRule | None:
        return self._rules.get(str(thread_id))

    def load(self, entries: Iterable[str]) -> LoadReport:
        report = LoadReport()
        for entry in entries:
            try:
                rule = parse_mapping_entry(entry)
            except ConfigParseError as exc:
                logger.warning("Skipping malformed mapping entry: %s", exc)
                report.errors.append(exc)
                continue
            report.loaded.append(rule)

        if report.loaded:
            with self._write_lock:
                updated = dict(self._rules)
                for rule in report.loaded:
                    if rule.source_thread_id in updated:
                        logger.info(
                            "Mapping for thread %s redefined, keeping the last entry",
                            rule.source_thread_id,
                        )
                    updated[rule.source_thread_id] = rule
                self._rules = updated

        for rule in report.loaded:
            logger.info(
                "Loaded mapping: thread %s -> channel %s (mode=%s, backfill=%s)",
                rule.source_thread_id,
                rule.destination_channel_id,
                rule.delivery_mode.value,
                rule.backfill_requested,
            )
        logger.info(
            "Mapping load finished: %d loaded, %d rejected",
            len(report.loaded),
            len(report.errors),
        )
        return report

    def set_destination(
        self,
        thread_id: str,
        channel_id: str,
        backfill_requested: bool = False,
        *,
        clear_endpoint: bool = False,
    ) -> RoutingRule:
        thread_id = str(thread_id).strip()
        channel_id = str(channel_id).strip()
        if not is_valid_id(thread_id):
            raise ConfigParseError(thread_id, "invalid thread id")
        if not is_valid_id(channel_id):
            raise ConfigParseError(channel_id, "invalid channel id")

        with self._write_lock:
            current = self._rules.get(thread_id)
            if current is None:
                rule = RoutingRule(
                    source_thread_id=thread_id,
                    destination_channel_id=channel_id,
                    backfill_requested=backfill_requested,
                )
            else:
                rule = current.with_updates(
                    destination_channel_id=channel_id,
                    backfill_requested=backfill_requested,
                    clear_endpoint=clear_endpoint,
                )
            self._rules = {**self._rules, thread_id: rule}

        logger.info(
            "Destination set: thread %s -> channel %s (mode=%s, backfill=%s)",
            thread_id,
            channel_id,
            rule.delivery_mode.value,
            backfill_requested,
        )
        return rule

    def set_delivery_endpoint(self, thread_id: str, endpoint: str) -> RoutingRule:
        thread_id = str(thread_id).strip()
        endpoint = (endpoint or "").strip()
        if not is_webhook_url(endpoint):
            raise ConfigParseError(endpoint, "not a webhook URL")

        with self._write_lock:
            current = self._rules.get(thread_id)
            if current is None:
                raise NotMapped(thread_id)
            rule = current.with_updates(delivery_endpoint=endpoint)
            self._rules = {**self._rules, thread_id: rule}

        logger.info(
            "Delivery endpoint set for thread %s, relaying with author identity",
            thread_id,
        )
        return rule
