"""Environment based configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

from .backfill import BackfillOptions
from .utils import parse_bool, parse_id_list

TOKEN_KEY = "DISCORD_TOKEN"
MAPPING_PREFIX = "THREAD_MAPPING_"


@dataclass(slots=True)
class Settings:
    """Everything the relay needs at startup."""

    discord_token: str
    mapping_entries: list[str] = field(default_factory=list)
    admin_ids: frozenset[str] = frozenset()
    backfill: BackfillOptions = field(default_factory=BackfillOptions)
    debug: bool = False


def _mapping_sort_key(key: str, prefix: str) -> tuple[int, int, str]:
    suffix = key[len(prefix):]
    if suffix.isdigit():
        return (0, int(suffix), suffix)
    return (1, 0, suffix)


def collect_mapping_entries(
    environ: Mapping[str, str], prefix: str = MAPPING_PREFIX
) -> list[str]:
    """Return ``<prefix><N>`` values ordered by ``N``."""

    keys = sorted(
        (key for key in environ if key.startswith(prefix)),
        key=lambda key: _mapping_sort_key(key, prefix),
    )
    return [environ[key] for key in keys if environ[key].strip()]


def _parse_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return max(0.0, float(value.strip()))
    except ValueError:
        return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return default


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = BackfillOptions()
    backfill = BackfillOptions(
        rate_per_second=_parse_float(
            env.get("RELAY_BACKFILL_RATE"), defaults.rate_per_second
        ),
        max_rate_limit_retries=_parse_int(
            env.get("RELAY_BACKFILL_MAX_RETRIES"), defaults.max_rate_limit_retries
        ),
        announce_progress=parse_bool(env.get("RELAY_BACKFILL_ANNOUNCE"), True),
    )
    return Settings(
        discord_token=(env.get(TOKEN_KEY) or "").strip(),
        mapping_entries=collect_mapping_entries(env),
        admin_ids=parse_id_list(env.get("RELAY_ADMIN_IDS")),
        backfill=backfill,
        debug=parse_bool(env.get("RELAY_DEBUG"), False),
    )
