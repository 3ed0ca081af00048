from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from thread_relay import __main__ as entry
from thread_relay.config import Settings


class RecordingApp:
    created: list[Settings] = []

    def __init__(self, settings: Settings) -> None:
        RecordingApp.created.append(settings)

    async def run(self) -> None:
        return None


def _isolate_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    environ = {
        key: value
        for key, value in os.environ.items()
        if key != "DISCORD_TOKEN" and not key.startswith(("THREAD_MAPPING_", "RELAY_"))
    }
    monkeypatch.setattr(os, "environ", environ)


def test_main_loads_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _isolate_environ(monkeypatch)
    env_file = tmp_path / "relay.env"
    env_file.write_text(
        "DISCORD_TOKEN=file-token\nTHREAD_MAPPING_1=10:20:all\n", encoding="utf-8"
    )
    RecordingApp.created.clear()
    monkeypatch.setattr(entry, "ThreadRelayApp", RecordingApp)
    monkeypatch.setattr(sys, "argv", ["thread-relay", "--env-file", str(env_file), "-debug"])

    entry.main()

    assert len(RecordingApp.created) == 1
    settings = RecordingApp.created[0]
    assert settings.discord_token == "file-token"
    assert settings.mapping_entries == ["10:20:all"]


def test_main_requires_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _isolate_environ(monkeypatch)
    monkeypatch.setattr(entry, "ThreadRelayApp", RecordingApp)
    monkeypatch.setattr(
        sys, "argv", ["thread-relay", "--env-file", str(tmp_path / "missing.env")]
    )

    with pytest.raises(SystemExit):
        entry.main()
