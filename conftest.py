"""Exports .env.test before chat_sync.config builds its settings."""
from __future__ import annotations

import os
from pathlib import Path

ENV_TEST = Path(__file__).with_name(".env.test")


def _read_env(path: Path) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for line in path.read_text().splitlines():
        if line.lstrip().startswith("#"):
            continue
        name, sep, value = line.partition("=")
        if sep:
            pairs[name.strip()] = value.strip()
    return pairs


if ENV_TEST.exists():
    for _name, _value in _read_env(ENV_TEST).items():
        os.environ.setdefault(_name, _value)
