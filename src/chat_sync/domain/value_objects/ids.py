from __future__ import annotations

import secrets
import string
import time

TEMP_ID_PREFIX = "temp_"

_ALPHABET = string.digits + string.ascii_lowercase


def new_temp_id() -> str:
    """Client-side id for an optimistic record: ``temp_<epoch-ms>_<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{suffix}"


def is_temp_id(value: str) -> bool:
    return value.startswith(TEMP_ID_PREFIX)
