from __future__ import annotations

import secrets
import string
from collections.abc import Container

_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_LENGTH = 8


def new_id(prefix: str, *, taken: Container[str] | None = None) -> str:
    """Return ``<prefix>_<suffix>`` that is not already in ``taken``."""
    while True:
        suffix = "".join(secrets.choice(_ALPHABET) for _ in range(_SUFFIX_LENGTH))
        candidate = f"{prefix}_{suffix}"
        if taken is None or candidate not in taken:
            return candidate
