"""Opt-in safeguard for irreversible storage and database mutations."""

from __future__ import annotations

import os
from typing import Mapping

from .errors import SafeguardError

DESTRUCTIVE_FLAG = "ALLOW_DESTRUCTIVE"
_ENABLED_VALUES = {"1", "true", "yes"}


def destructive_enabled(value: str | None) -> bool:
    return (value or "").strip().casefold() in _ENABLED_VALUES


def assert_destructive_allowed(
    operation: str,
    details: str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Raise ``SafeguardError`` unless the destructive flag is enabled.

    Call strictly before the first call that deletes or overwrites state that
    cannot be rebuilt.
    """
    env = os.environ if environ is None else environ
    if destructive_enabled(env.get(DESTRUCTIVE_FLAG)):
        return
    scope = f" ({details})" if details else ""
    raise SafeguardError(
        f"[SAFEGUARD] Refusing destructive operation \"{operation}\"{scope}. "
        f"Set {DESTRUCTIVE_FLAG}=1 to confirm."
    )
