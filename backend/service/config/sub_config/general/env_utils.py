"""
Environment helpers shared by the general sub-configs.
"""

from __future__ import annotations

import os
from dataclasses import MISSING, Field
from typing import Any, Callable, Dict, Mapping

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def read_env_defaults(
    env_map: Mapping[str, str],
    fields: Mapping[str, Field],
) -> Dict[str, Any]:
    """Build constructor kwargs from environment variables.

    Only fields present in ``env_map`` and set in the environment are
    returned; the rest keep their dataclass defaults.  Values are coerced
    to the type of the field's default.
    """
    values: Dict[str, Any] = {}
    for field_name, env_name in env_map.items():
        raw = os.environ.get(env_name)
        if raw is None or field_name not in fields:
            continue
        fdef = fields[field_name]
        default = fdef.default if fdef.default is not MISSING else ""
        try:
            values[field_name] = _coerce(raw, default)
        except ValueError:
            # keep the dataclass default on unparsable input
            continue
    return values


def env_sync(env_name: str) -> Callable[[Any, Any], None]:
    """Return an ``apply_change`` hook mirroring a value into ``os.environ``."""

    def _apply(_old: Any, new: Any) -> None:
        if new is None or new == "":
            os.environ.pop(env_name, None)
        else:
            os.environ[env_name] = str(new)

    return _apply
