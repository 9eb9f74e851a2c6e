"""Coercion of loosely-typed vendor values before they reach the cache.

The cloud reports the same field as ``1``, ``"1"``, ``true`` or ``"true"``
depending on the transport.  Every conversion here returns ``None`` when
the value cannot be interpreted, and :func:`sanitize_update` drops such
fields so the previously cached value survives.
"""

from __future__ import annotations

import math
from typing import Any

from xsentry.fields import for_key

_TRUE = frozenset({"1", "true", "on", "yes"})
_FALSE = frozenset({"0", "false", "off", "no"})


def to_bool(value: object) -> bool | None:
    """``1``/``"1"``/``True``/``"true"``/``"on"``/``"yes"`` -> ``True``, and the inverse."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return None


def to_int(value: object) -> int | None:
    """Integer value of *value*, accepting numeric strings such as ``"3"`` or ``"3.0"``."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    number = to_float(value)
    if number is None:
        return None
    return int(number)


def to_float(value: object) -> float | None:
    """Float value of *value*; ``None`` for non-numeric and non-finite input."""
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def to_str(value: object) -> str | None:
    """Trimmed string form of *value*."""
    if value is None:
        return None
    return str(value).strip()


_CONVERTERS = {
    "int": to_int,
    "float": to_float,
    "bool": to_bool,
    "str": to_str,
}


def coerce(key: str, value: object) -> object:
    """Coerce *value* according to the field table entry for *key*.

    Unknown keys and nested containers pass through unchanged.
    """
    if value is None or isinstance(value, (dict, list)):
        return value
    f = for_key(key)
    if f is None or f.kind == "str":
        return value
    return _CONVERTERS[f.kind](value)


def sanitize_update(update: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *update* with sensor fields coerced.

    ``None`` values and values whose coercion fails are removed, so
    merging the result never erases a known value.  A value reported
    under an alias (``wifiRSSI``, ``temp``) is also stored under the
    field's canonical key unless that key is present itself.
    """
    clean: dict[str, Any] = {}
    for key, value in update.items():
        coerced = coerce(key, value)
        if coerced is None:
            continue
        clean[key] = coerced
    for key in list(clean):
        f = for_key(key)
        if f is not None and f.id != key and update.get(f.id) is None:
            clean[f.id] = clean[key]
    return clean
