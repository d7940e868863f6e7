"""Redis key layout for call counters and timestamp ledgers.

Counter:  ``api:calls:<endpoint>:<method>``
Ledger:   ``api:calls:timestamps:<endpoint>:<method>``

The layout is shared with data written by earlier deployments and must not change.
"""

from __future__ import annotations

from collections.abc import Iterable

KEY_DELIMITER = ":"
KEY_PREFIX = "api:calls"
LEDGER_SEGMENT = "timestamps"
LEDGER_PREFIX = f"{KEY_PREFIX}{KEY_DELIMITER}{LEDGER_SEGMENT}"
MIN_COUNTER_KEY_SEGMENTS = 4

_GLOB_SPECIAL_CHARS = frozenset("*?[]\\")


class InvalidCallKeyError(ValueError):
    """Raised when an endpoint/method pair cannot be mapped to store keys."""


def validate_call_key(endpoint: str, method: str) -> None:
    """
    Reject endpoint/method values that would produce ambiguous keys.

    Any verb is accepted, but it must be non-empty and free of the key delimiter
    because the method is always read back as the last key segment.
    """

    if not endpoint:
        raise InvalidCallKeyError("endpoint must be a non-empty string")
    if endpoint == LEDGER_SEGMENT or endpoint.startswith(f"{LEDGER_SEGMENT}{KEY_DELIMITER}"):
        raise InvalidCallKeyError(f"endpoint must not start with reserved segment '{LEDGER_SEGMENT}'")
    if not method:
        raise InvalidCallKeyError("method must be a non-empty string")
    if KEY_DELIMITER in method:
        raise InvalidCallKeyError(f"method must not contain '{KEY_DELIMITER}'")


def counter_key(endpoint: str, method: str) -> str:
    return f"{KEY_PREFIX}:{endpoint}:{method}"


def ledger_key(endpoint: str, method: str) -> str:
    return f"{LEDGER_PREFIX}:{endpoint}:{method}"


def is_ledger_key(key: str) -> bool:
    return key.startswith(f"{LEDGER_PREFIX}{KEY_DELIMITER}")


def escape_glob(value: str) -> str:
    """Escape Redis glob metacharacters so ``value`` matches literally in SCAN MATCH."""

    return "".join(f"\\{char}" if char in _GLOB_SPECIAL_CHARS else char for char in value)


def all_counters_pattern() -> str:
    return f"{KEY_PREFIX}:*"


def endpoint_counters_pattern(endpoint: str) -> str:
    return f"{KEY_PREFIX}:{escape_glob(endpoint)}:*"


def endpoint_ledgers_pattern(endpoint: str) -> str:
    return f"{LEDGER_PREFIX}:{escape_glob(endpoint)}:*"


def parse_counter_key(key: str) -> tuple[str, str] | None:
    """
    Split a counter key into ``(endpoint, method)``.

    The method is the final segment; everything between the prefix and the method
    is the endpoint, so endpoints containing the delimiter survive the round trip.
    Returns None for keys with too few segments or a foreign prefix.
    """

    parts = key.split(KEY_DELIMITER)
    if len(parts) < MIN_COUNTER_KEY_SEGMENTS:
        return None
    if KEY_DELIMITER.join(parts[:2]) != KEY_PREFIX:
        return None
    endpoint = KEY_DELIMITER.join(parts[2:-1])
    method = parts[-1]
    if not endpoint or not method:
        return None
    return endpoint, method


def parse_ledger_key(key: str) -> tuple[str, str] | None:
    if not is_ledger_key(key):
        return None
    remainder = key[len(LEDGER_PREFIX) + 1 :]
    endpoint, delimiter, method = remainder.rpartition(KEY_DELIMITER)
    if not delimiter or not endpoint or not method:
        return None
    return endpoint, method


def methods_for_endpoint(keys: Iterable[str], endpoint: str) -> list[str]:
    """Return methods recorded for exactly ``endpoint`` among scanned counter/ledger keys."""

    seen: set[str] = set()
    methods: list[str] = []
    for key in keys:
        parsed = parse_ledger_key(key) if is_ledger_key(key) else parse_counter_key(key)
        if parsed is None:
            continue
        key_endpoint, method = parsed
        if key_endpoint != endpoint or method in seen:
            continue
        seen.add(method)
        methods.append(method)
    return sorted(methods)
