"""Run and judgment identifiers: ``<prefix>-<ULID>`` strings that sort by creation time."""

from __future__ import annotations

import secrets
import threading
import time
from collections.abc import Callable
from typing import Final

RUN_ID_PREFIX: Final[str] = "run"
JUDGMENT_ID_PREFIX: Final[str] = "jdg"

_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_DIGITS: Final[dict[str, int]] = {char: value for value, char in enumerate(_ALPHABET)}
_LENGTH: Final[int] = 26
_RANDOM_BITS: Final[int] = 80
_MAX_TIMESTAMP: Final[int] = (1 << 48) - 1
_MAX_RANDOM: Final[int] = (1 << _RANDOM_BITS) - 1


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


class MonotonicULIDGenerator:
    """Thread-safe ULID source whose output is strictly increasing.

    When the clock stands still or steps backwards the previous timestamp is
    reused and the random part incremented; an exhausted random part carries
    into the timestamp.
    """

    def __init__(
        self,
        *,
        clock_ms: Callable[[], int] | None = None,
        randbytes: Callable[[int], bytes] | None = None,
    ) -> None:
        self._clock_ms = clock_ms or _wall_clock_ms
        self._randbytes = randbytes or secrets.token_bytes
        self._lock = threading.Lock()
        self._last: tuple[int, int] = (-1, 0)

    def generate(self) -> str:
        with self._lock:
            now = self._clock_ms()
            last_ms, last_random = self._last
            if now > last_ms:
                stamp, random_part = now, self._fresh_random()
            elif last_random < _MAX_RANDOM:
                stamp, random_part = last_ms, last_random + 1
            else:
                stamp, random_part = last_ms + 1, self._fresh_random()
            if not 0 <= stamp <= _MAX_TIMESTAMP:
                raise ValueError(f"ulid timestamp out of range: {stamp}")
            self._last = (stamp, random_part)
            return _encode((stamp << _RANDOM_BITS) | random_part)

    def _fresh_random(self) -> int:
        raw = bytes(self._randbytes(_RANDOM_BITS // 8))
        if len(raw) != _RANDOM_BITS // 8:
            raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")
        return int.from_bytes(raw, "big")


_GENERATOR = MonotonicULIDGenerator()


def validate_ulid(value: str) -> None:
    _decode(value)


def parse_ulid_timestamp_ms(value: str) -> int:
    return _decode(value) >> _RANDOM_BITS


def validate_prefixed_id(value: str, expected_prefix: str) -> None:
    lead = f"{expected_prefix}-"
    if not isinstance(value, str) or not value.startswith(lead):
        raise ValueError(f"expected prefix '{lead}' in {value!r}")
    try:
        _decode(value[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def generate_run_id(*, generator: MonotonicULIDGenerator | None = None) -> str:
    return f"{RUN_ID_PREFIX}-{(generator or _GENERATOR).generate()}"


def validate_run_id(value: str) -> None:
    validate_prefixed_id(value, RUN_ID_PREFIX)


def run_id_timestamp_ms(value: str) -> int:
    validate_run_id(value)
    return parse_ulid_timestamp_ms(value.split("-", 1)[1])


def generate_judgment_id(*, generator: MonotonicULIDGenerator | None = None) -> str:
    return f"{JUDGMENT_ID_PREFIX}-{(generator or _GENERATOR).generate()}"


def _encode(value: int) -> str:
    chars = []
    for _ in range(_LENGTH):
        chars.append(_ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def _decode(value: str) -> int:
    if len(value) != _LENGTH:
        raise ValueError(f"ulid length must be {_LENGTH}, got {len(value)}")
    decoded = 0
    for position, char in enumerate(value.upper()):
        if char not in _DIGITS:
            raise ValueError(f"invalid ULID character {value[position]!r} at index {position}")
        decoded = (decoded << 5) | _DIGITS[char]
    # 26 base32 digits hold 130 bits; a ULID is 128.
    if decoded >> 128:
        raise ValueError("ulid overflow: first character must be 0-7")
    return decoded


__all__ = [
    "JUDGMENT_ID_PREFIX",
    "RUN_ID_PREFIX",
    "MonotonicULIDGenerator",
    "generate_judgment_id",
    "generate_run_id",
    "parse_ulid_timestamp_ms",
    "run_id_timestamp_ms",
    "validate_prefixed_id",
    "validate_run_id",
    "validate_ulid",
]
