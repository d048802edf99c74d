"""Unit tests for run and judgment id helpers."""

from __future__ import annotations

import pytest

from spec_compliance.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_run_ids_validate_and_carry_prefix() -> None:
    run_id = ids.generate_run_id()

    assert run_id.startswith("run-")
    ids.validate_run_id(run_id)

    with pytest.raises(ValueError, match="expected prefix"):
        ids.validate_run_id("jdg-" + run_id[4:])
    with pytest.raises(ValueError, match="invalid ULID part"):
        ids.validate_run_id("run-not-a-ulid")


def test_monotonic_generator_orders_ids_within_one_millisecond() -> None:
    generator = ids.MonotonicULIDGenerator(clock_ms=lambda: 1_700_000_000_000)

    generated = [ids.generate_run_id(generator=generator) for _ in range(500)]

    assert generated == sorted(generated)
    assert len(set(generated)) == len(generated)


def test_monotonic_generator_survives_clock_stepping_backwards() -> None:
    ticks = iter([2_000, 1_000, 1_500, 3_000])
    generator = ids.MonotonicULIDGenerator(clock_ms=lambda: next(ticks), randbytes=_zero_bytes)

    generated = [generator.generate() for _ in range(4)]

    assert generated == sorted(generated)
    assert ids.parse_ulid_timestamp_ms(generated[1]) == 2_000
    assert ids.parse_ulid_timestamp_ms(generated[3]) == 3_000


def test_random_overflow_rolls_the_timestamp_forward() -> None:
    generator = ids.MonotonicULIDGenerator(clock_ms=lambda: 10, randbytes=_ff_bytes)

    first = generator.generate()
    second = generator.generate()

    assert first < second
    assert ids.parse_ulid_timestamp_ms(second) == 11


def test_run_id_timestamp_roundtrip() -> None:
    generator = ids.MonotonicULIDGenerator(clock_ms=lambda: 1_234_567, randbytes=_zero_bytes)
    run_id = ids.generate_run_id(generator=generator)

    assert ids.run_id_timestamp_ms(run_id) == 1_234_567


def test_judgment_ids_use_their_own_prefix() -> None:
    judgment_id = ids.generate_judgment_id()

    assert judgment_id.startswith(f"{ids.JUDGMENT_ID_PREFIX}-")
    ids.validate_prefixed_id(judgment_id, ids.JUDGMENT_ID_PREFIX)


def test_validate_ulid_rejects_bad_length_and_characters() -> None:
    with pytest.raises(ValueError, match="ulid length must be"):
        ids.validate_ulid("0" * 25)
    with pytest.raises(ValueError, match="invalid ULID character"):
        ids.validate_ulid("U" + "0" * 25)
    with pytest.raises(ValueError, match="ulid overflow"):
        ids.validate_ulid("8" + "0" * 25)


def test_lowercase_ulids_are_accepted() -> None:
    generator = ids.MonotonicULIDGenerator(clock_ms=lambda: 42, randbytes=_zero_bytes)
    ulid = generator.generate()

    ids.validate_ulid(ulid.lower())
    assert ids.parse_ulid_timestamp_ms(ulid.lower()) == 42
