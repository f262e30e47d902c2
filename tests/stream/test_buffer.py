"""Tests for nodepulse.stream.buffer — bounded sample history."""

from __future__ import annotations

import dataclasses

import pytest

from nodepulse.stream.buffer import DEFAULT_CAPACITY, MetricSample, StreamBuffer


class TestCapacity:
    def test_default_capacity(self) -> None:
        assert StreamBuffer().capacity == DEFAULT_CAPACITY == 60

    def test_rejects_non_positive_capacity(self) -> None:
        with pytest.raises(ValueError, match="capacity"):
            StreamBuffer(0)

    def test_length_never_exceeds_capacity(self) -> None:
        buf = StreamBuffer(5)
        for i in range(1, 50):
            buf.append(float(i))
            assert len(buf) == min(i, 5)

    def test_keeps_most_recent_in_arrival_order(self) -> None:
        buf = StreamBuffer(3)
        for v in (1.0, 2.0, 3.0, 4.0, 5.0):
            buf.append(v)
        assert buf.values() == [3.0, 4.0, 5.0]

    def test_capacity_one(self) -> None:
        buf = StreamBuffer(1)
        buf.append(1.0)
        buf.append(2.0)
        assert buf.values() == [2.0]


class TestLogicalTimestamps:
    def test_start_at_zero_and_increase(self) -> None:
        buf = StreamBuffer(3)
        stamps = [buf.append(float(i)).timestamp_logical for i in range(6)]
        assert stamps == [0, 1, 2, 3, 4, 5]

    def test_eviction_does_not_rewind(self) -> None:
        buf = StreamBuffer(2)
        for i in range(5):
            buf.append(float(i))
        assert [s.timestamp_logical for s in buf] == [3, 4]

    def test_reset_clears_and_rewinds(self) -> None:
        buf = StreamBuffer(4)
        for i in range(3):
            buf.append(float(i))
        buf.reset()
        assert len(buf) == 0
        assert buf.latest is None
        assert buf.append(9.0).timestamp_logical == 0


class TestSamples:
    def test_sample_is_immutable(self) -> None:
        sample = StreamBuffer().append(42, {"model": "x"})
        assert isinstance(sample, MetricSample)
        with pytest.raises(dataclasses.FrozenInstanceError):
            sample.value = 1.0  # type: ignore[misc]
        with pytest.raises(TypeError):
            sample.aux["model"] = "y"  # type: ignore[index]

    def test_aux_is_copied(self) -> None:
        aux = {"device": "sda"}
        sample = StreamBuffer().append(1.0, aux)
        aux["device"] = "sdb"
        assert sample.aux["device"] == "sda"

    def test_value_coerced_to_float(self) -> None:
        sample = StreamBuffer().append(42)
        assert sample.value == 42.0
        assert isinstance(sample.value, float)

    def test_snapshot_is_detached(self) -> None:
        buf = StreamBuffer(3)
        buf.append(1.0)
        snap = buf.snapshot()
        buf.append(2.0)
        assert len(snap) == 1
        assert buf.latest is not None and buf.latest.value == 2.0

    def test_empty_buffer_is_falsy(self) -> None:
        buf = StreamBuffer()
        assert not buf
        buf.append(0.0)
        assert buf
