"""Decode JSON telemetry frames into normalized metric records.

Frame shape (text JSON over the socket)::

    {"type": "ping"}
    {"type": "error", "message": "..."}
    {"type": "cpu_metrics", "data": {...}, "timestamp": "..."}
    {"type": "wifi_data", "wifi": {...}}            # body under the prefix key
    {"type": "wifi_data", "wifi": {...}, "usage": [{"download": 1, "upload": 2}, ...]}
    {"type": "minigraphs_metrics", "data": {"cpu": {...}, "memory": {...},
                                            "disks": [...], "networks": [...]}}

Decoding never raises. Anything that cannot be understood comes back as a
:class:`DecodeError` value; the session logs it and keeps the connection.

Missing numeric fields fall back to the previous record for the same stream
key (or ``0.0`` on the first sample), so a partial payload never makes a chart
drop to zero. Numbers that arrive as strings are coerced.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


class MetricCategory(StrEnum):
    """Telemetry families the codec understands."""

    CPU = "cpu"
    MEMORY = "memory"
    DISK = "disk"
    NETWORK = "network"
    MINIGRAPHS = "minigraphs"


# Topic (URL segment / frame-type prefix) -> category.
TOPIC_CATEGORIES: dict[str, MetricCategory] = {
    "cpu": MetricCategory.CPU,
    "memory": MetricCategory.MEMORY,
    "disk": MetricCategory.DISK,
    "network": MetricCategory.NETWORK,
    "ethernet": MetricCategory.NETWORK,
    "wifi": MetricCategory.NETWORK,
    "minigraphs": MetricCategory.MINIGRAPHS,
    "sidebar": MetricCategory.MINIGRAPHS,
}

_METRIC_SUFFIXES = ("_metrics", "_data")


def category_for(topic: str) -> MetricCategory:
    """Return the category for a stream topic.

    Raises:
        ValueError: If *topic* is not a known telemetry topic.
    """
    try:
        return TOPIC_CATEGORIES[topic]
    except KeyError:
        known = ", ".join(sorted(TOPIC_CATEGORIES))
        raise ValueError(f"Unknown topic {topic!r} (expected one of: {known})") from None


# -- Record types -----------------------------------------------------------


def _readonly(data: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True, slots=True)
class Ping:
    """Protocol keepalive; answered with a pong, never buffered."""


@dataclass(frozen=True, slots=True)
class ServerError:
    """Server-reported fault (``type: "error"``)."""

    message: str


@dataclass(frozen=True, slots=True)
class MetricsRecord:
    """One normalized reading for one stream key."""

    category: MetricCategory
    key: str
    value: float
    fields: Mapping[str, float] = field(default_factory=_readonly)
    aux: Mapping[str, str | float] = field(default_factory=_readonly)
    source_timestamp: str | None = None
    history: tuple[Mapping[str, float], ...] | None = None
    """Backfilled usage points. When set, these are buffered instead of *value*."""

    def parts(self) -> tuple[MetricsRecord, ...]:
        return (self,)

    def sample_aux(self) -> dict[str, str | float]:
        """Auxiliary data stored alongside the buffered value."""
        merged: dict[str, str | float] = {**self.fields, **self.aux}
        if self.source_timestamp is not None:
            merged["source_timestamp"] = self.source_timestamp
        return merged

    def samples(self) -> list[tuple[float, dict[str, str | float]]]:
        """(value, aux) pairs to append to the buffer, oldest first."""
        if self.history is None:
            return [(self.value, self.sample_aux())]
        base = self.sample_aux()
        return [
            (point["download_kbps"] + point["upload_kbps"], {**base, **point})
            for point in self.history
        ]


@dataclass(frozen=True, slots=True)
class AggregateRecord:
    """Several stream keys carried by one frame (sidebar mini-graphs)."""

    records: tuple[MetricsRecord, ...]
    source_timestamp: str | None = None

    def parts(self) -> tuple[MetricsRecord, ...]:
        return self.records

    def get(self, key: str) -> MetricsRecord | None:
        for record in self.records:
            if record.key == key:
                return record
        return None

    def with_prefix(self, prefix: str) -> list[MetricsRecord]:
        """Records whose key starts with ``prefix:`` in frame order."""
        return [r for r in self.records if r.key.startswith(f"{prefix}:")]


@dataclass(frozen=True, slots=True)
class DecodeError:
    """A frame that could not be decoded. The connection is unaffected."""

    reason: str
    raw: str = ""


Record = Ping | ServerError | MetricsRecord | AggregateRecord
DecodeResult = Record | DecodeError


# -- Coercion helpers -------------------------------------------------------


def coerce_number(raw: Any) -> float | None:
    """Best-effort numeric coercion: ``42``, ``"42.5"`` → float; junk → ``None``."""
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int | float):
        try:
            value = float(raw)
        except OverflowError:
            return None
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def _pick(body: Mapping[str, Any], names: tuple[str, ...]) -> Any:
    """Return the first non-``None`` value among *names*."""
    for name in names:
        value = body.get(name)
        if value is not None:
            return value
    return None


def _short_device(device: str) -> str:
    """``/dev/mapper/ubuntu--vg-lv--0`` → ``ubuntu-vg-lv-0``."""
    short = device.rstrip("/").split("/")[-1] or device
    return short.replace("--", "-")


def _truncate(raw: Any, limit: int = 200) -> str:
    text = raw if isinstance(raw, str) else repr(raw)
    return text if len(text) <= limit else text[:limit] + "..."


# -- Field tables -----------------------------------------------------------
# (canonical name, accepted wire aliases)

_FieldSpec = tuple[tuple[str, tuple[str, ...]], ...]

_CPU_NUMERIC: _FieldSpec = (("usage", ("cpu_usage", "usage_percent")),)
_CPU_TEXT: _FieldSpec = (("cores", ()), ("model", ()), ("speed", ()))

_MEMORY_NUMERIC: _FieldSpec = (
    ("usage_percent", ("memory_usage", "usage")),
    ("used_gb", ()),
    ("total_gb", ()),
)

_DISK_NUMERIC: _FieldSpec = (
    ("active_time", ()),
    ("usage_percent", ()),
    ("read_speed", ()),
    ("write_speed", ()),
    ("response_time", ()),
    ("total", ()),
    ("used", ()),
    ("free", ()),
)
_DISK_TEXT: _FieldSpec = (
    ("device", ()),
    ("name", ()),
    ("model", ()),
    ("type", ()),
    ("filesystem_type", ()),
    ("interface_type", ()),
)

_NETWORK_NUMERIC: _FieldSpec = (
    ("download_kbps", ("currentDownload", "rx_kbps", "download")),
    ("upload_kbps", ("currentUpload", "tx_kbps", "upload")),
)
_NETWORK_TEXT: _FieldSpec = (
    ("interface", ("interfaceName", "net")),
    ("name", ()),
    ("ip", ("ipv4Address", "ipv4")),
    ("mac", ("macAddress",)),
    ("adapter", ("adapterName",)),
    ("model", ()),
)


# -- Codec ------------------------------------------------------------------


class MetricCodec:
    """Stateless decoder from raw frames to :data:`DecodeResult` values."""

    def decode(
        self,
        category: MetricCategory | str,
        raw: str | bytes | Mapping[str, Any],
        previous: Mapping[str, MetricsRecord] | None = None,
    ) -> DecodeResult:
        """Decode one inbound frame for a stream of *category*.

        Args:
            category: The category (or topic alias) the stream was opened for.
            raw: Frame text/bytes, or an already-parsed JSON object.
            previous: Last record per stream key, used for field defaulting.
        """
        resolved = TOPIC_CATEGORIES.get(category) if isinstance(category, str) else None
        if resolved is None:
            return DecodeError(f"unknown category {category!r}")
        category = resolved

        msg = self._parse(raw)
        if isinstance(msg, DecodeError):
            return msg

        msg_type = msg.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            return DecodeError("frame has no type", _truncate(raw))
        if msg_type == "ping":
            return Ping()
        if msg_type == "error":
            message = msg.get("message")
            return ServerError(str(message) if message else "Server reported an error")

        prefix = self._metrics_prefix(msg_type)
        if prefix is None:
            return DecodeError(f"unrecognized frame type {msg_type!r}", _truncate(raw))
        if TOPIC_CATEGORIES.get(prefix) is not category:
            return DecodeError(
                f"frame type {msg_type!r} does not belong to a {category.value} stream",
                _truncate(raw),
            )

        usage = msg.get("usage") if category is MetricCategory.NETWORK else None
        body = msg.get("data")
        if not isinstance(body, dict):
            body = msg.get(prefix)
        if not isinstance(body, dict) and isinstance(usage, list):
            # History-only frame: current readings carry over from the last record.
            body = {}
        if not isinstance(body, dict):
            return DecodeError(f"{msg_type} frame without an object body", _truncate(raw))

        ts = msg.get("timestamp") or body.get("timestamp")
        source_ts = str(ts) if ts is not None else None
        prev = previous or {}

        try:
            record = self._decode_body(category, body, source_ts, prev)
            if isinstance(usage, list) and isinstance(record, MetricsRecord):
                record = replace(record, history=_usage_points(usage))
            return record
        except (TypeError, ValueError, AttributeError, OverflowError) as exc:
            return DecodeError(f"malformed {msg_type} body: {exc}", _truncate(raw))

    # -- parsing ------------------------------------------------------------

    @staticmethod
    def _parse(raw: str | bytes | Mapping[str, Any]) -> dict[str, Any] | DecodeError:
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, bytes | bytearray):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                return DecodeError("frame is not valid UTF-8", _truncate(raw))
        if not isinstance(raw, str):
            return DecodeError(f"unsupported frame type {type(raw).__name__}")
        try:
            msg = json.loads(raw)
        except (ValueError, RecursionError):
            return DecodeError("malformed JSON", _truncate(raw))
        if not isinstance(msg, dict):
            return DecodeError("frame is not a JSON object", _truncate(raw))
        return msg

    @staticmethod
    def _metrics_prefix(msg_type: str) -> str | None:
        for suffix in _METRIC_SUFFIXES:
            if msg_type.endswith(suffix) and len(msg_type) > len(suffix):
                return msg_type[: -len(suffix)]
        return None

    def _decode_body(
        self,
        category: MetricCategory,
        body: dict[str, Any],
        source_ts: str | None,
        prev: Mapping[str, MetricsRecord],
    ) -> MetricsRecord | AggregateRecord:
        if category is MetricCategory.CPU:
            return self._decode_cpu(body, "cpu", source_ts, prev.get("cpu"))
        if category is MetricCategory.MEMORY:
            return self._decode_memory(body, "memory", source_ts, prev.get("memory"))
        if category is MetricCategory.DISK:
            disk = body.get("primary_disk")
            if not isinstance(disk, dict):
                disks = body.get("disks")
                disk = disks[0] if isinstance(disks, list) and disks else body
            return self._decode_disk(
                disk, "disk", source_ts, prev.get("disk"), value_field="active_time"
            )
        if category is MetricCategory.NETWORK:
            return self._decode_network(body, "network", source_ts, prev.get("network"))
        return self._decode_aggregate(body, source_ts, prev)

    # -- per-category decoders ----------------------------------------------

    @staticmethod
    def _numbers(
        body: Mapping[str, Any], spec: _FieldSpec, prev: MetricsRecord | None
    ) -> dict[str, float]:
        out: dict[str, float] = {}
        for canonical, aliases in spec:
            value = coerce_number(_pick(body, (canonical, *aliases)))
            if value is None:
                value = prev.fields.get(canonical, 0.0) if prev is not None else 0.0
            out[canonical] = value
        return out

    @staticmethod
    def _texts(
        body: Mapping[str, Any], spec: _FieldSpec, prev: MetricsRecord | None
    ) -> dict[str, str | float]:
        out: dict[str, str | float] = {}
        for canonical, aliases in spec:
            raw = _pick(body, (canonical, *aliases))
            if raw is None or raw == "":
                if prev is not None and canonical in prev.aux:
                    out[canonical] = prev.aux[canonical]
                continue
            if isinstance(raw, int | float) and not isinstance(raw, bool):
                out[canonical] = raw
            else:
                out[canonical] = str(raw)
        return out

    def _decode_cpu(
        self, body: Mapping[str, Any], key: str, ts: str | None, prev: MetricsRecord | None
    ) -> MetricsRecord:
        nums = self._numbers(body, _CPU_NUMERIC, prev)
        return MetricsRecord(
            category=MetricCategory.CPU,
            key=key,
            value=nums["usage"],
            fields=_readonly(nums),
            aux=_readonly(self._texts(body, _CPU_TEXT, prev)),
            source_timestamp=ts,
        )

    def _decode_memory(
        self, body: Mapping[str, Any], key: str, ts: str | None, prev: MetricsRecord | None
    ) -> MetricsRecord:
        nums = self._numbers(body, _MEMORY_NUMERIC, prev)
        return MetricsRecord(
            category=MetricCategory.MEMORY,
            key=key,
            value=nums["usage_percent"],
            fields=_readonly(nums),
            source_timestamp=ts,
        )

    def _decode_disk(
        self,
        body: Mapping[str, Any],
        key: str,
        ts: str | None,
        prev: MetricsRecord | None,
        *,
        value_field: str,
    ) -> MetricsRecord:
        nums = self._numbers(body, _DISK_NUMERIC, prev)
        texts = self._texts(body, _DISK_TEXT, prev)
        device = texts.get("device")
        if isinstance(device, str):
            texts["device"] = _short_device(device)
        return MetricsRecord(
            category=MetricCategory.DISK,
            key=key,
            value=nums[value_field],
            fields=_readonly(nums),
            aux=_readonly(texts),
            source_timestamp=ts or _opt_str(body.get("timestamp")),
        )

    def _decode_network(
        self, body: Mapping[str, Any], key: str, ts: str | None, prev: MetricsRecord | None
    ) -> MetricsRecord:
        nums = self._numbers(body, _NETWORK_NUMERIC, prev)
        return MetricsRecord(
            category=MetricCategory.NETWORK,
            key=key,
            value=nums["download_kbps"] + nums["upload_kbps"],
            fields=_readonly(nums),
            aux=_readonly(self._texts(body, _NETWORK_TEXT, prev)),
            source_timestamp=ts or _opt_str(body.get("timestamp")),
        )

    def _decode_aggregate(
        self, body: Mapping[str, Any], ts: str | None, prev: Mapping[str, MetricsRecord]
    ) -> AggregateRecord:
        records: list[MetricsRecord] = []

        cpu = body.get("cpu")
        if isinstance(cpu, dict):
            records.append(self._decode_cpu(cpu, "cpu", ts, prev.get("cpu")))

        memory = body.get("memory")
        if isinstance(memory, dict):
            records.append(self._decode_memory(memory, "memory", ts, prev.get("memory")))

        disks = body.get("disks")
        if isinstance(disks, list):
            for idx, disk in enumerate(disks):
                if not isinstance(disk, dict):
                    logger.debug("Skipping non-object disk entry %d", idx)
                    continue
                key = f"disk:{_resource_id(disk.get('id'), idx)}"
                records.append(
                    self._decode_disk(
                        disk, key, ts, prev.get(key), value_field="usage_percent"
                    )
                )

        networks = body.get("networks")
        if isinstance(networks, list):
            for idx, net in enumerate(networks):
                if not isinstance(net, dict):
                    logger.debug("Skipping non-object network entry %d", idx)
                    continue
                key = f"network:{idx}"
                record = self._decode_network(net, key, ts, prev.get(key))
                records.append(_with_aux(record, index=idx))

        return AggregateRecord(records=tuple(records), source_timestamp=ts)


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _resource_id(raw: Any, fallback: int) -> str:
    number = coerce_number(raw)
    if number is not None and number.is_integer():
        return str(int(number))
    if isinstance(raw, str) and raw:
        return raw
    return str(fallback)


def _with_aux(record: MetricsRecord, **extra: str | float) -> MetricsRecord:
    return MetricsRecord(
        category=record.category,
        key=record.key,
        value=record.value,
        fields=record.fields,
        aux=_readonly({**record.aux, **extra}),
        source_timestamp=record.source_timestamp,
        history=record.history,
    )


def _usage_points(raw: list[Any]) -> tuple[Mapping[str, float], ...]:
    """Normalize a ``usage`` backfill list; missing rates read as ``0.0``."""
    points: list[Mapping[str, float]] = []
    for idx, point in enumerate(raw):
        if not isinstance(point, dict):
            logger.debug("Skipping non-object usage point %d", idx)
            continue
        points.append(
            _readonly(
                {
                    "download_kbps": coerce_number(point.get("download")) or 0.0,
                    "upload_kbps": coerce_number(point.get("upload")) or 0.0,
                }
            )
        )
    return tuple(points)
