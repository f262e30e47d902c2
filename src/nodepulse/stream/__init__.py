"""Real-time metrics streaming — sessions, codec, buffers and multiplexing."""

from __future__ import annotations

from nodepulse.stream.buffer import MetricSample, StreamBuffer
from nodepulse.stream.codec import (
    AggregateRecord,
    DecodeError,
    MetricCategory,
    MetricCodec,
    MetricsRecord,
    Ping,
    ServerError,
)
from nodepulse.stream.endpoint import EndpointKey
from nodepulse.stream.fanout import SubscriberFanout, Subscription
from nodepulse.stream.lifecycle import ComponentScope, LifecycleCoordinator, Trigger
from nodepulse.stream.multiplexer import StreamMultiplexer
from nodepulse.stream.reconnect import ReconnectPolicy
from nodepulse.stream.registry import StreamRegistry
from nodepulse.stream.session import CloseKind, ConnectionSession, ConnectionState

__all__ = [
    "AggregateRecord",
    "CloseKind",
    "ComponentScope",
    "ConnectionSession",
    "ConnectionState",
    "DecodeError",
    "EndpointKey",
    "LifecycleCoordinator",
    "MetricCategory",
    "MetricCodec",
    "MetricSample",
    "MetricsRecord",
    "Ping",
    "ReconnectPolicy",
    "ServerError",
    "StreamBuffer",
    "StreamMultiplexer",
    "StreamRegistry",
    "Subscription",
    "SubscriberFanout",
    "Trigger",
]
