"""Subscriber-facing surfaces: the event distributor and the control API."""

from .control_api import ControlApi
from .distributor import EventDistributor, SubscriberSink, WebSocketSink

__all__ = ["ControlApi", "EventDistributor", "SubscriberSink", "WebSocketSink"]
