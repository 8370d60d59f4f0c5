"""
Real-time job event fan-out.

Components:
- Notifier: publish(channel, event) / subscribe(channel)
- JobEventPublisher: per-job ordering guard over a Notifier
- InMemoryNotifier / RedisNotifier: single-process and multi-process backends
"""

from printcraft.notify.base import (
    Notifier,
    Subscription,
    JobEvent,
    JobEventPublisher,
    job_channel,
    owner_channel,
)
from printcraft.notify.memory import InMemoryNotifier

__all__ = [
    "Notifier",
    "Subscription",
    "JobEvent",
    "JobEventPublisher",
    "job_channel",
    "owner_channel",
    "InMemoryNotifier",
]
