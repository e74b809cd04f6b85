"""Per-connection subscription: topics, filter and cursors.

A ``Subscription`` belongs to exactly one open stream and is never shared.
It is seeded from the log tail when the connection opens, so history is not
replayed unless the client presents a resume token (``Last-Event-ID``).
Cursors only move forward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from orderbean_realtime.events.log import EntryId, EventEntry, EventLog
from orderbean_realtime.events.types import Topic
from orderbean_realtime.models import Role

logger = logging.getLogger(__name__)

EntryFilter = Callable[[EventEntry], bool]

ORDER_TOPICS = [Topic.ORDER_CREATED, Topic.ORDER_STATUS_CHANGED]


def accept_all(entry: EventEntry) -> bool:
    return True


def field_equals(name: str, value: str) -> EntryFilter:
    """Build a filter matching entries whose *name* field equals *value*."""

    def _match(entry: EventEntry) -> bool:
        return entry.fields.get(name) == value

    _match.__name__ = f"{name}=={value}"
    return _match


@dataclass
class Subscription:
    """Filter criteria and cursor state for one connection.

    ``cursors`` maps each topic to the last entry id read from it, or
    ``None`` while the topic has not been seeded yet.
    """

    topics: list[str]
    predicate: EntryFilter = accept_all
    scope: dict[str, str] = field(default_factory=dict)
    cursors: dict[str, EntryId | None] = field(init=False)

    def __post_init__(self) -> None:
        if not self.topics:
            raise ValueError("A subscription needs at least one topic")
        self.cursors = {topic: None for topic in self.topics}

    # -- scope factories -----------------------------------------------------

    @classmethod
    def for_user(cls, user_id: str) -> Subscription:
        """All of one user's orders."""
        return cls(
            topics=list(ORDER_TOPICS),
            predicate=field_equals("userId", user_id),
            scope={"userId": user_id},
        )

    @classmethod
    def for_order(cls, order_id: str) -> Subscription:
        """Status changes of a single order."""
        return cls(
            topics=[Topic.ORDER_STATUS_CHANGED],
            predicate=field_equals("orderId", order_id),
            scope={"orderId": order_id},
        )

    @classmethod
    def for_all_orders(cls, role: Role) -> Subscription:
        """Every order, for the staff dashboard."""
        return cls(topics=list(ORDER_TOPICS), scope={"role": role.value})

    @classmethod
    def for_owner_dashboard(cls, role: Role) -> Subscription:
        """Every order plus low-stock alerts."""
        return cls(
            topics=[*ORDER_TOPICS, Topic.LOW_STOCK_ALERT],
            scope={"role": role.value},
        )

    @classmethod
    def for_low_stock(cls, role: Role) -> Subscription:
        return cls(topics=[Topic.LOW_STOCK_ALERT], scope={"role": role.value})

    # -- cursor handling -----------------------------------------------------

    @property
    def is_seeded(self) -> bool:
        return all(cursor is not None for cursor in self.cursors.values())

    def seeded_topics(self) -> tuple[list[str], list[EntryId]]:
        """Return the (topics, cursors) pair ready for ``read_since``."""
        topics = [t for t in self.topics if self.cursors[t] is not None]
        return topics, [self.cursors[t] for t in topics]  # type: ignore[misc]

    async def seed(self, log: EventLog) -> None:
        """Start every unseeded topic at its current tail.

        An empty topic starts at ``EntryId.MIN`` so its first entry is
        delivered.
        """
        for topic in self.topics:
            if self.cursors[topic] is not None:
                continue
            latest = await log.read_latest(topic)
            self.cursors[topic] = latest.entry_id if latest is not None else EntryId.MIN

    def has_seen(self, entry: EventEntry) -> bool:
        cursor = self.cursors.get(entry.topic)
        return cursor is not None and entry.entry_id <= cursor

    def advance(self, topic: str, entry_id: EntryId) -> None:
        cursor = self.cursors[topic]
        if cursor is None or entry_id > cursor:
            self.cursors[topic] = entry_id

    def accepts(self, entry: EventEntry) -> bool:
        return self.predicate(entry)

    # -- resume tokens -------------------------------------------------------

    def cursor_token(self) -> str:
        """Encode seeded cursors as ``topic=ms-seq;topic=ms-seq``."""
        return ";".join(
            f"{topic}={cursor}"
            for topic, cursor in self.cursors.items()
            if cursor is not None
        )

    def resume(self, token: str) -> None:
        """Position cursors from a token previously produced by ``cursor_token``.

        Unknown topics and malformed parts are ignored; topics the token does
        not mention stay unseeded and start at the tail.
        """
        for part in token.split(";"):
            topic, sep, raw_id = part.strip().rpartition("=")
            if not sep or topic not in self.cursors:
                continue
            try:
                self.cursors[topic] = EntryId.parse(raw_id)
            except ValueError:
                logger.debug("Ignoring malformed resume cursor %r", part)
