"""
Durable at-least-once event channel backed by the channel_events table.

Producers publish inside their own transaction (outbox): the account row and its
"account created" event commit or roll back together. Consumers lease events for
a visibility window; anything not acked before the lease expires is delivered
again, so consumers must be idempotent. No ordering is guaranteed.
"""
from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from squadmarket.config import Settings, get_settings
from squadmarket.models import ChannelEvent, EventStatus
from squadmarket.persistence.db import run_in_transaction, transaction
from squadmarket.persistence.repositories import ChannelEventRepository, utcnow

logger = logging.getLogger(__name__)

ACCOUNT_CREATED = "account.created"


class EventChannel:
    """Publish / receive / ack / release over one SQLite database."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._repo = ChannelEventRepository()

    def publish(
        self,
        conn: sqlite3.Connection,
        account_ref: str,
        topic: str = ACCOUNT_CREATED,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ChannelEvent:
        """Append an event. Joins the caller's transaction if one is open."""
        with transaction(conn):
            event = self._repo.insert(conn, topic, account_ref, payload or {}, now or utcnow())
        logger.debug("published %s for account %s (event %s)", topic, account_ref, event.id)
        return event

    def receive(
        self,
        conn: sqlite3.Connection,
        limit: int = 10,
        topic: str = ACCOUNT_CREATED,
        now: datetime | None = None,
    ) -> list[ChannelEvent]:
        """
        Lease up to `limit` deliverable events. Expired leases are redelivered.
        Leasing is one transaction, so two consumers never lease the same event
        for the same window.
        """
        now = now or utcnow()
        leased_until = now + timedelta(seconds=self._settings.event_lease_seconds)

        def _lease() -> list[ChannelEvent]:
            events = self._repo.list_deliverable(conn, topic, now, limit)
            for ev in events:
                self._repo.lease(conn, ev.id, leased_until)
                ev.status = EventStatus.INFLIGHT.value
                ev.deliveries += 1
                ev.leased_until = leased_until
            return events

        events = run_in_transaction(conn, _lease)
        for ev in events:
            if ev.deliveries > 1:
                logger.info("redelivering event %s for account %s (delivery %d)", ev.id, ev.account_ref, ev.deliveries)
        return events

    def ack(self, conn: sqlite3.Connection, event_id: str, now: datetime | None = None) -> bool:
        """Mark delivered. Acking twice is harmless and returns False the second time."""
        return run_in_transaction(conn, lambda: self._repo.ack(conn, event_id, now or utcnow()))

    def release(
        self,
        conn: sqlite3.Connection,
        event_id: str,
        error: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """
        Give an event back after a transient failure. It becomes deliverable again
        after an exponential backoff, or is dead-lettered once it has used up
        event_max_deliveries. Returns the resulting status.
        """
        now = now or utcnow()

        def _release() -> str:
            ev = self._repo.get(conn, event_id)
            if ev is None:
                raise KeyError(f"event not found: {event_id}")
            if ev.deliveries >= self._settings.event_max_deliveries:
                self._repo.mark_dead(conn, event_id, error)
                return EventStatus.DEAD.value
            delay = self._settings.poll_interval * (2 ** max(0, ev.deliveries - 1))
            self._repo.requeue(conn, event_id, now + timedelta(seconds=delay), error)
            return EventStatus.PENDING.value

        status = run_in_transaction(conn, _release)
        if status == EventStatus.DEAD.value:
            logger.error("event %s dead-lettered: %s", event_id, error)
        else:
            logger.warning("event %s released for redelivery: %s", event_id, error)
        return status

    def pending_count(self, conn: sqlite3.Connection) -> int:
        return self._repo.count_by_status(conn, EventStatus.PENDING.value)

    def list_dead(self, conn: sqlite3.Connection, limit: int = 100) -> list[ChannelEvent]:
        return self._repo.list_by_status(conn, EventStatus.DEAD.value, limit=limit)
