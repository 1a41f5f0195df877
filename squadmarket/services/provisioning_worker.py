"""
Provisioning consumer: pulls "account created" events off the channel and hands
them to the Provisioner, several accounts in parallel.

Acknowledgement policy: every outcome the Provisioner returns (ready, duplicate,
failed) is acked; failures live on in the squad's `error` status, not on the
channel. Only an exception escaping the Provisioner (store unavailable before the
claim committed) releases the event for redelivery with backoff.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from squadmarket.channel import EventChannel
from squadmarket.config import Settings, get_settings
from squadmarket.models import ChannelEvent
from squadmarket.persistence.db import get_connection
from squadmarket.services.provisioning import ProvisioningOutcome, Provisioner

logger = logging.getLogger(__name__)


class ProvisioningWorker:
    def __init__(
        self,
        settings: Settings | None = None,
        provisioner: Provisioner | None = None,
        channel: EventChannel | None = None,
        connect: Callable[[], sqlite3.Connection] = get_connection,
    ) -> None:
        self._settings = settings or get_settings()
        self._provisioner = provisioner or Provisioner(self._settings)
        self._channel = channel or EventChannel(self._settings)
        self._connect = connect

    def _process(self, event: ChannelEvent) -> ProvisioningOutcome | None:
        """One event, one connection. Returns None when the event was released."""
        conn = self._connect()
        try:
            try:
                outcome = self._provisioner.handle_account_created(
                    conn, event.account_ref, seed=event.payload.get("seed")
                )
            except Exception as e:
                logger.exception(
                    "event %s for account %s could not be processed", event.id, event.account_ref
                )
                self._channel.release(conn, event.id, error=f"{type(e).__name__}: {e}")
                return None
            self._channel.ack(conn, event.id)
            return outcome
        finally:
            conn.close()

    def run_once(self, limit: int | None = None) -> list[ProvisioningOutcome]:
        """Lease one batch and process it. Returns the outcomes of processed events."""
        workers = max(1, self._settings.workers)
        conn = self._connect()
        try:
            events = self._channel.receive(conn, limit=limit or workers * 2)
        finally:
            conn.close()
        if not events:
            return []

        results: list[ProvisioningOutcome | None] = []
        if len(events) > 1 and workers > 1:
            with ThreadPoolExecutor(max_workers=min(workers, len(events))) as executor:
                futures = [executor.submit(self._process, ev) for ev in events]
                for future in as_completed(futures):
                    try:
                        results.append(future.result())
                    except Exception as e:
                        # Lease expiry redelivers the event.
                        logger.error("provisioning task failed: %s", e)
        else:
            for ev in events:
                try:
                    results.append(self._process(ev))
                except Exception as e:
                    logger.error("provisioning of event %s failed: %s", ev.id, e)
        outcomes = [o for o in results if o is not None]
        logger.debug("processed %d of %d leased events", len(outcomes), len(events))
        return outcomes

    def drain(self, max_batches: int = 100) -> list[ProvisioningOutcome]:
        """Process batches until the channel has nothing deliverable (or max_batches)."""
        outcomes: list[ProvisioningOutcome] = []
        for _ in range(max_batches):
            batch = self.run_once()
            if not batch:
                break
            outcomes.extend(batch)
        return outcomes

    def sweep(self) -> list[ProvisioningOutcome]:
        """Resume provisioning claims abandoned by dead consumers."""
        conn = self._connect()
        try:
            return self._provisioner.resume_stale_claims(conn)
        finally:
            conn.close()

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Poll loop for the API process. Blocking work runs in the default executor."""
        loop = asyncio.get_running_loop()
        sweep_every = max(self._settings.poll_interval, self._settings.claim_stale_seconds / 2)
        last_sweep = loop.time()
        logger.info("provisioning consumer started (workers=%d)", self._settings.workers)
        while not stop_event.is_set():
            try:
                outcomes = await loop.run_in_executor(None, self.run_once)
                if loop.time() - last_sweep >= sweep_every:
                    last_sweep = loop.time()
                    outcomes += await loop.run_in_executor(None, self.sweep)
            except Exception:
                logger.exception("provisioning poll failed")
                outcomes = []
            if outcomes:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._settings.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("provisioning consumer stopped")
