"""
Squad provisioning: the absent → creating → ready | error state machine.

Consumes "account created" deliveries. The unique squad per account is the
mutual-exclusion point: the first delivery inserts a `creating` squad (the claim),
every later delivery for the same account is discarded. Generation + persistence
is retried a bounded number of times; after that the squad is parked in `error`
and only an operator's reprovision() moves it back to `creating`.

A `creating` claim whose owner died (no progress for claim_stale_seconds) is
taken over by the next delivery through a version compare-and-set.
"""
from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from squadmarket.config import Settings, get_settings
from squadmarket.models import Position, Squad, SquadStatus
from squadmarket.persistence.db import run_in_transaction
from squadmarket.persistence.repositories import PlayerRepository, SquadRepository, utcnow
from squadmarket.rules import FORMATION
from squadmarket.services.squad_generator import GeneratedSquad, generate_squad

logger = logging.getLogger(__name__)

# ---------- Exceptions ----------


class ProvisioningTransitionError(ValueError):
    """Invalid squad status transition (e.g. ready -> creating)."""


class ProvisioningFailed(RuntimeError):
    """Generation or persistence kept failing; the squad is now in `error`."""

    def __init__(self, account_ref: str, squad_id: str, reason: str) -> None:
        super().__init__(f"provisioning failed for account {account_ref} (squad {squad_id}): {reason}")
        self.account_ref = account_ref
        self.squad_id = squad_id
        self.reason = reason


class _ClaimLost(Exception):
    """Another consumer advanced the squad while we were working on it."""


# ---------- Valid transitions ----------

_ABSENT = "absent"

_VALID_TRANSITIONS: dict[str, set[str]] = {
    _ABSENT: {SquadStatus.CREATING},
    SquadStatus.CREATING: {SquadStatus.READY, SquadStatus.ERROR},
    SquadStatus.READY: set(),
    SquadStatus.ERROR: {SquadStatus.CREATING},  # operator reprovision only
}


def assert_transition(current: str, new: str) -> None:
    allowed = _VALID_TRANSITIONS.get(current, set())
    if new not in allowed:
        raise ProvisioningTransitionError(
            f"Invalid transition: {current} -> {new}. Allowed from {current}: {sorted(str(s.value) for s in allowed)}"
        )


# ---------- Outcome ----------


class ProvisioningResult(str, Enum):
    READY = "ready"
    DUPLICATE = "duplicate"  # idempotent no-op
    FAILED = "failed"


@dataclass
class ProvisioningOutcome:
    account_ref: str
    result: ProvisioningResult
    squad: Squad | None
    error: ProvisioningFailed | None = None


# ---------- Provisioner ----------


class Provisioner:
    """
    Drives one account's squad to a terminal state.
    Persistence is delegated to repositories; generation to a pure function.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        generator: Callable[..., GeneratedSquad] = generate_squad,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._generator = generator
        self._clock = clock
        self._squads = SquadRepository()
        self._players = PlayerRepository()

    def handle_account_created(
        self, conn: sqlite3.Connection, account_ref: str, seed: int | None = None
    ) -> ProvisioningOutcome:
        """
        Process one (possibly duplicate) delivery for account_ref.
        Never raises for business outcomes; store outages before the claim commits
        propagate so the channel can redeliver.
        """
        squad, claimed = self._claim(conn, account_ref)
        if not claimed:
            logger.info(
                "duplicate provisioning for account %s discarded (squad %s is %s)",
                account_ref, squad.id, squad.status,
            )
            return ProvisioningOutcome(account_ref, ProvisioningResult.DUPLICATE, squad)
        logger.info("provisioning squad %s for account %s", squad.id, account_ref)
        return self._complete(conn, squad, seed)

    def reprovision(
        self, conn: sqlite3.Connection, account_ref: str, seed: int | None = None
    ) -> ProvisioningOutcome:
        """Operator action: error -> creating, then run generation + persistence again."""

        def _reopen() -> Squad:
            current = self._squads.get_by_account(conn, account_ref)
            if current is None:
                raise ProvisioningTransitionError(f"No squad for account {account_ref}; nothing to reprovision")
            assert_transition(current.status, SquadStatus.CREATING)
            self._players.delete_by_squad(conn, current.id)
            if not self._squads.reopen(conn, current.id, current.version, self._clock()):
                raise ProvisioningTransitionError(f"Squad {current.id} changed concurrently; retry")
            reopened = self._squads.get(conn, current.id)
            if reopened is None:
                raise RuntimeError(f"Squad {current.id} vanished mid-transaction")
            return reopened

        squad = run_in_transaction(conn, _reopen)
        logger.info("reprovisioning squad %s for account %s", squad.id, account_ref)
        return self._complete(conn, squad, seed)

    def resume_stale_claims(self, conn: sqlite3.Connection) -> list[ProvisioningOutcome]:
        """
        Finish squads left in `creating` by a consumer that died mid-provisioning.
        Their own events may already have been discarded as duplicates, so this
        sweep is what guarantees every claim reaches ready or error.
        """
        now = self._clock()
        outcomes: list[ProvisioningOutcome] = []
        for squad in self._squads.list_by_status(conn, SquadStatus.CREATING):
            if not self._is_stale(squad, now):
                continue
            claimed = run_in_transaction(
                conn, lambda: self._squads.reclaim(conn, squad.id, squad.version, now)
            )
            if not claimed:
                continue
            logger.warning(
                "resuming stale provisioning claim for account %s (squad %s, idle since %s)",
                squad.account_ref, squad.id, squad.updated_at.isoformat(),
            )
            resumed = replace(squad, version=squad.version + 1, updated_at=now)
            outcomes.append(self._complete(conn, resumed, seed=None))
        return outcomes

    def get_status(self, conn: sqlite3.Connection, account_ref: str) -> str:
        squad = self._squads.get_by_account(conn, account_ref)
        return squad.status if squad is not None else _ABSENT

    # ---------- internals ----------

    def _is_stale(self, squad: Squad, now: datetime) -> bool:
        return now - squad.updated_at >= timedelta(seconds=self._settings.claim_stale_seconds)

    def _claim(self, conn: sqlite3.Connection, account_ref: str) -> tuple[Squad, bool]:
        now = self._clock()

        def _try_claim() -> tuple[Squad, bool]:
            existing = self._squads.get_by_account(conn, account_ref)
            if existing is None:
                assert_transition(_ABSENT, SquadStatus.CREATING)
                return self._squads.create_claim(conn, account_ref, now), True
            if existing.status == SquadStatus.CREATING and self._is_stale(existing, now):
                if self._squads.reclaim(conn, existing.id, existing.version, now):
                    logger.warning(
                        "taking over stale provisioning claim for account %s (squad %s, idle since %s)",
                        account_ref, existing.id, existing.updated_at.isoformat(),
                    )
                    return replace(existing, version=existing.version + 1, updated_at=now), True
            return existing, False

        try:
            return run_in_transaction(conn, _try_claim)
        except sqlite3.IntegrityError:
            existing = self._squads.get_by_account(conn, account_ref)
            if existing is None:
                raise
            return existing, False

    def _check_shape(self, generated: GeneratedSquad) -> None:
        counts = generated.count_by_position()
        expected = {p: FORMATION[p] for p in Position}
        if counts != expected:
            raise ValueError(f"generated squad has shape {counts}, expected {expected}")
        if generated.budget != self._settings.initial_budget:
            raise ValueError(f"generated budget {generated.budget} != initial budget {self._settings.initial_budget}")

    def _complete(self, conn: sqlite3.Connection, squad: Squad, seed: int | None) -> ProvisioningOutcome:
        attempts = max(1, self._settings.provision_attempts)
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                generated = self._generator(squad.account_ref, self._settings.initial_budget, seed=seed)
                self._check_shape(generated)
                ready = run_in_transaction(conn, lambda: self._persist(conn, squad, generated, attempt))
            except _ClaimLost:
                current = self._squads.get(conn, squad.id)
                logger.warning("lost provisioning claim on squad %s; another consumer owns it", squad.id)
                return ProvisioningOutcome(squad.account_ref, ProvisioningResult.DUPLICATE, current)
            except Exception as e:
                last_exc = e
                logger.warning(
                    "provisioning attempt %d/%d failed for account %s: %s",
                    attempt, attempts, squad.account_ref, e,
                )
                if attempt < attempts:
                    time.sleep(self._settings.tx_backoff * (2 ** (attempt - 1)))
                continue
            logger.info(
                "squad %s for account %s is ready (%d attempt(s))", ready.id, squad.account_ref, attempt
            )
            return ProvisioningOutcome(squad.account_ref, ProvisioningResult.READY, ready)

        reason = f"{type(last_exc).__name__}: {last_exc}"
        failed = self._record_failure(conn, squad, reason, attempts)
        error = ProvisioningFailed(squad.account_ref, squad.id, reason)
        logger.error("%s", error, exc_info=last_exc)
        return ProvisioningOutcome(squad.account_ref, ProvisioningResult.FAILED, failed, error=error)

    def _persist(self, conn: sqlite3.Connection, squad: Squad, generated: GeneratedSquad, attempt: int) -> Squad:
        """Players and the ready transition commit together or not at all."""
        now = self._clock()
        assert_transition(SquadStatus.CREATING, SquadStatus.READY)
        self._players.insert_many(conn, squad.id, generated.players, now)
        if not self._squads.mark_ready(
            conn, squad.id, squad.version, generated.name, generated.country,
            generated.budget, attempt, now,
        ):
            raise _ClaimLost(squad.id)
        ready = self._squads.get(conn, squad.id)
        if ready is None:
            raise RuntimeError(f"Squad {squad.id} vanished mid-transaction")
        return ready

    def _record_failure(self, conn: sqlite3.Connection, squad: Squad, reason: str, attempts: int) -> Squad | None:
        def _mark() -> Squad | None:
            assert_transition(SquadStatus.CREATING, SquadStatus.ERROR)
            if not self._squads.mark_error(conn, squad.id, squad.version, reason, attempts, self._clock()):
                logger.warning("squad %s changed before its failure could be recorded", squad.id)
            return self._squads.get(conn, squad.id)

        return run_in_transaction(conn, _mark)
