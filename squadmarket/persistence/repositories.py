"""
Repository interfaces for squad market data.
Read/write operations only; business rules live in the services.

Repositories never commit: every write runs inside a transaction owned by the
calling service (see persistence.db.transaction). Guarded updates return False
when their version/state predicate did not match, so the caller decides what
that means.
"""
from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Sequence

from squadmarket.models import (
    Account,
    ChannelEvent,
    EventStatus,
    MarketListing,
    Player,
    Squad,
    SquadStatus,
    Transfer,
    TransferStatus,
)

if TYPE_CHECKING:
    from squadmarket.services.squad_generator import GeneratedPlayer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def _parse_datetime(s: str | None) -> datetime:
    if s is None:
        raise ValueError("expected datetime string")
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def _parse_optional(s: str | None) -> datetime | None:
    return _parse_datetime(s) if s else None


def _like_pattern(fragment: str) -> str:
    escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


# ---------- AccountRepository ----------


class AccountRepository:
    """CRUD for accounts (identity adapter)."""

    def create(
        self,
        conn: sqlite3.Connection,
        username: str,
        password_hash: str,
        is_admin: bool = False,
        id: str | None = None,
    ) -> Account:
        aid = id or str(uuid.uuid4())
        now = utcnow()
        conn.execute(
            "INSERT INTO accounts (id, username, password_hash, is_admin, created_at) VALUES (?, ?, ?, ?, ?)",
            (aid, username, password_hash, 1 if is_admin else 0, _iso(now)),
        )
        return Account(id=aid, username=username, password_hash=password_hash, created_at=now, is_admin=is_admin)

    def get(self, conn: sqlite3.Connection, account_id: str) -> Account | None:
        row = conn.execute(
            "SELECT id, username, password_hash, is_admin, created_at FROM accounts WHERE id = ?",
            (account_id,),
        ).fetchone()
        return _account_from_row(row) if row is not None else None

    def get_by_username(self, conn: sqlite3.Connection, username: str) -> Account | None:
        row = conn.execute(
            "SELECT id, username, password_hash, is_admin, created_at FROM accounts WHERE username = ?",
            (username,),
        ).fetchone()
        return _account_from_row(row) if row is not None else None


def _account_from_row(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        is_admin=bool(row["is_admin"]),
        created_at=_parse_datetime(row["created_at"]),
    )


# ---------- SquadRepository ----------

_SQUAD_COLS = (
    "id, account_ref, name, country, budget, status, last_error, "
    "provision_attempts, version, created_at, updated_at"
)


def _squad_from_row(row: sqlite3.Row) -> Squad:
    return Squad(
        id=row["id"],
        account_ref=row["account_ref"],
        name=row["name"],
        country=row["country"],
        budget=row["budget"],
        status=row["status"],
        last_error=row["last_error"],
        provision_attempts=row["provision_attempts"],
        version=row["version"],
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
    )


class SquadRepository:
    """CRUD and guarded state updates for squads."""

    def create_claim(
        self,
        conn: sqlite3.Connection,
        account_ref: str,
        now: datetime | None = None,
        id: str | None = None,
    ) -> Squad:
        """
        Insert an empty squad in `creating`. Raises sqlite3.IntegrityError if the
        account already has a squad (unique account_ref).
        """
        sid = id or str(uuid.uuid4())
        now = now or utcnow()
        conn.execute(
            f"INSERT INTO squads ({_SQUAD_COLS}) VALUES (?, ?, '', '', 0, ?, NULL, 0, 0, ?, ?)",
            (sid, account_ref, SquadStatus.CREATING.value, _iso(now), _iso(now)),
        )
        return Squad(
            id=sid, account_ref=account_ref, name="", country="", budget=0,
            status=SquadStatus.CREATING.value, created_at=now, updated_at=now,
        )

    def get(self, conn: sqlite3.Connection, squad_id: str) -> Squad | None:
        row = conn.execute(f"SELECT {_SQUAD_COLS} FROM squads WHERE id = ?", (squad_id,)).fetchone()
        return _squad_from_row(row) if row is not None else None

    def get_by_account(self, conn: sqlite3.Connection, account_ref: str) -> Squad | None:
        row = conn.execute(
            f"SELECT {_SQUAD_COLS} FROM squads WHERE account_ref = ?", (account_ref,)
        ).fetchone()
        return _squad_from_row(row) if row is not None else None

    def list_by_status(self, conn: sqlite3.Connection, status: str) -> list[Squad]:
        rows = conn.execute(
            f"SELECT {_SQUAD_COLS} FROM squads WHERE status = ? ORDER BY created_at", (status,)
        ).fetchall()
        return [_squad_from_row(r) for r in rows]

    def reclaim(self, conn: sqlite3.Connection, squad_id: str, expected_version: int, now: datetime) -> bool:
        """Take over a stale `creating` claim. Exactly one caller per version wins."""
        cur = conn.execute(
            "UPDATE squads SET version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ? AND status = ?",
            (_iso(now), squad_id, expected_version, SquadStatus.CREATING.value),
        )
        return cur.rowcount == 1

    def mark_ready(
        self,
        conn: sqlite3.Connection,
        squad_id: str,
        expected_version: int,
        name: str,
        country: str,
        budget: int,
        attempts: int,
        now: datetime,
    ) -> bool:
        cur = conn.execute(
            "UPDATE squads SET status = ?, name = ?, country = ?, budget = ?, provision_attempts = ?, "
            "last_error = NULL, version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ? AND status = ?",
            (
                SquadStatus.READY.value, name, country, budget, attempts, _iso(now),
                squad_id, expected_version, SquadStatus.CREATING.value,
            ),
        )
        return cur.rowcount == 1

    def mark_error(
        self,
        conn: sqlite3.Connection,
        squad_id: str,
        expected_version: int,
        error: str,
        attempts: int,
        now: datetime,
    ) -> bool:
        cur = conn.execute(
            "UPDATE squads SET status = ?, last_error = ?, provision_attempts = ?, "
            "version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ? AND status = ?",
            (
                SquadStatus.ERROR.value, error, attempts, _iso(now),
                squad_id, expected_version, SquadStatus.CREATING.value,
            ),
        )
        return cur.rowcount == 1

    def reopen(self, conn: sqlite3.Connection, squad_id: str, expected_version: int, now: datetime) -> bool:
        """error -> creating, for operator re-provisioning only."""
        cur = conn.execute(
            "UPDATE squads SET status = ?, last_error = NULL, version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ? AND status = ?",
            (SquadStatus.CREATING.value, _iso(now), squad_id, expected_version, SquadStatus.ERROR.value),
        )
        return cur.rowcount == 1

    def adjust_budget(
        self,
        conn: sqlite3.Connection,
        squad_id: str,
        expected_version: int,
        delta: int,
        now: datetime,
    ) -> bool:
        """Add delta (negative to debit). Refuses to drive the budget below zero."""
        cur = conn.execute(
            "UPDATE squads SET budget = budget + ?, version = version + 1, updated_at = ? "
            "WHERE id = ? AND version = ? AND budget + ? >= 0",
            (delta, _iso(now), squad_id, expected_version, delta),
        )
        return cur.rowcount == 1

    def update_details(
        self,
        conn: sqlite3.Connection,
        squad_id: str,
        name: str | None,
        country: str | None,
        now: datetime,
    ) -> None:
        conn.execute(
            "UPDATE squads SET name = COALESCE(?, name), country = COALESCE(?, country), "
            "version = version + 1, updated_at = ? WHERE id = ?",
            (name, country, _iso(now), squad_id),
        )

    def roster_size(self, conn: sqlite3.Connection, squad_id: str) -> int:
        row = conn.execute("SELECT COUNT(*) AS n FROM players WHERE squad_id = ?", (squad_id,)).fetchone()
        return int(row["n"])

    def count_by_account(self, conn: sqlite3.Connection, account_ref: str) -> int:
        row = conn.execute("SELECT COUNT(*) AS n FROM squads WHERE account_ref = ?", (account_ref,)).fetchone()
        return int(row["n"])


# ---------- PlayerRepository ----------

_PLAYER_COLS = (
    "id, squad_id, position, first_name, last_name, country, age, value, "
    "asking_price, transfer_status, version, created_at"
)


def _player_from_row(row: sqlite3.Row) -> Player:
    return Player(
        id=row["id"],
        squad_id=row["squad_id"],
        position=row["position"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        country=row["country"],
        age=row["age"],
        value=row["value"],
        asking_price=row["asking_price"],
        transfer_status=row["transfer_status"],
        version=row["version"],
        created_at=_parse_datetime(row["created_at"]),
    )


class PlayerRepository:
    """CRUD, guarded listing/ownership updates and the market read contract."""

    def insert_many(
        self,
        conn: sqlite3.Connection,
        squad_id: str,
        players: Sequence[GeneratedPlayer],
        now: datetime | None = None,
    ) -> list[Player]:
        now = now or utcnow()
        created: list[Player] = []
        for gp in players:
            pid = str(uuid.uuid4())
            conn.execute(
                f"INSERT INTO players ({_PLAYER_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, 0, ?)",
                (
                    pid, squad_id, gp.position.value, gp.first_name, gp.last_name,
                    gp.country, gp.age, gp.value, TransferStatus.NOT_LISTED.value, _iso(now),
                ),
            )
            created.append(Player(
                id=pid, squad_id=squad_id, position=gp.position.value,
                first_name=gp.first_name, last_name=gp.last_name, country=gp.country,
                age=gp.age, value=gp.value, transfer_status=TransferStatus.NOT_LISTED.value,
                created_at=now,
            ))
        return created

    def get(self, conn: sqlite3.Connection, player_id: str) -> Player | None:
        row = conn.execute(f"SELECT {_PLAYER_COLS} FROM players WHERE id = ?", (player_id,)).fetchone()
        return _player_from_row(row) if row is not None else None

    def list_by_squad(self, conn: sqlite3.Connection, squad_id: str) -> list[Player]:
        rows = conn.execute(
            f"SELECT {_PLAYER_COLS} FROM players WHERE squad_id = ? "
            "ORDER BY CASE position WHEN 'goalkeeper' THEN 0 WHEN 'defender' THEN 1 "
            "WHEN 'midfielder' THEN 2 ELSE 3 END, last_name, id",
            (squad_id,),
        ).fetchall()
        return [_player_from_row(r) for r in rows]

    def delete_by_squad(self, conn: sqlite3.Connection, squad_id: str) -> int:
        cur = conn.execute("DELETE FROM players WHERE squad_id = ?", (squad_id,))
        return cur.rowcount

    def set_listing(self, conn: sqlite3.Connection, player_id: str, expected_version: int, asking_price: int) -> bool:
        cur = conn.execute(
            "UPDATE players SET asking_price = ?, transfer_status = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (asking_price, TransferStatus.LISTED.value, player_id, expected_version),
        )
        return cur.rowcount == 1

    def clear_listing(self, conn: sqlite3.Connection, player_id: str, expected_version: int) -> bool:
        cur = conn.execute(
            "UPDATE players SET asking_price = NULL, transfer_status = ?, version = version + 1 "
            "WHERE id = ? AND version = ? AND transfer_status = ?",
            (TransferStatus.NOT_LISTED.value, player_id, expected_version, TransferStatus.LISTED.value),
        )
        return cur.rowcount == 1

    def transfer_owner(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        expected_version: int,
        from_squad_id: str,
        to_squad_id: str,
    ) -> bool:
        """Move a listed player to another squad and clear the listing in one statement."""
        cur = conn.execute(
            "UPDATE players SET squad_id = ?, asking_price = NULL, transfer_status = ?, version = version + 1 "
            "WHERE id = ? AND version = ? AND squad_id = ? AND transfer_status = ?",
            (
                to_squad_id, TransferStatus.NOT_LISTED.value,
                player_id, expected_version, from_squad_id, TransferStatus.LISTED.value,
            ),
        )
        return cur.rowcount == 1

    def update_details(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        first_name: str | None,
        last_name: str | None,
        country: str | None,
    ) -> None:
        conn.execute(
            "UPDATE players SET first_name = COALESCE(?, first_name), last_name = COALESCE(?, last_name), "
            "country = COALESCE(?, country), version = version + 1 WHERE id = ?",
            (first_name, last_name, country, player_id),
        )

    def search_listed(
        self,
        conn: sqlite3.Connection,
        squad_name: str | None = None,
        player_name: str | None = None,
        min_price: int | None = None,
        max_price: int | None = None,
        position: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[MarketListing], int]:
        """
        Market read contract: listed players only, optional substring/price/position
        filters, ordered by asking price. Returns (page, total matching).
        """
        where = ["p.transfer_status = ?"]
        args: list[Any] = [TransferStatus.LISTED.value]
        if squad_name:
            where.append("s.name LIKE ? ESCAPE '\\'")
            args.append(_like_pattern(squad_name))
        if player_name:
            where.append("(p.first_name || ' ' || p.last_name) LIKE ? ESCAPE '\\'")
            args.append(_like_pattern(player_name))
        if min_price is not None:
            where.append("p.asking_price >= ?")
            args.append(min_price)
        if max_price is not None:
            where.append("p.asking_price <= ?")
            args.append(max_price)
        if position:
            where.append("p.position = ?")
            args.append(position)
        clause = " AND ".join(where)
        total = conn.execute(
            f"SELECT COUNT(*) AS n FROM players p JOIN squads s ON s.id = p.squad_id WHERE {clause}",
            args,
        ).fetchone()["n"]
        cols = ", ".join(f"p.{c.strip()}" for c in _PLAYER_COLS.split(","))
        rows = conn.execute(
            f"SELECT {cols}, s.name AS squad_name FROM players p JOIN squads s ON s.id = p.squad_id "
            f"WHERE {clause} ORDER BY p.asking_price, p.id LIMIT ? OFFSET ?",
            args + [limit, offset],
        ).fetchall()
        return [MarketListing(player=_player_from_row(r), squad_name=r["squad_name"]) for r in rows], int(total)


# ---------- TransferRepository ----------


class TransferRepository:
    """Append-only ledger of completed purchases."""

    def create(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        seller_squad_id: str,
        buyer_squad_id: str,
        asking_price: int,
        settlement_price: int,
        now: datetime | None = None,
        id: str | None = None,
    ) -> Transfer:
        tid = id or str(uuid.uuid4())
        now = now or utcnow()
        conn.execute(
            """INSERT INTO transfers (
                id, player_id, seller_squad_id, buyer_squad_id,
                asking_price, settlement_price, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (tid, player_id, seller_squad_id, buyer_squad_id, asking_price, settlement_price, _iso(now)),
        )
        return Transfer(
            id=tid, player_id=player_id, seller_squad_id=seller_squad_id,
            buyer_squad_id=buyer_squad_id, asking_price=asking_price,
            settlement_price=settlement_price, created_at=now,
        )

    def list_by_squad(self, conn: sqlite3.Connection, squad_id: str, limit: int = 50) -> list[Transfer]:
        rows = conn.execute(
            """SELECT id, player_id, seller_squad_id, buyer_squad_id,
                      asking_price, settlement_price, created_at
               FROM transfers WHERE seller_squad_id = ? OR buyer_squad_id = ?
               ORDER BY created_at DESC LIMIT ?""",
            (squad_id, squad_id, limit),
        ).fetchall()
        return [
            Transfer(
                id=r["id"],
                player_id=r["player_id"],
                seller_squad_id=r["seller_squad_id"],
                buyer_squad_id=r["buyer_squad_id"],
                asking_price=r["asking_price"],
                settlement_price=r["settlement_price"],
                created_at=_parse_datetime(r["created_at"]),
            )
            for r in rows
        ]


# ---------- ChannelEventRepository ----------

_EVENT_COLS = (
    "id, topic, account_ref, payload, status, deliveries, available_at, "
    "leased_until, created_at, acked_at, last_error"
)


def _event_from_row(row: sqlite3.Row) -> ChannelEvent:
    return ChannelEvent(
        id=row["id"],
        topic=row["topic"],
        account_ref=row["account_ref"],
        payload=json.loads(row["payload"] or "{}"),
        status=row["status"],
        deliveries=row["deliveries"],
        available_at=_parse_datetime(row["available_at"]),
        leased_until=_parse_optional(row["leased_until"]),
        created_at=_parse_datetime(row["created_at"]),
        acked_at=_parse_optional(row["acked_at"]),
        last_error=row["last_error"],
    )


class ChannelEventRepository:
    """Storage for the durable event channel. Delivery policy lives in squadmarket.channel."""

    def insert(
        self,
        conn: sqlite3.Connection,
        topic: str,
        account_ref: str,
        payload: dict[str, Any],
        now: datetime,
        id: str | None = None,
    ) -> ChannelEvent:
        eid = id or str(uuid.uuid4())
        conn.execute(
            f"INSERT INTO channel_events ({_EVENT_COLS}) VALUES (?, ?, ?, ?, ?, 0, ?, NULL, ?, NULL, NULL)",
            (eid, topic, account_ref, json.dumps(payload), EventStatus.PENDING.value, _iso(now), _iso(now)),
        )
        return ChannelEvent(
            id=eid, topic=topic, account_ref=account_ref, payload=dict(payload),
            status=EventStatus.PENDING.value, deliveries=0, available_at=now, created_at=now,
        )

    def get(self, conn: sqlite3.Connection, event_id: str) -> ChannelEvent | None:
        row = conn.execute(f"SELECT {_EVENT_COLS} FROM channel_events WHERE id = ?", (event_id,)).fetchone()
        return _event_from_row(row) if row is not None else None

    def list_deliverable(self, conn: sqlite3.Connection, topic: str, now: datetime, limit: int) -> list[ChannelEvent]:
        """Pending events that are due, plus inflight events whose lease has expired."""
        rows = conn.execute(
            f"SELECT {_EVENT_COLS} FROM channel_events "
            "WHERE topic = ? AND ((status = ? AND available_at <= ?) OR (status = ? AND leased_until <= ?)) "
            "ORDER BY available_at, id LIMIT ?",
            (
                topic, EventStatus.PENDING.value, _iso(now),
                EventStatus.INFLIGHT.value, _iso(now), limit,
            ),
        ).fetchall()
        return [_event_from_row(r) for r in rows]

    def lease(self, conn: sqlite3.Connection, event_id: str, leased_until: datetime) -> None:
        conn.execute(
            "UPDATE channel_events SET status = ?, deliveries = deliveries + 1, leased_until = ? WHERE id = ?",
            (EventStatus.INFLIGHT.value, _iso(leased_until), event_id),
        )

    def ack(self, conn: sqlite3.Connection, event_id: str, now: datetime) -> bool:
        cur = conn.execute(
            "UPDATE channel_events SET status = ?, acked_at = ?, leased_until = NULL WHERE id = ? AND status != ?",
            (EventStatus.ACKED.value, _iso(now), event_id, EventStatus.ACKED.value),
        )
        return cur.rowcount == 1

    def requeue(self, conn: sqlite3.Connection, event_id: str, available_at: datetime, error: str | None) -> None:
        conn.execute(
            "UPDATE channel_events SET status = ?, available_at = ?, leased_until = NULL, last_error = ? WHERE id = ?",
            (EventStatus.PENDING.value, _iso(available_at), error, event_id),
        )

    def mark_dead(self, conn: sqlite3.Connection, event_id: str, error: str | None) -> None:
        conn.execute(
            "UPDATE channel_events SET status = ?, leased_until = NULL, last_error = ? WHERE id = ?",
            (EventStatus.DEAD.value, error, event_id),
        )

    def count_by_status(self, conn: sqlite3.Connection, status: str) -> int:
        row = conn.execute("SELECT COUNT(*) AS n FROM channel_events WHERE status = ?", (status,)).fetchone()
        return int(row["n"])

    def list_by_status(self, conn: sqlite3.Connection, status: str, limit: int = 100) -> list[ChannelEvent]:
        rows = conn.execute(
            f"SELECT {_EVENT_COLS} FROM channel_events WHERE status = ? ORDER BY created_at LIMIT ?",
            (status, limit),
        ).fetchall()
        return [_event_from_row(r) for r in rows]
