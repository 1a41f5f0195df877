"""
Data models for the squad market backend.
Domain objects only, no persistence or API logic.

An account owns at most one squad; a squad owns its roster of players.
Listings are not separate records: a player's (asking_price, transfer_status)
pair is the listing.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


# ---------- Squad status (provisioning state machine) ----------
class SquadStatus(str, Enum):
    """Squad lifecycle: creating → ready | error. error → creating only by operator re-provisioning."""
    CREATING = "creating"
    READY = "ready"
    ERROR = "error"


# ---------- Position (closed variant) ----------
class Position(str, Enum):
    GOALKEEPER = "goalkeeper"
    DEFENDER = "defender"
    MIDFIELDER = "midfielder"
    ATTACKER = "attacker"


# ---------- Transfer status ----------
class TransferStatus(str, Enum):
    NOT_LISTED = "not_listed"
    LISTED = "listed"


# ---------- Channel event status ----------
class EventStatus(str, Enum):
    PENDING = "pending"
    INFLIGHT = "inflight"  # leased to a consumer, not yet acked
    ACKED = "acked"
    DEAD = "dead"  # exceeded max deliveries


# ---------- Account ----------
@dataclass
class Account:
    """
    Identity record. The core only ever uses `id` as the account reference;
    username and password_hash belong to the identity adapter.
    """
    id: str
    username: str
    password_hash: str
    created_at: datetime
    is_admin: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "is_admin": self.is_admin,
            "created_at": self.created_at.isoformat(),
        }


# ---------- Squad ----------
@dataclass
class Squad:
    """
    A managed squad, one per account.
    budget is in integer minor units and never negative.
    version increments on every write; used as a compare-and-set guard.
    """
    id: str
    account_ref: str
    name: str
    country: str
    budget: int
    status: str  # SquadStatus value
    created_at: datetime
    updated_at: datetime
    last_error: str | None = None
    provision_attempts: int = 0
    version: int = 0

    @property
    def is_ready(self) -> bool:
        return self.status == SquadStatus.READY

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "account_ref": self.account_ref,
            "name": self.name,
            "country": self.country,
            "budget": self.budget,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.last_error is not None:
            d["last_error"] = self.last_error
        return d


# ---------- Player ----------
@dataclass
class Player:
    """
    A squad member. value is the market valuation from generation;
    asking_price is set only while transfer_status is listed.
    """
    id: str
    squad_id: str
    position: str  # Position value
    first_name: str
    last_name: str
    country: str
    age: int
    value: int
    transfer_status: str  # TransferStatus value
    created_at: datetime
    asking_price: int | None = None
    version: int = 0

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_listed(self) -> bool:
        return self.transfer_status == TransferStatus.LISTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "squad_id": self.squad_id,
            "position": self.position,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "name": self.name,
            "country": self.country,
            "age": self.age,
            "value": self.value,
            "asking_price": self.asking_price,
            "transfer_status": self.transfer_status,
        }


# ---------- MarketListing (read model) ----------
@dataclass
class MarketListing:
    """A listed player as seen on the market, with the selling squad's name."""
    player: Player
    squad_name: str

    def to_dict(self) -> dict[str, Any]:
        d = self.player.to_dict()
        d["squad_name"] = self.squad_name
        return d


# ---------- Transfer (ledger row) ----------
@dataclass
class Transfer:
    """One completed purchase. Immutable after creation."""
    id: str
    player_id: str
    seller_squad_id: str
    buyer_squad_id: str
    asking_price: int
    settlement_price: int
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "player_id": self.player_id,
            "seller_squad_id": self.seller_squad_id,
            "buyer_squad_id": self.buyer_squad_id,
            "asking_price": self.asking_price,
            "settlement_price": self.settlement_price,
            "created_at": self.created_at.isoformat(),
        }


# ---------- ChannelEvent ----------
@dataclass
class ChannelEvent:
    """A message on the durable provisioning channel."""
    id: str
    topic: str
    account_ref: str
    payload: dict[str, Any]
    status: str  # EventStatus value
    deliveries: int
    available_at: datetime
    created_at: datetime
    leased_until: datetime | None = None
    acked_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "topic": self.topic,
            "account_ref": self.account_ref,
            "payload": self.payload,
            "status": self.status,
            "deliveries": self.deliveries,
            "created_at": self.created_at.isoformat(),
        }
        if self.last_error is not None:
            d["last_error"] = self.last_error
        return d
