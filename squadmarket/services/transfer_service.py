"""
Transfer market engine: list, unlist and buy.

Every operation is one transaction (BEGIN IMMEDIATE) scoped to the player and the
one or two squads involved, so all mutations of a player are totally ordered and
no reader ever sees a half-applied transfer. Each write is additionally guarded by
the row's version; a guard miss inside the transaction means the listing moved
under us, and Buy reports it as NotListed.
"""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from squadmarket.config import Settings, get_settings
from squadmarket.models import Player, Squad, SquadStatus, Transfer
from squadmarket.persistence.db import run_in_transaction
from squadmarket.persistence.repositories import (
    PlayerRepository,
    SquadRepository,
    TransferRepository,
    utcnow,
)
from squadmarket.rules import (
    ROSTER_MAX,
    ROSTER_MIN,
    roster_can_gain,
    roster_can_lose,
    settlement_price,
    valid_asking_price,
)

logger = logging.getLogger(__name__)

# ---------- Exceptions ----------


class TransferError(ValueError):
    """Base for caller-visible market rule violations. Not retryable without changed input."""

    code = "transfer_error"


class PlayerNotFound(TransferError):
    code = "player_not_found"


class SquadNotFound(TransferError):
    code = "squad_not_found"


class SquadNotReady(TransferError):
    """Squad is still being provisioned (or failed) and cannot trade."""

    code = "squad_not_ready"


class NotOwner(TransferError):
    code = "not_owner"


class InvalidPrice(TransferError):
    code = "invalid_price"


class NotListed(TransferError):
    """Player has no active listing (never listed, unlisted, or already sold)."""

    code = "not_listed"


class SelfTransfer(TransferError):
    code = "self_transfer"


class InsufficientBudget(TransferError):
    code = "insufficient_budget"


class RosterFull(TransferError):
    code = "roster_full"


class RosterTooSmall(TransferError):
    code = "roster_too_small"


@dataclass
class TransferResult:
    player: Player
    buyer: Squad
    seller: Squad
    transfer: Transfer

    @property
    def settlement_price(self) -> int:
        return self.transfer.settlement_price

    def to_dict(self) -> dict:
        return {
            "player": self.player.to_dict(),
            "buyer": self.buyer.to_dict(),
            "seller": self.seller.to_dict(),
            "transfer": self.transfer.to_dict(),
        }


# ---------- TransferService ----------


class TransferService:
    """
    List / Unlist / Buy. Rule checks run inside the same transaction as the writes,
    so a check can never be invalidated before its write lands.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._squad_repo = SquadRepository()
        self._player_repo = PlayerRepository()
        self._transfer_repo = TransferRepository()

    def _run(self, conn: sqlite3.Connection, fn):
        return run_in_transaction(
            conn, fn, attempts=self._settings.tx_retries, backoff=self._settings.tx_backoff
        )

    def _load_player(self, conn: sqlite3.Connection, player_id: str) -> Player:
        player = self._player_repo.get(conn, player_id)
        if player is None:
            raise PlayerNotFound(f"Player not found: {player_id}")
        return player

    def _load_ready_squad(self, conn: sqlite3.Connection, squad_id: str) -> Squad:
        squad = self._squad_repo.get(conn, squad_id)
        if squad is None:
            raise SquadNotFound(f"Squad not found: {squad_id}")
        if squad.status != SquadStatus.READY:
            raise SquadNotReady(f"Squad {squad_id} is {squad.status}; only ready squads can trade")
        return squad

    # ---------- List ----------

    def list_player(
        self, conn: sqlite3.Connection, player_id: str, asking_price: int, requesting_squad_id: str
    ) -> Player:
        """Put a player on the market, or update the price of an existing listing."""

        def _list() -> Player:
            self._load_ready_squad(conn, requesting_squad_id)
            player = self._load_player(conn, player_id)
            if player.squad_id != requesting_squad_id:
                raise NotOwner(f"Player {player_id} does not belong to squad {requesting_squad_id}")
            if not valid_asking_price(asking_price):
                raise InvalidPrice(f"Asking price must be a positive integer, got {asking_price!r}")
            if not self._player_repo.set_listing(conn, player_id, player.version, asking_price):
                raise NotListed(f"Player {player_id} changed concurrently")
            updated = self._player_repo.get(conn, player_id)
            if updated is None:
                raise RuntimeError(f"Player {player_id} vanished mid-transaction")
            return updated

        player = self._run(conn, _list)
        logger.info("player %s listed by squad %s at %d", player_id, requesting_squad_id, asking_price)
        return player

    # ---------- Unlist ----------

    def unlist_player(self, conn: sqlite3.Connection, player_id: str, requesting_squad_id: str) -> Player:
        def _unlist() -> Player:
            player = self._load_player(conn, player_id)
            if player.squad_id != requesting_squad_id:
                raise NotOwner(f"Player {player_id} does not belong to squad {requesting_squad_id}")
            if not player.is_listed:
                raise NotListed(f"Player {player_id} is not listed")
            if not self._player_repo.clear_listing(conn, player_id, player.version):
                raise NotListed(f"Player {player_id} is not listed")
            updated = self._player_repo.get(conn, player_id)
            if updated is None:
                raise RuntimeError(f"Player {player_id} vanished mid-transaction")
            return updated

        player = self._run(conn, _unlist)
        logger.info("player %s unlisted by squad %s", player_id, requesting_squad_id)
        return player

    # ---------- Buy ----------

    def buy_player(self, conn: sqlite3.Connection, player_id: str, buying_squad_id: str) -> TransferResult:
        """
        Settle at floor(95% of asking). Check order: NotListed, SelfTransfer,
        InsufficientBudget, RosterFull, RosterTooSmall. On success the buyer debit,
        seller credit, owner change and listing clear commit as one unit.
        """

        def _buy() -> TransferResult:
            player = self._load_player(conn, player_id)
            if not player.is_listed or player.asking_price is None:
                raise NotListed(f"Player {player_id} is not listed")
            buyer = self._load_ready_squad(conn, buying_squad_id)
            if player.squad_id == buyer.id:
                raise SelfTransfer(f"Squad {buyer.id} already owns player {player_id}")
            seller = self._squad_repo.get(conn, player.squad_id)
            if seller is None:
                raise SquadNotFound(f"Squad not found: {player.squad_id}")

            asking = player.asking_price
            price = settlement_price(asking)
            if buyer.budget < price:
                raise InsufficientBudget(
                    f"Squad {buyer.id} has budget {buyer.budget}, needs {price}"
                )
            if not roster_can_gain(self._squad_repo.roster_size(conn, buyer.id)):
                raise RosterFull(f"Squad {buyer.id} already has {ROSTER_MAX} players")
            if not roster_can_lose(self._squad_repo.roster_size(conn, seller.id)):
                raise RosterTooSmall(f"Squad {seller.id} cannot go below {ROSTER_MIN} players")

            now = utcnow()
            if not self._player_repo.transfer_owner(conn, player.id, player.version, seller.id, buyer.id):
                raise NotListed(f"Player {player_id} is no longer available")
            if not self._squad_repo.adjust_budget(conn, buyer.id, buyer.version, -price, now):
                raise InsufficientBudget(f"Squad {buyer.id} budget changed; cannot cover {price}")
            if not self._squad_repo.adjust_budget(conn, seller.id, seller.version, price, now):
                raise NotListed(f"Seller {seller.id} changed concurrently")
            transfer = self._transfer_repo.create(conn, player.id, seller.id, buyer.id, asking, price, now)

            moved = self._player_repo.get(conn, player.id)
            new_buyer = self._squad_repo.get(conn, buyer.id)
            new_seller = self._squad_repo.get(conn, seller.id)
            if moved is None or new_buyer is None or new_seller is None:
                raise RuntimeError(f"Transfer of player {player_id} left a missing record")
            return TransferResult(player=moved, buyer=new_buyer, seller=new_seller, transfer=transfer)

        result = self._run(conn, _buy)
        logger.info(
            "player %s sold by squad %s to squad %s for %d (asking %d)",
            player_id, result.seller.id, result.buyer.id,
            result.transfer.settlement_price, result.transfer.asking_price,
        )
        return result
