"""
Read side of a squad plus the owner edits that never touch money or ownership.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any

from squadmarket.models import Player, Squad, SquadStatus, Transfer
from squadmarket.persistence.db import run_in_transaction
from squadmarket.persistence.repositories import (
    PlayerRepository,
    SquadRepository,
    TransferRepository,
    utcnow,
)
from squadmarket.services.transfer_service import NotOwner, PlayerNotFound, SquadNotFound, SquadNotReady

MAX_NAME_LENGTH = 100


@dataclass
class SquadView:
    """A squad as callers see it. roster stays empty until the squad is ready."""
    squad: Squad
    roster: list[Player] = field(default_factory=list)

    @property
    def team_value(self) -> int:
        return sum(p.value for p in self.roster)

    def to_dict(self) -> dict[str, Any]:
        d = self.squad.to_dict()
        if self.squad.status == SquadStatus.READY:
            d["roster_size"] = len(self.roster)
            d["team_value"] = self.team_value
            d["players"] = [p.to_dict() for p in self.roster]
        return d


def _clean(value: str | None, field_name: str) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not value or len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} must be 1-{MAX_NAME_LENGTH} characters")
    return value


class SquadService:
    def __init__(self) -> None:
        self._squad_repo = SquadRepository()
        self._player_repo = PlayerRepository()
        self._transfer_repo = TransferRepository()

    def get_squad(self, conn: sqlite3.Connection, account_ref: str) -> SquadView:
        """getSquad(accountRef): the account's squad, or SquadNotFound if none exists yet."""
        squad = self._squad_repo.get_by_account(conn, account_ref)
        if squad is None:
            raise SquadNotFound(f"No squad for account {account_ref}")
        roster = self._player_repo.list_by_squad(conn, squad.id) if squad.is_ready else []
        return SquadView(squad=squad, roster=roster)

    def update_squad(
        self,
        conn: sqlite3.Connection,
        account_ref: str,
        name: str | None = None,
        country: str | None = None,
    ) -> Squad:
        name = _clean(name, "name")
        country = _clean(country, "country")

        def _update() -> Squad:
            squad = self._squad_repo.get_by_account(conn, account_ref)
            if squad is None:
                raise SquadNotFound(f"No squad for account {account_ref}")
            if not squad.is_ready:
                raise SquadNotReady(f"Squad {squad.id} is {squad.status}")
            self._squad_repo.update_details(conn, squad.id, name, country, utcnow())
            updated = self._squad_repo.get(conn, squad.id)
            if updated is None:
                raise RuntimeError(f"Squad {squad.id} vanished mid-transaction")
            return updated

        return run_in_transaction(conn, _update)

    def update_player(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        requesting_squad_id: str,
        first_name: str | None = None,
        last_name: str | None = None,
        country: str | None = None,
    ) -> Player:
        first_name = _clean(first_name, "first_name")
        last_name = _clean(last_name, "last_name")
        country = _clean(country, "country")

        def _update() -> Player:
            player = self._player_repo.get(conn, player_id)
            if player is None:
                raise PlayerNotFound(f"Player not found: {player_id}")
            if player.squad_id != requesting_squad_id:
                raise NotOwner(f"Player {player_id} does not belong to squad {requesting_squad_id}")
            self._player_repo.update_details(conn, player_id, first_name, last_name, country)
            updated = self._player_repo.get(conn, player_id)
            if updated is None:
                raise RuntimeError(f"Player {player_id} vanished mid-transaction")
            return updated

        return run_in_transaction(conn, _update)

    def transfer_history(self, conn: sqlite3.Connection, squad_id: str, limit: int = 50) -> list[Transfer]:
        return self._transfer_repo.list_by_squad(conn, squad_id, limit=limit)
