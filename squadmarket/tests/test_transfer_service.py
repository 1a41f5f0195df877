"""
Tests for the transfer engine: list/unlist/buy rules, settlement arithmetic,
roster and budget invariants, and concurrent buys on one listing.
"""
from __future__ import annotations

import random
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

import sys
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

from squadmarket.models import SquadStatus, TransferStatus
from squadmarket.persistence.db import get_connection
from squadmarket.persistence.repositories import PlayerRepository, SquadRepository, TransferRepository
from squadmarket.rules import ROSTER_MAX, ROSTER_MIN, settlement_price
from squadmarket.services.squad_generator import generate_squad
from squadmarket.services.transfer_service import (
    InsufficientBudget,
    InvalidPrice,
    NotListed,
    NotOwner,
    PlayerNotFound,
    RosterFull,
    RosterTooSmall,
    SelfTransfer,
    SquadNotReady,
    TransferError,
    TransferService,
)


@pytest.fixture
def service(settings):
    return TransferService(settings)


def _set_budget(conn, squad_id, amount):
    conn.execute("UPDATE squads SET budget = ? WHERE id = ?", (amount, squad_id))


def _resize_roster(conn, squad_id, size, keep=()):
    """Grow or shrink a squad's roster to `size`, never removing players in `keep`."""
    current = SquadRepository().roster_size(conn, squad_id)
    if size < current:
        keep = tuple(keep) or ("",)
        marks = ",".join("?" for _ in keep)
        conn.execute(
            f"DELETE FROM players WHERE id IN (SELECT id FROM players WHERE squad_id = ? "
            f"AND id NOT IN ({marks}) LIMIT ?)",
            (squad_id, *keep, current - size),
        )
    elif size > current:
        extra = generate_squad("filler", 0, seed=size).players[: size - current]
        PlayerRepository().insert_many(conn, squad_id, extra)
    assert SquadRepository().roster_size(conn, squad_id) == size


def _first_player(conn, squad_id):
    return PlayerRepository().list_by_squad(conn, squad_id)[0]


# ---------- List ----------


def test_list_sets_price_and_status(db_conn, make_squad, service):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    listed = service.list_player(db_conn, p.id, 1_000_000, a.id)
    assert listed.transfer_status == TransferStatus.LISTED
    assert listed.asking_price == 1_000_000


def test_relisting_updates_price(db_conn, make_squad, service):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000_000, a.id)
    relisted = service.list_player(db_conn, p.id, 750_000, a.id)
    assert relisted.is_listed
    assert relisted.asking_price == 750_000


def test_list_not_owner(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    with pytest.raises(NotOwner):
        service.list_player(db_conn, p.id, 1_000, b.id)
    assert not PlayerRepository().get(db_conn, p.id).is_listed


@pytest.mark.parametrize("price", [0, -1, -1_000_000])
def test_list_invalid_price(db_conn, make_squad, service, price):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    with pytest.raises(InvalidPrice):
        service.list_player(db_conn, p.id, price, a.id)
    assert PlayerRepository().get(db_conn, p.id).asking_price is None


def test_not_owner_checked_before_price(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    with pytest.raises(NotOwner):
        service.list_player(db_conn, p.id, 0, b.id)


def test_list_unknown_player(db_conn, make_squad, service):
    a = make_squad()
    with pytest.raises(PlayerNotFound):
        service.list_player(db_conn, "no-such-player", 1_000, a.id)


def test_squad_in_creating_cannot_list(db_conn, make_squad, service):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    claim = SquadRepository().create_claim(db_conn, "acc-pending")
    with pytest.raises(SquadNotReady):
        service.list_player(db_conn, p.id, 1_000, claim.id)


# ---------- Unlist ----------


def test_unlist_clears_listing(db_conn, make_squad, service):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    unlisted = service.unlist_player(db_conn, p.id, a.id)
    assert unlisted.transfer_status == TransferStatus.NOT_LISTED
    assert unlisted.asking_price is None


def test_unlist_not_listed(db_conn, make_squad, service):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    with pytest.raises(NotListed):
        service.unlist_player(db_conn, p.id, a.id)


def test_unlist_not_owner(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    with pytest.raises(NotOwner):
        service.unlist_player(db_conn, p.id, b.id)
    assert PlayerRepository().get(db_conn, p.id).is_listed


# ---------- Buy ----------


def test_buy_worked_example(db_conn, make_squad, service):
    """A lists P at 1,000,000; B with 2,000,000 buys: B 1,050,000, A +950,000, P owned by B."""
    a, b = make_squad(), make_squad()
    _set_budget(db_conn, b.id, 2_000_000)
    a_before = SquadRepository().get(db_conn, a.id).budget
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000_000, a.id)

    result = service.buy_player(db_conn, p.id, b.id)

    assert result.settlement_price == 950_000
    assert result.buyer.budget == 1_050_000
    assert result.seller.budget == a_before + 950_000
    moved = PlayerRepository().get(db_conn, p.id)
    assert moved.squad_id == b.id
    assert not moved.is_listed
    assert moved.asking_price is None
    assert SquadRepository().roster_size(db_conn, a.id) == 19
    assert SquadRepository().roster_size(db_conn, b.id) == 21


def test_buy_records_transfer(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 333_333, a.id)
    service.buy_player(db_conn, p.id, b.id)
    history = TransferRepository().list_by_squad(db_conn, b.id)
    assert len(history) == 1
    assert history[0].asking_price == 333_333
    assert history[0].settlement_price == 316_666
    assert history[0].seller_squad_id == a.id


@pytest.mark.parametrize("asking", [1, 19, 21, 999, 1_000_001, 4_999_999])
def test_settlement_rounds_down(db_conn, make_squad, service, asking):
    a, b = make_squad(), make_squad()
    a_before, b_before = a.budget, b.budget
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, asking, a.id)
    result = service.buy_player(db_conn, p.id, b.id)
    expected = asking * 95 // 100
    assert settlement_price(asking) == expected
    assert result.buyer.budget == b_before - expected
    assert result.seller.budget == a_before + expected


def test_buy_failing_midway_rolls_back_everything(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000_000, a.id)

    with patch.object(TransferRepository, "create", side_effect=RuntimeError("ledger write failed")):
        with pytest.raises(RuntimeError):
            service.buy_player(db_conn, p.id, b.id)

    assert SquadRepository().get(db_conn, a.id).budget == a.budget
    assert SquadRepository().get(db_conn, b.id).budget == b.budget
    unchanged = PlayerRepository().get(db_conn, p.id)
    assert unchanged.squad_id == a.id
    assert unchanged.transfer_status == TransferStatus.LISTED
    assert unchanged.asking_price == 1_000_000
    assert SquadRepository().roster_size(db_conn, a.id) == 20
    assert SquadRepository().roster_size(db_conn, b.id) == 20
    assert TransferRepository().list_by_squad(db_conn, b.id) == []


def test_buy_not_listed(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    with pytest.raises(NotListed):
        service.buy_player(db_conn, p.id, b.id)


def test_buy_self_transfer(db_conn, make_squad, service):
    a = make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    with pytest.raises(SelfTransfer):
        service.buy_player(db_conn, p.id, a.id)


def test_buy_insufficient_budget(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    _set_budget(db_conn, b.id, 949_999)
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000_000, a.id)
    with pytest.raises(InsufficientBudget):
        service.buy_player(db_conn, p.id, b.id)
    assert SquadRepository().get(db_conn, b.id).budget == 949_999
    assert PlayerRepository().get(db_conn, p.id).squad_id == a.id


def test_buy_exact_budget_allowed(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    _set_budget(db_conn, b.id, 950_000)
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000_000, a.id)
    result = service.buy_player(db_conn, p.id, b.id)
    assert result.buyer.budget == 0


def test_buy_roster_full(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    _resize_roster(db_conn, b.id, ROSTER_MAX)
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    with pytest.raises(RosterFull):
        service.buy_player(db_conn, p.id, b.id)
    assert SquadRepository().roster_size(db_conn, b.id) == ROSTER_MAX


def test_buy_roster_too_small_no_mutation(db_conn, make_squad, service):
    """Squad with 15 players attempts to sell one: RosterTooSmall, nothing changes."""
    a, b = make_squad(), make_squad()
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    _resize_roster(db_conn, a.id, ROSTER_MIN, keep=(p.id,))
    a_before = SquadRepository().get(db_conn, a.id)
    b_before = SquadRepository().get(db_conn, b.id)

    with pytest.raises(RosterTooSmall):
        service.buy_player(db_conn, p.id, b.id)

    player = PlayerRepository().get(db_conn, p.id)
    assert player.squad_id == a.id
    assert player.is_listed
    assert SquadRepository().get(db_conn, a.id).budget == a_before.budget
    assert SquadRepository().get(db_conn, b.id).budget == b_before.budget
    assert SquadRepository().roster_size(db_conn, a.id) == ROSTER_MIN
    assert TransferRepository().list_by_squad(db_conn, a.id) == []


def test_buy_check_order_not_listed_first(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    _set_budget(db_conn, b.id, 0)
    p = _first_player(db_conn, a.id)
    with pytest.raises(NotListed):
        service.buy_player(db_conn, p.id, b.id)


def test_buy_check_order_budget_before_roster(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    _set_budget(db_conn, b.id, 0)
    _resize_roster(db_conn, b.id, ROSTER_MAX)
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    with pytest.raises(InsufficientBudget):
        service.buy_player(db_conn, p.id, b.id)


def test_error_squad_cannot_buy(db_conn, make_squad, service):
    a, b = make_squad(), make_squad()
    db_conn.execute("UPDATE squads SET status = ? WHERE id = ?", (SquadStatus.ERROR.value, b.id))
    p = _first_player(db_conn, a.id)
    service.list_player(db_conn, p.id, 1_000, a.id)
    with pytest.raises(SquadNotReady):
        service.buy_player(db_conn, p.id, b.id)


def test_transfer_errors_carry_codes():
    assert NotListed.code == "not_listed"
    assert InsufficientBudget.code == "insufficient_budget"
    assert issubclass(RosterTooSmall, ValueError)


# ---------- Concurrency ----------


def test_concurrent_buys_exactly_one_wins(db_conn, make_squad, settings):
    seller = make_squad()
    buyers = [make_squad() for _ in range(5)]
    p = _first_player(db_conn, seller.id)
    TransferService(settings).list_player(db_conn, p.id, 100_000, seller.id)

    wins, losses, other = [], [], []
    lock = threading.Lock()
    start = threading.Barrier(len(buyers))

    def attempt(buyer_id):
        conn = get_connection()
        try:
            start.wait()
            TransferService(settings).buy_player(conn, p.id, buyer_id)
            with lock:
                wins.append(buyer_id)
        except NotListed:
            with lock:
                losses.append(buyer_id)
        except Exception as e:
            with lock:
                other.append(e)
        finally:
            conn.close()

    threads = [threading.Thread(target=attempt, args=(b.id,)) for b in buyers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert other == []
    assert len(wins) == 1
    assert len(losses) == len(buyers) - 1
    assert PlayerRepository().get(db_conn, p.id).squad_id == wins[0]
    assert len(TransferRepository().list_by_squad(db_conn, seller.id)) == 1


# ---------- Invariants under random operation sequences ----------


def test_random_sequences_keep_rosters_and_budgets_in_bounds(db_conn, make_squad, service):
    squads = [make_squad() for _ in range(3)]
    ids = [s.id for s in squads]
    _set_budget(db_conn, ids[2], 500_000)
    repo = SquadRepository()
    total_before = sum(repo.get(db_conn, sid).budget for sid in ids)
    rng = random.Random(1234)

    for _ in range(300):
        owner = rng.choice(ids)
        roster = PlayerRepository().list_by_squad(db_conn, owner)
        player = rng.choice(roster)
        op = rng.random()
        try:
            if op < 0.45:
                service.list_player(db_conn, player.id, rng.randint(1, 3_000_000), owner)
            elif op < 0.55:
                service.unlist_player(db_conn, player.id, owner)
            else:
                service.buy_player(db_conn, player.id, rng.choice(ids))
        except TransferError:
            pass
        for sid in ids:
            squad = repo.get(db_conn, sid)
            assert squad.budget >= 0
            assert ROSTER_MIN <= repo.roster_size(db_conn, sid) <= ROSTER_MAX

    # money only moves between squads
    assert sum(repo.get(db_conn, sid).budget for sid in ids) == total_before
