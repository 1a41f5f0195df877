"""
Roster and money rules shared by the generator, the provisioner and the transfer engine.
"""
from __future__ import annotations

from squadmarket.models import Position

ROSTER_MIN = 15
ROSTER_MAX = 25

# Creation-time shape only; transfers may move a ready squad anywhere in [ROSTER_MIN, ROSTER_MAX].
FORMATION: dict[Position, int] = {
    Position.GOALKEEPER: 3,
    Position.DEFENDER: 6,
    Position.MIDFIELDER: 6,
    Position.ATTACKER: 5,
}
INITIAL_SQUAD_SIZE = sum(FORMATION.values())

SETTLEMENT_PERCENT = 95


def settlement_price(asking_price: int) -> int:
    """Amount that actually moves on purchase: 95% of asking, floored to the minor unit."""
    return asking_price * SETTLEMENT_PERCENT // 100


def valid_asking_price(asking_price: int) -> bool:
    return isinstance(asking_price, int) and not isinstance(asking_price, bool) and asking_price > 0


def roster_can_gain(current_size: int) -> bool:
    """True if a squad of current_size may receive one more player."""
    return current_size + 1 <= ROSTER_MAX


def roster_can_lose(current_size: int) -> bool:
    """True if a squad of current_size may give up one player."""
    return current_size - 1 >= ROSTER_MIN
