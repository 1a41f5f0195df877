"""
Pure squad generation: no persistence, no clock, no deduplication.

Shape is fixed (FORMATION: 3 goalkeepers, 6 defenders, 6 midfielders, 5 attackers);
content is random. Each player's value is the position base value scaled by a
uniform factor in [1 - VALUE_SPREAD, 1 + VALUE_SPREAD], rounded to VALUE_ROUNDING.
The squad budget is always the initial budget: player values are valuations,
not a charge against the budget.

Calling generate_squad twice for the same account is harmless; the provisioner
decides which result, if any, is persisted.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from squadmarket.models import Position
from squadmarket.rng import SeededRNG
from squadmarket.rules import FORMATION

POSITION_BASE_VALUE: dict[Position, int] = {
    Position.GOALKEEPER: 800_000,
    Position.DEFENDER: 900_000,
    Position.MIDFIELDER: 1_000_000,
    Position.ATTACKER: 1_200_000,
}
VALUE_SPREAD = 0.2
VALUE_ROUNDING = 1_000
MIN_AGE = 18
MAX_AGE = 40

FIRST_NAMES = (
    "Aaron", "Adrian", "Ali", "Andrés", "Bruno", "Carlos", "Cedric", "Daniel", "Dario",
    "Diego", "Emil", "Enzo", "Felix", "Gabriel", "Hugo", "Ivan", "Jakub", "James",
    "Jonas", "Kai", "Kenji", "Lars", "Leon", "Luca", "Marco", "Mateo", "Milan", "Nico",
    "Oliver", "Omar", "Pablo", "Pedro", "Rafael", "Ruben", "Samuel", "Sven", "Theo",
    "Tomás", "Victor", "Yusuf",
)
LAST_NAMES = (
    "Almeida", "Andersen", "Bakker", "Bianchi", "Costa", "Dubois", "Eriksen", "Fischer",
    "García", "Hansen", "Ivanov", "Jensen", "Kowalski", "Lambert", "Lindqvist", "Moreau",
    "Müller", "Nakamura", "Novak", "Okafor", "Oliveira", "Petrov", "Rossi", "Santos",
    "Schmidt", "Silva", "Sousa", "Tanaka", "Van Dijk", "Weber", "Yilmaz", "Zieliński",
)
COUNTRIES = (
    "Argentina", "Belgium", "Brazil", "Croatia", "Denmark", "England", "France",
    "Germany", "Italy", "Japan", "Mexico", "Netherlands", "Nigeria", "Norway",
    "Poland", "Portugal", "Senegal", "Spain", "Sweden", "Turkey", "Uruguay",
)
SQUAD_PREFIXES = (
    "Athletic", "Dynamo", "Inter", "Racing", "Real", "Sporting", "United", "Olympic",
)
SQUAD_PLACES = (
    "Harbor", "Northgate", "Riverside", "Westfield", "Eastbrook", "Highland",
    "Lakeside", "Stonebridge", "Redhill", "Silverton",
)


@dataclass(frozen=True)
class GeneratedPlayer:
    position: Position
    first_name: str
    last_name: str
    country: str
    age: int
    value: int


@dataclass(frozen=True)
class GeneratedSquad:
    account_ref: str
    name: str
    country: str
    budget: int
    players: tuple[GeneratedPlayer, ...] = field(default_factory=tuple)

    def count_by_position(self) -> dict[Position, int]:
        counts = {p: 0 for p in Position}
        for player in self.players:
            counts[player.position] += 1
        return counts


def player_value(position: Position, rng: SeededRNG) -> int:
    """Base value for the position, randomized within VALUE_SPREAD and rounded."""
    base = POSITION_BASE_VALUE[position]
    factor = rng.uniform(1 - VALUE_SPREAD, 1 + VALUE_SPREAD)
    return int(round(base * factor / VALUE_ROUNDING)) * VALUE_ROUNDING


def _generate_player(position: Position, rng: SeededRNG) -> GeneratedPlayer:
    return GeneratedPlayer(
        position=position,
        first_name=rng.choice(FIRST_NAMES),
        last_name=rng.choice(LAST_NAMES),
        country=rng.choice(COUNTRIES),
        age=rng.randint(MIN_AGE, MAX_AGE),
        value=player_value(position, rng),
    )


def generate_squad(
    account_ref: str,
    initial_budget: int,
    seed: int | None = None,
    rng: SeededRNG | None = None,
) -> GeneratedSquad:
    """
    Build one squad for account_ref. Same seed => same squad.
    Pass rng to share a generator across calls; otherwise one is built from seed.
    """
    if initial_budget < 0:
        raise ValueError(f"initial budget must be non-negative, got {initial_budget}")
    rng = rng or SeededRNG(seed)
    players: list[GeneratedPlayer] = []
    for position in Position:
        for _ in range(FORMATION[position]):
            players.append(_generate_player(position, rng))
    return GeneratedSquad(
        account_ref=account_ref,
        name=f"{rng.choice(SQUAD_PREFIXES)} {rng.choice(SQUAD_PLACES)}",
        country=rng.choice(COUNTRIES),
        budget=initial_budget,
        players=tuple(players),
    )
