"""
Persistence layer for squads, players, transfers and the event channel.
Read/write interfaces and transaction boundaries. Business rules live in the services.
"""
from .db import (
    StoreUnavailable,
    get_connection,
    init_db,
    run_in_transaction,
    set_db_path,
    transaction,
)
from .repositories import (
    AccountRepository,
    SquadRepository,
    PlayerRepository,
    TransferRepository,
    ChannelEventRepository,
)

__all__ = [
    "StoreUnavailable",
    "get_connection",
    "init_db",
    "run_in_transaction",
    "set_db_path",
    "transaction",
    "AccountRepository",
    "SquadRepository",
    "PlayerRepository",
    "TransferRepository",
    "ChannelEventRepository",
]
