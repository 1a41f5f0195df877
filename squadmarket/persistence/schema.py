"""
SQLite schema for squad market entities.
Migration-friendly: each table created with IF NOT EXISTS.
"""
from __future__ import annotations


def accounts_schema() -> str:
    """Identity adapter records. Squads reference accounts by id only."""
    return """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        is_admin INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );
    CREATE UNIQUE INDEX IF NOT EXISTS ix_accounts_username ON accounts(username);
    """


def squads_schema() -> str:
    """
    One squad per account: the unique index on account_ref is the provisioning
    compare-and-create point. status: creating | ready | error.
    """
    return """
    CREATE TABLE IF NOT EXISTS squads (
        id TEXT PRIMARY KEY,
        account_ref TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        country TEXT NOT NULL DEFAULT '',
        budget INTEGER NOT NULL DEFAULT 0 CHECK (budget >= 0),
        status TEXT NOT NULL CHECK (status IN ('creating', 'ready', 'error')),
        last_error TEXT,
        provision_attempts INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    CREATE UNIQUE INDEX IF NOT EXISTS ix_squads_account_ref ON squads(account_ref);
    CREATE INDEX IF NOT EXISTS ix_squads_name ON squads(name);
    """


def players_schema() -> str:
    """A listed player always has an asking price; a not_listed one never does."""
    return """
    CREATE TABLE IF NOT EXISTS players (
        id TEXT PRIMARY KEY,
        squad_id TEXT NOT NULL,
        position TEXT NOT NULL CHECK (position IN ('goalkeeper', 'defender', 'midfielder', 'attacker')),
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        country TEXT NOT NULL,
        age INTEGER NOT NULL,
        value INTEGER NOT NULL CHECK (value >= 0),
        asking_price INTEGER CHECK (asking_price IS NULL OR asking_price > 0),
        transfer_status TEXT NOT NULL DEFAULT 'not_listed' CHECK (transfer_status IN ('not_listed', 'listed')),
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        CHECK ((transfer_status = 'listed') = (asking_price IS NOT NULL)),
        FOREIGN KEY (squad_id) REFERENCES squads(id)
    );
    CREATE INDEX IF NOT EXISTS ix_players_squad ON players(squad_id);
    CREATE INDEX IF NOT EXISTS ix_players_market ON players(transfer_status, asking_price);
    """


def transfers_schema() -> str:
    """Ledger of completed purchases. Append-only."""
    return """
    CREATE TABLE IF NOT EXISTS transfers (
        id TEXT PRIMARY KEY,
        player_id TEXT NOT NULL,
        seller_squad_id TEXT NOT NULL,
        buyer_squad_id TEXT NOT NULL,
        asking_price INTEGER NOT NULL,
        settlement_price INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (player_id) REFERENCES players(id),
        FOREIGN KEY (seller_squad_id) REFERENCES squads(id),
        FOREIGN KEY (buyer_squad_id) REFERENCES squads(id)
    );
    CREATE INDEX IF NOT EXISTS ix_transfers_player ON transfers(player_id);
    CREATE INDEX IF NOT EXISTS ix_transfers_seller ON transfers(seller_squad_id);
    CREATE INDEX IF NOT EXISTS ix_transfers_buyer ON transfers(buyer_squad_id);
    """


def channel_events_schema() -> str:
    """Durable event channel. status: pending | inflight | acked | dead."""
    return """
    CREATE TABLE IF NOT EXISTS channel_events (
        id TEXT PRIMARY KEY,
        topic TEXT NOT NULL,
        account_ref TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'pending',
        deliveries INTEGER NOT NULL DEFAULT 0,
        available_at TEXT NOT NULL,
        leased_until TEXT,
        created_at TEXT NOT NULL,
        acked_at TEXT,
        last_error TEXT
    );
    CREATE INDEX IF NOT EXISTS ix_channel_events_status ON channel_events(status, available_at);
    CREATE INDEX IF NOT EXISTS ix_channel_events_account ON channel_events(account_ref);
    """


def all_schema_sql() -> str:
    """Combine all schema DDL for a single execution. Order: accounts, squads, players, transfers, channel_events."""
    return "\n".join([
        accounts_schema(),
        squads_schema(),
        players_schema(),
        transfers_schema(),
        channel_events_schema(),
    ])
