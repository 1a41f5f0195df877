"""
REST API for the squad market backend.
Thin wrappers around the services; rule violations are mapped to HTTP here and nowhere else.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from typing import Any, AsyncGenerator, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from squadmarket.auth import create_access_token, decode_token, hash_password, verify_password
from squadmarket.channel import EventChannel
from squadmarket.config import get_settings
from squadmarket.logging_setup import configure_logging
from squadmarket.models import Account, Position, Squad, SquadStatus
from squadmarket.persistence import (
    AccountRepository,
    PlayerRepository,
    SquadRepository,
    StoreUnavailable,
    get_connection,
    init_db,
    run_in_transaction,
)
from squadmarket.persistence.db import get_db_path
from squadmarket.services import (
    InsufficientBudget,
    InvalidPrice,
    NotListed,
    NotOwner,
    PlayerNotFound,
    Provisioner,
    ProvisioningResult,
    ProvisioningTransitionError,
    ProvisioningWorker,
    RosterFull,
    RosterTooSmall,
    SelfTransfer,
    SquadNotFound,
    SquadNotReady,
    SquadService,
    TransferError,
    TransferService,
)

logger = logging.getLogger(__name__)


@contextmanager
def db_conn() -> Generator[sqlite3.Connection, None, None]:
    """Yield a DB connection, ensure close on exit."""
    conn = get_connection()
    try:
        yield conn
    finally:
        conn.close()


# ---------- Lifespan: DB, logging, provisioning consumer ----------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db(db_path=get_db_path())
    stop = asyncio.Event()
    task: asyncio.Task | None = None
    if settings.run_consumer:
        task = asyncio.create_task(ProvisioningWorker(settings).run_forever(stop))
    yield
    if task is not None:
        stop.set()
        await task


app = FastAPI(
    title="Squad Market API",
    description="Squad provisioning and player transfer market",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer(auto_error=False)


# ---------- Request models ----------


class SignupRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    username: str
    password: str


class UpdateSquadRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=100)
    country: str | None = Field(None, min_length=1, max_length=100)


class UpdatePlayerRequest(BaseModel):
    first_name: str | None = Field(None, min_length=1, max_length=100)
    last_name: str | None = Field(None, min_length=1, max_length=100)
    country: str | None = Field(None, min_length=1, max_length=100)


class ListPlayerRequest(BaseModel):
    # Positivity is a market rule (InvalidPrice), checked by the service.
    asking_price: int = Field(..., description="Asking price in minor units; must be > 0")


class ReprovisionRequest(BaseModel):
    seed: int | None = Field(None, description="RNG seed for a deterministic squad")


# ---------- Error mapping ----------

_ERROR_STATUS: dict[type[TransferError], int] = {
    NotOwner: 403,
    PlayerNotFound: 404,
    SquadNotFound: 404,
    NotListed: 409,
    SelfTransfer: 409,
    InsufficientBudget: 409,
    RosterFull: 409,
    RosterTooSmall: 409,
    SquadNotReady: 409,
    InvalidPrice: 422,
}


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": code, "message": message})


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, TransferError):
        return _error(_ERROR_STATUS.get(type(e), 400), e.code, str(e))
    if isinstance(e, StoreUnavailable):
        logger.error("store unavailable: %s", e)
        return _error(503, "store_unavailable", "Service temporarily unavailable, retry later")
    if isinstance(e, ProvisioningTransitionError):
        return _error(409, "invalid_transition", str(e))
    return _error(400, "invalid_request", str(e))


# ---------- Auth dependencies ----------


def _get_current_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Account:
    """Resolve the bearer token to an account, or 401."""
    if credentials is None:
        raise _error(401, "unauthorized", "Login required")
    account_id = decode_token(credentials.credentials)
    if not account_id:
        raise _error(401, "unauthorized", "Invalid or expired token")
    with db_conn() as conn:
        account = AccountRepository().get(conn, account_id)
    if account is None:
        raise _error(401, "unauthorized", "Unknown account")
    return account


def _require_admin(account: Account = Depends(_get_current_account)) -> Account:
    if not account.is_admin:
        raise _error(403, "forbidden", "Operator rights required")
    return account


def _caller_squad(conn: sqlite3.Connection, account: Account) -> Squad:
    squad = SquadRepository().get_by_account(conn, account.id)
    if squad is None:
        raise SquadNotFound(f"No squad for account {account.id}")
    return squad


# ---------- Identity ----------


@app.post("/signup", status_code=201)
def signup(req: SignupRequest) -> dict[str, Any]:
    """
    Create an account. The squad is provisioned asynchronously: the account row and
    its "account created" event commit together, nothing else happens inline.
    """
    settings = get_settings()
    accounts = AccountRepository()
    channel = EventChannel(settings)
    password_hash = hash_password(req.password)

    with db_conn() as conn:

        def _create() -> Account:
            if accounts.get_by_username(conn, req.username):
                raise _error(400, "username_taken", "Username already taken")
            account = accounts.create(
                conn, req.username, password_hash, is_admin=req.username in settings.admin_usernames
            )
            channel.publish(conn, account.id)
            return account

        try:
            account = run_in_transaction(conn, _create)
        except StoreUnavailable as e:
            raise _http_error(e)
    logger.info("account %s created for %s", account.id, account.username)
    return {
        "account_id": account.id,
        "username": account.username,
        "token": create_access_token(account.id),
        "squad_status": SquadStatus.CREATING.value,
    }


@app.post("/login")
def login(req: LoginRequest) -> dict[str, Any]:
    """Returns a JWT bearer token."""
    with db_conn() as conn:
        account = AccountRepository().get_by_username(conn, req.username)
    if account is None or not verify_password(req.password, account.password_hash):
        raise _error(401, "invalid_credentials", "Invalid username or password")
    return {"account_id": account.id, "username": account.username, "token": create_access_token(account.id)}


# ---------- Squad ----------


@app.get("/squad")
def get_squad(response: Response, account: Account = Depends(_get_current_account)) -> dict[str, Any]:
    """Caller's squad. 202 while it is still being created, 404 before the claim exists."""
    with db_conn() as conn:
        try:
            view = SquadService().get_squad(conn, account.id)
        except SquadNotFound as e:
            raise _http_error(e)
    if view.squad.status == SquadStatus.CREATING:
        response.status_code = 202
    return view.to_dict()


@app.patch("/squad")
def update_squad(req: UpdateSquadRequest, account: Account = Depends(_get_current_account)) -> dict[str, Any]:
    with db_conn() as conn:
        try:
            squad = SquadService().update_squad(conn, account.id, name=req.name, country=req.country)
        except (ValueError, StoreUnavailable) as e:
            raise _http_error(e)
    return squad.to_dict()


@app.get("/squad/transfers")
def squad_transfers(
    limit: int = Query(default=50, ge=1, le=200),
    account: Account = Depends(_get_current_account),
) -> dict[str, Any]:
    """Completed purchases where the caller's squad was buyer or seller, newest first."""
    with db_conn() as conn:
        try:
            squad = _caller_squad(conn, account)
        except SquadNotFound as e:
            raise _http_error(e)
        transfers = SquadService().transfer_history(conn, squad.id, limit=limit)
    return {"squad_id": squad.id, "transfers": [t.to_dict() for t in transfers]}


@app.patch("/players/{player_id}")
def update_player(
    player_id: str,
    req: UpdatePlayerRequest,
    account: Account = Depends(_get_current_account),
) -> dict[str, Any]:
    with db_conn() as conn:
        try:
            squad = _caller_squad(conn, account)
            player = SquadService().update_player(
                conn, player_id, squad.id,
                first_name=req.first_name, last_name=req.last_name, country=req.country,
            )
        except (ValueError, StoreUnavailable) as e:
            raise _http_error(e)
    return player.to_dict()


# ---------- Transfer market ----------


@app.post("/players/{player_id}/listing")
def list_player(
    player_id: str,
    req: ListPlayerRequest,
    account: Account = Depends(_get_current_account),
) -> dict[str, Any]:
    """List a player (or change the asking price of an existing listing)."""
    with db_conn() as conn:
        try:
            squad = _caller_squad(conn, account)
            player = TransferService().list_player(conn, player_id, req.asking_price, squad.id)
        except (TransferError, StoreUnavailable) as e:
            raise _http_error(e)
    return player.to_dict()


@app.delete("/players/{player_id}/listing")
def unlist_player(player_id: str, account: Account = Depends(_get_current_account)) -> dict[str, Any]:
    with db_conn() as conn:
        try:
            squad = _caller_squad(conn, account)
            player = TransferService().unlist_player(conn, player_id, squad.id)
        except (TransferError, StoreUnavailable) as e:
            raise _http_error(e)
    return player.to_dict()


@app.post("/players/{player_id}/buy")
def buy_player(player_id: str, account: Account = Depends(_get_current_account)) -> dict[str, Any]:
    """Buy a listed player at 95% of the asking price (rounded down)."""
    with db_conn() as conn:
        try:
            squad = _caller_squad(conn, account)
            result = TransferService().buy_player(conn, player_id, squad.id)
        except (TransferError, StoreUnavailable) as e:
            raise _http_error(e)
    return result.to_dict()


@app.get("/market")
def market(
    squad_name: str | None = Query(None, description="Substring of the selling squad's name"),
    player_name: str | None = Query(None, description="Substring of the player's full name"),
    min_price: int | None = Query(None, ge=0),
    max_price: int | None = Query(None, ge=0),
    position: Position | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    """Listed players only, cheapest first. Read-only and unauthenticated."""
    if min_price is not None and max_price is not None and min_price > max_price:
        raise _error(422, "invalid_range", "min_price must not exceed max_price")
    with db_conn() as conn:
        listings, total = PlayerRepository().search_listed(
            conn,
            squad_name=squad_name,
            player_name=player_name,
            min_price=min_price,
            max_price=max_price,
            position=position.value if position else None,
            offset=offset,
            limit=limit,
        )
    return {
        "total": total,
        "offset": offset,
        "limit": limit,
        "players": [listing.to_dict() for listing in listings],
    }


# ---------- Operator ----------


@app.post("/admin/accounts/{account_ref}/reprovision")
def reprovision(
    account_ref: str,
    req: ReprovisionRequest | None = None,
    admin: Account = Depends(_require_admin),
) -> dict[str, Any]:
    """Move a squad from error back to creating and run provisioning again."""
    with db_conn() as conn:
        try:
            outcome = Provisioner().reprovision(conn, account_ref, seed=req.seed if req else None)
        except (ProvisioningTransitionError, StoreUnavailable) as e:
            raise _http_error(e)
    logger.info("operator %s reprovisioned account %s: %s", admin.username, account_ref, outcome.result.value)
    out: dict[str, Any] = {
        "account_ref": account_ref,
        "result": outcome.result.value,
        "squad": outcome.squad.to_dict() if outcome.squad else None,
    }
    if outcome.result == ProvisioningResult.FAILED and outcome.error is not None:
        out["error"] = outcome.error.reason
    return out


@app.get("/admin/dead-letters")
def dead_letters(
    limit: int = Query(default=100, ge=1, le=500),
    admin: Account = Depends(_require_admin),
) -> dict[str, Any]:
    with db_conn() as conn:
        events = EventChannel().list_dead(conn, limit=limit)
    return {"events": [ev.to_dict() for ev in events]}


# ---------- Run with: pip install .[serve] && uvicorn squadmarket.api:app --reload ----------
