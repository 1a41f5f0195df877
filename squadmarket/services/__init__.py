"""
Service layer: provisioning state machine, squad generation, transfer engine.
squad_generator is pure; the other services own their transaction boundaries.
"""
from .squad_generator import GeneratedPlayer, GeneratedSquad, generate_squad
from .provisioning import (
    Provisioner,
    ProvisioningFailed,
    ProvisioningOutcome,
    ProvisioningResult,
    ProvisioningTransitionError,
)
from .provisioning_worker import ProvisioningWorker
from .squad_service import SquadService, SquadView
from .transfer_service import (
    TransferService,
    TransferResult,
    TransferError,
    PlayerNotFound,
    SquadNotFound,
    SquadNotReady,
    NotOwner,
    InvalidPrice,
    NotListed,
    SelfTransfer,
    InsufficientBudget,
    RosterFull,
    RosterTooSmall,
)

__all__ = [
    "GeneratedPlayer",
    "GeneratedSquad",
    "generate_squad",
    "Provisioner",
    "ProvisioningFailed",
    "ProvisioningOutcome",
    "ProvisioningResult",
    "ProvisioningTransitionError",
    "ProvisioningWorker",
    "SquadService",
    "SquadView",
    "TransferService",
    "TransferResult",
    "TransferError",
    "PlayerNotFound",
    "SquadNotFound",
    "SquadNotReady",
    "NotOwner",
    "InvalidPrice",
    "NotListed",
    "SelfTransfer",
    "InsufficientBudget",
    "RosterFull",
    "RosterTooSmall",
]
