"""Application services: use case orchestration."""

from multisig_escrow.services.contract_store import ContractStore
from multisig_escrow.services.dispute_gate import DisputeGate
from multisig_escrow.services.escrow_service import EscrowService
from multisig_escrow.services.payment_service import PaymentService
from multisig_escrow.services.payment_watcher import PaymentTimer, PaymentWatcher
from multisig_escrow.services.signing import (
    RoundRobinSigner,
    SigningCoordinator,
    SigningSession,
    SimulatedRoundRobinSigner,
)

__all__ = [
    "ContractStore",
    "DisputeGate",
    "EscrowService",
    "PaymentService",
    "PaymentTimer",
    "PaymentWatcher",
    "RoundRobinSigner",
    "SigningCoordinator",
    "SigningSession",
    "SimulatedRoundRobinSigner",
]
