from .models import (
    CustodialTransfer,
    OwnershipVerification,
    StepStatus,
    TransferAction,
    TransferAuditTrail,
    TransferMetadata,
    TransferStatus,
    TransferSummary,
    TransferType,
    TransferWorkflow,
    WorkflowStatus,
    WorkflowStep,
)
from .orchestrator import PIPELINE_STEPS, TransferOrchestrator
from .reporting import TransferReporting
from .repository import TransferRepository, WorkflowRepository
from .service import SettlementQueueFullError, SettlementService
from .state_machine import TRANSITIONS, TransferStateMachine, is_legal_transition, validate_transition

__all__ = [
    "CustodialTransfer",
    "OwnershipVerification",
    "PIPELINE_STEPS",
    "SettlementQueueFullError",
    "SettlementService",
    "StepStatus",
    "TRANSITIONS",
    "TransferAction",
    "TransferAuditTrail",
    "TransferMetadata",
    "TransferOrchestrator",
    "TransferReporting",
    "TransferRepository",
    "TransferStateMachine",
    "TransferStatus",
    "TransferSummary",
    "TransferType",
    "TransferWorkflow",
    "WorkflowRepository",
    "WorkflowStatus",
    "WorkflowStep",
    "validate_transition",
    "is_legal_transition",
]
