"""
RMA Application Layer
======================

Application layer for the RMA workflow module.

Contains:
- Services: WorkflowService for human operations, NotificationDispatcher
- Sweeper: periodic SLA escalation
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and collaborator interfaces,
but not on concrete infrastructure implementations.
"""

from rma_workflow.rma.application.dto import (
    CaseCreateRequest,
    CDSSubmissionRequest,
    CDSDecisionRequest,
    ShipmentRequest,
    ReplacementReceiptRequest,
    ReturnRequest,
    ReturnConfirmationRequest,
    CompleteRequest,
    CommentRequest,
    AssignmentRequest,
    AutoAssignRequest,
    CaseResponse,
    CommentResponse,
    HistoryEntryResponse,
    BreachResponse,
    SweepResponse,
    ErrorResponse,
)
from rma_workflow.rma.application.services import (
    WorkflowService,
    NotificationDispatcher,
    ICaseStore,
    IRulesProvider,
    INotifier,
    commit_transition,
    utcnow,
)
from rma_workflow.rma.application.sweeper import SLASweeper

__all__ = [
    # DTOs
    "CaseCreateRequest",
    "CDSSubmissionRequest",
    "CDSDecisionRequest",
    "ShipmentRequest",
    "ReplacementReceiptRequest",
    "ReturnRequest",
    "ReturnConfirmationRequest",
    "CompleteRequest",
    "CommentRequest",
    "AssignmentRequest",
    "AutoAssignRequest",
    "CaseResponse",
    "CommentResponse",
    "HistoryEntryResponse",
    "BreachResponse",
    "SweepResponse",
    "ErrorResponse",
    # Services
    "WorkflowService",
    "NotificationDispatcher",
    "SLASweeper",
    "commit_transition",
    "utcnow",
    # Collaborator Interfaces
    "ICaseStore",
    "IRulesProvider",
    "INotifier",
]
