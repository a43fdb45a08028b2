"""
RMA Domain Layer
================

Domain layer for the RMA workflow module.

Contains:
- Entities: Case, stage sub-records, comments, workflow events
- Value Objects: WorkflowRules snapshot, SLACalculator
- Domain Services: CaseStateMachine, AssignmentResolver, audit log helpers

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from rma_workflow.rma.domain.entities import (
    Case,
    CaseIntake,
    CDSSubmission,
    CDSApproval,
    OutboundShipment,
    ReturnShipment,
    Completion,
    Comment,
    WorkflowEvent,
    TransitionResult,
)
from rma_workflow.rma.domain.value_objects import (
    SLACalculator,
    WorkflowRules,
    AssignmentRule,
    format_rma_number,
)
from rma_workflow.rma.domain.assignment import AssignmentResolver, AssignmentDecision
from rma_workflow.rma.domain.state_machine import (
    CaseStateMachine,
    TRANSITIONS,
    missing_requirements,
    next_priority,
)

__all__ = [
    # Entities
    "Case",
    "CaseIntake",
    "CDSSubmission",
    "CDSApproval",
    "OutboundShipment",
    "ReturnShipment",
    "Completion",
    "Comment",
    "WorkflowEvent",
    "TransitionResult",
    # Value Objects
    "SLACalculator",
    "WorkflowRules",
    "AssignmentRule",
    "format_rma_number",
    # Domain Services
    "AssignmentResolver",
    "AssignmentDecision",
    "CaseStateMachine",
    "TRANSITIONS",
    "missing_requirements",
    "next_priority",
]
