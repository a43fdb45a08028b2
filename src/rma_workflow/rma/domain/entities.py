"""
RMA Domain Entities
====================

Pure Python domain entities for the RMA workflow.

The case record and its stage sub-records are frozen dataclasses: the state
machine never mutates a case, it returns a new one. Sub-records appear once
their stage is reached and are never removed afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from rma_workflow.config import (
    Stage, Priority, WarrantyStatus, CommentCategory,
    AssignmentSource, EventType, TERMINAL_STAGES
)


@dataclass(frozen=True)
class CDSSubmission:
    """Case sent to CDS for approval."""
    date: datetime
    submitted_by: str
    reference_number: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class CDSApproval:
    """CDS approved the replacement."""
    date: datetime
    approved_by: str
    cds_case_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class OutboundShipment:
    """Replacement part on its way to the site."""
    tracking_number: str
    carrier: str
    shipped_date: datetime
    delivered_date: Optional[datetime] = None
    # Days from shipment to receipt, set when the site confirms
    days_to_site: Optional[int] = None


@dataclass(frozen=True)
class ReturnShipment:
    """Faulty part on its way back to CDS."""
    tracking_number: str
    carrier: str
    initiated_by: str
    initiated_date: datetime
    delivery_confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    # Days from return dispatch to CDS confirmation
    days_return_to_cds: Optional[int] = None


@dataclass(frozen=True)
class Completion:
    """Case closure details."""
    completed_by: str
    completed_at: datetime
    total_days: int


@dataclass(frozen=True)
class Comment:
    """
    Entry of the append-only case log.

    Human comments and system audit entries share this shape; system entries
    carry the transition details in ``metadata``.
    """
    id: str
    author: str
    body: str
    category: CommentCategory
    is_internal: bool
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CaseIntake:
    """Minimal case handed over by the intake producer."""
    site_name: str
    region: str
    product_name: str
    product_category: str
    warranty_status: WarrantyStatus
    created_by: str
    priority: Priority = Priority.MEDIUM
    serial_number: Optional[str] = None
    symptoms: Optional[str] = None
    defective_part_number: Optional[str] = None
    defective_part_name: Optional[str] = None


@dataclass(frozen=True)
class Case:
    """
    RMA case record.

    ``deadline_at`` is always ``sla_clock_started_at + SLA(stage, priority)``
    for active stages and ``None`` once the case is terminal. ``version`` is
    the optimistic-concurrency stamp checked by the case store on write.
    """

    # Identity
    case_id: str
    rma_number: str

    # Intake
    site_name: str
    region: str
    product_name: str
    product_category: str
    warranty_status: WarrantyStatus
    created_by: str
    created_at: datetime

    # Workflow state
    stage: Stage
    priority: Priority
    stage_entered_at: datetime
    sla_clock_started_at: datetime
    deadline_at: Optional[datetime]
    escalation_count: int = 0
    version: int = 1

    # Ownership
    assigned_to: Optional[str] = None
    assignment_source: Optional[AssignmentSource] = None
    assigned_at: Optional[datetime] = None

    # Optional intake details
    serial_number: Optional[str] = None
    symptoms: Optional[str] = None
    defective_part_number: Optional[str] = None
    defective_part_name: Optional[str] = None

    # Stage sub-records
    cds_submission: Optional[CDSSubmission] = None
    cds_approval: Optional[CDSApproval] = None
    outbound_shipment: Optional[OutboundShipment] = None
    return_shipment: Optional[ReturnShipment] = None
    completion: Optional[Completion] = None
    rejection_reason: Optional[str] = None

    # Log
    comments: Tuple[Comment, ...] = ()
    last_escalated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        """Completed and Rejected cases accept comments only."""
        return self.stage in TERMINAL_STAGES

    def is_breached(self, now: datetime) -> bool:
        """Deadline strictly passed on an active case."""
        if self.is_terminal or self.deadline_at is None:
            return False
        return now > self.deadline_at

    def hours_overdue(self, now: datetime) -> float:
        """Hours past the deadline (0 when on time)."""
        if self.deadline_at is None:
            return 0.0
        return max(0.0, (now - self.deadline_at).total_seconds() / 3600)


@dataclass(frozen=True)
class WorkflowEvent:
    """Notification emitted by a committed state change."""
    event_type: EventType
    case_id: str
    rma_number: str
    occurred_at: datetime
    actor: str
    message: str
    stage: Optional[Stage] = None
    previous_stage: Optional[Stage] = None
    priority: Optional[Priority] = None
    previous_priority: Optional[Priority] = None
    recipient: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialise for the notifier payload."""
        return {
            "event_type": self.event_type.value,
            "case_id": self.case_id,
            "rma_number": self.rma_number,
            "occurred_at": self.occurred_at.isoformat(),
            "actor": self.actor,
            "message": self.message,
            "stage": self.stage.value if self.stage else None,
            "previous_stage": self.previous_stage.value if self.previous_stage else None,
            "priority": self.priority.value if self.priority else None,
            "previous_priority": self.previous_priority.value if self.previous_priority else None,
            "recipient": self.recipient,
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a state machine operation: the new case plus its events."""
    case: Case
    events: Tuple[WorkflowEvent, ...] = ()
