"""
RMA Application DTOs
=====================

Data Transfer Objects for the RMA API layer.

These Pydantic models handle serialization/deserialization for API requests
and responses. Every mutating request carries the case ``version`` the
caller last read.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rma_workflow.config import (
    Stage, Priority, WarrantyStatus, CommentCategory, AssignmentSource
)
from rma_workflow.rma.domain import Case, CaseIntake


# ========== Request DTOs ==========

class CaseCreateRequest(BaseModel):
    """Intake event handed over by the upstream producer."""
    site_name: str = Field(..., description="Site name")
    region: str = Field(..., description="Site region")
    product_name: str = Field(..., description="Product / projector model")
    product_category: str = Field(..., description="Product category used by assignment rules")
    warranty_status: WarrantyStatus = Field(..., description="Warranty status at intake")
    created_by: str = Field(..., description="Reporter")
    priority: Priority = Field(default=Priority.MEDIUM, description="Initial priority")
    serial_number: Optional[str] = Field(None, description="Equipment serial number")
    symptoms: Optional[str] = Field(None, description="Reported symptoms")
    defective_part_number: Optional[str] = None
    defective_part_name: Optional[str] = None

    def to_intake(self) -> CaseIntake:
        """Convert to the domain intake."""
        return CaseIntake(
            site_name=self.site_name,
            region=self.region,
            product_name=self.product_name,
            product_category=self.product_category,
            warranty_status=self.warranty_status,
            created_by=self.created_by,
            priority=self.priority,
            serial_number=self.serial_number,
            symptoms=self.symptoms,
            defective_part_number=self.defective_part_number,
            defective_part_name=self.defective_part_name,
        )


class VersionedRequest(BaseModel):
    """Base for mutating requests."""
    version: int = Field(..., ge=1, description="Case version the caller last read")


class CDSSubmissionRequest(VersionedRequest):
    reference_number: str = Field(..., description="CDS reference number")
    submitted_by: str
    notes: Optional[str] = None


class CDSDecisionRequest(VersionedRequest):
    """Approval or rejection of a case sent to CDS."""
    decision: Literal["approve", "reject"] = Field(..., description="CDS decision")
    decided_by: str = Field(..., description="Approver or rejecter")
    notes: Optional[str] = Field(None, description="Approval notes")
    reason: Optional[str] = Field(None, description="Rejection reason (required to reject)")
    cds_case_id: Optional[str] = Field(None, description="Case ID on the CDS side")


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ShipmentRequest(VersionedRequest):
    tracking_number: str
    carrier: str
    shipped_date: datetime
    recorded_by: str

    @field_validator("shipped_date")
    @classmethod
    def validate_shipped_date(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ReplacementReceiptRequest(VersionedRequest):
    received_date: datetime
    confirmed_by: str

    @field_validator("received_date")
    @classmethod
    def validate_received_date(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ReturnRequest(VersionedRequest):
    tracking_number: str
    carrier: str
    initiated_by: str


class ReturnConfirmationRequest(VersionedRequest):
    confirmed_by: str
    notes: Optional[str] = None


class CompleteRequest(VersionedRequest):
    completed_by: str
    notes: Optional[str] = None


class CommentRequest(VersionedRequest):
    author: str
    body: str
    category: CommentCategory = CommentCategory.GENERAL
    is_internal: Optional[bool] = Field(
        None,
        description="Defaults to true for technical/status comments"
    )


class AssignmentRequest(VersionedRequest):
    assignee: str
    assigned_by: str


class AutoAssignRequest(VersionedRequest):
    requested_by: str
    override_manual: bool = Field(
        default=False,
        description="Replace a manually chosen owner"
    )


# ========== Response DTOs ==========

class CDSSubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: datetime
    submitted_by: str
    reference_number: str
    notes: Optional[str] = None


class CDSApprovalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: datetime
    approved_by: str
    cds_case_id: Optional[str] = None
    notes: Optional[str] = None


class OutboundShipmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tracking_number: str
    carrier: str
    shipped_date: datetime
    delivered_date: Optional[datetime] = None
    days_to_site: Optional[int] = None


class ReturnShipmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tracking_number: str
    carrier: str
    initiated_by: str
    initiated_date: datetime
    delivery_confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    days_return_to_cds: Optional[int] = None


class CompletionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    completed_by: str
    completed_at: datetime
    total_days: int


class CommentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    author: str
    body: str
    category: CommentCategory
    is_internal: bool
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CaseResponse(BaseModel):
    """Current case snapshot including derived deadline and full log."""
    model_config = ConfigDict(from_attributes=True)

    case_id: str
    rma_number: str
    site_name: str
    region: str
    product_name: str
    product_category: str
    warranty_status: WarrantyStatus
    created_by: str
    created_at: datetime

    stage: Stage
    priority: Priority
    stage_entered_at: datetime
    sla_clock_started_at: datetime
    deadline_at: Optional[datetime] = None
    escalation_count: int
    last_escalated_at: Optional[datetime] = None
    is_terminal: bool
    version: int

    assigned_to: Optional[str] = None
    assignment_source: Optional[AssignmentSource] = None
    assigned_at: Optional[datetime] = None

    serial_number: Optional[str] = None
    symptoms: Optional[str] = None
    defective_part_number: Optional[str] = None
    defective_part_name: Optional[str] = None

    cds_submission: Optional[CDSSubmissionResponse] = None
    cds_approval: Optional[CDSApprovalResponse] = None
    outbound_shipment: Optional[OutboundShipmentResponse] = None
    return_shipment: Optional[ReturnShipmentResponse] = None
    completion: Optional[CompletionResponse] = None
    rejection_reason: Optional[str] = None

    comments: List[CommentResponse] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, case: Case) -> "CaseResponse":
        """Create from domain entity."""
        return cls.model_validate(case)


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    event: str
    actor: str
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    from_priority: Optional[str] = None
    to_priority: Optional[str] = None
    assigned_to: Optional[str] = None
    description: str


class BreachResponse(BaseModel):
    """Overdue case summary."""
    case_id: str
    rma_number: str
    stage: Stage
    priority: Priority
    assigned_to: Optional[str] = None
    deadline_at: datetime
    hours_overdue: float
    escalation_count: int


class SweepResponse(BaseModel):
    """Summary of one sweep cycle."""
    cases_checked: int
    escalated: int
    conflicts: int
    timeouts: int
    skipped: int
    failures: int


class ErrorResponse(BaseModel):
    """Error body for case-level failures."""
    error: str
    detail: str
    details: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
