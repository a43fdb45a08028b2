"""
RMA Controllers (API Routes)
=============================

FastAPI routes for the RMA workflow.

Controllers are thin - they delegate to application services. Every
mutating route takes the case ``version`` the caller last read; stale
versions come back as 409 ``version_conflict``.
"""

from typing import List

from fastapi import APIRouter, Depends, Query, Request, status

from rma_workflow.core import ValidationException
from rma_workflow.rma.application import (
    WorkflowService, SLASweeper,
    CaseCreateRequest, CDSSubmissionRequest, CDSDecisionRequest,
    ShipmentRequest, ReplacementReceiptRequest, ReturnRequest,
    ReturnConfirmationRequest, CompleteRequest, CommentRequest,
    AssignmentRequest, AutoAssignRequest,
    CaseResponse, CommentResponse, HistoryEntryResponse,
    BreachResponse, SweepResponse, ErrorResponse
)
from rma_workflow.rma.domain import WorkflowRules
from rma_workflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/cases", tags=["RMA Cases"])
workflow_router = APIRouter(prefix="/workflow", tags=["RMA Workflow"])

CASE_ERRORS = {
    404: {"model": ErrorResponse, "description": "Case not found"},
    409: {"model": ErrorResponse, "description": "Invalid transition or stale version"},
    422: {"model": ErrorResponse, "description": "Missing or malformed field"},
}


# ========== Dependencies ==========

def get_workflow_service(request: Request) -> WorkflowService:
    """Workflow service wired at startup."""
    return request.app.state.workflow_service


def get_sweeper(request: Request) -> SLASweeper:
    """SLA sweeper wired at startup."""
    return request.app.state.sweeper


# ========== Case Routes ==========

@router.post(
    "",
    response_model=CaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a case from an intake event",
    responses={422: CASE_ERRORS[422]}
)
async def open_case(
    body: CaseCreateRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.open_case(body.to_intake())
    return CaseResponse.from_domain(case)


@router.get(
    "/{case_id}",
    response_model=CaseResponse,
    summary="Current case snapshot",
    responses={404: CASE_ERRORS[404]}
)
async def get_case(
    case_id: str,
    service: WorkflowService = Depends(get_workflow_service)
):
    return CaseResponse.from_domain(await service.get_case(case_id))


@router.post(
    "/{case_id}/cds-submission",
    response_model=CaseResponse,
    summary="Submit to CDS (Under Review → Sent to CDS)",
    responses=CASE_ERRORS
)
async def submit_to_cds(
    case_id: str,
    body: CDSSubmissionRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.submit_to_cds(
        case_id, body.version, body.reference_number, body.submitted_by, body.notes
    )
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/cds-approval",
    response_model=CaseResponse,
    summary="Record the CDS decision (approve or reject)",
    responses=CASE_ERRORS
)
async def record_cds_decision(
    case_id: str,
    body: CDSDecisionRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    if body.decision == "reject":
        if not body.reason:
            raise ValidationException("reason is required to reject", field="reason")
        case = await service.reject(case_id, body.version, body.reason, body.decided_by)
    else:
        case = await service.record_cds_approval(
            case_id, body.version, body.decided_by, body.notes, body.cds_case_id
        )
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/shipment",
    response_model=CaseResponse,
    summary="Record replacement shipment (CDS Approved → Replacement Shipped)",
    responses=CASE_ERRORS
)
async def record_shipment(
    case_id: str,
    body: ShipmentRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.record_shipment(
        case_id, body.version, body.tracking_number, body.carrier,
        body.shipped_date, body.recorded_by
    )
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/replacement-receipt",
    response_model=CaseResponse,
    summary="Confirm the site received the replacement",
    responses=CASE_ERRORS
)
async def confirm_replacement_receipt(
    case_id: str,
    body: ReplacementReceiptRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.confirm_replacement_receipt(
        case_id, body.version, body.received_date, body.confirmed_by
    )
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/return",
    response_model=CaseResponse,
    summary="Ship the faulty part back (Replacement Received → Faulty Part Returned)",
    responses=CASE_ERRORS
)
async def initiate_return(
    case_id: str,
    body: ReturnRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.initiate_return(
        case_id, body.version, body.tracking_number, body.carrier, body.initiated_by
    )
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/return-confirmation",
    response_model=CaseResponse,
    summary="CDS confirms the faulty part arrived",
    responses=CASE_ERRORS
)
async def confirm_return_delivery(
    case_id: str,
    body: ReturnConfirmationRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.confirm_return_delivery(
        case_id, body.version, body.confirmed_by, body.notes
    )
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/complete",
    response_model=CaseResponse,
    summary="Close the case",
    responses=CASE_ERRORS
)
async def complete(
    case_id: str,
    body: CompleteRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.complete(case_id, body.version, body.completed_by, body.notes)
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/comments",
    response_model=CaseResponse,
    summary="Append a comment (allowed in every stage)",
    responses=CASE_ERRORS
)
async def add_comment(
    case_id: str,
    body: CommentRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.add_comment(
        case_id, body.version, body.author, body.body, body.category, body.is_internal
    )
    return CaseResponse.from_domain(case)


@router.get(
    "/{case_id}/comments",
    response_model=List[CommentResponse],
    summary="Comments, newest first",
    responses={404: CASE_ERRORS[404]}
)
async def list_comments(
    case_id: str,
    include_internal: bool = Query(False, description="Include internal notes and system entries"),
    service: WorkflowService = Depends(get_workflow_service)
):
    comments = await service.list_comments(case_id, include_internal)
    return [CommentResponse.model_validate(c) for c in comments]


@router.get(
    "/{case_id}/history",
    response_model=List[HistoryEntryResponse],
    summary="Tracking history rebuilt from the audit log",
    responses={404: CASE_ERRORS[404]}
)
async def get_history(
    case_id: str,
    service: WorkflowService = Depends(get_workflow_service)
):
    history = await service.get_history(case_id)
    return [HistoryEntryResponse.model_validate(h) for h in history]


@router.post(
    "/{case_id}/assignment",
    response_model=CaseResponse,
    summary="Assign an owner manually",
    responses=CASE_ERRORS
)
async def assign(
    case_id: str,
    body: AssignmentRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.assign(case_id, body.version, body.assignee, body.assigned_by)
    return CaseResponse.from_domain(case)


@router.post(
    "/{case_id}/auto-assign",
    response_model=CaseResponse,
    summary="Re-run the assignment rules",
    responses=CASE_ERRORS
)
async def auto_assign(
    case_id: str,
    body: AutoAssignRequest,
    service: WorkflowService = Depends(get_workflow_service)
):
    case = await service.auto_assign(
        case_id, body.version, body.requested_by, body.override_manual
    )
    return CaseResponse.from_domain(case)


# ========== Workflow Routes ==========

@workflow_router.get(
    "/rules",
    response_model=WorkflowRules,
    summary="Current workflow rules (read-only)"
)
async def get_rules(service: WorkflowService = Depends(get_workflow_service)):
    return service.get_rules()


@workflow_router.get(
    "/sla-breaches",
    response_model=List[BreachResponse],
    summary="Active cases past their deadline"
)
async def list_sla_breaches(
    limit: int = Query(100, ge=1, le=500),
    service: WorkflowService = Depends(get_workflow_service)
):
    now = service.now()
    cases = await service.list_breached(limit)
    return [
        BreachResponse(
            case_id=c.case_id,
            rma_number=c.rma_number,
            stage=c.stage,
            priority=c.priority,
            assigned_to=c.assigned_to,
            deadline_at=c.deadline_at,
            hours_overdue=round(c.hours_overdue(now), 2),
            escalation_count=c.escalation_count,
        )
        for c in cases
    ]


@workflow_router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run one SLA sweep cycle now"
)
async def run_sweep(sweeper: SLASweeper = Depends(get_sweeper)):
    summary = await sweeper.run_cycle()
    return SweepResponse(**summary)
