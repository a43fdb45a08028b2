"""
Case State Machine
==================

Pure decision logic for the RMA workflow: validates a requested change
against the current case, derives the deadline and appends the audit entry.
No I/O - the caller persists ``TransitionResult.case`` with a version check
and dispatches ``TransitionResult.events`` after the write commits.

Stage graph::

    Under Review -> Sent to CDS -> CDS Approved -> Replacement Shipped
      -> Replacement Received -> Faulty Part Returned -> CDS Confirmed Return
      -> Completed
    Under Review | Sent to CDS -> Rejected
"""

from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from rma_workflow.config import (
    Stage, Priority, CommentCategory, AssignmentSource, EventType,
    STAGE_ORDER, PRIORITY_ORDER, SYSTEM_AUTHOR
)
from rma_workflow.core import (
    ValidationException, InvalidTransitionException, ConflictException
)
from rma_workflow.rma.domain import audit
from rma_workflow.rma.domain.assignment import AssignmentResolver
from rma_workflow.rma.domain.entities import (
    Case, CaseIntake, CDSSubmission, CDSApproval, OutboundShipment,
    ReturnShipment, Completion, WorkflowEvent, TransitionResult
)
from rma_workflow.rma.domain.value_objects import SLACalculator, WorkflowRules


TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.UNDER_REVIEW: frozenset({Stage.SENT_TO_CDS, Stage.REJECTED}),
    Stage.SENT_TO_CDS: frozenset({Stage.CDS_APPROVED, Stage.REJECTED}),
    Stage.CDS_APPROVED: frozenset({Stage.REPLACEMENT_SHIPPED}),
    Stage.REPLACEMENT_SHIPPED: frozenset({Stage.REPLACEMENT_RECEIVED}),
    Stage.REPLACEMENT_RECEIVED: frozenset({Stage.FAULTY_PART_RETURNED}),
    Stage.FAULTY_PART_RETURNED: frozenset({Stage.CDS_CONFIRMED_RETURN}),
    Stage.CDS_CONFIRMED_RETURN: frozenset({Stage.COMPLETED}),
    Stage.COMPLETED: frozenset(),
    Stage.REJECTED: frozenset(),
}


# Fields that must be populated before a case may move forward past a stage.
EXIT_REQUIREMENTS: Dict[Stage, List[Tuple[str, Callable[[Case], object]]]] = {
    Stage.SENT_TO_CDS: [
        ("cds_submission.reference_number",
         lambda c: c.cds_submission and c.cds_submission.reference_number),
    ],
    Stage.CDS_APPROVED: [
        ("cds_approval", lambda c: c.cds_approval),
    ],
    Stage.REPLACEMENT_SHIPPED: [
        ("outbound_shipment.tracking_number",
         lambda c: c.outbound_shipment and c.outbound_shipment.tracking_number),
    ],
    Stage.REPLACEMENT_RECEIVED: [
        ("outbound_shipment.delivered_date",
         lambda c: c.outbound_shipment and c.outbound_shipment.delivered_date),
    ],
    Stage.FAULTY_PART_RETURNED: [
        ("return_shipment.tracking_number",
         lambda c: c.return_shipment and c.return_shipment.tracking_number),
    ],
    Stage.CDS_CONFIRMED_RETURN: [
        ("return_shipment.delivery_confirmed_at",
         lambda c: c.return_shipment and c.return_shipment.delivery_confirmed_at),
    ],
}


def next_priority(priority: Priority) -> Priority:
    """One level up, capped at Critical."""
    index = PRIORITY_ORDER.index(priority)
    return PRIORITY_ORDER[min(index + 1, len(PRIORITY_ORDER) - 1)]


def missing_requirements(case: Case, target: Stage) -> List[str]:
    """Sub-record fields still empty for every stage before ``target``."""
    if target not in STAGE_ORDER:
        return []
    missing = []
    for stage in STAGE_ORDER[:STAGE_ORDER.index(target)]:
        for name, check in EXIT_REQUIREMENTS.get(stage, []):
            if not check(case):
                missing.append(name)
    return missing


def _required(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationException(f"{field} is required", field=field)
    return str(value).strip()


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class CaseStateMachine:
    """
    State Machine Core bound to one rules snapshot.

    Every operation takes the version the caller read. A mismatch with the
    case it is applied to raises ``ConflictException``; the store repeats
    the same check atomically on write.
    """

    def __init__(self, rules: WorkflowRules):
        self._rules = rules
        self._resolver = AssignmentResolver(rules)

    @property
    def rules(self) -> WorkflowRules:
        return self._rules

    # ========== Intake ==========

    def open_case(
        self,
        intake: CaseIntake,
        case_id: str,
        rma_number: str,
        now: datetime
    ) -> TransitionResult:
        """Create a case in Under Review with an owner and a deadline."""
        site_name = _required(intake.site_name, "site_name")
        region = _required(intake.region, "region")
        product_name = _required(intake.product_name, "product_name")
        product_category = _required(intake.product_category, "product_category")
        created_by = _required(intake.created_by, "created_by")
        if intake.warranty_status is None:
            raise ValidationException("warranty_status is required", field="warranty_status")

        decision = self._resolver.resolve(product_category, region, intake.priority)
        stage = Stage.UNDER_REVIEW

        case = Case(
            case_id=case_id,
            rma_number=rma_number,
            site_name=site_name,
            region=region,
            product_name=product_name,
            product_category=product_category,
            warranty_status=intake.warranty_status,
            created_by=created_by,
            created_at=now,
            stage=stage,
            priority=intake.priority,
            stage_entered_at=now,
            sla_clock_started_at=now,
            deadline_at=self._rules.deadline_for(stage, intake.priority, now),
            version=1,
            assigned_to=decision.assignee,
            assignment_source=AssignmentSource.RULE if decision.is_assigned else None,
            assigned_at=now if decision.is_assigned else None,
            serial_number=_optional(intake.serial_number),
            symptoms=_optional(intake.symptoms),
            defective_part_number=_optional(intake.defective_part_number),
            defective_part_name=_optional(intake.defective_part_name),
            updated_at=now,
        )

        summary = f"Case opened in {stage.value} with priority {intake.priority.value} by {created_by}"
        if decision.is_assigned:
            summary += f"; assigned to {decision.assignee} ({decision.matched_by} rule)"
        case = audit.append(case, audit.system_entry(
            audit.EVENT_OPENED, now, summary,
            actor=created_by,
            to_stage=stage,
            to_priority=intake.priority,
            assigned_to=decision.assignee,
        ))

        events = [self._event(EventType.STATUS_CHANGE, case, now, created_by, summary)]
        if decision.is_assigned:
            events.append(self._event(
                EventType.ASSIGNMENT, case, now, created_by,
                f"{case.rma_number} assigned to {decision.assignee}",
                recipient=decision.assignee,
            ))
        return TransitionResult(case, tuple(events))

    # ========== Forward transitions ==========

    def submit_to_cds(
        self,
        case: Case,
        expected_version: int,
        reference_number: str,
        submitted_by: str,
        now: datetime,
        notes: Optional[str] = None
    ) -> TransitionResult:
        """Under Review -> Sent to CDS."""
        self._check(case, expected_version, Stage.SENT_TO_CDS, "submit to CDS")
        submission = CDSSubmission(
            date=now,
            submitted_by=_required(submitted_by, "submitted_by"),
            reference_number=_required(reference_number, "reference_number"),
            notes=_optional(notes),
        )
        return self._advance(
            case, Stage.SENT_TO_CDS, now, submission.submitted_by, notes,
            cds_submission=submission,
        )

    def record_cds_approval(
        self,
        case: Case,
        expected_version: int,
        approved_by: str,
        now: datetime,
        notes: Optional[str] = None,
        cds_case_id: Optional[str] = None
    ) -> TransitionResult:
        """Sent to CDS -> CDS Approved."""
        self._check(case, expected_version, Stage.CDS_APPROVED, "record CDS approval")
        approval = CDSApproval(
            date=now,
            approved_by=_required(approved_by, "approved_by"),
            cds_case_id=_optional(cds_case_id),
            notes=_optional(notes),
        )
        return self._advance(
            case, Stage.CDS_APPROVED, now, approval.approved_by, notes,
            cds_approval=approval,
        )

    def reject(
        self,
        case: Case,
        expected_version: int,
        reason: str,
        rejected_by: str,
        now: datetime
    ) -> TransitionResult:
        """Under Review | Sent to CDS -> Rejected (terminal)."""
        self._check(case, expected_version, Stage.REJECTED, "reject")
        reason = _required(reason, "reason")
        actor = _required(rejected_by, "rejected_by")
        return self._advance(
            case, Stage.REJECTED, now, actor, f"Reason: {reason}",
            rejection_reason=reason,
        )

    def record_shipment(
        self,
        case: Case,
        expected_version: int,
        tracking_number: str,
        carrier: str,
        shipped_date: datetime,
        recorded_by: str,
        now: datetime
    ) -> TransitionResult:
        """CDS Approved -> Replacement Shipped."""
        self._check(case, expected_version, Stage.REPLACEMENT_SHIPPED, "record shipment")
        if shipped_date is None:
            raise ValidationException("shipped_date is required", field="shipped_date")
        shipment = OutboundShipment(
            tracking_number=_required(tracking_number, "tracking_number"),
            carrier=_required(carrier, "carrier"),
            shipped_date=shipped_date,
        )
        actor = _required(recorded_by, "recorded_by")
        note = f"Tracking {shipment.tracking_number} via {shipment.carrier}"
        return self._advance(
            case, Stage.REPLACEMENT_SHIPPED, now, actor, note,
            outbound_shipment=shipment,
        )

    def confirm_replacement_receipt(
        self,
        case: Case,
        expected_version: int,
        received_date: datetime,
        confirmed_by: str,
        now: datetime
    ) -> TransitionResult:
        """Replacement Shipped -> Replacement Received."""
        self._check(
            case, expected_version, Stage.REPLACEMENT_RECEIVED, "confirm replacement receipt"
        )
        if received_date is None:
            raise ValidationException("received_date is required", field="received_date")
        shipment = case.outbound_shipment
        if shipment is not None and received_date < shipment.shipped_date:
            raise ValidationException(
                "received_date cannot be before shipped_date", field="received_date"
            )
        actor = _required(confirmed_by, "confirmed_by")
        return self._advance(
            case, Stage.REPLACEMENT_RECEIVED, now, actor, None,
            outbound_shipment=replace(
                shipment,
                delivered_date=received_date,
                days_to_site=SLACalculator.days_elapsed(shipment.shipped_date, received_date),
            ) if shipment else None,
        )

    def initiate_return(
        self,
        case: Case,
        expected_version: int,
        tracking_number: str,
        carrier: str,
        initiated_by: str,
        now: datetime
    ) -> TransitionResult:
        """Replacement Received -> Faulty Part Returned."""
        self._check(case, expected_version, Stage.FAULTY_PART_RETURNED, "initiate return")
        shipment = ReturnShipment(
            tracking_number=_required(tracking_number, "tracking_number"),
            carrier=_required(carrier, "carrier"),
            initiated_by=_required(initiated_by, "initiated_by"),
            initiated_date=now,
        )
        note = f"Return tracking {shipment.tracking_number} via {shipment.carrier}"
        return self._advance(
            case, Stage.FAULTY_PART_RETURNED, now, shipment.initiated_by, note,
            return_shipment=shipment,
        )

    def confirm_return_delivery(
        self,
        case: Case,
        expected_version: int,
        confirmed_by: str,
        now: datetime,
        notes: Optional[str] = None
    ) -> TransitionResult:
        """Faulty Part Returned -> CDS Confirmed Return."""
        self._check(
            case, expected_version, Stage.CDS_CONFIRMED_RETURN, "confirm return delivery"
        )
        actor = _required(confirmed_by, "confirmed_by")
        shipment = case.return_shipment
        return self._advance(
            case, Stage.CDS_CONFIRMED_RETURN, now, actor, notes,
            return_shipment=replace(
                shipment,
                delivery_confirmed_at=now,
                confirmed_by=actor,
                days_return_to_cds=SLACalculator.days_elapsed(shipment.initiated_date, now),
            ) if shipment else None,
        )

    def complete(
        self,
        case: Case,
        expected_version: int,
        completed_by: str,
        now: datetime,
        notes: Optional[str] = None
    ) -> TransitionResult:
        """CDS Confirmed Return -> Completed (terminal)."""
        self._check(case, expected_version, Stage.COMPLETED, "complete")
        actor = _required(completed_by, "completed_by")
        completion = Completion(
            completed_by=actor,
            completed_at=now,
            total_days=SLACalculator.days_elapsed(case.created_at, now),
        )
        return self._advance(
            case, Stage.COMPLETED, now, actor, notes,
            completion=completion,
        )

    # ========== Escalation ==========

    def escalate(
        self,
        case: Case,
        expected_version: int,
        now: datetime
    ) -> TransitionResult:
        """
        Raise priority one level after an SLA breach.

        Re-resolves the owner (escalation overrides manual owners), restarts
        the SLA clock under the new priority and bumps ``escalation_count``.
        The stage and ``stage_entered_at`` are left untouched.
        """
        self._check_version(case, expected_version)
        if case.is_terminal:
            raise InvalidTransitionException(case.case_id, case.stage, "escalate")
        if not case.is_breached(now):
            raise InvalidTransitionException(
                case.case_id, case.stage, "escalate",
                reason=f"deadline {case.deadline_at.isoformat() if case.deadline_at else None} has not passed",
            )

        old_priority = case.priority
        new_priority = next_priority(old_priority)
        decision = self._resolver.resolve(
            case.product_category, case.region, new_priority, for_escalation=True
        )
        assignee = decision.assignee or case.assigned_to
        reassigned = assignee != case.assigned_to

        hours_over = case.hours_overdue(now)
        updated = replace(
            case,
            priority=new_priority,
            sla_clock_started_at=now,
            deadline_at=self._rules.deadline_for(case.stage, new_priority, now),
            escalation_count=case.escalation_count + 1,
            last_escalated_at=now,
            assigned_to=assignee,
            assignment_source=AssignmentSource.ESCALATION if reassigned else case.assignment_source,
            assigned_at=now if reassigned else case.assigned_at,
            version=case.version + 1,
            updated_at=now,
        )

        summary = (
            f"SLA breached in {case.stage.value} ({hours_over:.1f}h overdue); "
            f"priority {audit.describe_change(old_priority.value, new_priority.value)}; "
            f"escalation #{updated.escalation_count}"
        )
        if reassigned:
            summary += f"; reassigned {audit.describe_change(case.assigned_to, assignee)}"
        updated = audit.append(updated, audit.system_entry(
            audit.EVENT_ESCALATION, now, summary,
            from_stage=case.stage, to_stage=case.stage,
            from_priority=old_priority, to_priority=new_priority,
            assigned_to=assignee,
        ))

        events = [self._event(
            EventType.ESCALATION, updated, now, SYSTEM_AUTHOR, summary,
            previous_priority=old_priority, recipient=assignee,
        )]
        if reassigned:
            events.append(self._event(
                EventType.ASSIGNMENT, updated, now, SYSTEM_AUTHOR,
                f"{updated.rma_number} escalated to {assignee}",
                recipient=assignee,
            ))
        return TransitionResult(updated, tuple(events))

    # ========== Comments and assignment ==========

    def add_comment(
        self,
        case: Case,
        expected_version: int,
        author: str,
        body: str,
        category: CommentCategory,
        now: datetime,
        is_internal: Optional[bool] = None
    ) -> TransitionResult:
        """Append a comment; allowed in every stage, terminal included."""
        self._check_version(case, expected_version)
        comment = audit.new_comment(author, body, category, now, is_internal)
        updated = replace(
            audit.append(case, comment),
            version=case.version + 1,
            updated_at=now,
        )
        events = ()
        if not comment.is_internal:
            events = (self._event(
                EventType.COMMENT, updated, now, comment.author, comment.body
            ),)
        return TransitionResult(updated, events)

    def assign(
        self,
        case: Case,
        expected_version: int,
        assignee: str,
        assigned_by: str,
        now: datetime
    ) -> TransitionResult:
        """Manual owner override."""
        self._check_version(case, expected_version)
        if case.is_terminal:
            raise InvalidTransitionException(case.case_id, case.stage, "assign")
        assignee = _required(assignee, "assignee")
        actor = _required(assigned_by, "assigned_by")
        return self._reassign(case, assignee, AssignmentSource.MANUAL, actor, now)

    def auto_assign(
        self,
        case: Case,
        expected_version: int,
        requested_by: str,
        now: datetime,
        override_manual: bool = False
    ) -> TransitionResult:
        """
        Re-run the resolver for the current priority.

        A manual owner is kept unless ``override_manual`` is set. Returns the
        case unchanged (same object, no events) when nothing would change.
        """
        self._check_version(case, expected_version)
        if case.is_terminal:
            raise InvalidTransitionException(case.case_id, case.stage, "auto-assign")
        actor = _required(requested_by, "requested_by")

        if case.assignment_source == AssignmentSource.MANUAL and not override_manual:
            return TransitionResult(case)

        decision = self._resolver.resolve(case.product_category, case.region, case.priority)
        if not decision.is_assigned or decision.assignee == case.assigned_to:
            return TransitionResult(case)
        return self._reassign(case, decision.assignee, AssignmentSource.RULE, actor, now)

    # ========== Helpers ==========

    def _reassign(
        self,
        case: Case,
        assignee: str,
        source: AssignmentSource,
        actor: str,
        now: datetime
    ) -> TransitionResult:
        summary = (
            f"Owner {audit.describe_change(case.assigned_to, assignee)} "
            f"({source.value}) by {actor}"
        )
        updated = replace(
            case,
            assigned_to=assignee,
            assignment_source=source,
            assigned_at=now,
            version=case.version + 1,
            updated_at=now,
        )
        updated = audit.append(updated, audit.system_entry(
            audit.EVENT_ASSIGNMENT, now, summary,
            actor=actor,
            from_stage=case.stage, to_stage=case.stage,
            from_priority=case.priority, to_priority=case.priority,
            assigned_to=assignee,
        ))
        event = self._event(
            EventType.ASSIGNMENT, updated, now, actor,
            f"{updated.rma_number} assigned to {assignee}",
            recipient=assignee,
        )
        return TransitionResult(updated, (event,))

    def _check_version(self, case: Case, expected_version: int) -> None:
        if expected_version is None or case.version != expected_version:
            raise ConflictException(case.case_id, expected_version, case.version)

    def _check(
        self,
        case: Case,
        expected_version: int,
        target: Stage,
        operation: str
    ) -> None:
        self._check_version(case, expected_version)
        if target not in TRANSITIONS[case.stage]:
            raise InvalidTransitionException(case.case_id, case.stage, operation)

    def _advance(
        self,
        case: Case,
        target: Stage,
        now: datetime,
        actor: str,
        note: Optional[str],
        **changes
    ) -> TransitionResult:
        """Move to ``target``: new stage clock, deadline, version and audit entry."""
        updated = replace(
            case,
            stage=target,
            stage_entered_at=now,
            sla_clock_started_at=now,
            deadline_at=self._rules.deadline_for(target, case.priority, now),
            version=case.version + 1,
            updated_at=now,
            **changes,
        )

        if target != Stage.REJECTED:
            missing = missing_requirements(updated, target)
            if missing:
                raise ValidationException(
                    f"Cannot enter {target.value}: missing {', '.join(missing)}",
                    details={"missing": missing},
                )

        summary = f"Stage {audit.describe_change(case.stage.value, target.value)} by {actor}"
        updated = audit.append(updated, audit.system_entry(
            audit.EVENT_TRANSITION, now, summary,
            actor=actor,
            from_stage=case.stage, to_stage=target,
            from_priority=case.priority, to_priority=case.priority,
            assigned_to=case.assigned_to,
            note=note,
        ))

        event = self._event(
            EventType.STATUS_CHANGE, updated, now, actor, summary,
            previous_stage=case.stage, recipient=updated.assigned_to,
        )
        return TransitionResult(updated, (event,))

    @staticmethod
    def _event(
        event_type: EventType,
        case: Case,
        now: datetime,
        actor: str,
        message: str,
        previous_stage: Optional[Stage] = None,
        previous_priority: Optional[Priority] = None,
        recipient: Optional[str] = None
    ) -> WorkflowEvent:
        return WorkflowEvent(
            event_type=event_type,
            case_id=case.case_id,
            rma_number=case.rma_number,
            occurred_at=now,
            actor=actor,
            message=message,
            stage=case.stage,
            previous_stage=previous_stage,
            priority=case.priority,
            previous_priority=previous_priority,
            recipient=recipient if recipient is not None else case.assigned_to,
        )
