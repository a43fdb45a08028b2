"""
RMA Infrastructure Repositories
=================================

Concrete case stores.

``SQLAlchemyCaseStore`` persists cases in PostgreSQL (any SQLAlchemy async
dialect works) and ``InMemoryCaseStore`` keeps them in a dict. Both give the
same guarantees: point reads, whole-record compare-and-set writes keyed on
``version``, and the breach query used by the sweeper.
"""

import asyncio
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rma_workflow.config import (
    Stage, Priority, WarrantyStatus, CommentCategory, AssignmentSource,
    ACTIVE_STAGES
)
from rma_workflow.core import (
    ConflictException, RepositoryException, ResourceNotFoundException
)
from rma_workflow.infrastructure.database import get_session_context
from rma_workflow.rma.application.services import ICaseStore, IRulesProvider
from rma_workflow.rma.domain import (
    Case, CDSSubmission, CDSApproval, OutboundShipment, ReturnShipment,
    Completion, Comment, WorkflowRules
)
from rma_workflow.rma.infrastructure.models import CaseModel, RMASequenceModel
from rma_workflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

# Driver connection failures (refused, reset) surface as OSError, not SQLAlchemyError
_STORE_ERRORS = (SQLAlchemyError, OSError)


# ========== Serialization Helpers ==========

def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _to_utc(datetime.fromisoformat(value))


def _record_to_json(record: Any) -> Optional[Dict[str, Any]]:
    """Frozen sub-record -> JSON-safe dict."""
    if record is None:
        return None
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in asdict(record).items()
    }


def _record_from_json(cls, data: Optional[Dict[str, Any]], date_fields: tuple):
    if data is None:
        return None
    values = dict(data)
    for name in date_fields:
        values[name] = _parse_dt(values.get(name))
    return cls(**values)


def _comment_to_json(comment: Comment) -> Dict[str, Any]:
    return {
        "id": comment.id,
        "author": comment.author,
        "body": comment.body,
        "category": comment.category.value,
        "is_internal": comment.is_internal,
        "timestamp": comment.timestamp.isoformat(),
        "metadata": dict(comment.metadata),
    }


def _comment_from_json(data: Dict[str, Any]) -> Comment:
    return Comment(
        id=data["id"],
        author=data["author"],
        body=data["body"],
        category=CommentCategory(data["category"]),
        is_internal=data["is_internal"],
        timestamp=_parse_dt(data["timestamp"]),
        metadata=data.get("metadata") or {},
    )


def case_to_row(case: Case) -> Dict[str, Any]:
    """Column values for a case."""
    return {
        "case_id": case.case_id,
        "rma_number": case.rma_number,
        "site_name": case.site_name,
        "region": case.region,
        "product_name": case.product_name,
        "product_category": case.product_category,
        "warranty_status": case.warranty_status.value,
        "created_by": case.created_by,
        "created_at": case.created_at,
        "serial_number": case.serial_number,
        "symptoms": case.symptoms,
        "defective_part_number": case.defective_part_number,
        "defective_part_name": case.defective_part_name,
        "stage": case.stage.value,
        "priority": case.priority.value,
        "stage_entered_at": case.stage_entered_at,
        "sla_clock_started_at": case.sla_clock_started_at,
        "deadline_at": case.deadline_at,
        "escalation_count": case.escalation_count,
        "last_escalated_at": case.last_escalated_at,
        "version": case.version,
        "updated_at": case.updated_at,
        "assigned_to": case.assigned_to,
        "assignment_source": case.assignment_source.value if case.assignment_source else None,
        "assigned_at": case.assigned_at,
        "cds_submission": _record_to_json(case.cds_submission),
        "cds_approval": _record_to_json(case.cds_approval),
        "outbound_shipment": _record_to_json(case.outbound_shipment),
        "return_shipment": _record_to_json(case.return_shipment),
        "completion": _record_to_json(case.completion),
        "rejection_reason": case.rejection_reason,
        "comments": [_comment_to_json(c) for c in case.comments],
    }


def model_to_case(model: CaseModel) -> Case:
    """Map a row back to the domain entity."""
    return Case(
        case_id=model.case_id,
        rma_number=model.rma_number,
        site_name=model.site_name,
        region=model.region,
        product_name=model.product_name,
        product_category=model.product_category,
        warranty_status=WarrantyStatus(model.warranty_status),
        created_by=model.created_by,
        created_at=_to_utc(model.created_at),
        serial_number=model.serial_number,
        symptoms=model.symptoms,
        defective_part_number=model.defective_part_number,
        defective_part_name=model.defective_part_name,
        stage=Stage(model.stage),
        priority=Priority(model.priority),
        stage_entered_at=_to_utc(model.stage_entered_at),
        sla_clock_started_at=_to_utc(model.sla_clock_started_at),
        deadline_at=_to_utc(model.deadline_at),
        escalation_count=model.escalation_count,
        last_escalated_at=_to_utc(model.last_escalated_at),
        version=model.version,
        updated_at=_to_utc(model.updated_at),
        assigned_to=model.assigned_to,
        assignment_source=AssignmentSource(model.assignment_source) if model.assignment_source else None,
        assigned_at=_to_utc(model.assigned_at),
        cds_submission=_record_from_json(CDSSubmission, model.cds_submission, ("date",)),
        cds_approval=_record_from_json(CDSApproval, model.cds_approval, ("date",)),
        outbound_shipment=_record_from_json(
            OutboundShipment, model.outbound_shipment, ("shipped_date", "delivered_date")
        ),
        return_shipment=_record_from_json(
            ReturnShipment, model.return_shipment, ("initiated_date", "delivery_confirmed_at")
        ),
        completion=_record_from_json(Completion, model.completion, ("completed_at",)),
        rejection_reason=model.rejection_reason,
        comments=tuple(_comment_from_json(c) for c in (model.comments or [])),
    )


# ========== Case Stores ==========

class SQLAlchemyCaseStore(ICaseStore):
    """
    SQLAlchemy implementation of the case store.

    Each operation runs in its own short session; the version check is part
    of the UPDATE statement so concurrent writers cannot both succeed.
    """

    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_session_context

    async def get(self, case_id: str) -> Optional[Case]:
        try:
            async with self._session_factory() as session:
                model = await session.get(CaseModel, case_id)
                return model_to_case(model) if model else None
        except _STORE_ERRORS as e:
            raise RepositoryException(f"Failed to load case {case_id}", {"error": str(e)}) from e

    async def create(self, case: Case) -> Case:
        try:
            async with self._session_factory() as session:
                session.add(CaseModel(**case_to_row(case)))
        except _STORE_ERRORS as e:
            raise RepositoryException(f"Failed to create case {case.case_id}", {"error": str(e)}) from e
        return case

    async def update(self, case: Case, expected_version: int) -> Case:
        values = case_to_row(case)
        values.pop("case_id")

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(CaseModel)
                    .where(
                        CaseModel.case_id == case.case_id,
                        CaseModel.version == expected_version
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    return case

                current = await session.scalar(
                    select(CaseModel.version).where(CaseModel.case_id == case.case_id)
                )
        except _STORE_ERRORS as e:
            raise RepositoryException(f"Failed to update case {case.case_id}", {"error": str(e)}) from e

        if current is None:
            raise ResourceNotFoundException("Case", case.case_id)
        raise ConflictException(case.case_id, expected_version, current)

    async def find_breached(self, now: datetime, limit: int = 500) -> List[Case]:
        try:
            async with self._session_factory() as session:
                stmt = (
                    select(CaseModel)
                    .where(
                        CaseModel.stage.in_([s.value for s in ACTIVE_STAGES]),
                        CaseModel.deadline_at.is_not(None),
                        CaseModel.deadline_at <= now
                    )
                    .order_by(CaseModel.deadline_at.asc())
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [model_to_case(m) for m in result.scalars().all()]
        except _STORE_ERRORS as e:
            raise RepositoryException("Breach query failed", {"error": str(e)}) from e

    async def next_rma_sequence(self, year: int) -> int:
        try:
            async with self._session_factory() as session:
                value = await self._increment(session, year)
                if value is not None:
                    return value
                session.add(RMASequenceModel(year=year, last_value=1))
                return 1
        except IntegrityError:
            # Another writer created the year's row first
            try:
                async with self._session_factory() as session:
                    return await self._increment(session, year)
            except _STORE_ERRORS as e:
                raise RepositoryException("Failed to allocate RMA number", {"error": str(e)}) from e
        except _STORE_ERRORS as e:
            raise RepositoryException("Failed to allocate RMA number", {"error": str(e)}) from e

    @staticmethod
    async def _increment(session: AsyncSession, year: int) -> Optional[int]:
        return await session.scalar(
            update(RMASequenceModel)
            .where(RMASequenceModel.year == year)
            .values(last_value=RMASequenceModel.last_value + 1)
            .returning(RMASequenceModel.last_value)
        )


class InMemoryCaseStore(ICaseStore):
    """
    Dict-backed case store with the same compare-and-set semantics.

    Used for local runs (``case_store_backend=memory``) and tests. Cases are
    immutable, so handing out stored objects is safe.
    """

    def __init__(self):
        self._cases: Dict[str, Case] = {}
        self._sequences: Dict[int, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, case_id: str) -> Optional[Case]:
        return self._cases.get(case_id)

    async def create(self, case: Case) -> Case:
        async with self._lock:
            if case.case_id in self._cases:
                raise RepositoryException(f"Case {case.case_id} already exists")
            self._cases[case.case_id] = case
        return case

    async def update(self, case: Case, expected_version: int) -> Case:
        async with self._lock:
            current = self._cases.get(case.case_id)
            if current is None:
                raise ResourceNotFoundException("Case", case.case_id)
            if current.version != expected_version:
                raise ConflictException(case.case_id, expected_version, current.version)
            self._cases[case.case_id] = case
        return case

    async def find_breached(self, now: datetime, limit: int = 500) -> List[Case]:
        breached = [
            c for c in self._cases.values()
            if c.stage in ACTIVE_STAGES and c.deadline_at is not None and c.deadline_at <= now
        ]
        breached.sort(key=lambda c: c.deadline_at)
        return breached[:limit]

    async def next_rma_sequence(self, year: int) -> int:
        async with self._lock:
            self._sequences[year] = self._sequences.get(year, 0) + 1
            return self._sequences[year]


class InMemoryRulesProvider(IRulesProvider):
    """Rules provider with a fixed snapshot that can be swapped."""

    def __init__(self, rules: Optional[WorkflowRules] = None):
        self._rules = rules or WorkflowRules()

    def get_rules(self) -> WorkflowRules:
        return self._rules

    def set_rules(self, rules: WorkflowRules) -> None:
        logger.info("Workflow rules replaced")
        self._rules = rules
