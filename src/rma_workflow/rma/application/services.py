"""
RMA Application Services
=========================

Application services orchestrate the workflow: read the case, ask the pure
state machine for the next version, write it with a version check, then hand
the resulting events to the notification dispatcher.

Following SOLID principles:
- Single Responsibility: state decisions live in the domain, I/O lives here
- Dependency Inversion: depend on store/rules/notifier abstractions
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Set
from uuid import uuid4

from rma_workflow.config import CommentCategory
from rma_workflow.core import NotifierException, ResourceNotFoundException
from rma_workflow.rma.domain import (
    Case, CaseIntake, CaseStateMachine, TransitionResult, WorkflowEvent,
    WorkflowRules, format_rma_number
)
from rma_workflow.rma.domain import audit
from rma_workflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time."""
    return datetime.now(timezone.utc)


# ========== Collaborator Interfaces (Dependency Inversion) ==========

class ICaseStore(ABC):
    """Durable keyed storage for cases with optimistic concurrency."""

    @abstractmethod
    async def get(self, case_id: str) -> Optional[Case]:
        """Point read."""

    @abstractmethod
    async def create(self, case: Case) -> Case:
        """Insert a new case."""

    @abstractmethod
    async def update(self, case: Case, expected_version: int) -> Case:
        """
        Replace the stored case if its version is still ``expected_version``.

        Raises:
            ConflictException: the stored version moved on
            ResourceNotFoundException: no such case
        """

    @abstractmethod
    async def find_breached(self, now: datetime, limit: int = 500) -> List[Case]:
        """Active cases whose deadline is at or before ``now``."""

    @abstractmethod
    async def next_rma_sequence(self, year: int) -> int:
        """Next RMA number sequence for the calendar year."""


class IRulesProvider(ABC):
    """Interface for workflow rules access."""

    @abstractmethod
    def get_rules(self) -> WorkflowRules:
        """Current immutable rules snapshot."""


class INotifier(ABC):
    """Outbound e-mail/SMS delivery."""

    @abstractmethod
    async def send(self, event: WorkflowEvent) -> None:
        """
        Deliver one event.

        Raises:
            NotifierException: delivery failed after the notifier's retries
        """


# ========== Notification Dispatch ==========

class NotificationDispatcher:
    """
    Fire-and-forget delivery of committed workflow events.

    Each event runs in its own task; failures are logged and never reach
    the caller that committed the transition.
    """

    def __init__(self, notifier: Optional[INotifier]):
        self._notifier = notifier
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, events: Iterable[WorkflowEvent]) -> int:
        """Schedule delivery; returns the number of events scheduled."""
        if self._notifier is None:
            return 0

        scheduled = 0
        for event in events:
            task = asyncio.create_task(self._deliver(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            scheduled += 1
        return scheduled

    async def _deliver(self, event: WorkflowEvent) -> None:
        try:
            await self._notifier.send(event)
        except NotifierException as e:
            logger.error(
                "Notification delivery failed",
                extra={
                    "case_id": event.case_id,
                    "event_type": event.event_type.value,
                    "error": str(e)
                }
            )
        except Exception as e:
            logger.error(
                "Unexpected notifier error",
                extra={
                    "case_id": event.case_id,
                    "event_type": event.event_type.value,
                    "error": str(e),
                    "error_type": type(e).__name__
                }
            )

    @property
    def pending(self) -> int:
        """Deliveries still in flight."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def commit_transition(
    store: ICaseStore,
    dispatcher: NotificationDispatcher,
    result: TransitionResult,
    expected_version: int
) -> Case:
    """
    Persist a transition result and dispatch its events.

    Events go out only after the write succeeded; a conflict raises before
    anything is dispatched.
    """
    saved = await store.update(result.case, expected_version)
    logger.info(
        "Case updated",
        extra={
            "case_id": saved.case_id,
            "rma_number": saved.rma_number,
            "stage": saved.stage.value,
            "priority": saved.priority.value,
            "version": saved.version
        }
    )
    dispatcher.dispatch(result.events)
    return saved


# ========== Application Services ==========

class WorkflowService:
    """
    Human-initiated RMA operations.

    Every mutating call takes the version the caller last read; stale
    versions raise ``ConflictException`` and leave the case untouched.
    Escalation is not exposed here - it belongs to the SLA sweeper.
    """

    def __init__(
        self,
        case_store: ICaseStore,
        rules_provider: IRulesProvider,
        dispatcher: NotificationDispatcher,
        clock: Optional[Clock] = None
    ):
        self._store = case_store
        self._rules_provider = rules_provider
        self._dispatcher = dispatcher
        self._clock = clock or utcnow

    def _machine(self) -> CaseStateMachine:
        # Fresh snapshot per evaluation
        return CaseStateMachine(self._rules_provider.get_rules())

    async def get_case(self, case_id: str) -> Case:
        """
        Get a case by ID.

        Raises:
            ResourceNotFoundException: unknown case
        """
        case = await self._store.get(case_id)
        if case is None:
            raise ResourceNotFoundException("Case", case_id)
        return case

    async def open_case(self, intake: CaseIntake) -> Case:
        """Create a case from an intake event."""
        now = self._clock()
        sequence = await self._store.next_rma_sequence(now.year)
        result = self._machine().open_case(
            intake,
            case_id=str(uuid4()),
            rma_number=format_rma_number(now.year, sequence),
            now=now,
        )
        case = await self._store.create(result.case)
        logger.info(
            "Case opened",
            extra={
                "case_id": case.case_id,
                "rma_number": case.rma_number,
                "assigned_to": case.assigned_to
            }
        )
        self._dispatcher.dispatch(result.events)
        return case

    async def submit_to_cds(
        self,
        case_id: str,
        version: int,
        reference_number: str,
        submitted_by: str,
        notes: Optional[str] = None
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.submit_to_cds(
            case, version, reference_number, submitted_by, now, notes
        ))

    async def record_cds_approval(
        self,
        case_id: str,
        version: int,
        approved_by: str,
        notes: Optional[str] = None,
        cds_case_id: Optional[str] = None
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.record_cds_approval(
            case, version, approved_by, now, notes, cds_case_id
        ))

    async def reject(
        self,
        case_id: str,
        version: int,
        reason: str,
        rejected_by: str
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.reject(
            case, version, reason, rejected_by, now
        ))

    async def record_shipment(
        self,
        case_id: str,
        version: int,
        tracking_number: str,
        carrier: str,
        shipped_date: datetime,
        recorded_by: str
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.record_shipment(
            case, version, tracking_number, carrier, shipped_date, recorded_by, now
        ))

    async def confirm_replacement_receipt(
        self,
        case_id: str,
        version: int,
        received_date: datetime,
        confirmed_by: str
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.confirm_replacement_receipt(
            case, version, received_date, confirmed_by, now
        ))

    async def initiate_return(
        self,
        case_id: str,
        version: int,
        tracking_number: str,
        carrier: str,
        initiated_by: str
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.initiate_return(
            case, version, tracking_number, carrier, initiated_by, now
        ))

    async def confirm_return_delivery(
        self,
        case_id: str,
        version: int,
        confirmed_by: str,
        notes: Optional[str] = None
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.confirm_return_delivery(
            case, version, confirmed_by, now, notes
        ))

    async def complete(
        self,
        case_id: str,
        version: int,
        completed_by: str,
        notes: Optional[str] = None
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.complete(
            case, version, completed_by, now, notes
        ))

    async def add_comment(
        self,
        case_id: str,
        version: int,
        author: str,
        body: str,
        category: CommentCategory = CommentCategory.GENERAL,
        is_internal: Optional[bool] = None
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.add_comment(
            case, version, author, body, category, now, is_internal
        ))

    async def assign(
        self,
        case_id: str,
        version: int,
        assignee: str,
        assigned_by: str
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.assign(
            case, version, assignee, assigned_by, now
        ))

    async def auto_assign(
        self,
        case_id: str,
        version: int,
        requested_by: str,
        override_manual: bool = False
    ) -> Case:
        return await self._apply(case_id, lambda m, case, now: m.auto_assign(
            case, version, requested_by, now, override_manual
        ))

    async def list_comments(self, case_id: str, include_internal: bool = False):
        """Comments newest first, internal ones only on request."""
        case = await self.get_case(case_id)
        return audit.visible_comments(case, include_internal)

    async def get_history(self, case_id: str):
        """Tracking history rebuilt from the audit entries."""
        case = await self.get_case(case_id)
        return audit.tracking_history(case)

    async def list_breached(self, limit: int = 500) -> List[Case]:
        """Active cases past their deadline right now."""
        now = self._clock()
        cases = await self._store.find_breached(now, limit)
        return [c for c in cases if c.is_breached(now)]

    def now(self) -> datetime:
        """Current time on the service clock."""
        return self._clock()

    def get_rules(self) -> WorkflowRules:
        """Current rules snapshot (read-only)."""
        return self._rules_provider.get_rules()

    async def _apply(
        self,
        case_id: str,
        operation: Callable[[CaseStateMachine, Case, datetime], TransitionResult]
    ) -> Case:
        case = await self.get_case(case_id)
        result = operation(self._machine(), case, self._clock())
        if result.case is case:
            return case
        return await commit_transition(self._store, self._dispatcher, result, case.version)
