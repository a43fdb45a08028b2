"""
SLA Sweeper
===========

Periodic escalation of overdue cases. The only caller of
``CaseStateMachine.escalate``.

Each candidate is escalated against the version returned by the breach
query, so a human update that lands first turns the sweep write into a
``ConflictException``; the case is skipped and picked up again next cycle.

The per-case timeout never cancels a write in flight: a write that overruns
it keeps running, the cycle moves on, and its outcome is collected at the
end of the cycle. Events of a write that commits late are still dispatched.
"""

import asyncio
from datetime import datetime
from typing import Dict, Optional

from rma_workflow.core import (
    ConflictException, InvalidTransitionException,
    RepositoryException, ResourceNotFoundException
)
from rma_workflow.rma.application.services import (
    Clock, ICaseStore, IRulesProvider, NotificationDispatcher,
    commit_transition, utcnow
)
from rma_workflow.rma.domain import Case, CaseStateMachine
from rma_workflow.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


class SLASweeper:
    """
    Escalates every active case whose deadline has passed.

    Run periodically by ``SweepScheduler``; ``run_cycle`` can also be called
    directly.
    """

    def __init__(
        self,
        case_store: ICaseStore,
        rules_provider: IRulesProvider,
        dispatcher: NotificationDispatcher,
        case_timeout_seconds: float = 10.0,
        late_write_grace_seconds: float = 30.0,
        batch_limit: int = 500,
        clock: Optional[Clock] = None
    ):
        self._store = case_store
        self._rules_provider = rules_provider
        self._dispatcher = dispatcher
        self._case_timeout = case_timeout_seconds
        self._late_write_grace = late_write_grace_seconds
        self._batch_limit = batch_limit
        self._clock = clock or utcnow

    async def run_cycle(self, now: Optional[datetime] = None) -> dict:
        """
        One sweep over breached cases.

        ``timeouts`` counts writes that overran the per-case timeout; the
        final outcome of those writes is counted as well once known.

        Args:
            now: Evaluation time (defaults to the clock)

        Returns:
            Summary of the cycle
        """
        now = now or self._clock()
        summary = {
            "cases_checked": 0,
            "escalated": 0,
            "conflicts": 0,
            "timeouts": 0,
            "skipped": 0,
            "failures": 0,
        }
        late_writes: Dict[asyncio.Future, Case] = {}

        with log_latency(logger, "sla_sweep", evaluated_at=now.isoformat()):
            candidates = await self._store.find_breached(now, self._batch_limit)
            # One rules snapshot for the whole cycle
            machine = CaseStateMachine(self._rules_provider.get_rules())

            for case in candidates:
                summary["cases_checked"] += 1
                outcome = await self._process(machine, case, now, late_writes)
                summary[outcome] += 1

            if late_writes:
                await self._collect_late_writes(late_writes, summary)

        logger.info("SLA sweep complete", extra=summary)
        return summary

    async def _process(
        self,
        machine: CaseStateMachine,
        case: Case,
        now: datetime,
        late_writes: Dict[asyncio.Future, Case]
    ) -> str:
        write = None
        try:
            result = machine.escalate(case, case.version, now)
            write = asyncio.ensure_future(
                commit_transition(self._store, self._dispatcher, result, case.version)
            )
            saved = await asyncio.wait_for(asyncio.shield(write), timeout=self._case_timeout)
            self._log_escalated(saved)
            return "escalated"
        except asyncio.TimeoutError:
            late_writes[write] = case
            logger.warning(
                "Case escalation write overran the timeout, collecting it at the end of the cycle",
                extra={"case_id": case.case_id, "timeout_seconds": self._case_timeout}
            )
            return "timeouts"
        except Exception as e:
            return self._classify(case, e)

    async def _collect_late_writes(
        self,
        late_writes: Dict[asyncio.Future, Case],
        summary: dict
    ) -> None:
        done, pending = await asyncio.wait(late_writes, timeout=self._late_write_grace)

        for write in done:
            case = late_writes[write]
            error = write.exception()
            if error is None:
                self._log_escalated(write.result())
                summary["escalated"] += 1
            else:
                summary[self._classify(case, error)] += 1

        for write in pending:
            # Left running; commit_transition dispatches its events if it lands
            case = late_writes[write]
            logger.error(
                "Case escalation write still pending after the grace period",
                extra={"case_id": case.case_id}
            )
            write.add_done_callback(lambda w, c=case: self._log_late_outcome(w, c))

    def _log_late_outcome(self, write: asyncio.Future, case: Case) -> None:
        if write.cancelled():
            return
        error = write.exception()
        if error is None:
            self._log_escalated(write.result())
        else:
            logger.error(
                "Late escalation write failed",
                extra={"case_id": case.case_id, "error": str(error)}
            )

    def _classify(self, case: Case, error: BaseException) -> str:
        if isinstance(error, ConflictException):
            logger.warning(
                "Case changed during sweep, retrying next cycle",
                extra={"case_id": case.case_id, "version": case.version}
            )
            return "conflicts"
        if isinstance(error, (InvalidTransitionException, ResourceNotFoundException)):
            logger.info(
                "Case no longer eligible for escalation",
                extra={"case_id": case.case_id, "reason": str(error)}
            )
            return "skipped"
        if isinstance(error, RepositoryException):
            logger.error(
                "Case store failure during sweep",
                extra={"case_id": case.case_id, "error": str(error)}
            )
            return "failures"
        raise error

    @staticmethod
    def _log_escalated(saved: Case) -> None:
        logger.info(
            "Case escalated",
            extra={
                "case_id": saved.case_id,
                "rma_number": saved.rma_number,
                "priority": saved.priority.value,
                "escalation_count": saved.escalation_count,
                "assigned_to": saved.assigned_to
            }
        )
