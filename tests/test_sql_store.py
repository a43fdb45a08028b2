"""
Tests: SQLAlchemy case store on SQLite (aiosqlite).

Covers:
    - Round trip of a fully driven case, sub-records and comments included
    - Compare-and-set: stale version -> ConflictException, unknown -> 404
    - Breach query returns only active overdue cases, oldest deadline first
    - RMA sequence allocation per year
    - Sub-record notes and leg durations survive the JSON columns
    - Driver connection errors (OSError) surface as RepositoryException
    - Workflow service on top of the SQL store
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from rma_workflow.config import Priority, Stage
from rma_workflow.core import ConflictException, RepositoryException, ResourceNotFoundException
from rma_workflow.infrastructure.database import close_database, create_tables, init_database
from rma_workflow.rma.application import NotificationDispatcher, SLASweeper, WorkflowService
from rma_workflow.rma.domain import CaseStateMachine
from rma_workflow.rma.infrastructure import InMemoryRulesProvider, SQLAlchemyCaseStore

from conftest import T0, make_intake


def _run(tmp_path, scenario):
    """Run ``scenario(store)`` against a fresh SQLite file."""
    async def wrapper():
        init_database(f"sqlite+aiosqlite:///{tmp_path / 'rma.db'}")
        await create_tables()
        try:
            return await scenario(SQLAlchemyCaseStore())
        finally:
            await close_database()

    return asyncio.run(wrapper())


def _open(machine, case_id="case-1", rma_number="RMA-2026-001", now=T0, **intake):
    return machine.open_case(make_intake(**intake), case_id, rma_number, now).case


# ═════════════════════════════════════════════════════════════════════════════
# Store operations
# ═════════════════════════════════════════════════════════════════════════════


class TestSQLAlchemyCaseStore:

    def test_round_trip_of_driven_case(self, tmp_path, machine):
        case = _open(machine)
        steps = [
            lambda c, t: machine.submit_to_cds(c, c.version, "CDS-77", "ops", t),
            lambda c, t: machine.record_cds_approval(c, c.version, "cds.agent", t, cds_case_id="C-9"),
            lambda c, t: machine.record_shipment(c, c.version, "1Z999", "UPS", t, "warehouse", t),
        ]
        now = T0
        for step in steps:
            now = now + timedelta(hours=1)
            case = step(case, now).case

        async def scenario(store):
            await store.create(case)
            return await store.get(case.case_id)

        loaded = _run(tmp_path, scenario)

        assert loaded == case
        assert loaded.deadline_at.tzinfo is not None
        assert loaded.cds_approval.cds_case_id == "C-9"
        assert loaded.outbound_shipment.shipped_date == T0 + timedelta(hours=3)
        assert [c.id for c in loaded.comments] == [c.id for c in case.comments]

    def test_round_trip_keeps_notes_and_leg_durations(self, tmp_path, machine):
        case = _open(machine)
        steps = [
            lambda c, t: machine.submit_to_cds(c, c.version, "CDS-77", "ops", t, notes="Sent with photos"),
            lambda c, t: machine.record_cds_approval(c, c.version, "cds.agent", t, notes="Approved by phone"),
            lambda c, t: machine.record_shipment(c, c.version, "1Z999", "UPS", t, "warehouse", t),
            lambda c, t: machine.confirm_replacement_receipt(
                c, c.version, c.outbound_shipment.shipped_date + timedelta(days=2),
                "site.tech", t + timedelta(days=2)
            ),
        ]
        now = T0
        for step in steps:
            now = now + timedelta(hours=1)
            case = step(case, now).case
        case = machine.initiate_return(case, case.version, "1Z111", "UPS", "site.tech", now + timedelta(days=3)).case
        case = machine.confirm_return_delivery(case, case.version, "cds.agent", now + timedelta(days=7)).case

        async def scenario(store):
            await store.create(case)
            return await store.get(case.case_id)

        loaded = _run(tmp_path, scenario)

        assert loaded == case
        assert loaded.cds_submission.notes == "Sent with photos"
        assert loaded.cds_approval.notes == "Approved by phone"
        assert loaded.outbound_shipment.days_to_site == 2
        assert loaded.return_shipment.days_return_to_cds == 4

    def test_get_unknown_returns_none(self, tmp_path):
        async def scenario(store):
            return await store.get("missing")

        assert _run(tmp_path, scenario) is None

    def test_stale_write_conflicts(self, tmp_path, machine):
        case = _open(machine)

        async def scenario(store):
            await store.create(case)
            first = machine.submit_to_cds(case, 1, "CDS-77", "ops", T0).case
            await store.update(first, 1)

            second = machine.reject(case, 1, "Duplicate", "ops", T0).case
            with pytest.raises(ConflictException) as exc:
                await store.update(second, 1)
            return exc.value, await store.get(case.case_id)

        error, stored = _run(tmp_path, scenario)

        assert error.actual_version == 2
        assert stored.stage == Stage.SENT_TO_CDS
        assert stored.version == 2

    def test_update_unknown_case(self, tmp_path, machine):
        case = _open(machine)

        async def scenario(store):
            with pytest.raises(ResourceNotFoundException):
                await store.update(case, 1)

        _run(tmp_path, scenario)

    def test_find_breached(self, tmp_path, machine):
        overdue = _open(machine, "case-1", "RMA-2026-001", now=T0)
        later = _open(machine, "case-2", "RMA-2026-002", now=T0 + timedelta(hours=10))
        fresh = _open(machine, "case-3", "RMA-2026-003", now=T0 + timedelta(hours=40))
        closed = machine.reject(
            _open(machine, "case-4", "RMA-2026-004"), 1, "Duplicate", "ops", T0
        ).case

        async def scenario(store):
            for case in (fresh, later, overdue, closed):
                await store.create(case)
            return await store.find_breached(T0 + timedelta(hours=60))

        breached = _run(tmp_path, scenario)
        assert [c.case_id for c in breached] == ["case-1", "case-2"]

    def test_rma_sequence_per_year(self, tmp_path):
        async def scenario(store):
            return [
                await store.next_rma_sequence(2026),
                await store.next_rma_sequence(2026),
                await store.next_rma_sequence(2027),
                await store.next_rma_sequence(2026),
            ]

        assert _run(tmp_path, scenario) == [1, 2, 1, 3]


# ═════════════════════════════════════════════════════════════════════════════
# Service on the SQL store
# ═════════════════════════════════════════════════════════════════════════════


class TestServiceOnSQLStore:

    def test_open_escalate_and_complete(self, tmp_path, rules, clock):
        async def scenario(store):
            provider = InMemoryRulesProvider(rules)
            dispatcher = NotificationDispatcher(None)
            service = WorkflowService(store, provider, dispatcher, clock=clock)
            sweeper = SLASweeper(store, provider, dispatcher, clock=clock)

            case = await service.open_case(make_intake())
            clock.advance(hours=49)
            summary = await sweeper.run_cycle()
            escalated = await service.get_case(case.case_id)

            case = await service.submit_to_cds(case.case_id, escalated.version, "CDS-77", "ops")
            case = await service.record_cds_approval(case.case_id, case.version, "cds.agent")
            return summary, escalated, case

        summary, escalated, case = _run(tmp_path, scenario)

        assert summary["escalated"] == 1
        assert escalated.rma_number == "RMA-2026-001"
        assert escalated.priority == Priority.HIGH
        assert escalated.assigned_to == "senior@cds.example"
        assert case.stage == Stage.CDS_APPROVED
        assert case.version == 4

    def test_unknown_case_is_not_found(self, tmp_path, rules, clock):
        async def scenario(store):
            service = WorkflowService(
                store, InMemoryRulesProvider(rules), NotificationDispatcher(None), clock=clock
            )
            with pytest.raises(ResourceNotFoundException):
                await service.get_case("missing")

        _run(tmp_path, scenario)


# ═════════════════════════════════════════════════════════════════════════════
# Connection failures
# ═════════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def _refused_session():
    raise ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 5432)")
    yield


class TestConnectionFailures:

    @pytest.fixture
    def store(self):
        return SQLAlchemyCaseStore(session_factory=_refused_session)

    def test_get_raises_repository_error(self, store):
        with pytest.raises(RepositoryException) as exc:
            asyncio.run(store.get("case-1"))

        assert isinstance(exc.value.__cause__, ConnectionRefusedError)

    def test_every_operation_is_wrapped(self, store, machine):
        case = _open(machine)
        operations = [
            lambda: store.create(case),
            lambda: store.update(case, 1),
            lambda: store.find_breached(T0),
            lambda: store.next_rma_sequence(2026),
        ]

        for operation in operations:
            with pytest.raises(RepositoryException):
                asyncio.run(operation())

    def test_sweep_cycle_fails_with_repository_error(self, store, rules, clock):
        sweeper = SLASweeper(
            store, InMemoryRulesProvider(rules), NotificationDispatcher(None), clock=clock
        )

        with pytest.raises(RepositoryException):
            asyncio.run(sweeper.run_cycle())
