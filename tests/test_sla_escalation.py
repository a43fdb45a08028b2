"""
Tests: SLA breach detection, escalation and the sweeper.

Covers:
    - Breach boundary: exactly at the deadline is not a breach
    - Escalation: priority +1 (capped at Critical), count +1, new deadline
      from the escalation time, stage_entered_at untouched
    - Escalation owner: priority pool, overrides manual owners, keeps the
      owner when nothing resolves, source stays Manual when the pool
      resolves to the owner already assigned
    - Sweep scenario: 48h SLA, escalated at t+49h, not again at t+50h
    - Same read version escalated twice -> ConflictException
    - Sweeper counts conflicts and keeps going
    - A write that overruns the timeout is never cancelled; a late commit
      is counted as escalated and still notified
    - Concurrent human approvals: exactly one wins
    - Swapped rules apply from the next stage entry, not retroactively
"""

import asyncio
from datetime import timedelta

import pytest

from rma_workflow.config import AssignmentSource, EventType, Priority, Stage
from rma_workflow.core import ConflictException, InvalidTransitionException
from rma_workflow.rma.application import NotificationDispatcher, SLASweeper, WorkflowService
from rma_workflow.rma.domain import CaseStateMachine, next_priority
from rma_workflow.rma.domain.audit import tracking_history
from rma_workflow.rma.infrastructure import InMemoryCaseStore, InMemoryRulesProvider

from conftest import T0, make_intake, make_rules


def _open(machine, now=T0, **intake):
    return machine.open_case(make_intake(**intake), "case-1", "RMA-2026-001", now).case


# ═════════════════════════════════════════════════════════════════════════════
# Domain rules
# ═════════════════════════════════════════════════════════════════════════════


class TestBreachAndEscalate:

    def test_exactly_at_deadline_is_not_breached(self, machine):
        case = _open(machine)
        assert not case.is_breached(case.deadline_at)
        assert case.is_breached(case.deadline_at + timedelta(seconds=1))

    def test_escalate_before_deadline_rejected(self, machine):
        case = _open(machine)
        with pytest.raises(InvalidTransitionException):
            machine.escalate(case, 1, T0 + timedelta(hours=47))

    def test_escalation_raises_priority_and_resets_clock(self, machine):
        case = _open(machine)
        now = T0 + timedelta(hours=49)
        result = machine.escalate(case, 1, now)
        escalated = result.case

        assert escalated.priority == Priority.HIGH
        assert escalated.escalation_count == 1
        assert escalated.deadline_at == now + timedelta(hours=24)
        assert escalated.stage == Stage.UNDER_REVIEW
        assert escalated.stage_entered_at == T0
        assert escalated.last_escalated_at == now
        assert escalated.version == 2
        assert result.events[0].event_type == EventType.ESCALATION

    def test_escalation_uses_priority_pool(self, machine):
        escalated = machine.escalate(_open(machine), 1, T0 + timedelta(hours=49)).case
        assert escalated.assigned_to == "senior@cds.example"
        assert escalated.assignment_source == AssignmentSource.ESCALATION

    def test_escalation_overrides_manual_owner(self, machine):
        case = machine.assign(_open(machine), 1, "bob@cds.example", "lead", T0).case
        escalated = machine.escalate(case, case.version, T0 + timedelta(hours=49)).case
        assert escalated.assigned_to == "senior@cds.example"

    def test_escalation_keeps_owner_when_nothing_resolves(self):
        machine = CaseStateMachine(make_rules(
            assignment_rules=[], priority_assignees={}, default_assignee=None
        ))
        case = machine.assign(_open(machine), 1, "bob@cds.example", "lead", T0).case
        escalated = machine.escalate(case, case.version, T0 + timedelta(hours=49)).case
        assert escalated.assigned_to == "bob@cds.example"
        assert escalated.assignment_source == AssignmentSource.MANUAL

    def test_manual_owner_matching_pool_keeps_manual_source(self, machine):
        case = machine.assign(_open(machine), 1, "senior@cds.example", "lead", T0).case
        escalated = machine.escalate(case, case.version, T0 + timedelta(hours=49)).case
        assert escalated.assigned_to == "senior@cds.example"
        assert escalated.assignment_source == AssignmentSource.MANUAL
        assert escalated.assigned_at == case.assigned_at

    def test_critical_stays_critical(self, machine):
        case = _open(machine, priority=Priority.CRITICAL)
        escalated = machine.escalate(case, 1, case.deadline_at + timedelta(minutes=1)).case
        assert escalated.priority == Priority.CRITICAL
        assert escalated.escalation_count == 1
        assert next_priority(Priority.CRITICAL) == Priority.CRITICAL

    def test_escalation_is_in_history(self, machine):
        escalated = machine.escalate(_open(machine), 1, T0 + timedelta(hours=49)).case
        last = tracking_history(escalated)[-1]
        assert last.event == "escalation"
        assert last.from_priority == "Medium"
        assert last.to_priority == "High"
        assert last.actor == "system"

    def test_terminal_case_cannot_escalate(self, machine):
        case = machine.reject(_open(machine), 1, "Duplicate", "ops", T0)
        with pytest.raises(InvalidTransitionException):
            machine.escalate(case.case, 2, T0 + timedelta(days=30))


# ═════════════════════════════════════════════════════════════════════════════
# Sweeper
# ═════════════════════════════════════════════════════════════════════════════


class TestSweeper:

    def test_escalates_once_then_waits_for_new_deadline(self, stack):
        async def scenario():
            case = await stack.service.open_case(make_intake())

            stack.clock.advance(hours=49)
            first = await stack.sweeper.run_cycle()

            stack.clock.advance(hours=1)
            second = await stack.sweeper.run_cycle()

            await stack.dispatcher.drain()
            return case, first, second, await stack.store.get(case.case_id)

        case, first, second, stored = asyncio.run(scenario())

        assert first["escalated"] == 1
        assert second["cases_checked"] == 0
        assert second["escalated"] == 0
        assert stored.priority == Priority.HIGH
        assert stored.escalation_count == 1
        assert stored.deadline_at == T0 + timedelta(hours=49) + timedelta(hours=24)
        assert stored.version == case.version + 1
        assert "escalation" in stack.notifier.types()

    def test_repeated_escalation_never_lowers_priority(self, stack):
        async def scenario():
            case = await stack.service.open_case(make_intake(priority=Priority.LOW))
            priorities = [case.priority]
            for _ in range(4):
                current = await stack.store.get(case.case_id)
                stack.clock.now = current.deadline_at + timedelta(minutes=1)
                await stack.sweeper.run_cycle()
                priorities.append((await stack.store.get(case.case_id)).priority)
            return priorities, await stack.store.get(case.case_id)

        priorities, final = asyncio.run(scenario())

        assert priorities == [
            Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL, Priority.CRITICAL
        ]
        assert final.escalation_count == 4

    def test_same_read_version_escalated_twice_conflicts(self, stack):
        async def scenario():
            case = await stack.service.open_case(make_intake())
            read = await stack.store.get(case.case_id)
            machine = CaseStateMachine(stack.provider.get_rules())
            now = T0 + timedelta(hours=49)

            first = machine.escalate(read, read.version, now)
            await stack.store.update(first.case, read.version)

            second = machine.escalate(read, read.version, now)
            with pytest.raises(ConflictException):
                await stack.store.update(second.case, read.version)
            return await stack.store.get(case.case_id)

        stored = asyncio.run(scenario())
        assert stored.escalation_count == 1

    def test_human_write_between_read_and_escalate_is_a_conflict(self, stack):
        class RacingStore(InMemoryCaseStore):
            """Lets a human comment land right after the breach query."""

            def __init__(self, service_ref):
                super().__init__()
                self.service_ref = service_ref

            async def find_breached(self, now, limit=500):
                cases = await super().find_breached(now, limit)
                for case in cases:
                    await self.service_ref[0].add_comment(case.case_id, case.version, "ops", "Chasing CDS")
                return cases

        async def scenario():
            service_ref = []
            store = RacingStore(service_ref)
            provider = InMemoryRulesProvider(stack.provider.get_rules())
            dispatcher = NotificationDispatcher(None)
            service = WorkflowService(store, provider, dispatcher, clock=stack.clock)
            service_ref.append(service)
            sweeper = SLASweeper(store, provider, dispatcher, clock=stack.clock)

            case = await service.open_case(make_intake())
            stack.clock.advance(hours=49)
            summary = await sweeper.run_cycle()
            return summary, await store.get(case.case_id)

        summary, stored = asyncio.run(scenario())

        assert summary["conflicts"] == 1
        assert summary["escalated"] == 0
        assert stored.escalation_count == 0
        assert stored.comments[-1].body == "Chasing CDS"

    def test_terminal_cases_are_never_swept(self, stack):
        async def scenario():
            case = await stack.service.open_case(make_intake())
            await stack.service.reject(case.case_id, case.version, "Duplicate", "ops")
            stack.clock.advance(hours=500)
            return await stack.sweeper.run_cycle()

        summary = asyncio.run(scenario())
        assert summary["cases_checked"] == 0

    def test_slow_case_times_out_and_cycle_continues(self, stack):
        class SlowStore(InMemoryCaseStore):
            async def update(self, case, expected_version):
                if case.rma_number.endswith("001"):
                    await asyncio.sleep(5)
                return await super().update(case, expected_version)

        async def scenario():
            store = SlowStore()
            provider = stack.provider
            dispatcher = NotificationDispatcher(None)
            service = WorkflowService(store, provider, dispatcher, clock=stack.clock)
            sweeper = SLASweeper(
                store, provider, dispatcher,
                case_timeout_seconds=0.05, late_write_grace_seconds=0.1, clock=stack.clock
            )

            await service.open_case(make_intake())
            await service.open_case(make_intake(region="South", product_category="Cable"))
            stack.clock.advance(hours=80)
            return await sweeper.run_cycle()

        summary = asyncio.run(scenario())
        assert summary["timeouts"] == 1
        assert summary["escalated"] == 1

    def test_write_committed_after_timeout_is_counted_and_notified(self, stack):
        class CommitThenStall(InMemoryCaseStore):
            async def update(self, case, expected_version):
                saved = await super().update(case, expected_version)
                if case.escalation_count:
                    await asyncio.sleep(0.3)
                return saved

        async def scenario():
            store = CommitThenStall()
            service = WorkflowService(store, stack.provider, stack.dispatcher, clock=stack.clock)
            sweeper = SLASweeper(
                store, stack.provider, stack.dispatcher,
                case_timeout_seconds=0.05, late_write_grace_seconds=5.0, clock=stack.clock
            )

            case = await service.open_case(make_intake())
            stack.clock.advance(hours=49)
            summary = await sweeper.run_cycle()
            await stack.dispatcher.drain()
            return summary, await store.get(case.case_id)

        summary, stored = asyncio.run(scenario())

        assert summary["timeouts"] == 1
        assert summary["escalated"] == 1
        assert stored.escalation_count == 1
        assert stored.priority == Priority.HIGH
        assert stack.notifier.types().count("escalation") == 1

    def test_write_in_flight_is_not_cancelled_by_timeout(self, stack):
        class StallThenCommit(InMemoryCaseStore):
            async def update(self, case, expected_version):
                if case.escalation_count:
                    await asyncio.sleep(0.2)
                return await super().update(case, expected_version)

        async def scenario():
            store = StallThenCommit()
            service = WorkflowService(store, stack.provider, stack.dispatcher, clock=stack.clock)
            sweeper = SLASweeper(
                store, stack.provider, stack.dispatcher,
                case_timeout_seconds=0.05, late_write_grace_seconds=5.0, clock=stack.clock
            )

            case = await service.open_case(make_intake())
            stack.clock.advance(hours=49)
            summary = await sweeper.run_cycle()
            await stack.dispatcher.drain()
            return summary, await store.get(case.case_id)

        summary, stored = asyncio.run(scenario())

        assert summary["escalated"] == 1
        assert stored.escalation_count == 1
        assert "escalation" in stack.notifier.types()


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════════


class TestConcurrentApprovals:

    def test_exactly_one_approval_wins(self, stack):
        async def scenario():
            case = await stack.service.open_case(make_intake())
            sent = await stack.service.submit_to_cds(case.case_id, case.version, "CDS-1", "ops")

            results = await asyncio.gather(
                stack.service.record_cds_approval(sent.case_id, sent.version, "agent-a"),
                stack.service.record_cds_approval(sent.case_id, sent.version, "agent-b"),
                return_exceptions=True,
            )
            return results, await stack.store.get(case.case_id)

        results, stored = asyncio.run(scenario())

        conflicts = [r for r in results if isinstance(r, ConflictException)]
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(conflicts) == 1
        assert stored.stage == Stage.CDS_APPROVED
        approvals = [h for h in tracking_history(stored) if h.to_stage == "CDS Approved"]
        assert len(approvals) == 1


# ═════════════════════════════════════════════════════════════════════════════
# Rules changes
# ═════════════════════════════════════════════════════════════════════════════


class TestRulesSwap:

    def test_new_rules_apply_on_next_stage_entry_only(self, stack):
        async def scenario():
            case = await stack.service.open_case(make_intake())
            stack.provider.set_rules(make_rules(
                sla_hours={"Under Review": {"Medium": 12}, "Sent to CDS": {"Medium": 6}}
            ))
            unchanged = await stack.store.get(case.case_id)

            stack.clock.advance(hours=1)
            sent = await stack.service.submit_to_cds(case.case_id, case.version, "CDS-1", "ops")
            return unchanged, sent

        unchanged, sent = asyncio.run(scenario())

        assert unchanged.deadline_at == T0 + timedelta(hours=48)
        assert sent.deadline_at == T0 + timedelta(hours=1) + timedelta(hours=6)
