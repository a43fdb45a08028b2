"""
Shared fixtures for the RMA workflow tests.

Time is always driven by ``FrozenClock`` so SLA arithmetic is exact.
Async code runs inside ``asyncio.run`` from plain pytest tests; keep one
``asyncio.run`` per test so stores and dispatchers stay on one loop.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List

import pytest

from rma_workflow.config import Priority, WarrantyStatus
from rma_workflow.rma.application import (
    INotifier, NotificationDispatcher, SLASweeper, WorkflowService
)
from rma_workflow.rma.domain import (
    AssignmentRule, CaseIntake, CaseStateMachine, WorkflowEvent, WorkflowRules
)
from rma_workflow.rma.infrastructure import InMemoryCaseStore, InMemoryRulesProvider

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, minutes: float = 0) -> datetime:
        self.now = self.now + timedelta(hours=hours, minutes=minutes)
        return self.now


class RecordingNotifier(INotifier):
    """Keeps every delivered event."""

    def __init__(self):
        self.events: List[WorkflowEvent] = []

    async def send(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.event_type.value for e in self.events]


def make_rules(**overrides) -> WorkflowRules:
    """Rules with Under Review/Medium = 48h and a small assignment table."""
    data = {
        "sla_hours": {
            "Under Review": {"Medium": 48, "High": 24},
            "Sent to CDS": {"Medium": 72},
        },
        "assignment_rules": [
            AssignmentRule(product_category="Projector", region="North", assignee="ana@cds.example"),
            AssignmentRule(product_category="Projector", assignee="projector-team@cds.example"),
            AssignmentRule(region="South", assignee="south-desk@cds.example"),
        ],
        "priority_assignees": {"High": "senior@cds.example", "Critical": "duty-manager@cds.example"},
        "default_assignee": "rma-desk@cds.example",
    }
    data.update(overrides)
    return WorkflowRules(**data)


def make_intake(**overrides) -> CaseIntake:
    """Valid intake for a projector at a northern site."""
    data = {
        "site_name": "Cinema Nord 4",
        "region": "North",
        "product_name": "DP4K-32B",
        "product_category": "Projector",
        "warranty_status": WarrantyStatus.IN_WARRANTY,
        "created_by": "field.tech@example.com",
        "priority": Priority.MEDIUM,
        "serial_number": "SN-0042",
        "symptoms": "Lamp fails to strike",
    }
    data.update(overrides)
    return CaseIntake(**data)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def rules() -> WorkflowRules:
    return make_rules()


@pytest.fixture
def machine(rules) -> CaseStateMachine:
    return CaseStateMachine(rules)


@pytest.fixture
def stack(rules, clock):
    """In-memory store, rules, recording notifier, service and sweeper."""
    store = InMemoryCaseStore()
    provider = InMemoryRulesProvider(rules)
    notifier = RecordingNotifier()
    dispatcher = NotificationDispatcher(notifier)
    return SimpleNamespace(
        store=store,
        provider=provider,
        notifier=notifier,
        dispatcher=dispatcher,
        clock=clock,
        service=WorkflowService(store, provider, dispatcher, clock=clock),
        sweeper=SLASweeper(store, provider, dispatcher, case_timeout_seconds=2.0, clock=clock),
    )
