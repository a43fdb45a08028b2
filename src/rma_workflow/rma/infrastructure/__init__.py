"""
RMA Infrastructure Layer
=========================

Concrete implementations of the collaborator interfaces:
- Case stores (SQLAlchemy, in-memory)
- Rules provider with YAML hot reload
- Webhook notifier and sweep scheduler
"""

from rma_workflow.rma.infrastructure.repositories import (
    SQLAlchemyCaseStore,
    InMemoryCaseStore,
    InMemoryRulesProvider,
)
from rma_workflow.rma.infrastructure.external import (
    RulesConfigManager,
    WebhookNotifier,
    CircuitBreaker,
    SweepScheduler,
)

__all__ = [
    "SQLAlchemyCaseStore",
    "InMemoryCaseStore",
    "InMemoryRulesProvider",
    "RulesConfigManager",
    "WebhookNotifier",
    "CircuitBreaker",
    "SweepScheduler",
]
