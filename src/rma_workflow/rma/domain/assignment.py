"""
Assignment Resolver
===================

Picks a case owner from a rules snapshot. Pure: no I/O, no global state.

Resolution order:
1. product category + region rule
2. product-category-only rule
3. region-only rule
4. default assignee

On escalation a priority-tiered assignee, when configured for the new
priority, takes precedence over all of the above.
"""

from dataclasses import dataclass
from typing import Optional

from rma_workflow.config import Priority
from rma_workflow.rma.domain.value_objects import WorkflowRules


@dataclass(frozen=True)
class AssignmentDecision:
    """Resolved owner and the rule tier that produced it."""
    assignee: Optional[str]
    matched_by: str

    @property
    def is_assigned(self) -> bool:
        return self.assignee is not None


class AssignmentResolver:
    """Resolves owners against one ``WorkflowRules`` snapshot."""

    def __init__(self, rules: WorkflowRules):
        self._rules = rules

    def resolve(
        self,
        product_category: Optional[str],
        region: Optional[str],
        priority: Optional[Priority] = None,
        for_escalation: bool = False
    ) -> AssignmentDecision:
        """
        Resolve an owner.

        Args:
            product_category: Case product category
            region: Site region
            priority: Case priority (after escalation, the new one)
            for_escalation: Consult the priority-tiered pool first

        Returns:
            AssignmentDecision; ``assignee`` is None when nothing matches
        """
        if for_escalation and priority is not None:
            senior = self._rules.priority_assignees.get(priority.value)
            if senior:
                return AssignmentDecision(senior, "priority")

        product = _normalise(product_category)
        site_region = _normalise(region)

        exact = product_only = region_only = None
        for rule in self._rules.assignment_rules:
            rule_product = _normalise(rule.product_category)
            rule_region = _normalise(rule.region)

            if rule_product and rule_region:
                if exact is None and rule_product == product and rule_region == site_region:
                    exact = rule.assignee
            elif rule_product:
                if product_only is None and rule_product == product:
                    product_only = rule.assignee
            elif rule_region:
                if region_only is None and rule_region == site_region:
                    region_only = rule.assignee

        if exact:
            return AssignmentDecision(exact, "product_region")
        if product_only:
            return AssignmentDecision(product_only, "product")
        if region_only:
            return AssignmentDecision(region_only, "region")
        if self._rules.default_assignee:
            return AssignmentDecision(self._rules.default_assignee, "default")
        return AssignmentDecision(None, "unassigned")


def _normalise(value: Optional[str]) -> Optional[str]:
    # Rule keys are matched case-insensitively
    if value is None:
        return None
    value = value.strip().lower()
    return value or None
