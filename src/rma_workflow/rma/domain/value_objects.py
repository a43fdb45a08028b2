"""
RMA Value Objects
==================

Immutable value objects for the RMA domain.

``WorkflowRules`` is the snapshot handed out by the rules provider. It is
frozen so that a reload swaps the whole snapshot instead of mutating the one
an evaluation is already using.
"""

import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rma_workflow.config import Stage, Priority, TERMINAL_STAGES


DEFAULT_SLA_HOURS = {
    Priority.LOW.value: 168,
    Priority.MEDIUM.value: 72,
    Priority.HIGH.value: 24,
    Priority.CRITICAL.value: 4,
}


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class - all deadline math in one place.
    """

    @staticmethod
    def calculate_deadline(
        clock_started_at: datetime,
        sla_hours: float
    ) -> datetime:
        """
        Calculate the deadline for the current stage.

        Args:
            clock_started_at: When the SLA clock for this stage started
            sla_hours: SLA for the stage and priority

        Returns:
            The SLA deadline
        """
        return clock_started_at + timedelta(hours=sla_hours)

    @staticmethod
    def days_elapsed(start: datetime, end: datetime) -> int:
        """Whole days from start to end, rounded up, never negative."""
        return max(0, math.ceil((end - start).total_seconds() / 86400))


class AssignmentRule(BaseModel):
    """
    Owner rule matched on product category and/or region.

    A rule with neither field set never matches; use ``default_assignee``.
    """
    model_config = ConfigDict(frozen=True)

    product_category: Optional[str] = Field(None, description="Product category to match")
    region: Optional[str] = Field(None, description="Site region to match")
    assignee: str = Field(..., min_length=1, description="Owner identity")

    @property
    def specificity(self) -> int:
        """2 for product+region, 1 for a single key, 0 for neither."""
        return int(self.product_category is not None) + int(self.region is not None)


class WorkflowRules(BaseModel):
    """
    Workflow rules loaded from YAML.

    SLA = sla_hours[stage][priority], falling back to
    default_sla_hours[priority] when the stage has no entry.
    Escalation re-arms with the SLA at the raised priority, so there is no
    separate escalation table; unknown keys are rejected.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    sla_hours: Dict[str, Dict[str, float]] = Field(
        default_factory=dict,
        description="SLA in hours by stage, then priority"
    )
    default_sla_hours: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SLA_HOURS),
        description="Fallback SLA in hours by priority"
    )
    assignment_rules: List[AssignmentRule] = Field(
        default_factory=list,
        description="Owner rules by product category and region"
    )
    priority_assignees: Dict[str, str] = Field(
        default_factory=dict,
        description="Senior owner pool per priority, used on escalation"
    )
    default_assignee: Optional[str] = Field(
        None,
        description="Owner when no rule matches"
    )

    @field_validator("sla_hours")
    @classmethod
    def validate_sla_hours(cls, v: Dict[str, Dict[str, float]]) -> Dict[str, Dict[str, float]]:
        """Only active stages and known priorities, positive hours."""
        valid_stages = {s.value for s in Stage if s not in TERMINAL_STAGES}
        for stage, by_priority in v.items():
            if stage not in valid_stages:
                raise ValueError(f"sla_hours: unknown or terminal stage '{stage}'")
            cls._check_priority_hours(by_priority, f"sla_hours[{stage}]")
        return v

    @field_validator("default_sla_hours")
    @classmethod
    def validate_default_sla_hours(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Every priority needs a fallback."""
        cls._check_priority_hours(v, "default_sla_hours")
        merged = dict(DEFAULT_SLA_HOURS)
        merged.update(v)
        return merged

    @field_validator("priority_assignees")
    @classmethod
    def validate_priority_assignees(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Keys must be priorities."""
        valid = {p.value for p in Priority}
        for priority in v:
            if priority not in valid:
                raise ValueError(f"priority_assignees: unknown priority '{priority}'")
        return v

    @model_validator(mode="after")
    def validate_assignment_rules(self) -> "WorkflowRules":
        """Rules must match on something."""
        for rule in self.assignment_rules:
            if rule.specificity == 0:
                raise ValueError(
                    f"assignment rule for '{rule.assignee}' needs product_category or region"
                )
        return self

    @staticmethod
    def _check_priority_hours(by_priority: Dict[str, float], where: str) -> None:
        valid = {p.value for p in Priority}
        for priority, hours in by_priority.items():
            if priority not in valid:
                raise ValueError(f"{where}: unknown priority '{priority}'")
            if hours <= 0:
                raise ValueError(f"{where}[{priority}] must be positive, got {hours}")

    def get_sla_hours(self, stage: Stage, priority: Priority) -> float:
        """
        SLA in hours for a stage at a priority.

        Example:
            sla_hours["Under Review"]["Medium"] = 48 -> 48
            no entry for "CDS Approved" -> default_sla_hours["Medium"]
        """
        stage_hours = self.sla_hours.get(stage.value, {})
        if priority.value in stage_hours:
            return stage_hours[priority.value]
        return self.default_sla_hours[priority.value]

    def deadline_for(
        self,
        stage: Stage,
        priority: Priority,
        clock_started_at: datetime
    ) -> Optional[datetime]:
        """Deadline for an active stage, ``None`` for terminal ones."""
        if stage in TERMINAL_STAGES:
            return None
        return SLACalculator.calculate_deadline(
            clock_started_at, self.get_sla_hours(stage, priority)
        )


def format_rma_number(year: int, sequence: int) -> str:
    """Human-facing number, e.g. ``RMA-2026-007``."""
    return f"RMA-{year}-{sequence:03d}"
