"""
RMA Infrastructure Models
==========================

SQLAlchemy ORM models for the RMA module.

Stage sub-records and the comment log are stored as JSON on the case row;
the case is always read and written as a whole.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rma_workflow.infrastructure.database import Base


class CaseModel(Base):
    """
    Database model for the Case entity.

    Maps to the 'rma_cases' table. ``version`` is the compare-and-set
    column used by every update.
    """
    __tablename__ = "rma_cases"

    # Identity
    case_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rma_number: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)

    # Intake
    site_name: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    product_category: Mapped[str] = mapped_column(String(100), nullable=False)
    warranty_status: Mapped[str] = mapped_column(String(50), nullable=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    serial_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    symptoms: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    defective_part_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    defective_part_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Workflow state
    stage: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False)
    stage_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sla_clock_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deadline_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Ownership
    assigned_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    assignment_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Stage sub-records
    cds_submission: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    cds_approval: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    outbound_shipment: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    return_shipment: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    completion: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Append-only log
    comments: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)


class RMASequenceModel(Base):
    """
    Per-year counter behind RMA numbers.

    Maps to the 'rma_sequences' table.
    """
    __tablename__ = "rma_sequences"

    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
