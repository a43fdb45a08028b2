"""
RMA Workflow Module
===================

Bounded context for Return Merchandise Authorization cases: the stage
state machine, SLA deadlines and escalation, owner assignment and the
per-case audit log.
"""
