"""
RMA Interfaces Layer
=====================

FastAPI routers for the RMA module.
"""

from rma_workflow.rma.interfaces.controllers import router as cases_router
from rma_workflow.rma.interfaces.controllers import workflow_router

__all__ = ["cases_router", "workflow_router"]
