"""
Shared Kernel Module
====================

Generic infrastructure used by the RMA module: structured logging and API
middleware. No workflow rules live here.
"""
