"""
Shared Kernel Module
====================

Generic infrastructure used by the assignment module: request middleware,
structured logging and metrics export.

DO NOT add assignment or escalation rules to the shared kernel.
"""

__version__ = "1.0.0"
