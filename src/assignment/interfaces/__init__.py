"""
Assignment Interfaces Layer
============================

Interface adapters (controllers) for the assignment orchestrator.

Contains:
- Controllers: FastAPI route handlers

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from assignment.interfaces.controllers import assignment_router

__all__ = ["assignment_router"]
