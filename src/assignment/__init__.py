"""
Assignment Module
==================

Bounded context for ticket assignment and escalation.

Layers:
- domain: Ticket and staff entities, escalation policy
- application: Orchestrator tick, assignment actions, DTOs
- infrastructure: SQLAlchemy repositories, config watcher, sinks, scheduler
- interfaces: FastAPI routes
"""
