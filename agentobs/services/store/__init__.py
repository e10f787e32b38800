"""
Agent Observability Event Store
-------------------------------
Persistence operations over the shared ORM models.

Modules:
  events.py  - append-only hook events, HITL status transitions, filter options
  metrics.py - token/tool/finding/coverage writes and session rollups
"""
