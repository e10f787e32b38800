"""
Agent Observability Metrics
---------------------------
Read-side rollups over the metric tables:
  1. Token usage and cost, by model and by agent
  2. Tool effectiveness (outcomes, success rate, durations)
  3. Finding counts by severity / type / agent / confidence
  4. WSTG coverage percentage, overall and per category

Modules:
  aggregation.py - pure summarize_* functions and their get_* query wrappers
"""
