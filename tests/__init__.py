"""
Test Suite for the Autopilot Session Supervisor

One test module per autopilot module:
- classification, decision, skill matching and cost governance
- execution with verification and retry
- persistence (registry, decision history, recovery)
- orchestration, operator CLI and HTTP API
"""
