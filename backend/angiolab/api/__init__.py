"""API Layer — host probes and error handlers.

Invariants:
    - Routes registered explicitly in main.py (no auto-discovery)
    - All endpoints return structured JSON responses

Design Decisions:
    - Clinical operations are a Python API; the host exposes only health probes
"""
