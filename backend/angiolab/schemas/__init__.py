"""Pydantic Schemas — typed results returned by the record store and backup coordinator.

Invariants:
    - Schemas are detached from the ORM session (built before the session closes)
    - Domain types from core/ used for enum fields

Design Decisions:
    - Separate from models: schemas are the collaborator contract, models are persistence (ADR: DDD boundary)
"""
