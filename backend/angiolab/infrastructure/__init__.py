"""Infrastructure Layer — storage handle and cross-cutting concerns.

Invariants:
    - Infrastructure never imports from core/ domain logic except the error hierarchy
    - Every database call is wrapped with rollback and error mapping

Design Decisions:
    - Resilient wrappers over raw engines (single responsibility)
"""
