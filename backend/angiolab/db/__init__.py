"""Database Infrastructure — SQLAlchemy Base shared by models and migrations.

Invariants:
    - Engines are created only by DatabaseSessionManager (infrastructure/database.py)

Design Decisions:
    - aiosqlite for the single-site deployment, asyncpg for PostgreSQL; both async
"""
