"""Services Layer — record store, audit log, backups, export and schema provisioning.

Invariants:
    - Every service receives the DatabaseSessionManager at construction (no global handle)
    - Mutations go through RecordStore or BackupCoordinator.restore_backup only

Design Decisions:
    - One service per concern, wired explicitly by the host lifespan
"""
