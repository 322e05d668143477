"""Infrastructure layer — SQLite persistence, locks, and background tasks.

Depends on the domain layer and SQLAlchemy only. Services reach the
database exclusively through :class:`~dslctl.infrastructure.store.Store`.
"""
