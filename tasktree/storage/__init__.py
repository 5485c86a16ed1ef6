"""
Storage Module

SQLModel tables and engine helpers backing the durable session,
job and audit repositories.
"""

from tasktree.storage.database import create_db_engine, from_db_datetime, init_schema, to_db_datetime
from tasktree.storage.models import AuditRecord, JobRecord, SessionRecord

__all__ = [
    "AuditRecord",
    "JobRecord",
    "SessionRecord",
    "create_db_engine",
    "from_db_datetime",
    "init_schema",
    "to_db_datetime",
]
