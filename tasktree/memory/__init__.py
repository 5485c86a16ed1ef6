"""
Memory Module

Session state: the resumable identity of a workflow instance.
"""

from tasktree.memory.session import (
    InMemorySessionCache,
    InMemorySessionRepository,
    RedisSessionCache,
    Session,
    SessionStore,
    SqlSessionRepository,
)

__all__ = [
    "InMemorySessionCache",
    "InMemorySessionRepository",
    "RedisSessionCache",
    "Session",
    "SessionStore",
    "SqlSessionRepository",
]
