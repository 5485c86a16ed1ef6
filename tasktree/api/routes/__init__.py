"""
API Routes
"""

from tasktree.api.routes import health, jobs, sessions

__all__ = ["health", "jobs", "sessions"]
