"""
API Module

FastAPI adapter: job submission, session state and SSE progress.
"""

from tasktree.api.app import create_app

__all__ = ["create_app"]
