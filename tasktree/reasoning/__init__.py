"""
Reasoning Module

Provider abstraction for the external reasoning backend.
"""

from tasktree.reasoning.http import HttpReasoningProvider
from tasktree.reasoning.provider import BaseReasoningProvider
from tasktree.reasoning.scripted import ScriptedReasoningProvider, ScriptedTurn

__all__ = [
    "BaseReasoningProvider",
    "HttpReasoningProvider",
    "ScriptedReasoningProvider",
    "ScriptedTurn",
]
