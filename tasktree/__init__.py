"""
tasktree — Task-Orchestration Runtime

Runs trees of autonomous reasoning tasks:
- A coordinator task that reasons about the next workflow step
- Delegated child tasks with their own scope, turn limit and budget
- Multi-layer spend and time budgets enforced before every call
- Durable sessions that survive process interruption
- A durable job queue and worker pool streaming ordered progress events
"""

__version__ = "0.1.0"
__author__ = "tasktree contributors"
