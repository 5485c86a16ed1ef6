"""
Budget Module

Spend and time authority for task trees: the governor, cost estimates,
the credit ledger and the spend-rate monitor.
"""

from tasktree.budget.anomaly import SpendRateMonitor
from tasktree.budget.credits import OPERATION_COSTS, CreditLedger
from tasktree.budget.governor import (
    Authorization,
    BudgetGovernor,
    BudgetSnapshot,
    CommitResult,
    DenialKind,
    RunAccount,
)
from tasktree.budget.pricing import COST_CLASS_ESTIMATES, MODEL_PRICING, calculate_cost, estimate_for

__all__ = [
    "Authorization",
    "BudgetGovernor",
    "BudgetSnapshot",
    "COST_CLASS_ESTIMATES",
    "CommitResult",
    "CreditLedger",
    "DenialKind",
    "MODEL_PRICING",
    "OPERATION_COSTS",
    "RunAccount",
    "SpendRateMonitor",
    "calculate_cost",
    "estimate_for",
]
