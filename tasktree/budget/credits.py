"""
Credit Ledger

In-process credit balances per account, used as the governor's external
credit check. Operations that generate billable assets cost credits.
"""

import asyncio

from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.budget.credits")


OPERATION_COSTS: dict[str, int] = {
    "logo": 1,
    "mockup": 1,
    "bundle": 2,
    "text_image": 1,
    "video": 5,
}


class CreditLedger:
    """
    Credit balances keyed by account.

    Checks never deduct; deduct() is called by the capability that
    consumed the credits once it succeeded.
    """

    def __init__(self, default_balance: int = 0, costs: dict[str, int] | None = None):
        self._default_balance = default_balance
        self._costs = dict(costs or OPERATION_COSTS)
        self._balances: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def cost_of(self, operation: str, quantity: int = 1) -> int:
        if operation not in self._costs:
            raise KeyError(f"Unknown credit operation: {operation}")
        return self._costs[operation] * max(1, quantity)

    def balance(self, account: str) -> int:
        return self._balances.get(account, self._default_balance)

    async def grant(self, account: str, amount: int) -> int:
        async with self._lock:
            self._balances[account] = self.balance(account) + amount
            return self._balances[account]

    async def has_credits(self, account: str, operation: str, quantity: int = 1) -> bool:
        required = self.cost_of(operation, quantity)
        return self.balance(account) >= required

    async def deduct(self, account: str, operation: str, quantity: int = 1) -> int:
        """Deduct credits; returns the remaining balance."""
        required = self.cost_of(operation, quantity)
        async with self._lock:
            current = self.balance(account)
            if current < required:
                logger.warning(
                    "Credit deduction refused",
                    account=account,
                    operation=operation,
                    required=required,
                    balance=current,
                )
                return current
            self._balances[account] = current - required
            return self._balances[account]
