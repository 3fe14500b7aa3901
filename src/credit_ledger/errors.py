from __future__ import annotations


class CreditError(Exception):
    """Base class for credit ledger failures."""


class UnsupportedModel(CreditError, ValueError):
    """The pricing function cannot price the given request parameters."""


class UnknownPlan(CreditError, ValueError):
    def __init__(self, plan_code: str) -> None:
        super().__init__(f"unknown plan: {plan_code}")
        self.plan_code = plan_code


class PaymentRequired(CreditError):
    """
    Raised at pre-authorization when the balance does not cover the cost.
    No state has been changed when this is raised.
    """

    def __init__(self, required_credits: int, current_balance: int) -> None:
        super().__init__(
            f"payment required: {required_credits} credits needed, "
            f"{current_balance} available"
        )
        self.required_credits = required_credits
        self.current_balance = current_balance

    def to_dict(self) -> dict[str, int]:
        return {
            "requiredCredits": self.required_credits,
            "currentBalance": self.current_balance,
        }


class InsufficientBalanceAtDebit(CreditError):
    """
    The balance no longer covers a debit at confirm time, usually because a
    concurrent debit confirmed first. Nothing was written; the caller must
    treat the paid action as unbilled.
    """

    def __init__(self, user_id: str, required_credits: int, current_balance: int) -> None:
        super().__init__(
            f"insufficient balance at debit for {user_id}: "
            f"{required_credits} required, {current_balance} available"
        )
        self.user_id = user_id
        self.required_credits = required_credits
        self.current_balance = current_balance
