from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

ZERO = Decimal("0")
ONE = Decimal("1")
WARNING_THRESHOLD = Decimal("0.8")

EXPENSE_LIMIT = "expense_limit"
SAVING_GOAL = "saving_goal"
PLAN_TYPES = {EXPENSE_LIMIT, SAVING_GOAL}


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    account_id: Optional[int] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class Plan:
    plan_type: str
    amount: Decimal
    account_id: Optional[int] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class Totals:
    spent: Decimal
    income: Decimal
    net: Decimal


@dataclass(frozen=True)
class PlanProgress:
    spent: Decimal
    income: Decimal
    net: Decimal
    ratio: Decimal
    display_ratio: Decimal
    percent: int
    status: str
    warning: bool = False
    warning_message: Optional[str] = None


def evaluate_plan(plan: Plan, transactions: Iterable[Transaction]) -> PlanProgress:
    """Reduce one month of transactions into progress against a plan.

    The caller scopes ``transactions`` to the evaluation month; only the
    plan's account and category filters are applied here. Degenerate target
    amounts (zero or negative) produce a ratio of zero instead of raising.
    """
    plan_type = _normalize_plan_type(plan.plan_type)
    matched = filter_transactions(
        transactions,
        account_id=plan.account_id,
        category=plan.category,
    )
    totals = summarize(matched)

    measured = totals.spent if plan_type == EXPENSE_LIMIT else totals.net
    ratio = progress_ratio(measured, _coerce_amount(plan.amount))
    display_ratio = clamp_ratio(ratio)
    status = classify_status(plan_type, ratio)

    warning = plan_type == EXPENSE_LIMIT and ratio >= WARNING_THRESHOLD
    warning_message = None
    if warning:
        if ratio >= ONE:
            warning_message = "Budget exceeded."
        else:
            warning_message = f"Budget {to_percent(ratio)}% used."

    return PlanProgress(
        spent=totals.spent,
        income=totals.income,
        net=totals.net,
        ratio=ratio,
        display_ratio=display_ratio,
        percent=to_percent(display_ratio),
        status=status,
        warning=warning,
        warning_message=warning_message,
    )


def filter_transactions(
    transactions: Iterable[Transaction],
    *,
    account_id: Optional[int] = None,
    category: Optional[str] = None,
) -> List[Transaction]:
    return [
        txn
        for txn in transactions
        if _matches_account(txn, account_id) and _matches_category(txn, category)
    ]


def summarize(transactions: Iterable[Transaction]) -> Totals:
    spent = ZERO
    income = ZERO
    for txn in transactions:
        txn_type = txn.type.strip().lower()
        if txn_type == "expense":
            spent += _coerce_amount(txn.amount)
        elif txn_type == "income":
            income += _coerce_amount(txn.amount)
    return Totals(spent=spent, income=income, net=income - spent)


def progress_ratio(value: Decimal, target: Decimal) -> Decimal:
    if target <= ZERO:
        return ZERO
    return value / target


def clamp_ratio(ratio: Decimal) -> Decimal:
    return max(ZERO, min(ONE, ratio))


def to_percent(ratio: Decimal) -> int:
    return int((ratio * 100).quantize(ONE, rounding=ROUND_HALF_UP))


def classify_status(plan_type: str, ratio: Decimal) -> str:
    plan_type = _normalize_plan_type(plan_type)
    if plan_type == EXPENSE_LIMIT:
        if ratio >= ONE:
            return "exceeded"
        if ratio >= WARNING_THRESHOLD:
            return "near_limit"
        return "safe"
    if ratio >= ONE:
        return "reached"
    if ratio >= WARNING_THRESHOLD:
        return "near_goal"
    return "in_progress"


def _matches_account(txn: Transaction, account_id: Optional[int]) -> bool:
    return account_id is None or txn.account_id == account_id


def _matches_category(txn: Transaction, category: Optional[str]) -> bool:
    return category is None or txn.category == category


def _normalize_plan_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in PLAN_TYPES:
        raise ValueError(f"Unsupported plan type: {value}")
    return normalized


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
