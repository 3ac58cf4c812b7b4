from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple

from bubob.month_range import local_date

ZERO = Decimal("0")

TRANSACTION_TYPES = {"income", "expense"}


@dataclass(frozen=True)
class BalanceTotals:
    total: Decimal
    cash: Decimal
    ewallet: Decimal


def signed_amount(txn_type: str, amount: Decimal) -> Decimal:
    normalized = txn_type.strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise ValueError(f"Unsupported transaction type: {txn_type}")
    amount = _coerce_decimal(amount)
    return amount if normalized == "income" else -amount


def expected_balance(
    opening_balance: Decimal, transactions: Iterable[Tuple[str, Decimal]]
) -> Decimal:
    balance = _coerce_decimal(opening_balance)
    for txn_type, amount in transactions:
        balance += signed_amount(txn_type, amount)
    return balance


def account_kind(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if "cash" in normalized:
        return "cash"
    if "ewallet" in normalized or "e-wallet" in normalized or "wallet" in normalized:
        return "ewallet"
    return "other"


def balance_totals(accounts: Iterable[Mapping[str, Any]]) -> BalanceTotals:
    total = ZERO
    cash = ZERO
    ewallet = ZERO
    for account in accounts:
        balance = _coerce_decimal(account["balance"] or ZERO)
        total += balance
        kind = account_kind(account["type"])
        if kind == "cash":
            cash += balance
        elif kind == "ewallet":
            ewallet += balance
    return BalanceTotals(total=total, cash=cash, ewallet=ewallet)


def top_accounts(
    accounts: Iterable[Mapping[str, Any]], limit: int = 3
) -> List[Mapping[str, Any]]:
    ranked = sorted(
        accounts,
        key=lambda account: _coerce_decimal(account["balance"] or ZERO),
        reverse=True,
    )
    return ranked[:limit]


def group_by_day(
    items: Iterable[Any],
    tz: tzinfo,
    key: Callable[[Any], datetime],
) -> List[Tuple[date, List[Any]]]:
    """Group items by their local calendar day, keeping input order."""
    groups: Dict[date, List[Any]] = {}
    for item in items:
        groups.setdefault(local_date(key(item), tz), []).append(item)
    return list(groups.items())


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
