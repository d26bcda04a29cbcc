"""Derived-field rules for CRM records.

Every function here is pure: it takes the current field values (and, for
opportunity items, the parent's conversion rate) and returns the derived
values. Missing inputs leave the derived value unchanged instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

CONTRACT_UNSIGNED = "Unsigned"
CONTRACT_ACTIVE = "Active"
CONTRACT_INACTIVE = "Inactive"
CONTRACT_CANCELLED = "Cancelled"
CONTRACT_STATUSES = (CONTRACT_UNSIGNED, CONTRACT_ACTIVE, CONTRACT_INACTIVE, CONTRACT_CANCELLED)

FULFILMENT_NOT_APPLICABLE = "N/A"
FULFILMENT_UNFULFILLED = "Unfulfilled"
FULFILMENT_PARTIAL = "Partially Fulfilled"
FULFILMENT_FULFILLED = "Fulfilled"

MONEY_QUANTUM = Decimal("0.01")
RATE_QUANTUM = Decimal("0.0001")
# Largest value a Numeric(15, 2) column holds.
MONEY_MAX = Decimal("9999999999999.99")


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _to_decimal(value: Any, quantum: Decimal) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def to_money(value: Any) -> Decimal | None:
    return _to_decimal(value, MONEY_QUANTUM)


def to_conversion_rate(value: Any) -> Decimal | None:
    return _to_decimal(value, RATE_QUANTUM)


def fits_money(value: Decimal | None) -> bool:
    return value is None or abs(value) <= MONEY_MAX


@dataclass(frozen=True, slots=True)
class LeadNames:
    lead_name: str | None
    title: str | None


def derive_lead_names(
    *,
    salutation: str | None = None,
    first_name: str | None = None,
    middle_name: str | None = None,
    last_name: str | None = None,
    company_name: str | None = None,
    email: str | None = None,
    lead_name: str | None = None,
) -> LeadNames:
    """Compute ``lead_name`` and ``title`` from a lead's naming fields.

    A person name wins when ``first_name`` is set. Otherwise an existing
    ``lead_name`` is kept, falling back to the company name and then the
    local part of the email.
    """

    derived = lead_name
    if _present(first_name):
        parts = [salutation, first_name, middle_name, last_name]
        derived = " ".join(str(part) for part in parts if _present(part)).strip()
    elif not _present(derived) and _present(company_name):
        derived = company_name
    elif not _present(derived) and _present(email):
        derived = str(email).split("@", 1)[0]

    title = company_name if _present(company_name) else derived
    return LeadNames(lead_name=derived, title=title)


@dataclass(frozen=True, slots=True)
class ItemAmounts:
    amount: Decimal | None
    base_rate: Decimal | None
    base_amount: Decimal | None


def derive_opportunity_item(
    rate: Any,
    qty: Any,
    conversion_rate: Any = None,
    *,
    amount: Decimal | None = None,
    base_rate: Decimal | None = None,
    base_amount: Decimal | None = None,
) -> ItemAmounts:
    """Compute an item's amount and its base-currency values.

    ``conversion_rate`` is the parent opportunity's rate; pass ``None`` when
    the item is not linked to a parent yet and the prior base values are kept.
    """

    money_rate = to_money(rate)
    money_qty = to_money(qty)
    if money_rate is None or money_qty is None:
        return ItemAmounts(amount=amount, base_rate=base_rate, base_amount=base_amount)

    derived_amount = to_money(money_rate * money_qty)
    parent_rate = to_conversion_rate(conversion_rate)
    if parent_rate is None:
        return ItemAmounts(amount=derived_amount, base_rate=base_rate, base_amount=base_amount)

    return ItemAmounts(
        amount=derived_amount,
        base_rate=to_money(parent_rate * money_rate),
        base_amount=to_money(parent_rate * derived_amount),
    )


def _as_utc_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def derive_contract_status(
    *,
    is_signed: bool,
    end_date: date | datetime | None,
    status: str | None,
    now: datetime | None = None,
) -> str | None:
    # Cancelled is only ever set by an explicit cancel action.
    if status == CONTRACT_CANCELLED:
        return status

    if not is_signed:
        return CONTRACT_UNSIGNED

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    if end_date is not None and current > _as_utc_datetime(end_date):
        return CONTRACT_INACTIVE
    return CONTRACT_ACTIVE


def derive_fulfilment_status(requires_fulfilment: bool, total: int, fulfilled: int) -> str:
    if not requires_fulfilment:
        return FULFILMENT_NOT_APPLICABLE
    if total <= 0 or fulfilled <= 0:
        return FULFILMENT_UNFULFILLED
    if fulfilled >= total:
        return FULFILMENT_FULFILLED
    return FULFILMENT_PARTIAL
