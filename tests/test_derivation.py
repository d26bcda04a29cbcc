from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from bizsuite.crm.derivation import (
    CONTRACT_ACTIVE,
    CONTRACT_CANCELLED,
    CONTRACT_INACTIVE,
    CONTRACT_UNSIGNED,
    FULFILMENT_FULFILLED,
    FULFILMENT_NOT_APPLICABLE,
    FULFILMENT_PARTIAL,
    FULFILMENT_UNFULFILLED,
    derive_contract_status,
    derive_fulfilment_status,
    derive_lead_names,
    derive_opportunity_item,
    to_conversion_rate,
    to_money,
)


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_lead_name_joins_present_person_name_parts() -> None:
    names = derive_lead_names(salutation="Dr.", first_name="Ada", middle_name=None, last_name="Lovelace")
    assert names.lead_name == "Dr. Ada Lovelace"
    assert names.title == "Dr. Ada Lovelace"


def test_lead_name_skips_blank_parts() -> None:
    names = derive_lead_names(salutation="", first_name="Ada", middle_name="  ", last_name="King")
    assert names.lead_name == "Ada King"


def test_person_name_wins_over_company_but_title_mirrors_company() -> None:
    names = derive_lead_names(first_name="Ada", last_name="King", company_name="Analytical Engines")
    assert names.lead_name == "Ada King"
    assert names.title == "Analytical Engines"


def test_lead_name_falls_back_to_company_name() -> None:
    names = derive_lead_names(company_name="Acme Corp", email="sales@acme.com")
    assert names.lead_name == "Acme Corp"
    assert names.title == "Acme Corp"


def test_lead_name_falls_back_to_email_local_part() -> None:
    names = derive_lead_names(email="a@b.com")
    assert names.lead_name == "a"
    assert names.title == "a"


def test_existing_lead_name_kept_when_first_name_cleared() -> None:
    names = derive_lead_names(first_name=None, company_name="Acme Corp", lead_name="Ada King")
    assert names.lead_name == "Ada King"
    assert names.title == "Acme Corp"


def test_lead_without_naming_inputs_stays_unset() -> None:
    names = derive_lead_names()
    assert names.lead_name is None
    assert names.title is None


def test_item_amounts_with_parent_conversion_rate() -> None:
    amounts = derive_opportunity_item(Decimal("10.00"), 3, Decimal("1.5000"))
    assert amounts.amount == Decimal("30.00")
    assert amounts.base_rate == Decimal("15.00")
    assert amounts.base_amount == Decimal("45.00")


def test_item_without_parent_keeps_prior_base_values() -> None:
    amounts = derive_opportunity_item(
        Decimal("4.00"),
        Decimal("2"),
        None,
        base_rate=Decimal("7.00"),
        base_amount=Decimal("9.00"),
    )
    assert amounts.amount == Decimal("8.00")
    assert amounts.base_rate == Decimal("7.00")
    assert amounts.base_amount == Decimal("9.00")


def test_item_with_missing_rate_leaves_values_unchanged() -> None:
    amounts = derive_opportunity_item(None, 2, Decimal("1"), amount=Decimal("5.00"))
    assert amounts.amount == Decimal("5.00")
    assert amounts.base_rate is None


def test_item_amounts_round_half_up_to_cents() -> None:
    amounts = derive_opportunity_item(Decimal("0.35"), Decimal("0.50"), Decimal("1.0000"))
    assert amounts.amount == Decimal("0.18")


def test_decimal_helpers_quantize_and_degrade() -> None:
    assert to_money("2.345") == Decimal("2.35")
    assert to_conversion_rate(1.5) == Decimal("1.5000")
    assert to_money("not-a-number") is None
    assert to_money(None) is None


@pytest.mark.parametrize(
    ("end_date", "expected"),
    [
        (NOW.date() - timedelta(days=1), CONTRACT_INACTIVE),
        (NOW.date() + timedelta(days=1), CONTRACT_ACTIVE),
        (None, CONTRACT_ACTIVE),
    ],
)
def test_signed_contract_status_follows_end_date(end_date: date | None, expected: str) -> None:
    assert derive_contract_status(is_signed=True, end_date=end_date, status=CONTRACT_UNSIGNED, now=NOW) == expected


def test_signed_contract_is_inactive_from_end_date_midnight() -> None:
    assert derive_contract_status(is_signed=True, end_date=NOW.date(), status=CONTRACT_ACTIVE, now=NOW) == CONTRACT_INACTIVE


def test_unsigned_contract_resets_to_unsigned() -> None:
    assert derive_contract_status(is_signed=False, end_date=None, status=CONTRACT_ACTIVE, now=NOW) == CONTRACT_UNSIGNED


@pytest.mark.parametrize("is_signed", [False, True])
def test_cancelled_contract_status_is_sticky(is_signed: bool) -> None:
    status = derive_contract_status(
        is_signed=is_signed,
        end_date=NOW.date() - timedelta(days=30),
        status=CONTRACT_CANCELLED,
        now=NOW,
    )
    assert status == CONTRACT_CANCELLED


def test_naive_now_is_treated_as_utc() -> None:
    naive_now = datetime(2026, 10, 19, 0, 0, 1)
    assert derive_contract_status(is_signed=True, end_date=date(2026, 10, 19), status=None, now=naive_now) == CONTRACT_INACTIVE


def test_fulfilment_status_ratios() -> None:
    assert derive_fulfilment_status(True, 2, 2) == FULFILMENT_FULFILLED
    assert derive_fulfilment_status(True, 2, 1) == FULFILMENT_PARTIAL
    assert derive_fulfilment_status(True, 2, 0) == FULFILMENT_UNFULFILLED
    assert derive_fulfilment_status(True, 0, 0) == FULFILMENT_UNFULFILLED
    assert derive_fulfilment_status(False, 2, 2) == FULFILMENT_NOT_APPLICABLE
