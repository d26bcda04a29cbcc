from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bizsuite import events
from bizsuite.core.database import Base
from bizsuite.crm.aggregates import (
    AggregateOverflowError,
    recalculate_contract_fulfilment,
    recalculate_opportunity_totals,
    rederive_opportunity_items,
)
from bizsuite.crm.models import (
    CRMContract,
    CRMContractFulfilmentChecklist,
    CRMOpportunity,
    CRMOpportunityItem,
)


@pytest.fixture(autouse=True)
def clear_events() -> None:
    events.published_events.clear()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _opportunity(session: Session, *amounts: tuple[str, str]) -> CRMOpportunity:
    opportunity = CRMOpportunity(org_id="org-a", customer_name="Acme", conversion_rate=Decimal("2.0000"))
    session.add(opportunity)
    session.flush()
    for idx, (amount, base_amount) in enumerate(amounts, start=1):
        session.add(
            CRMOpportunityItem(
                opportunity_id=opportunity.id,
                idx=idx,
                qty=Decimal("1.00"),
                rate=Decimal(amount),
                amount=Decimal(amount),
                base_rate=Decimal(base_amount),
                base_amount=Decimal(base_amount),
            )
        )
    session.flush()
    return opportunity


def test_totals_are_sums_of_item_rows(db_session: Session) -> None:
    opportunity = _opportunity(db_session, ("10.00", "20.00"), ("2.50", "5.00"))

    result = recalculate_opportunity_totals(db_session, opportunity.id)
    assert result is opportunity
    assert opportunity.total == Decimal("12.50")
    assert opportunity.base_total == Decimal("25.00")


def test_totals_recalculation_is_idempotent(db_session: Session) -> None:
    opportunity = _opportunity(db_session, ("1.10", "2.20"), ("3.30", "6.60"))

    recalculate_opportunity_totals(db_session, opportunity.id)
    first = (opportunity.total, opportunity.base_total)
    recalculate_opportunity_totals(db_session, opportunity.id)
    assert (opportunity.total, opportunity.base_total) == first == (Decimal("4.40"), Decimal("8.80"))


def test_missing_parent_is_skipped(db_session: Session, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="bizsuite.crm.aggregates")

    assert recalculate_opportunity_totals(db_session, uuid.uuid4()) is None
    assert recalculate_contract_fulfilment(db_session, uuid.uuid4()) is None
    assert events.published_events == []
    assert [record.message for record in caplog.records].count("aggregate.parent_missing") == 2


def test_rederive_items_uses_current_conversion_rate(db_session: Session) -> None:
    opportunity = _opportunity(db_session, ("10.00", "20.00"))
    opportunity.conversion_rate = Decimal("0.5000")

    assert rederive_opportunity_items(db_session, opportunity) == 1
    recalculate_opportunity_totals(db_session, opportunity.id)
    assert opportunity.base_total == Decimal("5.00")


def test_fulfilment_recalculation_publishes_only_on_change(db_session: Session) -> None:
    contract = CRMContract(org_id="org-a", party_name="Acme", requires_fulfilment=True)
    db_session.add(contract)
    db_session.flush()
    db_session.add_all(
        [
            CRMContractFulfilmentChecklist(contract_id=contract.id, idx=1, requirement="Ship", fulfilled=True),
            CRMContractFulfilmentChecklist(contract_id=contract.id, idx=2, requirement="Train", fulfilled=False),
        ]
    )
    db_session.flush()

    recalculate_contract_fulfilment(db_session, contract.id)
    recalculate_contract_fulfilment(db_session, contract.id)
    assert contract.fulfilment_status == "Partially Fulfilled"

    changed = [event for event in events.published_events if event["event_type"] == "crm.contract.fulfilment_changed"]
    assert len(changed) == 1
    assert changed[0]["payload"]["to"] == "Partially Fulfilled"


def test_totals_that_do_not_fit_the_column_raise(db_session: Session) -> None:
    opportunity = _opportunity(db_session, ("9000000000000.00", "9000000000000.00"), ("9000000000000.00", "1.00"))

    with pytest.raises(AggregateOverflowError):
        recalculate_opportunity_totals(db_session, opportunity.id)
    assert opportunity.total == Decimal("0.00")
    assert events.published_events == []
