from __future__ import annotations

import logging
import time
import uuid
from decimal import Decimal

from opentelemetry import trace
from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from bizsuite import events
from bizsuite.context import get_correlation_id
from bizsuite.crm.derivation import derive_fulfilment_status, derive_opportunity_item, fits_money, to_money
from bizsuite.crm.models import CRMContract, CRMContractFulfilmentChecklist, CRMOpportunity, CRMOpportunityItem
from bizsuite.metrics import observe_aggregate_recalculation, observe_derivation


logger = logging.getLogger("bizsuite.crm.aggregates")
tracer = trace.get_tracer("bizsuite.crm.aggregates")


class AggregateOverflowError(ValueError):
    """A recomputed aggregate does not fit its money column."""


def recalculate_opportunity_totals(session: Session, opportunity_id: uuid.UUID) -> CRMOpportunity | None:
    """Recompute ``total``/``base_total`` from every current item row.

    Runs inside the caller's transaction and does not commit. Returns ``None``
    when the opportunity no longer exists.
    """

    aggregate = "opportunity_totals"
    started = time.perf_counter()
    with tracer.start_as_current_span("crm.aggregate.opportunity_totals") as span:
        span.set_attribute("opportunity_id", str(opportunity_id))
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

        session.flush()
        opportunity = session.get(CRMOpportunity, opportunity_id)
        if opportunity is None:
            observe_aggregate_recalculation(aggregate, "skipped")
            logger.debug("aggregate.parent_missing", extra={"aggregate": aggregate, "parent_id": str(opportunity_id)})
            return None

        row = session.execute(
            select(
                func.count(CRMOpportunityItem.id),
                func.coalesce(func.sum(CRMOpportunityItem.amount), 0),
                func.coalesce(func.sum(CRMOpportunityItem.base_amount), 0),
            ).where(CRMOpportunityItem.opportunity_id == opportunity_id)
        ).one()
        item_count = int(row[0] or 0)
        total = to_money(row[1]) or Decimal("0.00")
        base_total = to_money(row[2]) or Decimal("0.00")
        if not (fits_money(total) and fits_money(base_total)):
            observe_aggregate_recalculation(aggregate, "overflow")
            raise AggregateOverflowError(f"opportunity {opportunity_id} totals out of range")
        opportunity.total = total
        opportunity.base_total = base_total
        session.flush()

        span.set_attribute("item_count", item_count)
        duration = time.perf_counter() - started
        observe_aggregate_recalculation(aggregate, "recalculated", duration)
        logger.info(
            "aggregate.recalculated",
            extra={
                "aggregate": aggregate,
                "parent_id": str(opportunity_id),
                "item_count": item_count,
                "org_id": opportunity.org_id,
            },
        )
        events.publish(
            "crm.opportunity.totals_recalculated",
            {
                "opportunity_id": str(opportunity.id),
                "total": str(opportunity.total),
                "base_total": str(opportunity.base_total),
                "item_count": item_count,
            },
            org_id=opportunity.org_id,
        )
        return opportunity


def rederive_opportunity_items(session: Session, opportunity: CRMOpportunity) -> int:
    """Re-derive every item of ``opportunity`` against its current conversion rate."""

    session.flush()
    items = session.scalars(
        select(CRMOpportunityItem).where(CRMOpportunityItem.opportunity_id == opportunity.id)
    ).all()
    for item in items:
        derived = derive_opportunity_item(
            item.rate,
            item.qty,
            opportunity.conversion_rate,
            amount=item.amount,
            base_rate=item.base_rate,
            base_amount=item.base_amount,
        )
        item.amount = derived.amount
        item.base_rate = derived.base_rate
        item.base_amount = derived.base_amount
        observe_derivation("opportunity_item")
    return len(items)


def recalculate_contract_fulfilment(session: Session, contract_id: uuid.UUID) -> CRMContract | None:
    """Recompute ``fulfilment_status`` from the contract's checklist rows."""

    aggregate = "contract_fulfilment"
    started = time.perf_counter()
    with tracer.start_as_current_span("crm.aggregate.contract_fulfilment") as span:
        span.set_attribute("contract_id", str(contract_id))
        correlation_id = get_correlation_id()
        if correlation_id:
            span.set_attribute("correlation_id", correlation_id)

        session.flush()
        contract = session.get(CRMContract, contract_id)
        if contract is None:
            observe_aggregate_recalculation(aggregate, "skipped")
            logger.debug("aggregate.parent_missing", extra={"aggregate": aggregate, "parent_id": str(contract_id)})
            return None

        row = session.execute(
            select(
                func.count(CRMContractFulfilmentChecklist.id),
                func.coalesce(func.sum(case((CRMContractFulfilmentChecklist.fulfilled.is_(True), 1), else_=0)), 0),
            ).where(CRMContractFulfilmentChecklist.contract_id == contract_id)
        ).one()
        total = int(row[0] or 0)
        fulfilled = int(row[1] or 0)
        previous = contract.fulfilment_status
        contract.fulfilment_status = derive_fulfilment_status(contract.requires_fulfilment, total, fulfilled)
        session.flush()

        span.set_attribute("item_count", total)
        duration = time.perf_counter() - started
        observe_aggregate_recalculation(aggregate, "recalculated", duration)
        logger.info(
            "aggregate.recalculated",
            extra={
                "aggregate": aggregate,
                "parent_id": str(contract_id),
                "item_count": total,
                "org_id": contract.org_id,
            },
        )
        if previous != contract.fulfilment_status:
            events.publish(
                "crm.contract.fulfilment_changed",
                {
                    "contract_id": str(contract.id),
                    "from": previous,
                    "to": contract.fulfilment_status,
                    "checklist_total": total,
                    "checklist_fulfilled": fulfilled,
                },
                org_id=contract.org_id,
            )
        return contract
