"""
Staging Data Validation

Quality checks over staged rows, run after normalization.
Each check reports pass/fail with a human-readable message; nothing here
modifies data.
"""
from dataclasses import dataclass
from typing import List

from sqlalchemy import func, or_

from growth_engine.models.base import SessionLocal
from growth_engine.models.staging import StgOrder, StgSpend, StgTraffic
from growth_engine.pipeline.channel_mapping import CHANNEL_SLUGS
from growth_engine.utils.logger import log


@dataclass
class ValidationResult:
    """Outcome of one data-quality check"""
    check: str
    passed: bool
    message: str


def validate_staging(session_factory=None) -> List[ValidationResult]:
    """Run every staging check and return the results in a fixed order."""
    session_factory = session_factory or SessionLocal
    db = session_factory()
    results: List[ValidationResult] = []

    try:
        # 1. No negative spend
        neg_spend = db.query(func.count(StgSpend.id)).filter(StgSpend.spend < 0).scalar() or 0
        results.append(ValidationResult(
            check="no_negative_spend",
            passed=neg_spend == 0,
            message="All spend values >= 0" if neg_spend == 0 else f"Found {neg_spend} negative spend records",
        ))

        # 2. revenue_net == gross - discounts - refunds
        orders = db.query(
            StgOrder.order_id, StgOrder.revenue_gross, StgOrder.discounts, StgOrder.refunds, StgOrder.revenue_net,
        ).all()
        broken = [
            o.order_id for o in orders
            if (o.revenue_gross or 0) - (o.discounts or 0) - (o.refunds or 0) != (o.revenue_net or 0)
        ]
        results.append(ValidationResult(
            check="revenue_identity",
            passed=not broken,
            message=(
                "revenue_net = gross - discounts - refunds on every order" if not broken
                else f"Revenue identity broken on {len(broken)} orders (e.g. {broken[:5]})"
            ),
        ))

        # 3. revenue_net <= revenue_gross
        over_gross = db.query(func.count(StgOrder.id)).filter(
            StgOrder.revenue_net > StgOrder.revenue_gross
        ).scalar() or 0
        results.append(ValidationResult(
            check="revenue_net_lte_gross",
            passed=over_gross == 0,
            message=(
                "All revenue_net <= revenue_gross" if over_gross == 0
                else f"Found {over_gross} orders where revenue_net > revenue_gross"
            ),
        ))

        # 4. Every order attributed to a known channel
        unknown_channel = db.query(func.count(StgOrder.id)).filter(
            StgOrder.channel_raw.notin_(CHANNEL_SLUGS)
        ).scalar() or 0
        results.append(ValidationResult(
            check="known_channels",
            passed=unknown_channel == 0,
            message=(
                "All orders mapped to a known channel" if unknown_channel == 0
                else f"Found {unknown_channel} orders with an unknown channel"
            ),
        ))

        # 5. Funnel counts never increase stage over stage
        non_monotonic = db.query(func.count(StgTraffic.id)).filter(
            or_(
                StgTraffic.pdp_views > StgTraffic.sessions,
                StgTraffic.add_to_cart > StgTraffic.pdp_views,
                StgTraffic.checkouts > StgTraffic.add_to_cart,
                StgTraffic.purchases > StgTraffic.checkouts,
            )
        ).scalar() or 0
        results.append(ValidationResult(
            check="funnel_monotonic",
            passed=non_monotonic == 0,
            message=(
                "Funnel counts decrease stage over stage on every traffic row" if non_monotonic == 0
                else f"Found {non_monotonic} traffic rows with a funnel stage larger than the one before"
            ),
        ))
    finally:
        db.close()

    failed = [r.check for r in results if not r.passed]
    if failed:
        log.warning(f"Staging validation failed checks: {failed}")
    else:
        log.info(f"Staging validation passed ({len(results)} checks)")
    return results
