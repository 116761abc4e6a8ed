"""
KPI Calculations

Every metric definition used by the detection engine lives here.
All ratios are zero-safe: an empty denominator returns 0 (or None where
the metric is undefined), never raises.
"""
from typing import Dict, Iterable, Optional


# ── Revenue ─────────────────────────────────────────────

def revenue_gross(orders: Iterable[Dict]) -> float:
    return sum(o["revenue_gross"] for o in orders)


def revenue_net(orders: Iterable[Dict]) -> float:
    return sum(o["revenue_net"] for o in orders)


# ── Contribution margin ─────────────────────────────────

def contribution_margin_pct(total_contribution: float, total_revenue_net: float) -> float:
    if total_revenue_net == 0:
        return 0.0
    return total_contribution / total_revenue_net


# ── Acquisition ─────────────────────────────────────────

def blended_cac(total_spend: float, new_customers: float) -> float:
    """Blended CAC = total marketing spend / new customers acquired"""
    if new_customers == 0:
        return 0.0
    return total_spend / new_customers


def channel_cac(channel_spend: float, channel_new_customers: float) -> float:
    """Channel CAC = channel spend / new customers from that channel"""
    if channel_new_customers == 0:
        return 0.0
    return channel_spend / channel_new_customers


def mer(total_revenue: float, total_spend: float) -> float:
    """MER = total revenue / total marketing spend (blended ROAS)"""
    if total_spend == 0:
        return 0.0
    return total_revenue / total_spend


def roas(channel_revenue: float, channel_spend: float) -> float:
    if channel_spend == 0:
        return 0.0
    return channel_revenue / channel_spend


# ── Lifetime value / retention ──────────────────────────

def ltv_at_days(total_cohort_revenue: float, cohort_size: int) -> float:
    """LTV_N = cohort net revenue within N days of acquisition / cohort size"""
    if cohort_size == 0:
        return 0.0
    return total_cohort_revenue / cohort_size


def payback_days(cac: float, ltv30: float, cm_pct: float) -> Optional[int]:
    """Days of contribution margin needed to earn back CAC; None when it never pays back."""
    if cac <= 0 or ltv30 <= 0 or cm_pct <= 0:
        return None
    daily_cm = (ltv30 * cm_pct) / 30
    return round(cac / daily_cm)


def retention_rate(repeat_customers: int, cohort_size: int) -> float:
    if cohort_size == 0:
        return 0.0
    return repeat_customers / cohort_size


# ── Funnel ──────────────────────────────────────────────

def funnel_cvr(sessions: int, pdp_views: int, add_to_cart: int, checkouts: int, purchases: int) -> Dict[str, float]:
    return {
        "session_to_pdp": pdp_views / sessions if sessions > 0 else 0.0,
        "pdp_to_atc": add_to_cart / pdp_views if pdp_views > 0 else 0.0,
        "atc_to_checkout": checkouts / add_to_cart if add_to_cart > 0 else 0.0,
        "checkout_to_purchase": purchases / checkouts if checkouts > 0 else 0.0,
        "session_to_purchase": purchases / sessions if sessions > 0 else 0.0,
    }


# ── Period comparison ───────────────────────────────────

def percent_change(current: float, previous: float) -> float:
    """Relative change as a fraction. From 0: +1.0 if it became positive, else 0."""
    if previous == 0:
        return 1.0 if current > 0 else 0.0
    return (current - previous) / previous


def percentage_point_change(current_pct: float, previous_pct: float) -> float:
    return current_pct - previous_pct


# ── Orders ──────────────────────────────────────────────

def aov(total_revenue: float, order_count: int) -> float:
    if order_count == 0:
        return 0.0
    return total_revenue / order_count


def new_customer_share(new_customer_orders: float, total_orders: float) -> float:
    if total_orders == 0:
        return 0.0
    return new_customer_orders / total_orders


# ── Media ───────────────────────────────────────────────

def cpc(spend: float, clicks: int) -> float:
    if clicks == 0:
        return 0.0
    return spend / clicks


def cpm(spend: float, impressions: int) -> float:
    if impressions == 0:
        return 0.0
    return (spend / impressions) * 1000


def ctr(clicks: int, impressions: int) -> float:
    if impressions == 0:
        return 0.0
    return clicks / impressions
