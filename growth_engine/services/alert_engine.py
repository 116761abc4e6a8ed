"""
Alert Rule Engine

Deterministic week-over-week rules over a metrics snapshot. Pure: no I/O,
no state, no logging. Every rule fires only when its threshold is strictly
exceeded, and no rule suppresses another.

7 rules: cac_increase, cm_decrease, retention_drop, mer_deterioration,
channel_cac_<name>, revenue_decline, new_customer_decline
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from growth_engine.services import kpis

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

# ---------------------------------------------------------------------------
# Rule thresholds (fractions; "pp" rules compare percentage-point deltas)
# ---------------------------------------------------------------------------

ALERT_THRESHOLDS = {
    'cac_increase': {'fire': 0.15, 'critical': 0.30},
    'cm_decrease': {'fire': -0.03, 'critical': -0.06},
    'retention_drop': {'fire': -0.05, 'critical': -0.10},
    'mer_deterioration': {'fire': -0.10, 'spend_gate': 0.10, 'revenue_gate': 0.05},
    'channel_cac': {'fire': 0.25, 'min_spend': 500},
    'revenue_decline': {'fire': -0.10, 'critical': -0.20},
    'new_customer_decline': {'fire': -0.08},
}


@dataclass
class ChannelMetrics:
    """Current vs previous week for one paid channel"""
    name: str
    current_spend: float = 0.0
    current_revenue: float = 0.0
    previous_spend: float = 0.0
    previous_revenue: float = 0.0
    current_new_customers: float = 0
    previous_new_customers: float = 0


@dataclass
class AlertInput:
    """
    Metrics snapshot: paired current / previous 7-day aggregates.

    Built per evaluation by the metrics aggregation layer; never persisted.
    Retention figures are fractions (0.25 = 25%).
    """
    current_revenue: float
    current_spend: float
    current_new_customers: float
    current_total_orders: float
    current_contribution_margin: float
    current_revenue_net: float
    current_d30_retention: float

    previous_revenue: float
    previous_spend: float
    previous_new_customers: float
    previous_total_orders: float
    previous_contribution_margin: float
    previous_revenue_net: float
    previous_d30_retention: float
    baseline_d30_retention: float

    channels: Optional[List[ChannelMetrics]] = None


@dataclass(frozen=True)
class Alert:
    """One fired rule"""
    id: str
    severity: str
    title: str
    description: str
    impacted_segment: str
    recommendation: str
    metric_value: float
    threshold: float
    context: Dict[str, Union[float, str]] = field(default_factory=dict)


def _signed(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value * 100:.1f}"


def _check_cac(data: AlertInput) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['cac_increase']
    current_cac = kpis.blended_cac(data.current_spend, data.current_new_customers)
    previous_cac = kpis.blended_cac(data.previous_spend, data.previous_new_customers)
    change = kpis.percent_change(current_cac, previous_cac)

    if not change > rule['fire']:
        return None

    return Alert(
        id='cac_increase',
        severity=SEVERITY_CRITICAL if change > rule['critical'] else SEVERITY_WARNING,
        title='CAC Increased Significantly',
        description=(
            f"Blended CAC increased {change * 100:.1f}% WoW "
            f"(${previous_cac:.0f} → ${current_cac:.0f})"
        ),
        impacted_segment='All Paid Channels',
        recommendation=(
            f"Review channel-level CAC (currently ${current_cac:.0f}, up from ${previous_cac:.0f}). "
            "Pause underperforming campaigns. Check for audience fatigue on Meta prospecting. "
            "Consider reallocating budget to higher-efficiency channels."
        ),
        metric_value=change,
        threshold=rule['fire'],
        context={
            'current_cac': current_cac,
            'previous_cac': previous_cac,
            'cac_change_percent': change * 100,
            'total_spend': data.current_spend,
            'new_customers': data.current_new_customers,
        },
    )


def _check_contribution_margin(data: AlertInput) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['cm_decrease']
    current_pct = kpis.contribution_margin_pct(data.current_contribution_margin, data.current_revenue_net)
    previous_pct = kpis.contribution_margin_pct(data.previous_contribution_margin, data.previous_revenue_net)
    pp_change = kpis.percentage_point_change(current_pct, previous_pct)

    if not pp_change < rule['fire']:
        return None

    return Alert(
        id='cm_decrease',
        severity=SEVERITY_CRITICAL if pp_change < rule['critical'] else SEVERITY_WARNING,
        title='Contribution Margin Declining',
        description=(
            f"CM% dropped {pp_change * 100:.1f}pp WoW "
            f"({previous_pct * 100:.1f}% → {current_pct * 100:.1f}%)"
        ),
        impacted_segment='Unit Economics',
        recommendation=(
            "Investigate discount rate increases, product mix shifts, and shipping cost changes. "
            f"CM dropped from {previous_pct * 100:.1f}% to {current_pct * 100:.1f}%. "
            "Check if high-margin categories are underperforming."
        ),
        metric_value=pp_change,
        threshold=rule['fire'],
        context={
            'current_cm_pct': current_pct,
            'previous_cm_pct': previous_pct,
            'cm_drop_pp': pp_change * 100,
            'current_cm': data.current_contribution_margin,
            'current_revenue_net': data.current_revenue_net,
        },
    )


def _check_retention(data: AlertInput) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['retention_drop']
    drop = kpis.percentage_point_change(data.current_d30_retention, data.baseline_d30_retention)

    if not drop < rule['fire']:
        return None

    return Alert(
        id='retention_drop',
        severity=SEVERITY_CRITICAL if drop < rule['critical'] else SEVERITY_WARNING,
        title='D30 Retention Below Baseline',
        description=(
            f"D30 retention dropped {drop * 100:.1f}pp vs baseline "
            f"({data.baseline_d30_retention * 100:.1f}% → {data.current_d30_retention * 100:.1f}%)"
        ),
        impacted_segment='Customer Retention',
        recommendation=(
            "Review post-purchase flows, email engagement rates, and product quality feedback. "
            f"Current D30 retention is {data.current_d30_retention * 100:.1f}% vs "
            f"{data.baseline_d30_retention * 100:.1f}% baseline. "
            "Consider launching a win-back campaign for recent cohorts."
        ),
        metric_value=drop,
        threshold=rule['fire'],
        context={
            'current_d30': data.current_d30_retention,
            'baseline_d30': data.baseline_d30_retention,
            'drop_pp': drop * 100,
        },
    )


def _check_mer(data: AlertInput) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['mer_deterioration']
    current_mer = kpis.mer(data.current_revenue, data.current_spend)
    previous_mer = kpis.mer(data.previous_revenue, data.previous_spend)
    mer_change = kpis.percent_change(current_mer, previous_mer)
    spend_change = kpis.percent_change(data.current_spend, data.previous_spend)
    revenue_change = kpis.percent_change(data.current_revenue, data.previous_revenue)

    # Spend up, revenue flat, efficiency down: all three must hold
    if not (spend_change > rule['spend_gate'] and revenue_change < rule['revenue_gate'] and mer_change < rule['fire']):
        return None

    return Alert(
        id='mer_deterioration',
        severity=SEVERITY_WARNING,
        title='Marketing Efficiency Deteriorating',
        description=(
            f"Spend up {spend_change * 100:.1f}% but revenue only {_signed(revenue_change)}%. "
            f"MER dropped from {previous_mer:.2f}x to {current_mer:.2f}x"
        ),
        impacted_segment='Marketing Efficiency',
        recommendation=(
            f"Audit spend allocation (${data.current_spend:.0f} this week, up from ${data.previous_spend:.0f}). "
            f"MER fell to {current_mer:.2f}x. Check for diminishing returns on scaled campaigns. "
            "Consider shifting budget from prospecting to retargeting."
        ),
        metric_value=mer_change,
        threshold=rule['fire'],
        context={
            'current_mer': current_mer,
            'previous_mer': previous_mer,
            'current_spend': data.current_spend,
            'previous_spend': data.previous_spend,
            'current_revenue': data.current_revenue,
            'previous_revenue': data.previous_revenue,
        },
    )


def _check_channel_cac(channel: ChannelMetrics) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['channel_cac']
    current_cac = kpis.channel_cac(channel.current_spend, channel.current_new_customers)
    previous_cac = kpis.channel_cac(channel.previous_spend, channel.previous_new_customers)
    change = kpis.percent_change(current_cac, previous_cac)

    # Small channels are too noisy to alert on, whatever the spike
    if not (change > rule['fire'] and channel.current_spend > rule['min_spend']):
        return None

    return Alert(
        id=f"channel_cac_{channel.name.lower()}",
        severity=SEVERITY_WARNING,
        title=f"{channel.name} CAC Spike",
        description=(
            f"{channel.name} CAC up {change * 100:.1f}% WoW "
            f"(${previous_cac:.0f} → ${current_cac:.0f})"
        ),
        impacted_segment=channel.name,
        recommendation=(
            f"Review {channel.name} campaign performance (spend: ${channel.current_spend:.0f}, "
            f"{channel.current_new_customers:g} new customers). Check audience overlap, creative fatigue, "
            "and bid strategy. Consider creative refresh."
        ),
        metric_value=change,
        threshold=rule['fire'],
        context={
            'channel': channel.name,
            'current_cac': current_cac,
            'previous_cac': previous_cac,
            'channel_spend': channel.current_spend,
            'channel_new_customers': channel.current_new_customers,
        },
    )


def _check_revenue(data: AlertInput) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['revenue_decline']
    change = kpis.percent_change(data.current_revenue, data.previous_revenue)

    if not change < rule['fire']:
        return None

    return Alert(
        id='revenue_decline',
        severity=SEVERITY_CRITICAL if change < rule['critical'] else SEVERITY_WARNING,
        title='Revenue Declining',
        description=(
            f"Revenue dropped {change * 100:.1f}% WoW "
            f"(${data.previous_revenue:.0f} → ${data.current_revenue:.0f})"
        ),
        impacted_segment='Overall Revenue',
        recommendation=(
            "Investigate traffic volumes, conversion rates, and AOV. "
            f"Revenue fell from ${data.previous_revenue:.0f} to ${data.current_revenue:.0f}. "
            "Check for site issues, inventory problems, or external factors."
        ),
        metric_value=change,
        threshold=rule['fire'],
        context={
            'current_revenue': data.current_revenue,
            'previous_revenue': data.previous_revenue,
            'revenue_drop_percent': change * 100,
        },
    )


def _check_new_customer_share(data: AlertInput) -> Optional[Alert]:
    rule = ALERT_THRESHOLDS['new_customer_decline']
    current_share = kpis.new_customer_share(data.current_new_customers, data.current_total_orders)
    previous_share = kpis.new_customer_share(data.previous_new_customers, data.previous_total_orders)
    pp_change = kpis.percentage_point_change(current_share, previous_share)

    if not pp_change < rule['fire']:
        return None

    return Alert(
        id='new_customer_decline',
        severity=SEVERITY_INFO,
        title='New Customer Acquisition Slowing',
        description=(
            f"New customer share dropped {pp_change * 100:.1f}pp "
            f"({previous_share * 100:.1f}% → {current_share * 100:.1f}%)"
        ),
        impacted_segment='Acquisition',
        recommendation=(
            f"Review prospecting campaigns. New customer share fell from {previous_share * 100:.1f}% "
            f"to {current_share * 100:.1f}% ({data.current_new_customers:g} vs "
            f"{data.previous_new_customers:g} new customers). Consider expanding audiences, "
            "testing new channels, or refreshing creative."
        ),
        metric_value=pp_change,
        threshold=rule['fire'],
        context={
            'current_new_share': current_share,
            'previous_new_share': previous_share,
            'current_new_customers': data.current_new_customers,
            'previous_new_customers': data.previous_new_customers,
        },
    )


def evaluate_alerts(data: AlertInput) -> List[Alert]:
    """Evaluate every rule against one snapshot, in fixed rule order."""
    candidates: List[Optional[Alert]] = [
        _check_cac(data),
        _check_contribution_margin(data),
        _check_retention(data),
        _check_mer(data),
    ]
    for channel in data.channels or []:
        candidates.append(_check_channel_cac(channel))
    candidates.append(_check_revenue(data))
    candidates.append(_check_new_customer_share(data))

    return [alert for alert in candidates if alert is not None]
