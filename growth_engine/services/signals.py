"""
Signal Detection

Wraps evaluate_alerts() 1:1 into signals and adds metric-delta (AOV,
sessions) and funnel-drop signals. Signal ids are derived from the rule,
metric or funnel stage name only, so callers can deduplicate on them.
"""
from dataclasses import dataclass
from typing import List, Optional

from growth_engine.services import kpis
from growth_engine.services.alert_engine import (
    AlertInput,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    evaluate_alerts,
)

SIGNAL_ALERT = "alert"
SIGNAL_METRIC_DELTA = "metric_delta"
SIGNAL_FUNNEL_DROP = "funnel_drop"

AOV_CHANGE_THRESHOLD = 0.10
AOV_WARNING_THRESHOLD = 0.20
SESSIONS_DROP_THRESHOLD = -0.15
SESSIONS_WARNING_THRESHOLD = -0.30
FUNNEL_DROP_THRESHOLD = -0.15
FUNNEL_WARNING_THRESHOLD = -0.30

FUNNEL_STAGES = [
    ("session_to_pdp", "Session → PDP"),
    ("pdp_to_atc", "PDP → Add to Cart"),
    ("atc_to_checkout", "Add to Cart → Checkout"),
    ("checkout_to_purchase", "Checkout → Purchase"),
]


@dataclass(frozen=True)
class Signal:
    """Normalized anomaly observation"""
    id: str
    type: str  # alert, metric_delta, funnel_drop
    source_metric: str
    current_value: float
    previous_value: float
    change_percent: float
    severity: str
    title: str
    description: str


@dataclass
class FunnelCvr:
    """Stage-to-stage conversion rates for one period"""
    session_to_pdp: float = 0.0
    pdp_to_atc: float = 0.0
    atc_to_checkout: float = 0.0
    checkout_to_purchase: float = 0.0


@dataclass
class SignalInput(AlertInput):
    """AlertInput plus the optional delta / funnel metrics"""
    current_aov: Optional[float] = None
    previous_aov: Optional[float] = None
    current_sessions: Optional[float] = None
    previous_sessions: Optional[float] = None
    funnel_current: Optional[FunnelCvr] = None
    funnel_previous: Optional[FunnelCvr] = None


def detect_signals(data: AlertInput) -> List[Signal]:
    """Alerts first (rule order), then AOV, sessions, funnel stages."""
    signals: List[Signal] = []

    for alert in evaluate_alerts(data):
        signals.append(Signal(
            id=f"alert_{alert.id}",
            type=SIGNAL_ALERT,
            source_metric=alert.id,
            current_value=alert.metric_value,
            previous_value=alert.threshold,
            change_percent=alert.metric_value,
            severity=alert.severity,
            title=alert.title,
            description=alert.description,
        ))

    aov_signal = _aov_signal(data)
    if aov_signal:
        signals.append(aov_signal)

    sessions_signal = _sessions_signal(data)
    if sessions_signal:
        signals.append(sessions_signal)

    signals.extend(_funnel_signals(data))
    return signals


def _aov_signal(data: AlertInput) -> Optional[Signal]:
    current = getattr(data, "current_aov", None)
    previous = getattr(data, "previous_aov", None)
    if current is None or previous is None or previous <= 0:
        return None

    change = kpis.percent_change(current, previous)
    if not abs(change) > AOV_CHANGE_THRESHOLD:
        return None

    direction = "increased" if change > 0 else "decreased"
    return Signal(
        id="metric_delta_aov",
        type=SIGNAL_METRIC_DELTA,
        source_metric="aov",
        current_value=current,
        previous_value=previous,
        change_percent=change,
        severity=SEVERITY_WARNING if abs(change) > AOV_WARNING_THRESHOLD else SEVERITY_INFO,
        title=f"AOV {direction} {abs(change) * 100:.1f}%",
        description=f"Average order value {direction} from ${previous:.0f} to ${current:.0f} WoW",
    )


def _sessions_signal(data: AlertInput) -> Optional[Signal]:
    current = getattr(data, "current_sessions", None)
    previous = getattr(data, "previous_sessions", None)
    if current is None or previous is None or previous <= 0:
        return None

    change = kpis.percent_change(current, previous)
    if not change < SESSIONS_DROP_THRESHOLD:
        return None

    return Signal(
        id="metric_delta_sessions",
        type=SIGNAL_METRIC_DELTA,
        source_metric="sessions",
        current_value=current,
        previous_value=previous,
        change_percent=change,
        severity=SEVERITY_WARNING if change < SESSIONS_WARNING_THRESHOLD else SEVERITY_INFO,
        title=f"Sessions dropped {abs(change) * 100:.1f}%",
        description=f"Website sessions declined from {previous:,.0f} to {current:,.0f} WoW",
    )


def _funnel_signals(data: AlertInput) -> List[Signal]:
    funnel_current = getattr(data, "funnel_current", None)
    funnel_previous = getattr(data, "funnel_previous", None)
    if funnel_current is None or funnel_previous is None:
        return []

    signals = []
    for key, label in FUNNEL_STAGES:
        cur = getattr(funnel_current, key)
        prev = getattr(funnel_previous, key)
        if not prev > 0:
            continue
        change = kpis.percent_change(cur, prev)
        if not change < FUNNEL_DROP_THRESHOLD:
            continue
        signals.append(Signal(
            id=f"funnel_drop_{key}",
            type=SIGNAL_FUNNEL_DROP,
            source_metric=f"funnel.{key}",
            current_value=cur,
            previous_value=prev,
            change_percent=change,
            severity=SEVERITY_WARNING if change < FUNNEL_WARNING_THRESHOLD else SEVERITY_INFO,
            title=f"{label} CVR dropped {abs(change) * 100:.1f}%",
            description=f"{label} conversion rate dropped from {prev * 100:.1f}% to {cur * 100:.1f}% WoW",
        ))
    return signals
