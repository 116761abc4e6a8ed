"""
Opportunity Classification

Rule-based grouping of signals into seven opportunity archetypes.

Signals are partitioned up front into disjoint groups. The one overlap is
deliberate: when more than one channel CAC spike fires, those channel
signals back both CHANNEL_IMBALANCE and CAC_SPIKE. QUICK_WIN collects the
info-level signals left unclaimed by every candidate actually emitted.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from growth_engine.config import get_settings
from growth_engine.services.alert_engine import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING
from growth_engine.services.signals import SIGNAL_FUNNEL_DROP, Signal

EFFICIENCY_DROP = "EFFICIENCY_DROP"
CAC_SPIKE = "CAC_SPIKE"
RETENTION_DECLINE = "RETENTION_DECLINE"
FUNNEL_LEAK = "FUNNEL_LEAK"
GROWTH_PLATEAU = "GROWTH_PLATEAU"
CHANNEL_IMBALANCE = "CHANNEL_IMBALANCE"
QUICK_WIN = "QUICK_WIN"

OPPORTUNITY_META = {
    EFFICIENCY_DROP: {
        'title': 'Marketing Efficiency Deteriorating',
        'description': 'Spend is increasing but returns are diminishing. MER or ROAS declining while ad budgets grow.',
        'priority': 85,
    },
    CAC_SPIKE: {
        'title': 'Customer Acquisition Cost Spiking',
        'description': 'Blended or channel-level CAC has increased significantly, eroding unit economics.',
        'priority': 80,
    },
    RETENTION_DECLINE: {
        'title': 'Customer Retention Declining',
        'description': 'Repeat purchase rates are falling below historical baselines, threatening LTV.',
        'priority': 75,
    },
    FUNNEL_LEAK: {
        'title': 'Conversion Funnel Leaking',
        'description': 'One or more stages of the purchase funnel show abnormal drop-off rates.',
        'priority': 70,
    },
    GROWTH_PLATEAU: {
        'title': 'Revenue Growth Stalling',
        'description': 'Revenue is declining or flat without corresponding efficiency issues, suggesting demand-side weakness.',
        'priority': 65,
    },
    CHANNEL_IMBALANCE: {
        'title': 'Channel Mix Imbalanced',
        'description': 'Performance varies significantly across channels, indicating reallocation opportunities.',
        'priority': 60,
    },
    QUICK_WIN: {
        'title': 'Quick Win Opportunities Detected',
        'description': 'Minor metric shifts suggest low-effort experiments that could yield measurable gains.',
        'priority': 40,
    },
}

_SEVERITY_BOOST = {SEVERITY_CRITICAL: 10, SEVERITY_WARNING: 5}

_MER_ID = "alert_mer_deterioration"
_BLENDED_CAC_ID = "alert_cac_increase"
_CHANNEL_CAC_PREFIX = "alert_channel_cac_"
_RETENTION_ID = "alert_retention_drop"
_REVENUE_ID = "alert_revenue_decline"
_SESSIONS_ID = "metric_delta_sessions"


@dataclass
class OpportunityCandidate:
    """A prioritized cluster of signals"""
    type: str
    title: str
    description: str
    priority: int
    signals: List[Signal] = field(default_factory=list)


def priority_for(opportunity_type: str, signals: List[Signal]) -> int:
    """Base priority plus the single highest severity boost, capped at 100."""
    base = OPPORTUNITY_META[opportunity_type]['priority']
    severities = {s.severity for s in signals}
    if SEVERITY_CRITICAL in severities:
        boost = _SEVERITY_BOOST[SEVERITY_CRITICAL]
    elif SEVERITY_WARNING in severities:
        boost = _SEVERITY_BOOST[SEVERITY_WARNING]
    else:
        boost = 0
    return min(100, base + boost)


def partition_signals(signals: List[Signal]) -> Dict[str, List[Signal]]:
    """Split signals into the disjoint groups each archetype draws from."""
    groups: Dict[str, List[Signal]] = {
        'mer': [],
        'blended_cac': [],
        'channel_cac': [],
        'retention': [],
        'funnel': [],
        'revenue': [],
        'sessions': [],
        'other': [],
    }
    for signal in signals:
        if signal.id == _MER_ID:
            groups['mer'].append(signal)
        elif signal.id == _BLENDED_CAC_ID:
            groups['blended_cac'].append(signal)
        elif signal.id.startswith(_CHANNEL_CAC_PREFIX):
            groups['channel_cac'].append(signal)
        elif signal.id == _RETENTION_ID:
            groups['retention'].append(signal)
        elif signal.type == SIGNAL_FUNNEL_DROP:
            groups['funnel'].append(signal)
        elif signal.id == _REVENUE_ID:
            groups['revenue'].append(signal)
        elif signal.id == _SESSIONS_ID:
            groups['sessions'].append(signal)
        else:
            groups['other'].append(signal)
    return groups


def classify_opportunities(signals: List[Signal]) -> List[OpportunityCandidate]:
    """
    Map signals to opportunity candidates, highest priority first.

    Emission order (ties keep it): EFFICIENCY_DROP, CHANNEL_IMBALANCE,
    CAC_SPIKE, RETENTION_DECLINE, FUNNEL_LEAK, GROWTH_PLATEAU, QUICK_WIN.
    An archetype with no signals yields no candidate.
    """
    groups = partition_signals(signals)
    cac_signals = groups['blended_cac'] + groups['channel_cac']

    planned: List[Tuple[str, List[Signal]]] = [(EFFICIENCY_DROP, groups['mer'])]
    if len(groups['channel_cac']) > 1:
        planned.append((CHANNEL_IMBALANCE, groups['channel_cac']))
    planned.append((CAC_SPIKE, cac_signals))
    planned.append((RETENTION_DECLINE, groups['retention']))
    planned.append((FUNNEL_LEAK, groups['funnel']))
    # A spend-efficiency story already explains the revenue drop
    if not cac_signals and groups['revenue']:
        planned.append((GROWTH_PLATEAU, groups['revenue'] + groups['sessions']))

    candidates: List[OpportunityCandidate] = []
    claimed = set()
    for opportunity_type, matched in planned:
        if not matched:
            continue
        candidates.append(_candidate(opportunity_type, matched))
        claimed.update(s.id for s in matched)

    leftovers = [s for s in signals if s.id not in claimed and s.severity == SEVERITY_INFO]
    if leftovers:
        candidates.append(_candidate(QUICK_WIN, leftovers))

    # sorted() is stable, so equal priorities keep emission order
    return sorted(candidates, key=lambda c: c.priority, reverse=True)


def _candidate(opportunity_type: str, matched: List[Signal]) -> OpportunityCandidate:
    meta = OPPORTUNITY_META[opportunity_type]
    return OpportunityCandidate(
        type=opportunity_type,
        title=meta['title'],
        description=meta['description'],
        priority=priority_for(opportunity_type, matched),
        signals=list(matched),
    )


def filter_recent_opportunities(
    candidates: List[OpportunityCandidate],
    recent: Iterable[Tuple[str, datetime]],
    now: Optional[datetime] = None,
    window_hours: Optional[int] = None,
) -> List[OpportunityCandidate]:
    """
    Drop candidates whose type was already raised inside the window.

    recent: (opportunity_type, created_at) pairs from the caller's store.
    window_hours defaults to settings.opportunity_dedup_hours.
    """
    now = now or datetime.utcnow()
    if window_hours is None:
        window_hours = get_settings().opportunity_dedup_hours
    cutoff = now - timedelta(hours=window_hours)
    recent_types = {opp_type for opp_type, created_at in recent if created_at >= cutoff}
    return [c for c in candidates if c.type not in recent_types]
