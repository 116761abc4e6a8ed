"""
Field Extractors

Connectors hand us payloads in several layouts for the same logical record
(Shopify GraphQL nodes vs legacy REST orders vs synthetic demo orders, GA4
report rows vs flattened rows, ...). Each logical field is read through an
ordered list of extractors; the first one that yields a value wins, else
the field's default applies. Supporting a new layout means appending an
extractor, not adding a branch.
"""
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from dateutil import parser as date_parser

from growth_engine.pipeline.errors import MalformedRecordError

Extractor = Callable[[Dict[str, Any]], Any]

_MISSING = object()


def path(*keys) -> Extractor:
    """Extractor that walks nested dicts (and list indices) along keys."""
    def _extract(payload: Dict[str, Any]) -> Any:
        node: Any = payload
        for key in keys:
            if isinstance(key, int):
                if not isinstance(node, list) or len(node) <= key:
                    return None
                node = node[key]
            else:
                if not isinstance(node, dict):
                    return None
                node = node.get(key)
            if node is None:
                return None
        return node
    _extract.__name__ = "path_" + "_".join(str(k) for k in keys)
    return _extract


def first_of(payload: Dict[str, Any], extractors: Sequence[Extractor], default: Any = None) -> Any:
    """Try each extractor in order; return the first non-empty value or default."""
    for extractor in extractors:
        value = extractor(payload)
        if value is not None and value != "":
            return value
    return default


class FieldSpec:
    """Ordered extractors plus a default for one logical field."""

    def __init__(self, *extractors: Extractor, default: Any = None):
        self.extractors: Tuple[Extractor, ...] = extractors
        self.default = default

    def read(self, payload: Dict[str, Any]) -> Any:
        return first_of(payload, self.extractors, self.default)


def read_fields(payload: Dict[str, Any], specs: Dict[str, FieldSpec]) -> Dict[str, Any]:
    """Resolve every logical field in specs against one payload."""
    return {name: spec.read(payload) for name, spec in specs.items()}


# ---------------------------------------------------------------------------
# Shape detection
# ---------------------------------------------------------------------------

def detect_shape(payload: Dict[str, Any], markers: List[Tuple[str, Sequence[str]]], fallback: str) -> str:
    """Return the first shape whose marker keys are all present at the top level."""
    for shape, keys in markers:
        if all(k in payload for k in keys):
            return shape
    return fallback


ORDER_SHAPE_MARKERS = [
    ("graphql", ("totalPriceSet",)),
    ("synthetic", ("total_refunds",)),
    ("rest", ("total_price",)),
]


def detect_order_shape(payload: Dict[str, Any]) -> str:
    """graphql (Admin GraphQL node), synthetic (demo generator) or rest (legacy Admin REST)."""
    return detect_shape(payload, ORDER_SHAPE_MARKERS, "unknown")


# ---------------------------------------------------------------------------
# Value parsers
# ---------------------------------------------------------------------------

def strip_gid(value: Any) -> Optional[str]:
    """'gid://shopify/Customer/123' -> '123'. Plain ids pass through as strings."""
    if value is None or value == "":
        return None
    text = str(value)
    if text.startswith("gid://"):
        return text.rsplit("/", 1)[-1]
    return text


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Parse money; None/'' is zero, anything unparsable is a malformed record."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise MalformedRecordError(f"Invalid number for {field_name}: {value!r}", field_name, value)
    if not result.is_finite():
        raise MalformedRecordError(f"Invalid number for {field_name}: {value!r}", field_name, value)
    return result


def to_int(value: Any, field_name: str = "count") -> int:
    """Parse a count; '12', 12, '12.0' all give 12."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    return int(to_decimal(value, field_name))


def to_datetime(value: Any, field_name: str = "date") -> datetime:
    """
    Parse a timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings, 'YYYYMMDD' (GA4), epoch seconds (Stripe)
    and date/datetime objects. Anything else is a malformed record.
    """
    if value is None or value == "":
        raise MalformedRecordError(f"Missing {field_name}", field_name, value)

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedRecordError(f"Invalid {field_name}: {value!r}", field_name, value)
    else:
        text = str(value).strip()
        try:
            if len(text) == 8 and text.isdigit():
                parsed = datetime.strptime(text, "%Y%m%d")
            else:
                parsed = date_parser.isoparse(text)
        except (ValueError, OverflowError):
            raise MalformedRecordError(f"Invalid {field_name}: {value!r}", field_name, value)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_date(value: Any, field_name: str = "date") -> date:
    """Parse a calendar day (see to_datetime for accepted formats)."""
    return to_datetime(value, field_name).date()


def to_text(value: Any, field_name: str = "text") -> Optional[str]:
    """Parse a code-like string field; None/'' is None, non-strings are malformed."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedRecordError(f"{field_name}: expected text, got {value!r}", field_name, value)
    return value.strip() or None


def parse_tags(value: Any) -> List[str]:
    """Shopify tags arrive as 'a, b' (REST/demo) or ['a', 'b'] (GraphQL)."""
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(t).strip() for t in value if str(t).strip()]
    return [t.strip() for t in str(value).split(",") if t.strip()]
