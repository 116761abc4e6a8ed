"""
URL parsing utilities for extracting attribution parameters from landing page URLs.
"""
from urllib.parse import urlparse, parse_qs, unquote
from typing import Dict, Optional

_PARAMS = {
    "utm_source": "utm_source",
    "utm_medium": "utm_medium",
    "utm_campaign": "utm_campaign",
    "utm_term": "utm_term",
    "utm_content": "utm_content",
    "gclid": "gclid",
    "fbclid": "fbclid",
    "gad_campaign_id": "gad_campaignid",
}


def parse_landing_site(url: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Parse a landing page URL (absolute or path-only) and extract attribution parameters.

    Returns dict with keys:
        utm_source, utm_medium, utm_campaign, utm_term, utm_content,
        gclid, fbclid, gad_campaign_id
    All values are None if not found.
    """
    result = {key: None for key in _PARAMS}

    if not url or not isinstance(url, str):
        return result

    try:
        query = urlparse(url).query
        if not query and "?" in url:
            query = url.split("?", 1)[1]
        params = parse_qs(query)
    except ValueError:
        # Malformed URL (e.g. bad IPv6 netloc): no attribution to recover
        return result

    for key, param in _PARAMS.items():
        result[key] = _first(params, param)

    return result


def _first(params: dict, key: str) -> Optional[str]:
    """Get first value for a query parameter, or None."""
    values = params.get(key)
    if values and values[0]:
        return unquote(values[0])
    return None
