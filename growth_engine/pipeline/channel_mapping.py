"""
Channel Mapping

Maps order / traffic metadata to a standardized channel slug.

Order attribution priority (first match wins):
1. Platform click ids: gclid -> google, fbclid -> meta
2. Structured last-visit attribution (source + source type)
3. UTM source / medium
4. Referring site
5. Source name (pos, draft orders) -> direct
6. Fallback -> direct

Both functions are pure and total: any input returns a slug, never raises.
"""
from typing import Optional

CHANNEL_SLUGS = ("meta", "google", "organic", "email", "affiliate", "direct", "other")

_GOOGLE_PAID_MEDIUMS = {"cpc", "ppc", "paid", "shopping"}
_GOOGLE_ORGANIC_MEDIUMS = {"organic", "", "surfaces"}
_DIRECT_SOURCE_NAMES = {"pos", "shopify_draft_order"}


def _clean(value) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def map_channel_from_order(
    source_name: Optional[str] = None,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    referring_site: Optional[str] = None,
    gclid: Optional[str] = None,
    fbclid: Optional[str] = None,
    shopify_source: Optional[str] = None,
    shopify_source_type: Optional[str] = None,
) -> str:
    """Resolve the marketing channel an order is attributed to."""
    src = _clean(utm_source)
    med = _clean(utm_medium)
    ref = _clean(referring_site)
    s_src = _clean(shopify_source)
    s_type = _clean(shopify_source_type)

    # Ad platform auto-tagging beats everything, including a contradicting referrer
    if gclid:
        return "google"
    if fbclid:
        return "meta"

    if s_src:
        if s_src == "google":
            # Google Ads auto-tagging carries no UTM; organic says so explicitly
            return "organic" if med == "organic" else "google"
        if s_src in ("facebook", "instagram"):
            return "meta"
        if s_type == "email" or "klaviyo" in s_src or "mailchimp" in s_src:
            return "email"
        if s_type == "social":
            return "other"
        if s_type == "direct":
            return "direct"

    if src:
        if "facebook" in src or src == "fb" or "instagram" in src or src == "ig":
            return "meta"
        if "google" in src and med in _GOOGLE_PAID_MEDIUMS:
            return "google"
        if "google" in src and med in _GOOGLE_ORGANIC_MEDIUMS:
            return "organic"
        if "klaviyo" in src or "mailchimp" in src or med == "email":
            return "email"
        if "affiliate" in src or med == "referral":
            return "affiliate"
        return "other"

    if ref:
        if "facebook.com" in ref or "instagram.com" in ref:
            return "meta"
        if "google." in ref and med == "cpc":
            return "google"
        if "google." in ref:
            return "organic"

    if _clean(source_name) in _DIRECT_SOURCE_NAMES:
        return "direct"

    return "direct"


def map_ga4_channel_to_slug(ga4_channel: Optional[str]) -> str:
    """Map a GA4 sessionDefaultChannelGroup label to a channel slug."""
    ch = _clean(ga4_channel)
    if "paid social" in ch:
        # Most paid social spend is Meta
        return "meta"
    if "paid search" in ch or "paid shopping" in ch:
        return "google"
    if "organic search" in ch or "organic social" in ch or "organic shopping" in ch:
        return "organic"
    if "email" in ch:
        return "email"
    if "referral" in ch or "affiliate" in ch:
        return "affiliate"
    if "direct" in ch:
        return "direct"
    return "other"
