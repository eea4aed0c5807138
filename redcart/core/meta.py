"""
Helpers for the provider-namespaced ``Payment.meta`` record.

``meta`` looks like ``{"mpesa": {...}, ...}``. Updates merge new keys into
the provider namespace and keep everything else, so earlier callback and
query details stay readable.
"""
from typing import Any, Dict, Optional

JsonRecord = Dict[str, Any]

MPESA_NAMESPACE = "mpesa"


def to_json_record(value: Any) -> JsonRecord:
    """Return ``value`` if it is a JSON object, else an empty dict."""
    if isinstance(value, dict):
        return value
    return {}


def get_provider_meta(meta: Any, namespace: str = MPESA_NAMESPACE) -> JsonRecord:
    return to_json_record(to_json_record(meta).get(namespace))


def merge_provider_meta(
    current: Any, patch: JsonRecord, namespace: str = MPESA_NAMESPACE
) -> JsonRecord:
    """
    Merge ``patch`` into ``current[namespace]``.

    Returns a new dict; ``current`` is left untouched so SQLAlchemy sees the
    assignment as a change.
    """
    existing = dict(to_json_record(current))
    merged = dict(to_json_record(existing.get(namespace)))
    merged.update(patch)
    existing[namespace] = merged
    return existing


def get_mpesa_meta(meta: Any) -> JsonRecord:
    return get_provider_meta(meta, MPESA_NAMESPACE)


def merge_mpesa_meta(current: Any, patch: JsonRecord) -> JsonRecord:
    return merge_provider_meta(current, patch, MPESA_NAMESPACE)


def get_meta_string(meta: JsonRecord, key: str) -> Optional[str]:
    """Stripped string value of ``key`` or None when absent/blank/not a string."""
    value = meta.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def get_checkout_request_id(meta: Any) -> Optional[str]:
    """Provider checkout session id recorded at initiation, if any."""
    return get_meta_string(get_mpesa_meta(meta), "checkoutRequestId")
