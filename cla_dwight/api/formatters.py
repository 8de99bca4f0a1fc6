"""Render snapshot data as JSON-ready dicts, XML and plain-text status."""

import xml.etree.ElementTree as ET
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import Request

from ..schemas.signature import Signature
from ..services.snapshot_builder import Snapshot

# Media types understood by the listing, mapped to a format name.
_MEDIA_TYPES = {
    "application/json": "json",
    "application/xml": "xml",
    "text/xml": "xml",
    "text/plain": "text",
    "text/html": "text",
}


def negotiate_format(request: Request, available: Sequence[str], default: str) -> str:
    """Pick the response format from ``?format=`` or the ``Accept`` header.

    Accept entries are tried by descending quality; ``*/*`` or nothing
    acceptable yields *default*.
    """
    requested = request.query_params.get("format")
    if requested in available:
        return requested

    candidates: List[Tuple[float, int, str]] = []
    for position, entry in enumerate(request.headers.get("accept", "").split(",")):
        media_type, _, params = entry.strip().partition(";")
        quality = 1.0
        for param in params.split(";"):
            key, _, value = param.strip().partition("=")
            if key == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        candidates.append((-quality, position, media_type.strip().lower()))

    for negative_quality, _, media_type in sorted(candidates):
        if negative_quality == 0:
            continue
        if media_type == "*/*":
            return default
        fmt = _MEDIA_TYPES.get(media_type)
        if fmt in available:
            return fmt
    return default


def signature_to_dict(signature: Signature) -> Dict[str, Any]:
    return signature.model_dump(mode="json")


def signatures_to_json(signatures: Iterable[Signature]) -> List[Dict[str, Any]]:
    return [signature_to_dict(s) for s in signatures]


def snapshot_to_json(snapshot: Snapshot) -> Dict[str, List[Dict[str, Any]]]:
    """User -> signatures, signees with the most recent signature first."""
    return {user: signatures_to_json(signatures) for user, signatures in snapshot.ordered_signatories()}


def censor_signatures(signatures: Iterable[Signature], private_fields: Sequence[str]) -> List[Signature]:
    """Copies of *signatures* without the given custom fields."""
    censored = []
    for signature in signatures:
        if signature.custom_fields and any(name in signature.custom_fields for name in private_fields):
            custom_fields = {k: v for k, v in signature.custom_fields.items() if k not in private_fields}
            signature = signature.model_copy(update={"custom_fields": custom_fields})
        censored.append(signature)
    return censored


def signature_status(signatures: Sequence[Signature]) -> Tuple[int, str]:
    """HTTP status and text for a signee: the newest signature decides."""
    if not signatures:
        return 404, "Not found"
    if signatures[0].is_revoked:
        return 410, "Revoked"
    return 200, "OK"


def _append_value(parent: ET.Element, tag: str, value: Any) -> None:
    element = ET.SubElement(parent, tag)
    if value is not None:
        element.text = value if isinstance(value, str) else str(value)


def signatures_to_xml(signatures: Iterable[Signature], timestamp: datetime) -> str:
    """``<signatures timestamp="…"><signature>…</signature>…</signatures>``.

    Custom fields are written as ``<field name="…">`` because their names
    are not guaranteed to be valid XML tags.
    """
    root = ET.Element("signatures", {"timestamp": timestamp.isoformat()})
    for signature in signatures:
        node = ET.SubElement(root, "signature")
        data = signature_to_dict(signature)
        custom_fields = data.pop("custom_fields", None) or {}
        for key, value in data.items():
            if isinstance(value, (dict, list)) or not key.isidentifier():
                continue
            _append_value(node, key, value)
        if custom_fields:
            fields = ET.SubElement(node, "custom_fields")
            for name, value in custom_fields.items():
                field = ET.SubElement(fields, "field", {"name": str(name)})
                if value is not None:
                    field.text = str(value)
    return ET.tostring(root, encoding="unicode", xml_declaration=True)


def format_time_span(span: timedelta) -> str:
    """Rough human-readable age, e.g. ``"2 days 3 hours 5 minutes"``."""
    total_minutes = int(span.total_seconds() // 60)
    if total_minutes < 1:
        return "less than a minute"

    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)

    parts = []
    if days:
        parts.append(f"{days} days")
    if hours:
        parts.append(f"{hours} hours")
    if minutes:
        parts.append(f"{minutes} minutes")
    return " ".join(parts)


def snapshot_headers(snapshot: Snapshot, now: Optional[datetime] = None) -> Dict[str, str]:
    """Headers that let callers notice stale (e.g. file-cached) data."""
    return {
        "X-Snapshot-Built-At": snapshot.built_at.isoformat(),
        "X-Snapshot-Source": snapshot.source,
        "X-Snapshot-Age": format_time_span(snapshot.age(now)),
    }
