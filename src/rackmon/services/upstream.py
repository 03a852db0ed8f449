"""Upstream response shapes and paged-URL helpers.

The telemetry upstreams answer in one of several JSON shapes. They are modeled
as a small tagged union so callers branch on the class instead of probing keys.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

PAGED_URL_TOKENS = ("$filter", "$select", "$expand", "$orderby", "$top", "$skip", "/odata/")

Record = dict


@dataclass(frozen=True)
class BareList:
    """New format: the body is the record array itself."""

    records: List[Record]


@dataclass(frozen=True)
class StatusEnvelope:
    """Legacy format: {"status": "Success", "data": [...]}."""

    records: List[Record]


@dataclass(frozen=True)
class ValueEnvelope:
    """Paged query format: {"value": [...], "@odata.count": N}."""

    records: List[Record]
    total_count: Optional[int] = None
    next_link: Optional[str] = None


@dataclass(frozen=True)
class DataEnvelope:
    """{"data": [...]} without a Success status."""

    records: List[Record]


@dataclass(frozen=True)
class FirstArrayField:
    """Unknown object whose first array-valued key was used."""

    records: List[Record]
    key: str


@dataclass(frozen=True)
class Unrecognized:
    """Anything else; carries the top-level keys for diagnostics."""

    keys: List[str] = field(default_factory=list)
    type_name: str = ""


UpstreamResponse = Union[BareList, StatusEnvelope, ValueEnvelope, DataEnvelope, FirstArrayField, Unrecognized]


def _as_int(v: Any) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


# PUBLIC_INTERFACE
def classify_response(body: Any) -> UpstreamResponse:
    """Classify a decoded JSON body into one of the known upstream shapes."""
    if isinstance(body, list):
        return BareList(records=body)

    if not isinstance(body, dict):
        return Unrecognized(type_name=type(body).__name__)

    data = body.get("data")
    if body.get("status") == "Success" and isinstance(data, list):
        return StatusEnvelope(records=data)

    value = body.get("value")
    if isinstance(value, list):
        return ValueEnvelope(
            records=value,
            total_count=_as_int(body.get("@odata.count")),
            next_link=body.get("@odata.nextLink"),
        )

    if isinstance(data, list):
        return DataEnvelope(records=data)

    for key, v in body.items():
        if isinstance(v, list):
            return FirstArrayField(records=v, key=key)

    return Unrecognized(keys=list(body.keys()), type_name="dict")


# PUBLIC_INTERFACE
def normalized_records(response: UpstreamResponse) -> Optional[List[Record]]:
    """
    Records for a whole-response fetch.

    Only the two formats the telemetry upstreams are contracted to return (bare array and
    Success envelope) are accepted; everything else is a format failure (None).
    """
    if isinstance(response, (BareList, StatusEnvelope)):
        return response.records
    return None


# PUBLIC_INTERFACE
def page_records(response: UpstreamResponse) -> List[Record]:
    """Records for a single page; pages are lenient and fall back to the first array field."""
    if isinstance(response, Unrecognized):
        return []
    return response.records


# PUBLIC_INTERFACE
def is_paged_url(url: Optional[str]) -> bool:
    """True when the URL looks like a paged query-style (OData) API."""
    if not url:
        return False
    lowered = url.lower()
    return any(token in lowered for token in PAGED_URL_TOKENS)


_TOP_RE = re.compile(r"\$top=\d+")
_SKIP_RE = re.compile(r"\$skip=\d+")


# PUBLIC_INTERFACE
def with_page_params(url: str, skip: int = 0, top: int = 50) -> str:
    """Set (or replace) $top/$skip on a paged URL."""
    new_url = url
    if _TOP_RE.search(new_url):
        new_url = _TOP_RE.sub(f"$top={int(top)}", new_url)
    else:
        new_url += ("&" if "?" in new_url else "?") + f"$top={int(top)}"

    if _SKIP_RE.search(new_url):
        new_url = _SKIP_RE.sub(f"$skip={int(skip)}", new_url)
    else:
        new_url += f"&$skip={int(skip)}"
    return new_url


# PUBLIC_INTERFACE
def describe_shape(response: UpstreamResponse) -> str:
    """Human-readable shape label used by logs and endpoint diagnosis."""
    if isinstance(response, BareList):
        return "Direct array response (new API format)"
    if isinstance(response, StatusEnvelope):
        return "Standard { status, data[] } (legacy format)"
    if isinstance(response, ValueEnvelope):
        return "Paged { value[], @odata.count }"
    if isinstance(response, DataEnvelope):
        return "{ data[] } without status"
    if isinstance(response, FirstArrayField):
        return f"Object with array under '{response.key}'"
    return "Non-standard JSON structure"
