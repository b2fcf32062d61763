"""URL normalization and slot deduplication.

Several slots of one print often point at the same remote image (for example
normal and artCrop served from one URL with different query strings). Slots
are grouped into unique work units by canonical URL so each remote image is
fetched, transformed and stored once.
"""

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence
from urllib.parse import urlsplit

import structlog

from cardart.models.image_slot import SlotType

logger = structlog.get_logger(__name__)

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class WorkUnit:
    """Slots sharing one canonical source URL.

    Attributes:
        canonical_url: Normalized URL used as the dedup key
        representative_url: URL actually fetched for the unit
        slot_types: Slots populated from the unit, in first-seen order
    """

    canonical_url: str
    representative_url: str
    slot_types: tuple[SlotType, ...]

    @property
    def is_shared(self) -> bool:
        """True when more than one slot is served from this unit's storage."""
        return len(self.slot_types) > 1


def normalize_url(url: str) -> str:
    """Reduce a URL to scheme://host[:port]/path.

    Query string and fragment are dropped; scheme and host are lowercased and
    the default port of the scheme (80 for http, 443 for https) is omitted.
    Malformed input is returned unchanged so deduplication degrades to
    exact-string matching instead of failing the job.

    Args:
        url: Source URL

    Returns:
        Canonical URL, or the original string if it cannot be parsed
    """
    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        port = parts.port
        if not parts.scheme or not host:
            raise ValueError("URL has no scheme or host")
    except ValueError as e:
        logger.warning("image_url.normalization_degraded", url=url, error=str(e))
        return url

    scheme = parts.scheme.lower()
    if DEFAULT_PORTS.get(scheme) == port:
        port = None
    if ":" in host:
        host = f"[{host}]"
    netloc = f"{host}:{port}" if port is not None else host
    return f"{scheme}://{netloc}{parts.path or '/'}"


def build_work_units(
    slot_map: Mapping[SlotType, str],
    url_mapping: Optional[Mapping[str, Sequence[SlotType]]] = None,
) -> list[WorkUnit]:
    """Group a job's slots into unique work units.

    A producer-supplied url_mapping is trusted: each entry becomes one unit
    keyed by its normalized URL (entries normalizing to the same URL merge, a
    slot listed twice keeps its first entry, slots absent from slot_map are
    ignored). Slots of slot_map that the mapping does not cover are grouped by
    normalizing their URL, so no slot is ever dropped.

    Args:
        slot_map: Slot type to source URL
        url_mapping: Optional canonical URL to slot types, precomputed by the producer

    Returns:
        Work units in first-appearance order; every slot_map key appears in exactly one unit
    """
    grouped: dict[str, tuple[str, list[SlotType]]] = {}
    assigned: set[SlotType] = set()

    for mapped_url, slot_types in (url_mapping or {}).items():
        members = [
            slot for slot in dict.fromkeys(slot_types) if slot in slot_map and slot not in assigned
        ]
        if not members:
            continue
        canonical_url = normalize_url(mapped_url)
        if canonical_url in grouped:
            grouped[canonical_url][1].extend(members)
        else:
            grouped[canonical_url] = (slot_map[members[0]], members)
        assigned.update(members)

    for slot_type, url in slot_map.items():
        if slot_type in assigned:
            continue
        canonical_url = normalize_url(url)
        if canonical_url in grouped:
            grouped[canonical_url][1].append(slot_type)
        else:
            grouped[canonical_url] = (url, [slot_type])
        assigned.add(slot_type)

    return [
        WorkUnit(
            canonical_url=canonical,
            representative_url=representative,
            slot_types=tuple(slots),
        )
        for canonical, (representative, slots) in grouped.items()
    ]


def build_url_mapping(slot_map: Mapping[SlotType, str]) -> dict[str, list[SlotType]]:
    """Precompute the url_mapping a producer attaches to a job."""
    return {unit.canonical_url: list(unit.slot_types) for unit in build_work_units(slot_map)}


def deduplication_ratio(units: Sequence[WorkUnit]) -> float:
    """Fraction of requested slots satisfied without a distinct fetch.

    Returns:
        1 - units/slots, or 0.0 for an empty job
    """
    total_slots = sum(len(unit.slot_types) for unit in units)
    if total_slots == 0:
        return 0.0
    return 1 - len(units) / total_slots
