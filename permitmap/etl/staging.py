"""Turn a page of raw Socrata records into rows for the normalized tables.

Parsing is fail-closed: a malformed date or number raises
:class:`MalformedRecordError` and the whole page is rejected before any row
reaches the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import json
import math

from shapely.geometry import Point

from .fields import ENTITY_ROLES, FieldResolver


BUILDING_COLUMNS: tuple[str, ...] = (
    "bin",
    "block",
    "lot",
    "borough",
    "street_name",
    "house_no",
    "zipcode",
    "census_tract",
    "nta_name",
)

DETAIL_COLUMNS: tuple[str, ...] = (
    "permit_number",
    "job_number",
    "permit_sequence_no",
    "permit_subtype",
    "filing_status",
    "filing_date",
    "site_fill",
    "oil_gas",
    "self_cert",
    "special_district_1",
    "special_district_2",
)

ENTITY_COLUMNS: tuple[str, ...] = (
    "entity_type",
    "full_name",
    "business_name",
    "license_type",
    "license_number",
    "phone",
    "address",
    "city",
    "state",
    "zip",
)

PERMIT_COLUMNS: tuple[str, ...] = (
    "id",
    "updated_at",
    "borough",
    "bin",
    "permit_number",
    "gis_latitude",
    "gis_longitude",
    "community_board",
    "council_district",
    "nta_name",
    "zipcode",
    "permit_issuance_date",
    "expiration_date",
    "job_start_date",
    "permit_status",
    "permit_type",
    "work_type",
    "job_type",
    "bldg_type",
    "residential",
    "dobrundate",
    "raw",
)

DATE_FIELDS = frozenset(
    {
        "updated_at",
        "filing_date",
        "permit_issuance_date",
        "expiration_date",
        "job_start_date",
        "dobrundate",
    }
)
NUMERIC_FIELDS = frozenset({"gis_latitude", "gis_longitude"})

_US_DATE_FORMATS = (
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)


class MalformedRecordError(ValueError):
    """Raised when a record cannot be parsed; the containing page must not be applied."""


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_timestamp(value: Any, field_name: str = "value") -> Optional[datetime]:
    """Parse an upstream date or timestamp into an aware UTC ``datetime``.

    Blank input yields ``None``; anything else that does not parse raises.
    Naive values are taken to be UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    else:
        text = clean_text(value)
        if text is None:
            return None
        if not isinstance(value, str):
            raise MalformedRecordError(f"Malformed {field_name}: {value!r}")
        parsed = None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            for fmt in _US_DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            raise MalformedRecordError(f"Malformed {field_name}: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_float(value: Any, field_name: str = "value") -> Optional[float]:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    if isinstance(value, bool):
        raise MalformedRecordError(f"Malformed {field_name}: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedRecordError(f"Malformed {field_name}: {value!r}") from exc
    if not math.isfinite(number):
        raise MalformedRecordError(f"Malformed {field_name}: {value!r}")
    return number


def point_from_coordinates(latitude: Optional[float], longitude: Optional[float]) -> Optional[Point]:
    """Return the WGS84 point for valid coordinates, otherwise ``None``.

    Mirrors the generated ``dob_permits.geom`` column.
    """

    if latitude is None or longitude is None:
        return None
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        return None
    return Point(longitude, latitude)


def _full_name(first: Any, last: Any) -> Optional[str]:
    parts = [part for part in (clean_text(first), clean_text(last)) if part]
    return " ".join(parts) or None


@dataclass
class StagedPage:
    """Rows ready to be written, one list per target table."""

    buildings: List[Tuple[Any, ...]] = field(default_factory=list)
    details: List[Tuple[Any, ...]] = field(default_factory=list)
    entities: List[Tuple[Any, ...]] = field(default_factory=list)
    permits: List[Tuple[Any, ...]] = field(default_factory=list)
    located: int = 0


def stage_entities(resolved: Mapping[str, Any]) -> List[Tuple[Any, ...]]:
    """Derive owner and permittee candidates from one resolved record."""

    rows: List[Tuple[Any, ...]] = []
    for role in ENTITY_ROLES:
        business_name = clean_text(resolved.get(f"{role}_business_name"))
        full_name = _full_name(resolved.get(f"{role}_first_name"), resolved.get(f"{role}_last_name"))
        if business_name is None and full_name is None:
            continue
        rows.append(
            (
                role,
                full_name,
                business_name,
                clean_text(resolved.get(f"{role}_license_type")),
                clean_text(resolved.get(f"{role}_license_number")),
                clean_text(resolved.get(f"{role}_phone")),
                clean_text(resolved.get(f"{role}_address")),
                clean_text(resolved.get(f"{role}_city")),
                clean_text(resolved.get(f"{role}_state")),
                clean_text(resolved.get(f"{role}_zip")),
            )
        )
    return rows


def dedupe_entities(candidates: Sequence[Tuple[Any, ...]]) -> List[Tuple[Any, ...]]:
    """Keep the first candidate per ``(role, business_name)``; unnamed ones always pass."""

    seen: set[tuple[str, str]] = set()
    kept: List[Tuple[Any, ...]] = []
    for row in candidates:
        role, business_name = row[0], row[2]
        if business_name is not None:
            key = (role, business_name)
            if key in seen:
                continue
            seen.add(key)
        kept.append(row)
    return kept


def _resolve_typed(resolver: FieldResolver, record: Mapping[str, Any]) -> Dict[str, Any]:
    resolved = resolver.resolve(record)
    for name in DATE_FIELDS:
        resolved[name] = parse_timestamp(resolved.get(name), name)
    for name in NUMERIC_FIELDS:
        resolved[name] = parse_float(resolved.get(name), name)
    for name, value in resolved.items():
        if name not in DATE_FIELDS and name not in NUMERIC_FIELDS:
            resolved[name] = clean_text(value)
    return resolved


def stage_page(records: Sequence[Mapping[str, Any]]) -> StagedPage:
    """Normalise ``records`` into per-table rows.

    Buildings and permit details keep the last occurrence per key (pages are
    ordered oldest first, so the last one is the freshest).  Permit rows keep
    every occurrence; the database statement collapses duplicate ids.
    """

    resolver = FieldResolver.for_page(records)
    buildings: Dict[str, Tuple[Any, ...]] = {}
    details: Dict[str, Tuple[Any, ...]] = {}
    entity_candidates: List[Tuple[Any, ...]] = []
    staged = StagedPage()

    for ordinal, record in enumerate(records):
        resolved = _resolve_typed(resolver, record)
        if resolved["id"] is None:
            raise MalformedRecordError(f"Record {ordinal} has no :id")
        if resolved["updated_at"] is None:
            raise MalformedRecordError(f"Record {resolved['id']} has no :updated_at")

        if resolved["bin"] is not None:
            buildings[resolved["bin"]] = tuple(resolved[column] for column in BUILDING_COLUMNS)
        if resolved["permit_number"] is not None:
            details[resolved["permit_number"]] = tuple(resolved[column] for column in DETAIL_COLUMNS)
        entity_candidates.extend(stage_entities(resolved))

        if point_from_coordinates(resolved["gis_latitude"], resolved["gis_longitude"]) is not None:
            staged.located += 1
        resolved["raw"] = json.dumps(dict(record), sort_keys=True)
        staged.permits.append((ordinal, *(resolved[column] for column in PERMIT_COLUMNS)))

    staged.buildings = list(buildings.values())
    staged.details = list(details.values())
    staged.entities = dedupe_entities(entity_candidates)
    return staged


__all__ = [
    "BUILDING_COLUMNS",
    "DETAIL_COLUMNS",
    "ENTITY_COLUMNS",
    "PERMIT_COLUMNS",
    "MalformedRecordError",
    "StagedPage",
    "clean_text",
    "dedupe_entities",
    "parse_float",
    "parse_timestamp",
    "point_from_coordinates",
    "stage_entities",
    "stage_page",
]
