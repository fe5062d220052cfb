"""Logical permit attributes and the upstream field names that may carry them.

Upstream column names drift between dataset revisions (``bin__`` vs ``bin``,
``permit_si_no`` vs ``permit_number`` ...).  Each logical attribute lists its
candidate names in order of preference; the first candidate holding a value
wins.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Sequence


ENTITY_ROLES: tuple[str, ...] = ("owner", "permittee")

ENTITY_ATTRIBUTES: tuple[str, ...] = (
    "business_name",
    "first_name",
    "last_name",
    "phone",
    "address",
    "city",
    "state",
    "zip",
    "license_type",
    "license_number",
)


FIELD_CANDIDATES: Dict[str, tuple[str, ...]] = {
    "id": (":id",),
    "updated_at": (":updated_at",),
    "borough": ("borough",),
    "bin": ("bin__", "bin"),
    "house_no": ("house__", "house_no"),
    "street_name": ("street_name",),
    "block": ("block",),
    "lot": ("lot",),
    "zipcode": ("zip_code", "zipcode"),
    "census_tract": ("gis_census_tract", "census_tract"),
    "nta_name": ("gis_nta_name", "nta_name"),
    "community_board": ("community_board",),
    "council_district": ("gis_council_district", "council_district"),
    "gis_latitude": ("gis_latitude", "latitude"),
    "gis_longitude": ("gis_longitude", "longitude"),
    "job_number": ("job__", "job_number"),
    "permit_number": ("permit_si_no", "permit_number"),
    "permit_sequence_no": ("permit_sequence__", "permit_sequence_no"),
    "permit_subtype": ("permit_subtype",),
    "filing_status": ("filing_status",),
    "filing_date": ("filing_date",),
    "site_fill": ("site_fill",),
    "oil_gas": ("oil_gas",),
    "self_cert": ("self_cert",),
    "special_district_1": ("special_district_1",),
    "special_district_2": ("special_district_2",),
    "permit_status": ("permit_status",),
    "permit_type": ("permit_type",),
    "work_type": ("work_type",),
    "job_type": ("job_type",),
    "bldg_type": ("bldg_type",),
    "residential": ("residential",),
    "permit_issuance_date": ("issuance_date", "permit_issuance_date"),
    "expiration_date": ("expiration_date",),
    "job_start_date": ("job_start_date",),
    "dobrundate": ("dobrundate",),
}

for _role in ENTITY_ROLES:
    for _attribute in ENTITY_ATTRIBUTES:
        FIELD_CANDIDATES[f"{_role}_{_attribute}"] = (
            f"{_role}_s_{_attribute}",
            f"{_role}_{_attribute}",
        )


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and value.strip() == "":
        return False
    return True


@dataclass(frozen=True)
class FieldResolver:
    """Candidate names narrowed to the fields a page actually carries."""

    candidates: Mapping[str, Sequence[str]]

    @classmethod
    def for_page(
        cls,
        records: Iterable[Mapping[str, Any]],
        candidates: Mapping[str, Sequence[str]] = FIELD_CANDIDATES,
    ) -> "FieldResolver":
        seen: set[str] = set()
        for record in records:
            seen.update(record.keys())
        narrowed = {
            attribute: tuple(name for name in names if name in seen)
            for attribute, names in candidates.items()
        }
        return cls(candidates=narrowed)

    def get(self, record: Mapping[str, Any], attribute: str) -> Any:
        for name in self.candidates.get(attribute, ()):
            value = record.get(name)
            if _present(value):
                return value
        return None

    def resolve(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return {attribute: self.get(record, attribute) for attribute in self.candidates}


__all__ = [
    "ENTITY_ATTRIBUTES",
    "ENTITY_ROLES",
    "FIELD_CANDIDATES",
    "FieldResolver",
]
