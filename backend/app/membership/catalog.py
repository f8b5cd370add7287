"""Canonical mapping between quota resources and tier catalog fields."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .models import QuotaResource


@dataclass(frozen=True)
class QuotaFieldDefinition:
    """Describes where a resource allowance lives on a tier record."""

    resource: QuotaResource
    tier_field: str
    tier_column: str
    ledger_column: str
    label: str


QUOTA_FIELD_CATALOG: Dict[QuotaResource, QuotaFieldDefinition] = {
    QuotaResource.CONSULTATIONS: QuotaFieldDefinition(
        resource=QuotaResource.CONSULTATIONS,
        tier_field="consultationsPerMonth",
        tier_column="consultations_per_month",
        ledger_column="consultations_used",
        label="Consultations",
    ),
    QuotaResource.OPINIONS: QuotaFieldDefinition(
        resource=QuotaResource.OPINIONS,
        tier_field="opinionsPerMonth",
        tier_column="opinions_per_month",
        ledger_column="opinions_used",
        label="Legal opinions",
    ),
    QuotaResource.SERVICES: QuotaFieldDefinition(
        resource=QuotaResource.SERVICES,
        tier_field="servicesPerMonth",
        tier_column="services_per_month",
        ledger_column="services_used",
        label="Services",
    ),
    QuotaResource.CASES: QuotaFieldDefinition(
        resource=QuotaResource.CASES,
        tier_field="casesPerMonth",
        tier_column="cases_per_month",
        ledger_column="cases_used",
        label="Cases",
    ),
    QuotaResource.CALL_MINUTES: QuotaFieldDefinition(
        resource=QuotaResource.CALL_MINUTES,
        tier_field="callMinutesPerMonth",
        tier_column="call_minutes_per_month",
        ledger_column="call_minutes_used",
        label="Call minutes",
    ),
}


def get_quota_field(resource: QuotaResource) -> QuotaFieldDefinition:
    """Return the field definition for a resource, raising if unsupported."""

    try:
        return QUOTA_FIELD_CATALOG[resource]
    except KeyError as exc:  # pragma: no cover - guarded by the enum
        raise KeyError(f"Unknown quota resource: {resource}") from exc


def quota_from_tier_fields(
    record: Mapping[str, object], *, columns: bool = False
) -> Dict[QuotaResource, Optional[int]]:
    """Build a quota map from a tier record keyed by ``*PerMonth`` fields.

    With ``columns=True`` the record is a database row keyed by the
    ``*_per_month`` column names instead.

    Absent keys and ``None`` values both mean unlimited and are left out of
    the result so that :meth:`MembershipTier.quota_limit` returns ``None``.
    """

    quota: Dict[QuotaResource, Optional[int]] = {}
    for resource, definition in QUOTA_FIELD_CATALOG.items():
        value = record.get(definition.tier_column if columns else definition.tier_field)
        if value is None:
            continue
        quota[resource] = int(value)  # type: ignore[arg-type]
    return quota


def quota_to_tier_fields(quota: Mapping[QuotaResource, Optional[int]]) -> Dict[str, Optional[int]]:
    """Serialize a quota map back into the tier record's field names."""

    return {
        definition.tier_field: quota.get(resource)
        for resource, definition in QUOTA_FIELD_CATALOG.items()
    }


__all__ = [
    "QUOTA_FIELD_CATALOG",
    "QuotaFieldDefinition",
    "get_quota_field",
    "quota_from_tier_fields",
    "quota_to_tier_fields",
]
