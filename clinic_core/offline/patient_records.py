# =============================================================================
# clinic_core/offline/patient_records.py
# Canonical Patient Record Shape
# =============================================================================
"""
Patient collections arrive from several generations of exports (API,
bundled backups, older local caches) with slightly different field names.
transform_patient_payload() maps whichever one won resolution onto a
single record shape so the rest of the application sees one format.

Usage:
    resolver = SourceResolver(transform=transform_patient_payload)
    resolved = resolver.resolve(sources)
    resolved.records[0]["surname"]
"""

from __future__ import annotations
import time
import uuid
from datetime import datetime
from typing import Any, Dict

PATIENT_ID_PREFIX = "patient_"
SNAPSHOT_VERSION = "1.0.0"

# Canonical field -> raw field names, first non-empty wins
_FIELD_ALIASES = {
    "name": ("firstName", "name"),
    "surname": ("lastName", "surname"),
    "phone": ("phone",),
    "email": ("email",),
    "lastVisit": ("lastVisit", "registrationDate"),
    "profession": ("profession",),
    "attendingDoctor": ("attendingDoctor",),
    "registrationDate": ("registrationDate",),
    "amka": ("amka",),
    "address": ("address",),
}


def generate_patient_id() -> str:
    """Id for imported records that arrived without one."""
    return f"{PATIENT_ID_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _first(record: Dict[str, Any], names) -> Any:
    for name in names:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return ""


def _is_active(record: Dict[str, Any]) -> bool:
    return record.get("isActive") in ("1", 1) or record.get("status") == "active"


def canonical_patient(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map one raw patient record onto the canonical shape.

    - firstName / lastName are read as name / surname
    - isActive == "1" or status == "active" gives status "active",
      anything else "inactive"
    - an age of "-" (legacy exports) is unknown, stored as None
    - a record without an id gets a generated one
    """
    age = record.get("age")
    patient = {"id": record.get("id") or generate_patient_id()}
    for field_name, aliases in _FIELD_ALIASES.items():
        patient[field_name] = _first(record, aliases)
    patient["age"] = None if age in (None, "", "-") else age
    patient["totalMeasurements"] = record.get("totalMeasurements") or 0
    patient["status"] = "active" if _is_active(record) else "inactive"
    return patient


def transform_patient_payload(
    payload: Dict[str, Any],
    source_name: str,
    collection_key: str = "patients",
) -> Dict[str, Any]:
    """
    Canonical form of a validated patient payload.

    The source's own metadata is kept under originalMetadata.
    """
    patients = [canonical_patient(record) for record in payload[collection_key]]
    return {
        collection_key: patients,
        "metadata": {
            "totalPatients": len(patients),
            "source": source_name,
            "lastUpdated": datetime.now().isoformat(),
            "version": f"{SNAPSHOT_VERSION} - {source_name} mode",
            "originalMetadata": payload.get("metadata") or {},
        },
    }
