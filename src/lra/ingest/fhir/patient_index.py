from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from loguru import logger


@dataclass(frozen=True)
class PatientIdentity:
    id: str
    display_name: str
    gender: Optional[str] = None
    age: Optional[int] = None


def compute_age(birth: date, today: date) -> int:
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return years


def _parse_birth_date(v: Any) -> Optional[date]:
    # FHIR allows YYYY and YYYY-MM; only full dates give a reliable age
    if not isinstance(v, str) or len(v.strip()) != 10:
        return None
    try:
        return date.fromisoformat(v.strip())
    except ValueError:
        return None


def _display_name(p: Dict[str, Any]) -> Optional[str]:
    names = [n for n in (p.get("name") or []) if isinstance(n, dict)]
    if not names:
        return None
    name = next((n for n in names if n.get("use") == "official"), names[0])

    text = name.get("text")
    if isinstance(text, str) and text.strip():
        return text.strip()

    given = [g.strip() for g in (name.get("given") or []) if isinstance(g, str) and g.strip()]
    family = name.get("family")
    parts = given + ([family.strip()] if isinstance(family, str) and family.strip() else [])
    return " ".join(parts) or None


def to_identity(p: Dict[str, Any], today: date) -> Optional[PatientIdentity]:
    pid = p.get("id")
    if not isinstance(pid, str) or not pid.strip():
        return None
    pid = pid.strip()

    birth = _parse_birth_date(p.get("birthDate"))
    gender = p.get("gender") if isinstance(p.get("gender"), str) else None
    return PatientIdentity(
        id=pid,
        display_name=_display_name(p) or pid,
        gender=gender,
        age=compute_age(birth, today) if birth else None,
    )


def build_patient_index(lines: Iterable[str], now: Optional[datetime] = None) -> Dict[str, PatientIdentity]:
    """
    id -> PatientIdentity from NDJSON Patient lines.
    Bad lines are skipped; the worst case is an empty index, never an exception.
    """
    today = (now or datetime.now()).date()
    index: Dict[str, PatientIdentity] = {}
    skipped = 0

    for n, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            p = json.loads(line)
        except ValueError as e:
            skipped += 1
            logger.warning(f"Skipping malformed Patient line {n}: {e}")
            continue
        if not isinstance(p, dict):
            skipped += 1
            continue

        identity = to_identity(p, today)
        if identity is None:
            skipped += 1
            logger.warning(f"Skipping Patient line {n} without an id")
            continue
        index[identity.id] = identity

    logger.info(f"Patient index built: {len(index)} patients, {skipped} lines skipped")
    return index


def display_name_for(index: Dict[str, PatientIdentity], patient_id: str) -> str:
    identity = index.get(patient_id)
    return identity.display_name if identity else patient_id
