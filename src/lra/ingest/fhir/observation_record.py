from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Coding:
    system: Optional[str]
    code: Optional[str]
    display: Optional[str]


@dataclass(frozen=True)
class ObservationRecord:
    id: str
    patient_reference: Optional[str]
    code_candidates: Tuple[Coding, ...]
    free_text_code: Optional[str]
    quantity_value: Any
    quantity_unit: str
    category_codes: Tuple[str, ...]
    reference_range_low: Optional[float] = None
    reference_range_high: Optional[float] = None
    timestamp: Optional[str] = None

    @property
    def patient_id(self) -> Optional[str]:
        # e.g., "Patient/123" or "Patient/123/_history/2" -> "123"
        if not self.patient_reference:
            return None
        ref = self.patient_reference.split("/_history/", 1)[0]
        pid = ref.rstrip("/").split("/")[-1].strip()
        return pid or None

    @property
    def numeric_value(self) -> Optional[float]:
        v = self.quantity_value
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        v = float(v)
        # NaN and Infinity parse from JSON but compare false against both bounds
        return v if math.isfinite(v) else None


def _str(v: Any) -> Optional[str]:
    if isinstance(v, str) and v.strip():
        return v.strip()
    return None


def _get_obs_id(o: Dict[str, Any]) -> str:
    # Prefer resource id; fallback to identifier.value
    if _str(o.get("id")):
        return o["id"].strip()
    for ident in o.get("identifier", []) or []:
        if isinstance(ident, dict) and _str(ident.get("value")):
            return ident["value"].strip()
    return ""


def _get_patient_reference(o: Dict[str, Any]) -> Optional[str]:
    subj = o.get("subject") or {}
    if not isinstance(subj, dict):
        return None
    return _str(subj.get("reference"))


def _get_effective_time(o: Dict[str, Any]) -> Optional[str]:
    # Choose the best available time in order
    if _str(o.get("effectiveDateTime")):
        return o["effectiveDateTime"].strip()
    if _str(o.get("effectiveInstant")):
        return o["effectiveInstant"].strip()
    eff = o.get("effectivePeriod") or {}
    if isinstance(eff, dict) and _str(eff.get("start")):
        return eff["start"].strip()
    return _str(o.get("issued"))


def _get_codings(o: Dict[str, Any]) -> Tuple[Tuple[Coding, ...], Optional[str]]:
    code = o.get("code") or {}
    if not isinstance(code, dict):
        return (), None

    codings = []
    for c in code.get("coding") or []:
        if not isinstance(c, dict):
            continue
        codings.append(Coding(system=_str(c.get("system")), code=_str(c.get("code")), display=_str(c.get("display"))))
    return tuple(codings), _str(code.get("text"))


def _get_category_codes(o: Dict[str, Any]) -> Tuple[str, ...]:
    codes = []
    for cc in o.get("category") or []:
        if not isinstance(cc, dict):
            continue
        for c in cc.get("coding") or []:
            if isinstance(c, dict) and _str(c.get("code")):
                codes.append(c["code"].strip().lower())
    return tuple(codes)


def _get_value_unit(o: Dict[str, Any]) -> Tuple[Any, str]:
    vq = o.get("valueQuantity")
    if not isinstance(vq, dict):
        return None, ""
    # Prefer the human unit, else UCUM code
    unit = vq.get("unit") or vq.get("code") or ""
    return vq.get("value"), str(unit)


def _bound(v: Any) -> Optional[float]:
    if isinstance(v, dict):
        val = v.get("value")
        if isinstance(val, (int, float)) and not isinstance(val, bool):
            return float(val)
    return None


def _get_reference_range(o: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    rr_list = o.get("referenceRange") or []
    if not isinstance(rr_list, list) or not rr_list or not isinstance(rr_list[0], dict):
        return None, None
    rr0 = rr_list[0]
    return _bound(rr0.get("low")), _bound(rr0.get("high"))


def parse_observation(o: Dict[str, Any]) -> ObservationRecord:
    """Project a raw FHIR Observation onto the fields classification needs. Never raises on shape."""
    codings, text = _get_codings(o)
    value, unit = _get_value_unit(o)
    low, high = _get_reference_range(o)
    return ObservationRecord(
        id=_get_obs_id(o),
        patient_reference=_get_patient_reference(o),
        code_candidates=codings,
        free_text_code=text,
        quantity_value=value,
        quantity_unit=unit,
        category_codes=_get_category_codes(o),
        reference_range_low=low,
        reference_range_high=high,
        timestamp=_get_effective_time(o),
    )
