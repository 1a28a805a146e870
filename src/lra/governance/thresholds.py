from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional

from jsonschema import Draft202012Validator

from lra.common.contract import validate_record


class Bucket(str, Enum):
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class ThresholdDefinition:
    code: str
    name: str
    low: float
    high: float
    unit: str


class ThresholdTable:
    """Read-only code -> ThresholdDefinition lookup. One entry per code."""

    def __init__(self, definitions: Iterable[ThresholdDefinition]):
        by_code: Dict[str, ThresholdDefinition] = {}
        for d in definitions:
            if d.code in by_code:
                raise ValueError(f"Duplicate threshold definition for code '{d.code}'")
            if d.low > d.high:
                raise ValueError(f"Threshold '{d.code}' has low {d.low} above high {d.high}")
            by_code[d.code] = d
        self._by_code = by_code

    def get(self, code: Optional[str]) -> Optional[ThresholdDefinition]:
        if not code:
            return None
        return self._by_code.get(code)

    def codes(self) -> List[str]:
        return sorted(self._by_code)

    def __contains__(self, code: object) -> bool:
        return code in self._by_code

    def __len__(self) -> int:
        return len(self._by_code)

    def __iter__(self) -> Iterator[ThresholdDefinition]:
        return iter(self._by_code[c] for c in self.codes())


def _definition(obj: Dict[str, Any], validator: Optional[Draft202012Validator]) -> ThresholdDefinition:
    if validator is not None:
        validate_record(validator, obj, what=f"Threshold '{obj.get('code', '?')}'")
    return ThresholdDefinition(
        code=str(obj["code"]).strip(),
        name=str(obj["name"]),
        low=float(obj["low"]),
        high=float(obj["high"]),
        unit=str(obj.get("unit", "")),
    )


def parse_json(text: str, validator: Optional[Draft202012Validator] = None) -> ThresholdTable:
    """
    Parse a JSON object keyed by code:
      {"2345-7": {"name": "Glucose", "low": 70, "high": 140, "unit": "mg/dL"}, ...}
    """
    raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("Threshold file must be a JSON object keyed by code")
    return ThresholdTable(_definition({"code": code, **body}, validator) for code, body in raw.items())


def parse_jsonl(text: str, validator: Optional[Draft202012Validator] = None) -> ThresholdTable:
    items: List[ThresholdDefinition] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        items.append(_definition(json.loads(line), validator))
    return ThresholdTable(items)


def classify_value(value: float, low: Optional[float], high: Optional[float]) -> Bucket:
    # strict at both bounds: a value equal to low or high is normal
    if low is not None and value < low:
        return Bucket.ABNORMAL
    if high is not None and value > high:
        return Bucket.ABNORMAL
    return Bucket.NORMAL
