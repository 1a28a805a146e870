from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from lra.classify.free_text_codes import FreeTextCodeMap
from lra.governance.thresholds import Bucket, ThresholdTable, classify_value
from lra.ingest.fhir.observation_record import ObservationRecord, parse_observation
from lra.ingest.fhir.patient_index import PatientIdentity, display_name_for


class ObservationKind(str, Enum):
    LAB = "laboratory"
    VITAL = "vital-signs"


# skip reasons, also the ClassificationBatch counter names
MALFORMED = "malformed"
OUT_OF_CATEGORY = "out_of_category"
UNRESOLVED_CODE = "unresolved_code"
NO_VALUE = "no_value"
NO_SUBJECT = "no_subject"
SKIP_REASONS = (MALFORMED, OUT_OF_CATEGORY, UNRESOLVED_CODE, NO_VALUE, NO_SUBJECT)


@dataclass(frozen=True)
class ClassifiedResult:
    id: str
    patient_id: str
    patient_display_name: str
    kind: ObservationKind
    code: Optional[str]
    test_label: str
    value: float
    unit: str
    low: Optional[float]
    high: Optional[float]
    timestamp: Optional[str]
    bucket: Bucket


@dataclass
class ClassificationBatch:
    kind: ObservationKind
    results: List[ClassifiedResult] = field(default_factory=list)
    lines_total: int = 0
    skipped: Dict[str, int] = field(default_factory=lambda: {r: 0 for r in SKIP_REASONS})

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    def _bucket(self, bucket: Bucket) -> List[ClassifiedResult]:
        return [r for r in self.results if r.bucket is bucket]

    @property
    def normal(self) -> List[ClassifiedResult]:
        return self._bucket(Bucket.NORMAL)

    @property
    def abnormal(self) -> List[ClassifiedResult]:
        return self._bucket(Bucket.ABNORMAL)

    @property
    def unclassified(self) -> List[ClassifiedResult]:
        return self._bucket(Bucket.UNCLASSIFIED)

    def merge(self, other: "ClassificationBatch") -> "ClassificationBatch":
        if other.kind is not self.kind:
            raise ValueError(f"Cannot merge {other.kind.value} batch into {self.kind.value} batch")
        return ClassificationBatch(
            kind=self.kind,
            results=self.results + other.results,
            lines_total=self.lines_total + other.lines_total,
            skipped={r: self.skipped.get(r, 0) + other.skipped.get(r, 0) for r in SKIP_REASONS},
        )


@dataclass(frozen=True)
class ClassificationPolicy:
    # unclassified | normal
    labs_missing_threshold: str = "unclassified"
    # unclassified | skip
    labs_unresolved_code: str = "unclassified"
    use_observation_reference_range: bool = False


@dataclass(frozen=True)
class _Threshold:
    code: Optional[str]
    label: Optional[str]
    low: Optional[float]
    high: Optional[float]


class ObservationClassifier:
    """
    Buckets NDJSON Observation lines into normal / abnormal / unclassified.

    Holds only read-only inputs, so classifying the same lines twice gives the
    same buckets.
    """

    def __init__(
        self,
        thresholds: ThresholdTable,
        policy: Optional[ClassificationPolicy] = None,
        text_codes: Optional[FreeTextCodeMap] = None,
    ):
        self.thresholds = thresholds
        self.policy = policy or ClassificationPolicy()
        self.text_codes = text_codes or FreeTextCodeMap()

    def classify_lines(
        self,
        lines: Iterable[str],
        kind: ObservationKind,
        patients: Optional[Dict[str, PatientIdentity]] = None,
    ) -> ClassificationBatch:
        patients = patients or {}
        batch = ClassificationBatch(kind=kind)

        for n, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            batch.lines_total += 1

            try:
                obj = json.loads(line)
            except ValueError as e:
                batch.skipped[MALFORMED] += 1
                logger.warning(f"Skipping malformed {kind.value} line {n}: {e}")
                continue
            if not isinstance(obj, dict):
                batch.skipped[MALFORMED] += 1
                logger.warning(f"Skipping {kind.value} line {n}: not a JSON object")
                continue

            result, reason = self.classify_record(parse_observation(obj), kind, patients)
            if result is None:
                batch.skipped[reason] += 1
                continue
            batch.results.append(result)

        logger.info(
            f"{kind.value}: {batch.lines_total} lines -> {len(batch.abnormal)} abnormal, "
            f"{len(batch.normal)} normal, {len(batch.unclassified)} unclassified, "
            f"{batch.skipped_total} skipped {batch.skipped}"
        )
        return batch

    def classify_record(
        self,
        record: ObservationRecord,
        kind: ObservationKind,
        patients: Optional[Dict[str, PatientIdentity]] = None,
    ) -> Tuple[Optional[ClassifiedResult], Optional[str]]:
        """Returns (result, None) or (None, skip reason)."""
        if not self._in_category(record, kind):
            return None, OUT_OF_CATEGORY

        code = self._resolve_code(record)
        if code is None and kind is ObservationKind.LAB and self.policy.labs_unresolved_code == "skip":
            return None, UNRESOLVED_CODE

        value = record.numeric_value
        if value is None:
            return None, NO_VALUE

        patient_id = record.patient_id
        if patient_id is None:
            return None, NO_SUBJECT

        th = self._lookup(record, code) if code is not None else None
        if th is None and code is None:
            th = self._observation_range(record)

        if th is not None:
            bucket = classify_value(value, th.low, th.high)
            code = th.code or code
        elif kind is ObservationKind.LAB and self.policy.labs_missing_threshold == "normal":
            bucket = Bucket.NORMAL
        else:
            bucket = Bucket.UNCLASSIFIED

        return (
            ClassifiedResult(
                id=record.id,
                patient_id=patient_id,
                patient_display_name=display_name_for(patients or {}, patient_id),
                kind=kind,
                code=code,
                test_label=(th.label if th and th.label else None) or self._label(record, code),
                value=value,
                unit=record.quantity_unit,
                low=th.low if th else None,
                high=th.high if th else None,
                timestamp=record.timestamp,
                bucket=bucket,
            ),
            None,
        )

    @staticmethod
    def _in_category(record: ObservationRecord, kind: ObservationKind) -> bool:
        cats = record.category_codes
        if kind is ObservationKind.VITAL:
            return ObservationKind.VITAL.value in cats
        # labs accept untagged observations; only explicit vitals are left to the vitals pass
        return not (ObservationKind.VITAL.value in cats and ObservationKind.LAB.value not in cats)

    def _resolve_code(self, record: ObservationRecord) -> Optional[str]:
        candidates = record.code_candidates
        if candidates and candidates[0].code:
            return candidates[0].code

        code = self.text_codes.resolve(record.free_text_code)
        if code is None and candidates:
            code = self.text_codes.resolve(candidates[0].display)
        if code is not None:
            return code

        return next((c.code for c in candidates if c.code), None)

    def _lookup(self, record: ObservationRecord, code: str) -> Optional[_Threshold]:
        th = self.thresholds.get(code)
        if th is None:
            # e.g. a local code first and the LOINC coding second
            for c in record.code_candidates:
                th = self.thresholds.get(c.code) if c.code != code else None
                if th is not None:
                    break
        if th is not None:
            return _Threshold(code=th.code, label=th.name, low=th.low, high=th.high)
        return self._observation_range(record)

    def _observation_range(self, record: ObservationRecord) -> Optional[_Threshold]:
        if not self.policy.use_observation_reference_range:
            return None
        if record.reference_range_low is None and record.reference_range_high is None:
            return None
        return _Threshold(code=None, label=None, low=record.reference_range_low, high=record.reference_range_high)

    @staticmethod
    def _label(record: ObservationRecord, code: Optional[str]) -> str:
        first = record.code_candidates[0] if record.code_candidates else None
        return (first.display if first else None) or record.free_text_code or code or "Unknown"
