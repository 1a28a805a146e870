from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List

from lra.classify.observation_classifier import ClassificationBatch, ClassifiedResult, ObservationKind
from lra.governance.thresholds import Bucket
from lra.ingest.fhir.patient_index import PatientIdentity


@dataclass(frozen=True)
class PatientReport:
    patient: PatientIdentity
    results: List[ClassifiedResult] = field(default_factory=list)

    def _bucket(self, bucket: Bucket) -> List[ClassifiedResult]:
        return [r for r in self.results if r.bucket is bucket]

    @property
    def abnormal(self) -> List[ClassifiedResult]:
        return self._bucket(Bucket.ABNORMAL)

    @property
    def normal(self) -> List[ClassifiedResult]:
        return self._bucket(Bucket.NORMAL)

    @property
    def unclassified(self) -> List[ClassifiedResult]:
        return self._bucket(Bucket.UNCLASSIFIED)


@dataclass(frozen=True)
class RunReport:
    generated_at: datetime
    labs: ClassificationBatch
    vitals: ClassificationBatch
    patients: List[PatientReport]

    @property
    def abnormal_labs(self) -> int:
        return len(self.labs.abnormal)

    @property
    def abnormal_vitals(self) -> int:
        return len(self.vitals.abnormal)

    @property
    def patients_with_abnormal(self) -> List[PatientReport]:
        return [p for p in self.patients if p.abnormal]


def aggregate_by_patient(
    batches: List[ClassificationBatch],
    patients: Dict[str, PatientIdentity],
) -> List[PatientReport]:
    """
    Group results by patient id. Patients missing from the index get an
    id-only identity. Ordered by abnormal count (desc), then display name.
    """
    grouped: Dict[str, List[ClassifiedResult]] = {}
    for batch in batches:
        for r in batch.results:
            grouped.setdefault(r.patient_id, []).append(r)

    reports: List[PatientReport] = []
    for pid, results in grouped.items():
        identity = patients.get(pid) or PatientIdentity(id=pid, display_name=pid)
        ordered = sorted(
            results,
            key=lambda r: (r.kind is not ObservationKind.LAB, r.test_label.lower(), r.timestamp or ""),
        )
        reports.append(PatientReport(patient=identity, results=ordered))

    reports.sort(key=lambda p: (-len(p.abnormal), p.patient.display_name.lower(), p.patient.id))
    return reports


def build_run_report(
    labs: ClassificationBatch,
    vitals: ClassificationBatch,
    patients: Dict[str, PatientIdentity],
    generated_at: datetime,
) -> RunReport:
    return RunReport(
        generated_at=generated_at,
        labs=labs,
        vitals=vitals,
        patients=aggregate_by_patient([labs, vitals], patients),
    )
