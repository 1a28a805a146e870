import json

import pytest

from conftest import ndjson, observation
from lra.classify.free_text_codes import FreeTextCodeMap
from lra.classify.observation_classifier import (
    ClassificationPolicy,
    ObservationClassifier,
    ObservationKind,
)
from lra.governance.thresholds import Bucket
from lra.ingest.fhir.patient_index import PatientIdentity

LAB = ObservationKind.LAB
VITAL = ObservationKind.VITAL


def _lines(*resources):
    return ndjson(*resources).splitlines()


def test_glucose_250_is_abnormal_and_value_kept(table):
    batch = ObservationClassifier(table).classify_lines(_lines(observation(value=250)), LAB)

    assert len(batch.results) == 1
    r = batch.results[0]
    assert r.bucket is Bucket.ABNORMAL
    assert r.value == 250
    assert r.unit == "mg/dL"
    assert (r.low, r.high) == (70, 140)
    assert r.test_label == "Glucose"
    assert r.patient_id == "P1"
    assert r.kind is LAB


@pytest.mark.parametrize("value", [70, 140, 100])
def test_values_inside_or_on_bounds_are_normal(table, value):
    batch = ObservationClassifier(table).classify_lines(_lines(observation(value=value)), LAB)
    assert batch.results[0].bucket is Bucket.NORMAL


def test_malformed_lines_are_skipped_and_counted(table):
    lines = _lines(observation(obs_id="a"), "{not json", "[1, 2]", observation(obs_id="b", value=90))

    batch = ObservationClassifier(table).classify_lines(lines, LAB)

    assert [r.id for r in batch.results] == ["a", "b"]
    assert batch.skipped["malformed"] == 2
    assert batch.lines_total == 4
    assert batch.lines_total == len(batch.results) + batch.skipped_total


def test_every_line_is_accounted_for(table):
    lines = _lines(
        observation(obs_id="ok"),
        observation(obs_id="no-value", value=None),
        observation(obs_id="string-value", valueQuantity={"value": "high"}),
        observation(obs_id="no-subject", patient=None),
        observation(obs_id="vital", category="vital-signs", code="8867-4", value=80),
        observation(obs_id="no-threshold", code="99999-9"),
        "garbage",
    )

    batch = ObservationClassifier(table).classify_lines(lines, LAB)

    assert batch.lines_total == 7
    assert batch.skipped == {
        "malformed": 1,
        "out_of_category": 1,
        "unresolved_code": 0,
        "no_value": 2,
        "no_subject": 1,
    }
    assert {r.id: r.bucket for r in batch.results} == {
        "ok": Bucket.ABNORMAL,
        "no-threshold": Bucket.UNCLASSIFIED,
    }
    assert batch.lines_total == len(batch.results) + batch.skipped_total


def test_boolean_value_is_not_numeric(table):
    batch = ObservationClassifier(table).classify_lines(_lines(observation(valueQuantity={"value": True})), LAB)
    assert batch.results == []
    assert batch.skipped["no_value"] == 1


@pytest.mark.parametrize("raw", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_value_is_not_numeric(table, raw):
    line = json.dumps(observation()).replace('"value": 250', f'"value": {raw}')

    batch = ObservationClassifier(table).classify_lines([line], LAB)

    assert batch.results == []
    assert batch.skipped["no_value"] == 1


def test_versioned_subject_reference_groups_under_patient(table):
    patients = {"P1": PatientIdentity(id="P1", display_name="John Doe")}
    lines = _lines(observation(subject={"reference": "Patient/P1/_history/3"}))

    batch = ObservationClassifier(table).classify_lines(lines, LAB, patients)

    assert [(r.patient_id, r.patient_display_name) for r in batch.results] == [("P1", "John Doe")]


def test_classification_is_idempotent(table):
    lines = _lines(
        observation(obs_id="a", value=50),
        observation(obs_id="b", value=100),
        observation(obs_id="c", code="718-7", value=20),
        observation(obs_id="d", code="1234-5"),
    )
    c = ObservationClassifier(table)

    first = c.classify_lines(lines, LAB)
    second = c.classify_lines(lines, LAB)

    assert [(r.id, r.bucket) for r in first.results] == [(r.id, r.bucket) for r in second.results]
    assert first.results == second.results


def test_missing_patient_identity_falls_back_to_id(table):
    patients = {"P2": PatientIdentity(id="P2", display_name="Jane Roe")}
    lines = _lines(observation(obs_id="a", patient="P1"), observation(obs_id="b", patient="P2"))

    batch = ObservationClassifier(table).classify_lines(lines, LAB, patients)

    names = {r.patient_id: r.patient_display_name for r in batch.results}
    assert names == {"P1": "P1", "P2": "Jane Roe"}


def test_vital_without_vital_category_is_excluded(table):
    lines = _lines(
        observation(obs_id="lab-hr", category="laboratory", code="8867-4", value=150),
        observation(obs_id="untagged-hr", category=None, code="8867-4", value=150),
    )

    batch = ObservationClassifier(table).classify_lines(lines, VITAL)

    assert batch.results == []
    assert batch.skipped["out_of_category"] == 2


def test_vital_sign_classified(table):
    batch = ObservationClassifier(table).classify_lines(
        _lines(observation(category="vital-signs", code="8867-4", value=120, unit="/min")), VITAL
    )
    r = batch.results[0]
    assert r.bucket is Bucket.ABNORMAL
    assert r.test_label == "Heart rate"


def test_vital_without_threshold_is_unclassified(table):
    batch = ObservationClassifier(table).classify_lines(
        _lines(observation(category="vital-signs", code="29463-7", value=80, unit="kg", display="Body weight")), VITAL
    )
    r = batch.results[0]
    assert r.bucket is Bucket.UNCLASSIFIED
    assert (r.value, r.unit) == (80, "kg")
    assert r.low is None and r.high is None
    assert r.test_label == "Body weight"


def test_vital_free_text_fallback_resolves_code(table):
    o = observation(category="vital-signs", code=None, text="Heart Rate (bpm)", value=45, unit="/min")

    batch = ObservationClassifier(table).classify_lines(_lines(o), VITAL)

    r = batch.results[0]
    assert r.code == "8867-4"
    assert r.bucket is Bucket.ABNORMAL


def test_vital_with_unresolvable_code_is_unclassified(table):
    o = observation(category="vital-signs", code=None, text="Pain score", value=7, unit="{score}")

    batch = ObservationClassifier(table).classify_lines(_lines(o), VITAL)

    assert batch.results[0].bucket is Bucket.UNCLASSIFIED
    assert batch.results[0].code is None


def test_free_text_map_is_swappable(table):
    o = observation(category="vital-signs", code=None, text="Pulse ox", value=150)
    custom = FreeTextCodeMap.from_pairs([("PULSE OX", "8480-6")])

    batch = ObservationClassifier(table, text_codes=custom).classify_lines(_lines(o), VITAL)

    assert batch.results[0].code == "8480-6"
    assert batch.results[0].bucket is Bucket.ABNORMAL


def test_lab_missing_threshold_policy(table):
    lines = _lines(observation(code="1234-5", value=3))

    default = ObservationClassifier(table).classify_lines(lines, LAB)
    legacy = ObservationClassifier(table, ClassificationPolicy(labs_missing_threshold="normal")).classify_lines(lines, LAB)

    assert default.results[0].bucket is Bucket.UNCLASSIFIED
    assert legacy.results[0].bucket is Bucket.NORMAL
    assert legacy.results[0].low is None


def test_lab_unresolved_code_policy(table):
    lines = _lines(observation(code=None, text="Mystery assay", value=3))

    default = ObservationClassifier(table).classify_lines(lines, LAB)
    legacy = ObservationClassifier(table, ClassificationPolicy(labs_unresolved_code="skip")).classify_lines(lines, LAB)

    assert default.results[0].bucket is Bucket.UNCLASSIFIED
    assert legacy.results == []
    assert legacy.skipped["unresolved_code"] == 1


def test_lab_does_not_require_category(table):
    batch = ObservationClassifier(table).classify_lines(_lines(observation(category=None, value=30)), LAB)
    assert batch.results[0].bucket is Bucket.ABNORMAL


def test_lookup_falls_through_to_later_coding(table):
    o = observation(value=300)
    o["code"]["coding"] = [
        {"system": "urn:oid:1.2.840.114350", "code": "GLU-LOCAL", "display": "GLUCOSE"},
        {"system": "http://loinc.org", "code": "2345-7"},
    ]

    r = ObservationClassifier(table).classify_lines(_lines(o), LAB).results[0]

    assert r.code == "2345-7"
    assert r.bucket is Bucket.ABNORMAL


def test_observation_reference_range_tier(table):
    o = observation(code="1234-5", value=9, referenceRange=[{"low": {"value": 1}, "high": {"value": 5}}])

    off = ObservationClassifier(table).classify_lines(_lines(o), LAB).results[0]
    on = ObservationClassifier(table, ClassificationPolicy(use_observation_reference_range=True)).classify_lines(
        _lines(o), LAB
    ).results[0]

    assert off.bucket is Bucket.UNCLASSIFIED
    assert on.bucket is Bucket.ABNORMAL
    assert (on.low, on.high) == (1, 5)


def test_abnormal_results_always_carry_a_bound(table):
    lines = _lines(*[observation(obs_id=str(v), value=v) for v in (10, 69, 70, 140, 141, 900)])

    batch = ObservationClassifier(table).classify_lines(lines, LAB)

    for r in batch.abnormal:
        assert r.low is not None or r.high is not None
        assert r.value < r.low or r.value > r.high
    for r in batch.normal:
        assert r.low <= r.value <= r.high
    assert [r.id for r in batch.abnormal] == ["10", "69", "141", "900"]


def test_timestamp_taken_from_effective_time(table):
    o = observation(effectiveDateTime="2026-10-17T08:30:00Z")
    r = ObservationClassifier(table).classify_lines([json.dumps(o)], LAB).results[0]
    assert r.timestamp == "2026-10-17T08:30:00Z"


def test_merge_requires_same_kind(table):
    c = ObservationClassifier(table)
    with pytest.raises(ValueError):
        c.classify_lines([], LAB).merge(c.classify_lines([], VITAL))
