from datetime import datetime

from conftest import ndjson, observation
from lra.classify.observation_classifier import ObservationClassifier, ObservationKind
from lra.ingest.fhir.patient_index import PatientIdentity
from lra.report.aggregate import build_run_report
from lra.report.render import render_html, render_subject

NOW = datetime(2026, 10, 18, 6, 0)


def _report(table, lines, patients=None):
    c = ObservationClassifier(table)
    patients = patients or {}
    return build_run_report(
        c.classify_lines(lines, ObservationKind.LAB, patients),
        c.classify_lines(lines, ObservationKind.VITAL, patients),
        patients,
        generated_at=NOW,
    )


def test_subject_counts_abnormal_labs_and_vitals(table):
    lines = ndjson(
        observation(obs_id="a", value=20),
        observation(obs_id="b", value=400),
        observation(obs_id="c", category="vital-signs", code="8310-5", value=39.2, unit="Cel"),
    ).splitlines()

    assert render_subject(_report(table, lines)) == "Daily Patient Report: 2 Abnormal Labs, 1 Abnormal Vitals"


def test_html_escapes_patient_and_test_text(table):
    patients = {"P1": PatientIdentity(id="P1", display_name="<script>alert(1)</script>", gender="male", age=70)}
    lines = ndjson(observation(value=300)).splitlines()

    html = render_html(_report(table, lines, patients))

    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert "male, 70 y" in html
    assert "70&ndash;140" in html


def test_html_lists_only_abnormal_patients_and_notes_unclassified(table):
    lines = ndjson(
        observation(obs_id="a", patient="P1", value=300),
        observation(obs_id="b", patient="P2", value=100),
        observation(obs_id="c", patient="P2", code="0000-0", value=1),
    ).splitlines()

    html = render_html(_report(table, lines))

    assert "<h3>P1</h3>" in html
    assert "<h3>P2</h3>" not in html
    assert "1 observation(s) had no reference threshold" in html
    assert "Patients with abnormal results:</strong> 1 of 2" in html
