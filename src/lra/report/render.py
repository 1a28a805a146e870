from __future__ import annotations

from html import escape
from typing import List, Optional

from lra.classify.observation_classifier import ClassificationBatch, ClassifiedResult
from lra.report.aggregate import PatientReport, RunReport


def render_subject(report: RunReport) -> str:
    return (
        f"Daily Patient Report: {report.abnormal_labs} Abnormal Labs, "
        f"{report.abnormal_vitals} Abnormal Vitals"
    )


def _num(v: Optional[float]) -> str:
    if v is None:
        return ""
    return f"{v:g}"


def _range(r: ClassifiedResult) -> str:
    if r.low is None and r.high is None:
        return "n/a"
    return f"{_num(r.low)}&ndash;{_num(r.high)}"


def _summary_row(label: str, batch: ClassificationBatch) -> str:
    return (
        f"<tr><td>{escape(label)}</td>"
        f"<td>{len(batch.abnormal)}</td><td>{len(batch.normal)}</td>"
        f"<td>{len(batch.unclassified)}</td><td>{batch.skipped_total}</td></tr>"
    )


def _patient_heading(p: PatientReport) -> str:
    bits: List[str] = []
    if p.patient.gender:
        bits.append(p.patient.gender)
    if p.patient.age is not None:
        bits.append(f"{p.patient.age} y")
    extra = f" <small>({escape(', '.join(bits))})</small>" if bits else ""
    ident = f" <small>[{escape(p.patient.id)}]</small>" if p.patient.display_name != p.patient.id else ""
    return f"<h3>{escape(p.patient.display_name)}{extra}{ident}</h3>"


def _patient_section(p: PatientReport) -> str:
    rows = "".join(
        "<tr>"
        f"<td>{escape(r.kind.value)}</td>"
        f"<td>{escape(r.test_label)}</td>"
        f"<td><strong>{escape(_num(r.value))}</strong> {escape(r.unit)}</td>"
        f"<td>{_range(r)}</td>"
        f"<td>{escape(r.timestamp or '')}</td>"
        "</tr>"
        for r in p.abnormal
    )
    return (
        _patient_heading(p)
        + "<table border=\"1\" cellpadding=\"4\" cellspacing=\"0\">"
        "<tr><th>Type</th><th>Test</th><th>Value</th><th>Reference</th><th>Time</th></tr>"
        + rows
        + "</table>"
    )


def render_html(report: RunReport) -> str:
    when = report.generated_at.strftime("%Y-%m-%d %H:%M")
    parts = [
        "<h1>Daily Patient Report</h1>",
        f"<p>Generated {escape(when)}</p>",
        f"<p><strong>Abnormal Labs:</strong> {report.abnormal_labs}<br>"
        f"<strong>Abnormal Vitals:</strong> {report.abnormal_vitals}<br>"
        f"<strong>Patients with abnormal results:</strong> {len(report.patients_with_abnormal)}"
        f" of {len(report.patients)}</p>",
        "<table border=\"1\" cellpadding=\"4\" cellspacing=\"0\">"
        "<tr><th></th><th>Abnormal</th><th>Normal</th><th>Unclassified</th><th>Skipped</th></tr>"
        + _summary_row("Labs", report.labs)
        + _summary_row("Vitals", report.vitals)
        + "</table>",
    ]

    flagged = report.patients_with_abnormal
    if not flagged:
        parts.append("<p>No abnormal results in this run.</p>")
    else:
        parts.append("<h2>Patients with abnormal results</h2>")
        parts.extend(_patient_section(p) for p in flagged)

    unclassified = len(report.labs.unclassified) + len(report.vitals.unclassified)
    if unclassified:
        parts.append(
            f"<p><em>{unclassified} observation(s) had no reference threshold and were not evaluated.</em></p>"
        )
    return "\n".join(parts)
