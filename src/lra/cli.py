from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from lra.classify.observation_classifier import ObservationClassifier, ObservationKind
from lra.common.config import (
    load_base_config,
    read_classification_settings,
    read_logging_from_env,
    read_threshold_source_from_env,
    repo_root,
)
from lra.common.errors import LabAlertError, NotificationError
from lra.common.log import setup_logging
from lra.export.ndjson import iter_lines
from lra.governance.threshold_loader import load_threshold_table
from lra.ingest.fhir.patient_index import build_patient_index
from lra.pipeline.wiring import build_pipeline_from_env, policy_from_settings

app = typer.Typer(add_completion=False, help="Lab Range Alerts - daily abnormal labs/vitals report")

EXIT_RUN_FAILED = 1
EXIT_NOTIFY_FAILED = 2


def _bootstrap(root: Optional[Path]):
    root = root or repo_root()
    cfg = load_base_config(root)
    log_root, level = read_logging_from_env(cfg)
    setup_logging(log_root, level)
    return root, cfg


@app.command()
def run(
    root: Optional[Path] = typer.Option(None, help="Repository root holding configs/ and contracts/"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Compute the report but do not send it"),
):
    """Export, classify and email the daily report."""
    root, cfg = _bootstrap(root)
    logger.info("Starting report run")
    try:
        pipeline = build_pipeline_from_env(root, cfg)
        report = pipeline.compute()
        if dry_run:
            logger.info(f"Dry run, not sending: {report.abnormal_labs} abnormal labs, {report.abnormal_vitals} abnormal vitals")
            return
        pipeline.notify(report)
    except NotificationError as e:
        logger.error(f"Report computed but not delivered: {e.message}")
        raise typer.Exit(code=EXIT_NOTIFY_FAILED)
    except LabAlertError as e:
        logger.error(f"Report run failed [{e.code}]: {e.message}")
        raise typer.Exit(code=EXIT_RUN_FAILED)
    logger.info("Report run finished")


@app.command()
def thresholds(root: Optional[Path] = typer.Option(None, help="Repository root")):
    """Print the threshold table in use."""
    root, cfg = _bootstrap(root)
    try:
        table = load_threshold_table(read_threshold_source_from_env(cfg), root)
    except LabAlertError as e:
        logger.error(e.message)
        raise typer.Exit(code=EXIT_RUN_FAILED)
    for d in table:
        typer.echo(f"{d.code:>10}  {d.name:<40} {d.low:g}-{d.high:g} {d.unit}")


@app.command()
def classify(
    observations: Path = typer.Argument(..., exists=True, readable=True, help="Observation NDJSON file"),
    patients: Optional[Path] = typer.Option(None, exists=True, readable=True, help="Patient NDJSON file"),
    root: Optional[Path] = typer.Option(None, help="Repository root"),
):
    """Classify a local NDJSON export file without contacting the FHIR server."""
    root, cfg = _bootstrap(root)
    try:
        table = load_threshold_table(read_threshold_source_from_env(cfg), root)
        policy = policy_from_settings(read_classification_settings(cfg))
    except LabAlertError as e:
        logger.error(e.message)
        raise typer.Exit(code=EXIT_RUN_FAILED)

    index = {}
    if patients is not None:
        index = build_patient_index(iter_lines(patients.read_text(encoding="utf-8")), now=datetime.now())

    lines = list(iter_lines(observations.read_text(encoding="utf-8")))
    classifier = ObservationClassifier(table, policy)
    for kind in (ObservationKind.LAB, ObservationKind.VITAL):
        batch = classifier.classify_lines(lines, kind, index)
        for r in batch.results:
            typer.echo(
                json.dumps(
                    {
                        "kind": kind.value,
                        "bucket": r.bucket.value,
                        "patient": r.patient_display_name,
                        "test": r.test_label,
                        "value": r.value,
                        "unit": r.unit,
                        "low": r.low,
                        "high": r.high,
                    }
                )
            )


if __name__ == "__main__":
    app()
