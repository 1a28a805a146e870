from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger

from lra.classify.observation_classifier import (
    ClassificationBatch,
    ObservationClassifier,
    ObservationKind,
)
from lra.common.errors import ExportConflictError, ManifestRoutingError, NotificationError
from lra.common.http import Transport
from lra.export.bulk_export import ExportJobClient, ExportJobHandle, ExportOutputFile
from lra.export.ndjson import fetch_ndjson
from lra.ingest.fhir.patient_index import PatientIdentity, build_patient_index
from lra.notify.email_sender import Notifier
from lra.report.aggregate import RunReport, build_run_report
from lra.report.render import render_html, render_subject


def route_output_files(files: List[ExportOutputFile]) -> Dict[str, List[ExportOutputFile]]:
    routed: Dict[str, List[ExportOutputFile]] = {}
    for f in files:
        routed.setdefault(f.resource_type, []).append(f)

    types = sorted(routed)
    if not routed.get("Observation"):
        raise ManifestRoutingError("Export produced no Observation files; nothing to classify", types)
    if not routed.get("Patient"):
        raise ManifestRoutingError("Export produced no Patient files; cannot build patient identities", types)
    return routed


class ReportPipeline:
    """
    One report run: export, classify, aggregate, notify.

    token_provider and notifier are already-constructed collaborators; sleep is
    used for the conflict back-off and can be replaced in tests.
    """

    def __init__(
        self,
        *,
        export_client: ExportJobClient,
        transport: Transport,
        classifier: ObservationClassifier,
        token_provider: Callable[[], str],
        notifier: Notifier,
        cohort_id: str,
        recipient: str,
        poll_interval_s: float = 5.0,
        poll_deadline_s: Optional[float] = None,
        conflict_retry_delay_s: float = 30.0,
        conflict_retries: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.export_client = export_client
        self.transport = transport
        self.classifier = classifier
        self.token_provider = token_provider
        self.notifier = notifier
        self.cohort_id = cohort_id
        self.recipient = recipient
        self.poll_interval_s = poll_interval_s
        self.poll_deadline_s = poll_deadline_s
        self.conflict_retry_delay_s = conflict_retry_delay_s
        self.conflict_retries = conflict_retries
        self.sleep = sleep

    def submit_with_retry(self, token: str) -> ExportJobHandle:
        attempt = 0
        while True:
            try:
                return self.export_client.submit(self.cohort_id, token)
            except ExportConflictError:
                if attempt >= self.conflict_retries:
                    raise
                attempt += 1
                logger.warning(
                    f"Export already running for Group/{self.cohort_id}; "
                    f"waiting {self.conflict_retry_delay_s:.0f}s (retry {attempt}/{self.conflict_retries})"
                )
                self.sleep(self.conflict_retry_delay_s)

    def compute(self, now: Optional[datetime] = None) -> RunReport:
        now = now or datetime.now()
        token = self.token_provider()

        handle = self.submit_with_retry(token)
        manifest = self.export_client.poll_manifest(
            handle, token, interval_s=self.poll_interval_s, deadline_s=self.poll_deadline_s
        )
        routed = route_output_files(manifest.output)

        file_token: Optional[str] = token if manifest.requires_access_token else None

        patients: Dict[str, PatientIdentity] = {}
        for f in routed["Patient"]:
            patients.update(build_patient_index(fetch_ndjson(self.transport, f.url, file_token), now=now))

        labs = ClassificationBatch(kind=ObservationKind.LAB)
        vitals = ClassificationBatch(kind=ObservationKind.VITAL)
        for f in routed["Observation"]:
            lines = fetch_ndjson(self.transport, f.url, file_token)
            labs = labs.merge(self.classifier.classify_lines(lines, ObservationKind.LAB, patients))
            vitals = vitals.merge(self.classifier.classify_lines(lines, ObservationKind.VITAL, patients))

        for rtype in sorted(set(routed) - {"Patient", "Observation"}):
            logger.info(f"Ignoring {len(routed[rtype])} {rtype} file(s) from the export")

        report = build_run_report(labs, vitals, patients, generated_at=now)
        logger.info(
            f"Run computed: {report.abnormal_labs} abnormal labs, {report.abnormal_vitals} abnormal vitals, "
            f"{len(report.patients)} patients"
        )
        return report

    def notify(self, report: RunReport) -> None:
        subject = render_subject(report)
        try:
            self.notifier.send(self.recipient, subject, render_html(report))
        except NotificationError as e:
            e.report = report
            logger.error(f"Notification failed (report was computed): {e}")
            raise
        except Exception as e:
            logger.error(f"Notification failed (report was computed): {e}")
            raise NotificationError(f"Notifier raised {type(e).__name__}: {e}", recipient=self.recipient, report=report) from e

    def run(self, now: Optional[datetime] = None) -> RunReport:
        report = self.compute(now)
        self.notify(report)
        return report
