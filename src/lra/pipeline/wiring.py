from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from lra.auth.token_client import BackendTokenClient
from lra.classify.observation_classifier import ClassificationPolicy, ObservationClassifier
from lra.common.config import (
    ClassificationSettings,
    read_auth_settings_from_env,
    read_run_settings_from_env,
    read_smtp_settings_from_env,
    read_threshold_source_from_env,
)
from lra.common.contract import BULK_MANIFEST_V1, load_contract
from lra.common.http import UrllibTransport
from lra.export.bulk_export import ExportJobClient
from lra.governance.threshold_loader import load_threshold_table
from lra.governance.thresholds import ThresholdTable
from lra.notify.email_sender import Notifier, SmtpEmailSender
from lra.pipeline.report_pipeline import ReportPipeline


def policy_from_settings(settings: ClassificationSettings) -> ClassificationPolicy:
    return ClassificationPolicy(
        labs_missing_threshold=settings.labs_missing_threshold,
        labs_unresolved_code=settings.labs_unresolved_code,
        use_observation_reference_range=settings.use_observation_reference_range,
    )


def build_pipeline_from_env(
    root: Path,
    base_cfg: Dict[str, Any],
    *,
    thresholds: Optional[ThresholdTable] = None,
    notifier: Optional[Notifier] = None,
) -> ReportPipeline:
    """Reads every setting up front so configuration errors surface before any network call."""
    settings = read_run_settings_from_env(base_cfg)
    auth = read_auth_settings_from_env(base_cfg)
    if notifier is None:
        notifier = SmtpEmailSender(read_smtp_settings_from_env(base_cfg))
    if thresholds is None:
        thresholds = load_threshold_table(read_threshold_source_from_env(base_cfg), root)

    transport = UrllibTransport(timeout_s=settings.request_timeout_s)
    export_client = ExportJobClient(
        settings.fhir_base,
        transport,
        manifest_validator=load_contract(root, BULK_MANIFEST_V1),
    )
    return ReportPipeline(
        export_client=export_client,
        transport=transport,
        classifier=ObservationClassifier(thresholds, policy_from_settings(settings.classification)),
        token_provider=BackendTokenClient(auth, transport),
        notifier=notifier,
        cohort_id=settings.group_id,
        recipient=settings.recipient,
        poll_interval_s=settings.poll_interval_s,
        poll_deadline_s=settings.poll_deadline_s,
        conflict_retry_delay_s=settings.conflict_retry_delay_s,
        conflict_retries=settings.conflict_retries,
    )
