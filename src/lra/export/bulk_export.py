from __future__ import annotations

import json
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from jsonschema import Draft202012Validator
from loguru import logger

from lra.common.contract import validate_record
from lra.common.errors import ExportConflictError, ExportProtocolError, ExportTimeoutError
from lra.common.http import Transport, bearer_headers


# Epic answers a second kick-off for the same client/group with this text
_DUPLICATE_EXPORT_MARKER = "Another request for this same Client"
_CONFLICT_STATUSES = {409, 429}

_OBSERVATION_CATEGORIES = ("laboratory", "vital-signs")


@dataclass(frozen=True)
class ExportJobHandle:
    status_url: str


@dataclass(frozen=True)
class ExportOutputFile:
    resource_type: str
    url: str


@dataclass(frozen=True)
class ExportManifest:
    output: List[ExportOutputFile]
    errors: List[ExportOutputFile]
    requires_access_token: bool = True


def build_export_url(fhir_base: str, cohort_id: str) -> str:
    params = [("_type", "Observation"), ("_type", "Patient")]
    params += [("_typeFilter", f"Observation?category={c}") for c in _OBSERVATION_CATEGORIES]
    cohort = urllib.parse.quote(cohort_id, safe="")
    return f"{fhir_base.rstrip('/')}/Group/{cohort}/$export?{urllib.parse.urlencode(params)}"


def parse_manifest(body: Dict[str, Any]) -> ExportManifest:
    output = body.get("output")
    if not isinstance(output, list) or not output:
        raise ValueError("Missing output URLs in status response")

    def _files(items: Any) -> List[ExportOutputFile]:
        files: List[ExportOutputFile] = []
        for o in items or []:
            if not isinstance(o, dict) or not o.get("type") or not o.get("url"):
                raise ValueError(f"Manifest entry without type/url: {o!r}")
            files.append(ExportOutputFile(resource_type=str(o["type"]), url=str(o["url"])))
        return files

    return ExportManifest(
        output=_files(output),
        errors=_files(body.get("error")),
        requires_access_token=bool(body.get("requiresAccessToken", True)),
    )


class ExportJobClient:
    """
    Drives the FHIR bulk-data kick-off / status protocol for a Group export.

    sleep and clock are injectable so the poll loop can run against simulated
    time in tests.
    """

    def __init__(
        self,
        fhir_base: str,
        transport: Transport,
        *,
        manifest_validator: Optional[Draft202012Validator] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fhir_base = fhir_base.rstrip("/")
        self.transport = transport
        self.manifest_validator = manifest_validator
        self.sleep = sleep
        self.clock = clock

    def submit(self, cohort_id: str, token: str) -> ExportJobHandle:
        url = build_export_url(self.fhir_base, cohort_id)
        headers = {**bearer_headers(token), "Prefer": "respond-async"}
        logger.info(f"Kicking off bulk export for Group/{cohort_id}")
        res = self.transport.get(url, headers)

        if res.status != 202:
            body = res.text()
            if res.status in _CONFLICT_STATUSES or _DUPLICATE_EXPORT_MARKER in body:
                raise ExportConflictError(
                    f"Export already running for Group/{cohort_id}: {res.status}",
                    status=res.status,
                    body=body,
                )
            raise ExportProtocolError(f"Export kick-off failed: {res.status} {body}", status=res.status, body=body)

        status_url = (res.header("Content-Location") or "").strip()
        if not status_url:
            raise ExportProtocolError("No Content-Location header on export kick-off", status=res.status)

        logger.info(f"Export accepted, status URL: {status_url}")
        return ExportJobHandle(status_url=status_url)

    def poll(
        self,
        handle: ExportJobHandle,
        token: str,
        interval_s: float = 5.0,
        deadline_s: Optional[float] = None,
    ) -> List[ExportOutputFile]:
        return self.poll_manifest(handle, token, interval_s=interval_s, deadline_s=deadline_s).output

    def poll_manifest(
        self,
        handle: ExportJobHandle,
        token: str,
        interval_s: float = 5.0,
        deadline_s: Optional[float] = None,
    ) -> ExportManifest:
        started = self.clock()
        attempts = 0
        headers = bearer_headers(token)

        while True:
            attempts += 1
            res = self.transport.get(handle.status_url, headers)

            if res.status == 202:
                waited = self.clock() - started
                if deadline_s is not None and waited + interval_s > deadline_s:
                    raise ExportTimeoutError(
                        f"Export still processing after {waited:.0f}s ({attempts} polls)",
                        status_url=handle.status_url,
                        waited_s=waited,
                    )
                progress = res.header("X-Progress")
                logger.debug(f"Export still processing (poll {attempts}{', ' + progress if progress else ''})")
                self.sleep(interval_s)
                continue

            if res.status == 200:
                manifest = self._manifest_from(res.text(), res.status)
                for err in manifest.errors:
                    logger.warning(f"Export reported an error file: {err.resource_type} {err.url}")
                logger.info(
                    f"Export complete after {attempts} polls. Files: "
                    + ", ".join(f"{o.resource_type}: {o.url}" for o in manifest.output)
                )
                return manifest

            body = res.text()
            raise ExportProtocolError(f"Error polling export status: {res.status} {body}", status=res.status, body=body)

    def _manifest_from(self, text: str, status: int) -> ExportManifest:
        try:
            body = json.loads(text)
            if not isinstance(body, dict):
                raise ValueError("Status response is not a JSON object")
            if self.manifest_validator is not None:
                validate_record(self.manifest_validator, body, what="Export manifest")
            return parse_manifest(body)
        except ValueError as e:
            raise ExportProtocolError(f"Malformed export manifest: {e}", status=status, body=text)
