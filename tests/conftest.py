import json
from pathlib import Path
from typing import Dict, List, Mapping, Tuple

import pytest

from lra.common.http import HttpResponse
from lra.governance.thresholds import ThresholdDefinition, ThresholdTable


class FakeTransport:
    """Replays queued responses per URL and records every request."""

    def __init__(self):
        self.queues: Dict[str, List[HttpResponse]] = {}
        self.requests: List[Tuple[str, str, dict]] = []
        self.forms: List[dict] = []

    def queue(self, url: str, *responses: HttpResponse) -> None:
        self.queues.setdefault(url, []).extend(responses)

    def _next(self, url: str) -> HttpResponse:
        q = self.queues.get(url)
        if not q:
            raise AssertionError(f"Unexpected request to {url}")
        return q.pop(0) if len(q) > 1 else q[0]

    def get(self, url: str, headers: Mapping[str, str]) -> HttpResponse:
        self.requests.append(("GET", url, dict(headers)))
        return self._next(url)

    def post_form(self, url: str, form: Mapping[str, str], headers: Mapping[str, str]) -> HttpResponse:
        self.requests.append(("POST", url, dict(headers)))
        self.forms.append(dict(form))
        return self._next(url)

    def calls_to(self, url: str) -> int:
        return sum(1 for _, u, _ in self.requests if u == url)


class FakeClock:
    def __init__(self):
        self.t = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.t

    def sleep(self, s: float) -> None:
        self.sleeps.append(s)
        self.t += s


class RecordingNotifier:
    def __init__(self, fail: Exception = None):
        self.sent: List[Tuple[str, str, str]] = []
        self.fail = fail

    def send(self, to: str, subject: str, body: str) -> None:
        if self.fail is not None:
            raise self.fail
        self.sent.append((to, subject, body))


def json_response(status: int, body, headers: dict = None) -> HttpResponse:
    return HttpResponse(status=status, headers={k.lower(): v for k, v in (headers or {}).items()}, body=json.dumps(body).encode("utf-8"))


def text_response(status: int, text: str = "", headers: dict = None) -> HttpResponse:
    return HttpResponse(status=status, headers={k.lower(): v for k, v in (headers or {}).items()}, body=text.encode("utf-8"))


def ndjson(*resources) -> str:
    return "\n".join(r if isinstance(r, str) else json.dumps(r) for r in resources) + "\n"


def observation(
    obs_id="obs-1",
    code="2345-7",
    value=250,
    unit="mg/dL",
    patient="P1",
    category="laboratory",
    display=None,
    text=None,
    **extra,
) -> dict:
    o = {"resourceType": "Observation", "id": obs_id, "status": "final"}
    if category:
        o["category"] = [{"coding": [{"system": "http://terminology.hl7.org/CodeSystem/observation-category", "code": category}]}]
    coding = {"system": "http://loinc.org"}
    if code:
        coding["code"] = code
    if display:
        coding["display"] = display
    o["code"] = {"coding": [coding] if (code or display) else []}
    if text:
        o["code"]["text"] = text
    if patient:
        o["subject"] = {"reference": f"Patient/{patient}"}
    if value is not None:
        o["valueQuantity"] = {"value": value, "unit": unit}
    o.update(extra)
    return o


@pytest.fixture
def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture
def table() -> ThresholdTable:
    return ThresholdTable(
        [
            ThresholdDefinition(code="2345-7", name="Glucose", low=70, high=140, unit="mg/dL"),
            ThresholdDefinition(code="718-7", name="Hemoglobin", low=12.0, high=17.5, unit="g/dL"),
            ThresholdDefinition(code="8867-4", name="Heart rate", low=60, high=100, unit="/min"),
            ThresholdDefinition(code="8480-6", name="Systolic blood pressure", low=90, high=140, unit="mm[Hg]"),
            ThresholdDefinition(code="8310-5", name="Body temperature", low=36.1, high=37.8, unit="Cel"),
        ]
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
