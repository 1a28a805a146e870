from __future__ import annotations

import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)  # lower-cased names
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class Transport(Protocol):
    def get(self, url: str, headers: Mapping[str, str]) -> HttpResponse: ...

    def post_form(self, url: str, form: Mapping[str, str], headers: Mapping[str, str]) -> HttpResponse: ...


class UrllibTransport:
    """
    Blocking HTTP over urllib.request.
    Non-2xx answers come back as HttpResponse rather than raising, so callers
    discriminate on status codes. Network failures (URLError, timeouts) propagate.
    """

    def __init__(self, timeout_s: float = 60.0):
        self.timeout_s = timeout_s

    def _send(self, request: urllib.request.Request) -> HttpResponse:
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_s) as resp:
                return HttpResponse(
                    status=resp.status,
                    headers={k.lower(): v for k, v in resp.headers.items()},
                    body=resp.read(),
                )
        except urllib.error.HTTPError as e:
            body = e.read() if e.fp is not None else b""
            return HttpResponse(
                status=e.code,
                headers={k.lower(): v for k, v in (e.headers or {}).items()},
                body=body,
            )

    def get(self, url: str, headers: Mapping[str, str]) -> HttpResponse:
        request = urllib.request.Request(url, headers=dict(headers), method="GET")
        return self._send(request)

    def post_form(self, url: str, form: Mapping[str, str], headers: Mapping[str, str]) -> HttpResponse:
        data = urllib.parse.urlencode(dict(form)).encode("utf-8")
        hdrs = {"Content-Type": "application/x-www-form-urlencoded", **dict(headers)}
        request = urllib.request.Request(url, data=data, headers=hdrs, method="POST")
        return self._send(request)


def bearer_headers(token: str, accept: str = "application/fhir+json") -> Dict[str, str]:
    return {"Accept": accept, "Authorization": f"Bearer {token}"}
