from __future__ import annotations

from typing import Iterator, List, Optional

from loguru import logger

from lra.common.errors import ExportProtocolError
from lra.common.http import Transport, bearer_headers


def iter_lines(text: str) -> Iterator[str]:
    """Non-blank lines of an NDJSON document, stripped."""
    for line in text.splitlines():
        line = line.strip()
        if line:
            yield line


def fetch_ndjson(transport: Transport, url: str, token: Optional[str]) -> List[str]:
    headers = bearer_headers(token, accept="application/fhir+ndjson") if token else {"Accept": "application/fhir+ndjson"}
    res = transport.get(url, headers)
    if res.status != 200:
        body = res.text()
        raise ExportProtocolError(f"Failed to fetch export file {url}: {res.status} {body}", status=res.status, body=body)

    lines = list(iter_lines(res.text()))
    logger.info(f"Downloaded {len(lines)} NDJSON lines from {url}")
    return lines
