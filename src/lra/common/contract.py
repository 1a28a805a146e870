from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from jsonschema import Draft202012Validator


BULK_MANIFEST_V1 = "export/bulk_manifest.v1.json"
THRESHOLD_DEFINITION_V1 = "governance/threshold_definition.v1.json"


def load_contract(repo_root: Path, name: str) -> Draft202012Validator:
    contract_path = repo_root / "contracts" / name
    schema = json.loads(contract_path.read_text(encoding="utf-8"))
    return Draft202012Validator(schema)


def validate_record(validator: Draft202012Validator, record: Dict[str, Any], what: str = "Record") -> None:
    errors = sorted(validator.iter_errors(record), key=lambda e: list(e.path))
    if errors:
        msg_lines = [f"{what} failed validation:"]
        for e in errors[:10]:
            loc = ".".join([str(p) for p in e.path]) or "<root>"
            msg_lines.append(f"- {loc}: {e.message}")
        raise ValueError("\n".join(msg_lines))
