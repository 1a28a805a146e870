import pytest

from lra.common.contract import BULK_MANIFEST_V1, load_contract, validate_record


def test_contract_accepts_minimal_manifest(repo_root):
    v = load_contract(repo_root, BULK_MANIFEST_V1)

    manifest = {
        "transactionTime": "2026-10-18T06:00:00Z",
        "request": "https://fhir.example/Group/g1/$export",
        "requiresAccessToken": True,
        "output": [
            {"type": "Observation", "url": "https://files.example/obs-1.ndjson"},
            {"type": "Patient", "url": "https://files.example/pat-1.ndjson", "count": 3},
        ],
        "error": [],
    }

    validate_record(v, manifest)


def test_contract_rejects_empty_output(repo_root):
    v = load_contract(repo_root, BULK_MANIFEST_V1)

    with pytest.raises(ValueError) as ei:
        validate_record(v, {"output": []}, what="Export manifest")
    assert str(ei.value).startswith("Export manifest failed validation:")
    assert "output" in str(ei.value)
