from datetime import date, datetime

import pytest

from conftest import ndjson
from lra.ingest.fhir.patient_index import build_patient_index, compute_age, display_name_for

NOW = datetime(2026, 10, 18, 6, 0, 0)


@pytest.mark.parametrize(
    "birth,expected",
    [
        (date(1990, 10, 18), 36),  # birthday today
        (date(1990, 10, 19), 35),  # birthday tomorrow
        (date(1990, 11, 1), 35),
        (date(1990, 1, 31), 36),
        (date(2000, 2, 29), 26),
    ],
)
def test_compute_age_corrects_for_month_and_day(birth, expected):
    assert compute_age(birth, NOW.date()) == expected


def test_index_prefers_official_name_and_derives_age():
    lines = ndjson(
        {
            "resourceType": "Patient",
            "id": "P1",
            "gender": "female",
            "birthDate": "1980-12-01",
            "name": [
                {"use": "nickname", "given": ["Janie"]},
                {"use": "official", "family": "Doe", "given": ["Jane", "Q"]},
            ],
        },
        {"resourceType": "Patient", "id": "P2", "name": [{"text": "Mr. John Smith"}]},
    ).splitlines()

    index = build_patient_index(lines, now=NOW)

    assert index["P1"].display_name == "Jane Q Doe"
    assert index["P1"].gender == "female"
    assert index["P1"].age == 45
    assert index["P2"].display_name == "Mr. John Smith"
    assert index["P2"].age is None


def test_index_degrades_to_id_as_name():
    lines = ndjson(
        {"resourceType": "Patient", "id": "P3"},
        {"resourceType": "Patient", "id": "P4", "name": [{"given": []}], "birthDate": "1975"},
    ).splitlines()

    index = build_patient_index(lines, now=NOW)

    assert index["P3"].display_name == "P3"
    assert index["P4"].display_name == "P4"
    assert index["P4"].age is None


def test_index_skips_bad_lines_without_raising():
    lines = ["{broken", '"just a string"', '{"resourceType": "Patient"}', "", '{"id": "P5"}']

    index = build_patient_index(lines, now=NOW)

    assert list(index) == ["P5"]


def test_display_name_for_unknown_patient_is_the_id():
    assert display_name_for({}, "P1") == "P1"
