"""Shared fixtures: sample CSL items and a library file on disk."""

import json
import pytest
from pathlib import Path


def make_item(id_: str, family: str, year: int, title: str, **extra) -> dict:
    return {
        "id": id_,
        "type": "article-journal",
        "title": title,
        "author": [{"family": family, "given": "Ann"}],
        "issued": {"date-parts": [[year]]},
        **extra,
    }


@pytest.fixture
def sample_items() -> list[dict]:
    return [
        make_item(
            "smith-2020",
            "Smith",
            2020,
            "Deep learning for citations",
            DOI="10.1000/abc",
            custom={
                "uuid": "11111111-1111-4111-8111-111111111111",
                "created_at": "2024-01-01T00:00:00.000Z",
                "timestamp": "2024-01-01T00:00:00.000Z",
            },
        ),
        make_item(
            "jones-2018",
            "Jones",
            2018,
            "Graph methods in bibliometrics",
            PMID="123456",
            custom={
                "uuid": "22222222-2222-4222-8222-222222222222",
                "created_at": "2024-02-01T00:00:00.000Z",
                "timestamp": "2024-03-01T00:00:00.000Z",
            },
        ),
    ]


@pytest.fixture
def library_path(tmp_path: Path, sample_items: list[dict]) -> Path:
    path = tmp_path / "library.json"
    path.write_text(json.dumps(sample_items))
    return path
