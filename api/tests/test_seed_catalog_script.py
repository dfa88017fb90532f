from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path


SCRIPT_PATH = Path(__file__).resolve().parents[2] / "scripts" / "seed_catalog.py"


def _run_script(catalog_path: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT_PATH), str(catalog_path)],
        capture_output=True,
        text=True,
    )


def test_seed_script_emits_idempotent_inserts(tmp_path: Path) -> None:
    catalog_path = tmp_path / "catalog.json"
    catalog_path.write_text(
        json.dumps(
            {
                "kennels": [
                    {
                        "id": "k-nych3",
                        "shortName": "NYCH3",
                        "fullName": "New York City Hash House Harriers",
                        "region": "New York City, NY",
                        "aliases": ["NYC Hash", "NYC"],
                    }
                ],
                "sources": [
                    {
                        "id": "src-hashnyc",
                        "name": "O'Hare Calendar",
                        "type": "HTML_SCRAPER",
                        "trustLevel": 8,
                        "url": "https://hashnyc.com",
                        "kennels": ["k-nych3"],
                    }
                ],
            }
        )
    )

    completed = _run_script(catalog_path)

    assert completed.returncode == 0
    output = completed.stdout
    assert "('k-nych3', 'NYCH3', 'New York City Hash House Harriers', 'New York City, NY')" in output
    assert "('k-nych3', 'NYC') on conflict do nothing;" in output
    assert "('src-hashnyc', 'O''Hare Calendar', 'HTML_SCRAPER', 8, 'https://hashnyc.com')" in output
    assert "insert into source_kennels (source_id, kennel_id) values ('src-hashnyc', 'k-nych3')" in output
    assert output.index("insert into kennels") < output.index("insert into sources")


def test_seed_script_rejects_out_of_range_trust(tmp_path: Path) -> None:
    catalog_path = tmp_path / "catalog.json"
    catalog_path.write_text(
        json.dumps({"sources": [{"id": "src", "name": "Src", "type": "ICAL_FEED", "trustLevel": 11}]})
    )

    completed = _run_script(catalog_path)

    assert completed.returncode != 0
    assert "trustLevel must be between 1 and 10" in completed.stderr
