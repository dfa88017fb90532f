#!/usr/bin/env python3
"""Emit deterministic SQL that seeds sources, kennels, aliases and source links."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _nullable(value: Any) -> str:
    if value is None or value == "":
        return "null"
    return _quote_sql(str(value))


def render_sql(catalog: dict[str, Any]) -> str:
    lines = [
        "-- Catalog seed SQL",
        "-- Apply after db/schema.sql. Re-running updates names and regions in place.",
        "",
    ]

    for kennel in sorted(catalog.get("kennels", []), key=lambda item: item["id"]):
        lines.append(
            "insert into kennels (id, short_name, full_name, region) values "
            f"({_quote_sql(kennel['id'])}, {_quote_sql(kennel['shortName'])}, "
            f"{_nullable(kennel.get('fullName'))}, {_nullable(kennel.get('region'))})\n"
            "on conflict (id) do update set short_name = excluded.short_name, "
            "full_name = excluded.full_name, region = excluded.region;"
        )
        for alias in sorted(set(kennel.get("aliases", []))):
            lines.append(
                "insert into kennel_aliases (kennel_id, alias) values "
                f"({_quote_sql(kennel['id'])}, {_quote_sql(alias)}) on conflict do nothing;"
            )

    for source in sorted(catalog.get("sources", []), key=lambda item: item["id"]):
        trust_level = int(source.get("trustLevel", 5))
        if not 1 <= trust_level <= 10:
            raise ValueError(f"source {source['id']}: trustLevel must be between 1 and 10")
        lines.append(
            "insert into sources (id, name, type, trust_level, url) values "
            f"({_quote_sql(source['id'])}, {_quote_sql(source['name'])}, {_quote_sql(source['type'])}, "
            f"{trust_level}, {_nullable(source.get('url'))})\n"
            "on conflict (id) do update set name = excluded.name, type = excluded.type, "
            "trust_level = excluded.trust_level, url = excluded.url;"
        )
        for kennel_id in sorted(set(source.get("kennels", []))):
            lines.append(
                "insert into source_kennels (source_id, kennel_id) values "
                f"({_quote_sql(source['id'])}, {_quote_sql(kennel_id)}) on conflict do nothing;"
            )

    return "\n".join(lines) + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit SQL seeding the kennel and source catalog.")
    parser.add_argument("catalog", type=Path, help="JSON file with `kennels` and `sources` arrays")
    args = parser.parse_args()

    catalog = json.loads(args.catalog.read_text())
    print(render_sql(catalog), end="")


if __name__ == "__main__":
    main()
