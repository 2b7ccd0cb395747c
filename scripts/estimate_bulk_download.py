#!/usr/bin/env python3
"""Estimate the size of a CAMPD bulk-file selection before downloading it.

Usage:
  export CAMPD_API_KEY="..."
  python3 scripts/estimate_bulk_download.py --data-type Emissions --data-subtype Daily --start-year 2015
"""

from __future__ import annotations

import argparse
import os
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from campd_dataset_catalog import select_bulk_entries
from campd_retrieval import API_BASE_URL, CatalogEntry, RetrievalClient, RetrievalConfig


def human_megabytes(value: float) -> str:
    units = ["M", "G", "T"]
    amount = float(value)
    unit = 0
    while amount >= 1024 and unit < len(units) - 1:
        amount /= 1024
        unit += 1
    return f"{amount:.1f}{units[unit]}"


def summarize_entries(
    entries: Sequence[CatalogEntry],
) -> List[Tuple[str, str, int, float, Optional[datetime]]]:
    groups: Dict[Tuple[str, str], List[CatalogEntry]] = {}
    for entry in entries:
        key = (entry.data_type or "-", entry.data_sub_type or "-")
        groups.setdefault(key, []).append(entry)

    rows = []
    for (data_type, data_sub_type), members in sorted(groups.items()):
        stamps = [entry.last_updated for entry in members if entry.last_updated is not None]
        rows.append(
            (
                data_type,
                data_sub_type,
                len(members),
                sum(entry.megabytes for entry in members),
                max(stamps) if stamps else None,
            )
        )
    return rows


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--api-key", help="CAMPD API key. Falls back to CAMPD_API_KEY.")
    parser.add_argument("--base-url", default=API_BASE_URL, help="API base URL.")
    parser.add_argument("--data-type", help="Keep only this dataType (e.g. Emissions, Facility).")
    parser.add_argument("--data-subtype", help="Keep only this dataSubType (e.g. Daily, Hourly).")
    parser.add_argument("--start-year", type=int, help="First year (inclusive).")
    parser.add_argument("--end-year", type=int, help="Last year (inclusive).")
    parser.add_argument("--state", action="append", default=[], help="State code filter (repeatable).")
    parser.add_argument("--timeout-seconds", type=int, default=60, help="HTTP timeout in seconds.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    api_key = args.api_key or os.getenv("CAMPD_API_KEY")
    if not api_key:
        raise SystemExit("Missing API key. Set --api-key or env var CAMPD_API_KEY.")

    client = RetrievalClient(
        RetrievalConfig(api_key=api_key, base_url=args.base_url, timeout_seconds=args.timeout_seconds),
        show_progress=False,
    )
    try:
        catalog = client.fetch_catalog()
    except Exception as exc:  # noqa: BLE001
        raise SystemExit(f"Failed to list bulk-file catalog: {exc}") from exc

    selected = select_bulk_entries(
        catalog,
        data_type=args.data_type,
        data_sub_type=args.data_subtype,
        start_year=args.start_year,
        end_year=args.end_year,
        state_codes=args.state or None,
    )
    if not selected:
        raise SystemExit("No bulk files match the selection.")

    print("data_type\tdata_sub_type\tfiles\tsize\tlast_updated")
    for data_type, data_sub_type, files, megabytes, last_updated in summarize_entries(selected):
        stamp = last_updated.isoformat(timespec="seconds") if last_updated else "-"
        print(f"{data_type}\t{data_sub_type}\t{files}\t{human_megabytes(megabytes)}\t{stamp}")
    total = sum(entry.megabytes for entry in selected)
    print(f"TOTAL\t-\t{len(selected)}\t{human_megabytes(total)}\t-")


if __name__ == "__main__":
    main()
