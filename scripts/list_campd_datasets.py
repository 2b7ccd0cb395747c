#!/usr/bin/env python3
"""Show CAMPD datasets for analysis profiles, grouped by retrieval mode."""

from __future__ import annotations

import argparse
import json
from typing import Dict, List, Optional, Sequence

from campd_dataset_catalog import DATASETS, PROFILES, available_profiles, bulk_keys, resolve_dataset_ids
from campd_retrieval import KIND_CATALOG, KIND_PAGINATED, KIND_WINDOW, MAX_WINDOW_DAYS, QUERY_KINDS

MODE_HEADINGS = {
    KIND_PAGINATED: "Paginated (one query per state, years joined with |)",
    KIND_WINDOW: f"Streaming (one query per state and date window, up to {MAX_WINDOW_DAYS} days)",
    KIND_CATALOG: "Bulk files (one query per dataset, files picked from the catalog)",
}


def _query_shape(dataset_id: str) -> Dict[str, object]:
    metadata = DATASETS[dataset_id]
    mode = metadata.get("mode")
    if mode == KIND_PAGINATED:
        return {"endpoint": metadata["path"], "filters": [metadata["year_filter"], "stateCode"]}
    if mode == KIND_WINDOW:
        return {"endpoint": metadata["path"], "filters": ["beginDate", "endDate", "stateCode"]}
    return {
        "data_type": metadata.get("data_type"),
        "data_sub_type": metadata.get("data_sub_type"),
        "split_by": bulk_keys(dataset_id),
    }


def _build_payload(
    selected_ids: List[str],
    selected_profiles: List[str],
    modes: Optional[Sequence[str]] = None,
) -> Dict[str, object]:
    grouped: Dict[str, List[Dict[str, object]]] = {}
    for dataset_id in selected_ids:
        metadata = DATASETS.get(dataset_id, {})
        mode = metadata.get("mode", "unknown")
        if modes and mode not in modes:
            continue
        grouped.setdefault(mode, []).append(
            {
                "dataset_id": dataset_id,
                "title": metadata.get("title", "Unknown dataset"),
                "category": metadata.get("category", "unknown"),
                "query": _query_shape(dataset_id),
                "reason": metadata.get("reason", "No reason provided in catalog."),
            }
        )

    ordered = {mode: grouped[mode] for mode in QUERY_KINDS if mode in grouped}
    return {
        "selected_profiles": selected_profiles,
        "profiles": {name: PROFILES[name]["description"] for name in selected_profiles},
        "dataset_count": sum(len(rows) for rows in ordered.values()),
        "modes": ordered,
    }


def _describe_query(shape: Dict[str, object]) -> str:
    if "endpoint" in shape:
        return f"{shape['endpoint']} by {', '.join(shape['filters'])}"  # type: ignore[arg-type]
    split_by = shape["split_by"] or ["none"]
    sub_type = shape["data_sub_type"] or "any"
    return f"dataType={shape['data_type']} dataSubType={sub_type} split by {', '.join(split_by)}"  # type: ignore[arg-type]


def _print_text(payload: Dict[str, object]) -> None:
    profile_names: List[str] = payload["selected_profiles"]  # type: ignore[assignment]
    print("CAMPD datasets")
    print("==============")
    print(f"Profiles: {', '.join(profile_names)}")
    for name in profile_names:
        print(f"- {name}: {PROFILES[name]['description']}")

    print("")
    print(f"Total datasets: {payload['dataset_count']}")
    for mode, rows in payload["modes"].items():  # type: ignore[attr-defined]
        print("")
        print(MODE_HEADINGS.get(mode, mode))
        for row in rows:
            print(f"- {row['dataset_id']}: {row['title']} [{row['category']}]")
            print(f"  query: {_describe_query(row['query'])}")
            print(f"  reason: {row['reason']}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--profile",
        action="append",
        choices=available_profiles(),
        help="Profile to include. Can be passed multiple times. Defaults to 'core'.",
    )
    parser.add_argument(
        "--dataset",
        action="append",
        default=[],
        help="Extra dataset ID to include (for example hourly-emissions). Can be passed multiple times.",
    )
    parser.add_argument(
        "--mode",
        action="append",
        choices=QUERY_KINDS,
        help="Only show datasets retrieved this way. Can be passed multiple times.",
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of text output.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    profiles = args.profile or ["core"]
    try:
        selected_ids = resolve_dataset_ids(profiles, args.dataset)
    except KeyError as exc:
        raise SystemExit(str(exc)) from exc
    payload = _build_payload(selected_ids, profiles, modes=args.mode)
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        _print_text(payload)


if __name__ == "__main__":
    main()
