#!/usr/bin/env python3
"""Download CAMPD emissions, facility and allowance data to per-query CSV files.

Usage:
  export CAMPD_API_KEY="..."
  python3 scripts/download_campd_data.py --profile core --state CA --state TX --start-year 1995 --end-year 2024
  python3 scripts/download_campd_data.py --dataset hourly-emissions --state CA --begin-date 2024-01-01 --end-date 2024-01-31
  python3 scripts/download_campd_data.py --profile bulk --start-year 2020 --end-year 2023 --skip-failed-files
"""

from __future__ import annotations

import argparse
import csv
import json
import os
import sys
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
import yaml

from campd_dataset_catalog import (
    DATASETS,
    US_STATE_CODES,
    available_profiles,
    dataset_mode,
    dataset_selector,
    resolve_dataset_ids,
    year_values,
)
from campd_retrieval import (
    API_BASE_URL,
    BULK_FILES_URL,
    CATALOG_PATH,
    DEFAULT_PAGE_SIZE,
    DEFAULT_REQUEST_INTERVAL_SECONDS,
    KIND_CATALOG,
    KIND_PAGINATED,
    KIND_WINDOW,
    AssembledTable,
    CampdError,
    CatalogEntry,
    QuerySpec,
    RetrievalClient,
    RetrievalConfig,
    log_event,
)

DEFAULT_START_YEAR = 1995
DEFAULT_END_YEAR = 2024


@dataclass
class RunStats:
    saved: int = 0
    rows_written: int = 0
    skipped_existing: int = 0
    planned_only: int = 0
    failures: int = 0
    empty_selections: int = 0


@dataclass
class PlannedQuery:
    dataset_id: str
    query: QuerySpec
    output_path: Path
    scope: str
    select: Optional[Callable[[CatalogEntry], bool]] = None


class TeeStream:
    def __init__(self, *streams: object) -> None:
        self.streams = streams

    def write(self, text: str) -> int:
        for stream in self.streams:
            stream.write(text)  # type: ignore[attr-defined]
        return len(text)

    def flush(self) -> None:
        for stream in self.streams:
            stream.flush()  # type: ignore[attr-defined]

    def isatty(self) -> bool:
        return any(getattr(stream, "isatty", lambda: False)() for stream in self.streams)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"Cannot parse boolean from value '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def _coerce_config_date(value: object, key: str) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError as exc:
            raise SystemExit(f"Config key '{key}' must be YYYY-MM-DD.") from exc
    raise SystemExit(f"Config key '{key}' must be a date string (YYYY-MM-DD).")


def _coerce_config_list(value: object, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    raise SystemExit(f"Config key '{key}' must be a string or list of strings.")


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_keys = {
        "api_key": ("api_key", "credentials_api_key"),
        "base_url": ("base_url", "network_base_url"),
        "bulk_files_url": ("bulk_files_url", "network_bulk_files_url"),
        "outdir": ("outdir", "download_outdir"),
        "page_size": ("page_size", "download_page_size", "network_page_size"),
        "start_year": ("start_year", "download_start_year"),
        "end_year": ("end_year", "download_end_year"),
        "timeout_seconds": ("timeout_seconds", "network_timeout_seconds"),
        "max_retries": ("max_retries", "network_max_retries"),
        "retry_sleep_seconds": ("retry_sleep_seconds", "network_retry_sleep_seconds"),
        "request_interval_seconds": ("request_interval_seconds", "network_request_interval_seconds"),
        "bulk_data_type": ("bulk_data_type", "bulk_data_type_filter"),
        "bulk_data_subtype": ("bulk_data_subtype", "bulk_data_subtype_filter"),
        "logs_dir": ("logs_dir", "logging_logs_dir"),
    }
    bool_keys = {
        "overwrite": ("overwrite", "download_overwrite"),
        "dry_run": ("dry_run", "download_dry_run"),
        "datasets_only": ("datasets_only", "download_datasets_only"),
        "skip_failed_files": ("skip_failed_files", "bulk_skip_failed_files"),
        "stop_on_error": ("stop_on_error", "download_stop_on_error"),
        "no_progress": ("no_progress", "logging_no_progress"),
    }
    list_keys = {
        "profile": ("profile", "profiles", "download_profiles"),
        "dataset": ("dataset", "datasets", "download_datasets"),
        "exclude_dataset": ("exclude_dataset", "exclude_datasets", "download_exclude_datasets"),
        "state": ("state", "states", "download_states"),
    }
    date_keys = {
        "begin_date": ("begin_date", "window_begin_date"),
        "end_date": ("end_date", "window_end_date"),
    }

    for target_key, source_keys in scalar_keys.items():
        for source_key in source_keys:
            if source_key in cfg:
                defaults[target_key] = cfg[source_key]
                break
    for target_key, source_keys in bool_keys.items():
        for source_key in source_keys:
            if source_key in cfg:
                defaults[target_key] = _parse_bool(cfg[source_key])
                break
    for target_key, source_keys in list_keys.items():
        for source_key in source_keys:
            if source_key in cfg:
                defaults[target_key] = _coerce_config_list(cfg[source_key], source_key)
                break
    for target_key, source_keys in date_keys.items():
        for source_key in source_keys:
            if source_key in cfg:
                defaults[target_key] = _coerce_config_date(cfg[source_key], source_key)
                break
    return defaults


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}'. Use YYYY-MM-DD.") from exc


def normalize_state_codes(values: Sequence[str]) -> List[str]:
    codes: List[str] = []
    for value in values:
        for part in str(value).split(","):
            code = part.strip().upper()
            if code and code not in codes:
                codes.append(code)
    return codes


def output_filename(dataset_id: str, scope: str, start: object, end: object) -> str:
    return f"{dataset_id}_{scope}_{start}_{end}.csv"


def plan_queries(
    dataset_ids: Sequence[str],
    outdir: Path,
    states: Sequence[str],
    start_year: int,
    end_year: int,
    page_size: int = DEFAULT_PAGE_SIZE,
    begin_date: Optional[date] = None,
    end_date: Optional[date] = None,
    bulk_states: Optional[Sequence[str]] = None,
    bulk_data_type: Optional[str] = None,
    bulk_data_subtype: Optional[str] = None,
) -> List[PlannedQuery]:
    """Build one query per dataset and state (or one per bulk dataset)."""
    planned: List[PlannedQuery] = []
    years = year_values(start_year, end_year)
    for dataset_id in dataset_ids:
        metadata = DATASETS[dataset_id]
        mode = dataset_mode(dataset_id)
        dataset_dir = outdir / dataset_id
        if mode == KIND_PAGINATED:
            for state in states:
                filters = {metadata["year_filter"]: years, "stateCode": state}
                planned.append(
                    PlannedQuery(
                        dataset_id=dataset_id,
                        query=QuerySpec.paginated(
                            metadata["path"],
                            filters,
                            page_size=page_size,
                            label=f"{dataset_id}:{state}",
                        ),
                        output_path=dataset_dir / output_filename(dataset_id, state, start_year, end_year),
                        scope=state,
                    )
                )
        elif mode == KIND_WINDOW:
            if begin_date is None or end_date is None:
                raise SystemExit(f"Dataset '{dataset_id}' needs --begin-date and --end-date.")
            for state in states:
                planned.append(
                    PlannedQuery(
                        dataset_id=dataset_id,
                        query=QuerySpec.window(
                            metadata["path"],
                            {"stateCode": state},
                            begin_date,
                            end_date,
                            label=f"{dataset_id}:{state}",
                        ),
                        output_path=dataset_dir
                        / output_filename(dataset_id, state, begin_date.isoformat(), end_date.isoformat()),
                        scope=state,
                    )
                )
        elif mode == KIND_CATALOG:
            scope = "-".join(bulk_states) if bulk_states else "all"
            planned.append(
                PlannedQuery(
                    dataset_id=dataset_id,
                    query=QuerySpec.catalog(CATALOG_PATH, label=f"{dataset_id}:{scope}"),
                    output_path=dataset_dir / output_filename(dataset_id, scope, start_year, end_year),
                    scope=scope,
                    select=dataset_selector(
                        dataset_id,
                        start_year=start_year,
                        end_year=end_year,
                        state_codes=bulk_states,
                        data_type=bulk_data_type,
                        data_sub_type=bulk_data_subtype,
                    ),
                )
            )
    return planned


def write_table_csv(table: AssembledTable, path: Path) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".part")
    with open(tmp_path, "w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=table.columns, restval="")
        writer.writeheader()
        writer.writerows(table.rows)
    tmp_path.replace(path)
    return len(table.rows)


def run_planned_query(
    client: RetrievalClient,
    planned: PlannedQuery,
    catalog_cache: Dict[str, List[CatalogEntry]],
    skip_failed_files: bool = False,
) -> Optional[AssembledTable]:
    """Run one planned query. Returns None when a bulk selection matched no files."""
    query = planned.query
    if query.kind != KIND_CATALOG:
        return client.run(query)
    if query.endpoint not in catalog_cache:
        catalog_cache[query.endpoint] = client.fetch_catalog(query.endpoint)
    entries = catalog_cache[query.endpoint]
    if planned.select is not None:
        entries = [entry for entry in entries if planned.select(entry)]
    log_event(
        "BULK_SELECTION",
        query=query.query_id,
        files=len(entries),
        megabytes=f"{sum(entry.megabytes for entry in entries):.1f}",
    )
    if not entries:
        log_event("BULK_EMPTY", query=query.query_id, reason="no_matching_files")
        return None
    return client.download_catalog_entries(entries, skip_failed=skip_failed_files, label=query.query_id)


def execute_plan(
    client: RetrievalClient,
    planned_queries: Sequence[PlannedQuery],
    *,
    overwrite: bool = False,
    dry_run: bool = False,
    stop_on_error: bool = False,
    skip_failed_files: bool = False,
    record_failure: Optional[Callable[..., None]] = None,
    manifest_rows: Optional[List[Dict[str, object]]] = None,
) -> RunStats:
    stats = RunStats()
    catalog_cache: Dict[str, List[CatalogEntry]] = {}
    total = len(planned_queries)
    for index, planned in enumerate(planned_queries, start=1):
        query_id = planned.query.query_id
        if planned.output_path.exists() and not overwrite:
            stats.skipped_existing += 1
            log_event("QUERY_SKIP", query=query_id, reason="output_exists", path=planned.output_path)
            continue
        if dry_run:
            stats.planned_only += 1
            log_event(
                "QUERY_PLAN",
                query=query_id,
                index=f"{index}/{total}",
                mode=planned.query.kind,
                path=planned.output_path,
            )
            continue
        started = time.monotonic()
        try:
            table = run_planned_query(client, planned, catalog_cache, skip_failed_files=skip_failed_files)
        except (CampdError, requests.RequestException) as exc:
            context = getattr(exc, "context", {})
            stats.failures += 1
            log_event("QUERY_ERROR", query=query_id, error_type=type(exc).__name__, error=str(exc))
            if record_failure is not None:
                record_failure(
                    dataset_id=planned.dataset_id,
                    query=query_id,
                    page=context.get("page", ""),
                    entry=context.get("entry", ""),
                    error=str(exc),
                )
            if stop_on_error:
                raise SystemExit(f"Stopping after failed query {query_id}: {exc}") from exc
            continue
        if table is None:
            stats.empty_selections += 1
            continue
        for entry in table.failed_entries:
            stats.failures += 1
            if record_failure is not None:
                record_failure(
                    dataset_id=planned.dataset_id,
                    query=query_id,
                    page="",
                    entry=entry.filename,
                    error="bulk file download failed",
                )
        rows = write_table_csv(table, planned.output_path)
        stats.saved += 1
        stats.rows_written += rows
        log_event(
            "QUERY_SAVED",
            query=query_id,
            index=f"{index}/{total}",
            rows=rows,
            columns=len(table.columns),
            path=planned.output_path,
            seconds=f"{time.monotonic() - started:.1f}",
        )
        if manifest_rows is not None:
            manifest_rows.append(
                {
                    "dataset_id": planned.dataset_id,
                    "query": query_id,
                    "scope": planned.scope,
                    "path": str(planned.output_path),
                    "rows": rows,
                    "total_count": table.total_count,
                    "failed_entries": [entry.filename for entry in table.failed_entries],
                }
            )
    return stats


def list_bulk_types(entries: Sequence[CatalogEntry]) -> None:
    counts: Dict[tuple, List[float]] = {}
    for entry in entries:
        key = (entry.data_type or "-", entry.data_sub_type or "-")
        counts.setdefault(key, []).append(entry.megabytes)
    for (data_type, data_sub_type), sizes in sorted(counts.items()):
        log_event(
            "BULK_TYPE",
            data_type=data_type,
            data_sub_type=data_sub_type,
            files=len(sizes),
            megabytes=f"{sum(sizes):.1f}",
        )


def parse_args() -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML/JSON config file.")
    pre_args, _ = pre_parser.parse_known_args()
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))

    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument("--api-key", help="CAMPD API key. Falls back to CAMPD_API_KEY.")
    parser.add_argument(
        "--profile",
        action="append",
        choices=available_profiles(),
        help="Dataset profile to include (repeatable). Defaults to 'core'.",
    )
    parser.add_argument("--dataset", action="append", default=[], help="Extra dataset ID to include (repeatable).")
    parser.add_argument("--datasets-only", action="store_true", help="Use only --dataset IDs (no profiles).")
    parser.add_argument(
        "--exclude-dataset",
        action="append",
        default=[],
        help="Dataset ID to exclude after profile + dataset selection (repeatable).",
    )
    parser.add_argument(
        "--state",
        action="append",
        default=[],
        help="Two-letter state code (repeatable or comma-separated). Defaults to every state.",
    )
    parser.add_argument("--start-year", type=int, default=DEFAULT_START_YEAR, help="First year (inclusive).")
    parser.add_argument("--end-year", type=int, default=DEFAULT_END_YEAR, help="Last year (inclusive).")
    parser.add_argument("--begin-date", type=parse_date, help="Streaming window start (YYYY-MM-DD).")
    parser.add_argument("--end-date", type=parse_date, help="Streaming window end, inclusive (YYYY-MM-DD).")
    parser.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE, help="Records per page.")
    parser.add_argument("--bulk-data-type", help="Override the bulk-file dataType filter.")
    parser.add_argument("--bulk-data-subtype", help="Override the bulk-file dataSubType filter.")
    parser.add_argument(
        "--skip-failed-files",
        action="store_true",
        help="Continue a bulk download when one file fails instead of failing the whole query.",
    )
    parser.add_argument(
        "--list-bulk-types",
        action="store_true",
        help="Print the data types in the bulk-file catalog and exit.",
    )
    parser.add_argument("--outdir", default="data/raw/campd", help="Output directory for CSV files.")
    parser.add_argument("--overwrite", action="store_true", help="Re-download queries whose CSV already exists.")
    parser.add_argument("--dry-run", action="store_true", help="Show planned queries without downloading.")
    parser.add_argument("--stop-on-error", action="store_true", help="Abort the run on the first failed query.")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    parser.add_argument("--base-url", default=API_BASE_URL, help="API base URL.")
    parser.add_argument("--bulk-files-url", default=BULK_FILES_URL, help="Bulk file download base URL.")
    parser.add_argument("--timeout-seconds", type=int, default=60, help="HTTP timeout in seconds.")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=1,
        help="Attempts per request for transport failures (1 means no retry).",
    )
    parser.add_argument("--retry-sleep-seconds", type=float, default=1.5, help="Retry backoff factor.")
    parser.add_argument(
        "--request-interval-seconds",
        type=float,
        default=DEFAULT_REQUEST_INTERVAL_SECONDS,
        help="Minimum delay between API requests.",
    )
    parser.add_argument("--write-manifest", action="store_true", help="Write manifest JSON into the output directory.")
    parser.add_argument("--logs-dir", default="logs/downloads", help="Directory where per-run logs are written.")

    if config_defaults:
        parser.set_defaults(**config_defaults)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    run_started_at = utc_now_iso()
    run_dir = Path(args.logs_dir) / datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir.mkdir(parents=True, exist_ok=True)
    run_log_path = run_dir / "run.log"
    failures_csv_path = run_dir / "failures.csv"
    summary_json_path = run_dir / "summary.json"

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    run_log_handle = open(run_log_path, "a", encoding="utf-8")
    failures_handle = open(failures_csv_path, "w", encoding="utf-8", newline="")
    failure_writer = csv.DictWriter(
        failures_handle,
        fieldnames=("timestamp", "dataset_id", "query", "page", "entry", "error"),
    )
    failure_writer.writeheader()
    failures_handle.flush()
    sys.stdout = TeeStream(original_stdout, run_log_handle)  # type: ignore[assignment]
    sys.stderr = TeeStream(original_stderr, run_log_handle)  # type: ignore[assignment]

    def record_failure(**fields: object) -> None:
        failure_writer.writerow({"timestamp": datetime.now().astimezone().isoformat(timespec="seconds"), **fields})
        failures_handle.flush()

    stats = RunStats()
    summary_status = "completed"
    fatal_error: Optional[str] = None
    selected_ids: List[str] = []
    manifest_rows: List[Dict[str, object]] = []
    try:
        log_event("RUN_PATHS", run_dir=run_dir, run_log=run_log_path, failure_log=failures_csv_path)
        if args.config:
            log_event("RUN_CONFIG", config=args.config)

        api_key = args.api_key or os.getenv("CAMPD_API_KEY")
        if not api_key:
            raise SystemExit("Missing API key. Set --api-key or env var CAMPD_API_KEY.")
        if args.page_size <= 0:
            raise SystemExit("--page-size must be greater than 0.")
        if args.start_year > args.end_year:
            raise SystemExit("--start-year must be on or before --end-year.")
        if (args.begin_date is None) != (args.end_date is None):
            raise SystemExit("Use both --begin-date and --end-date together, or omit both.")
        if args.begin_date is not None and args.begin_date > args.end_date:
            raise SystemExit("--begin-date must be on or before --end-date.")

        client = RetrievalClient(
            RetrievalConfig(
                api_key=api_key,
                base_url=args.base_url,
                bulk_files_url=args.bulk_files_url,
                request_interval_seconds=args.request_interval_seconds,
                timeout_seconds=args.timeout_seconds,
                max_retries=args.max_retries,
                retry_sleep_seconds=args.retry_sleep_seconds,
            ),
            show_progress=not args.no_progress,
        )

        if args.list_bulk_types:
            list_bulk_types(client.fetch_catalog())
            return

        try:
            selected_ids = resolve_dataset_ids(
                args.profile,
                args.dataset,
                args.exclude_dataset,
                datasets_only=args.datasets_only,
            )
        except KeyError as exc:
            raise SystemExit(str(exc)) from exc
        if not selected_ids:
            raise SystemExit("No datasets selected.")
        for dataset_id in selected_ids:
            log_event("DATASET_SELECTED", dataset=dataset_id, mode=dataset_mode(dataset_id))

        explicit_states = normalize_state_codes(args.state)
        planned = plan_queries(
            selected_ids,
            outdir=Path(args.outdir),
            states=explicit_states or US_STATE_CODES,
            start_year=args.start_year,
            end_year=args.end_year,
            page_size=args.page_size,
            begin_date=args.begin_date,
            end_date=args.end_date,
            bulk_states=explicit_states or None,
            bulk_data_type=args.bulk_data_type,
            bulk_data_subtype=args.bulk_data_subtype,
        )
        log_event("RUN_PLAN", datasets=len(selected_ids), queries=len(planned))

        stats = execute_plan(
            client,
            planned,
            overwrite=args.overwrite,
            dry_run=args.dry_run,
            stop_on_error=args.stop_on_error,
            skip_failed_files=args.skip_failed_files,
            record_failure=record_failure,
            manifest_rows=manifest_rows,
        )
        if args.write_manifest and manifest_rows:
            manifest_path = Path(args.outdir) / "manifest.json"
            manifest_path.parent.mkdir(parents=True, exist_ok=True)
            manifest_path.write_text(json.dumps(manifest_rows, indent=2), encoding="utf-8")
            log_event("MANIFEST_WRITTEN", path=manifest_path)
    except SystemExit as exc:
        summary_status = "aborted"
        fatal_error = str(exc)
        raise
    except BaseException as exc:
        summary_status = "failed"
        fatal_error = f"{type(exc).__name__}: {exc}"
        raise
    finally:
        summary = {
            "status": summary_status,
            "started_at": run_started_at,
            "finished_at": utc_now_iso(),
            "datasets": selected_ids,
            "stats": asdict(stats),
            "fatal_error": fatal_error,
        }
        log_event("RUN_SUMMARY", status=summary_status, **asdict(stats))
        try:
            summary_json_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
            log_event("SUMMARY_WRITTEN", path=summary_json_path)
        except OSError as exc:
            log_event("SUMMARY_WRITE_WARN", error=str(exc))
        sys.stdout = original_stdout
        sys.stderr = original_stderr
        run_log_handle.close()
        failures_handle.close()


if __name__ == "__main__":
    main()
