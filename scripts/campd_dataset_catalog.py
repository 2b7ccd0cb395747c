#!/usr/bin/env python3
"""Dataset catalog for CAMPD emissions, facility and allowance analysis."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional, Sequence

from campd_retrieval import KIND_CATALOG, KIND_PAGINATED, KIND_WINDOW, CatalogEntry

DATASETS: Dict[str, Dict[str, str]] = {
    "annual-emissions": {
        "title": "Annual Apportioned Emissions",
        "mode": KIND_PAGINATED,
        "path": "/emissions-mgmt/emissions/apportioned/annual",
        "year_filter": "year",
        "category": "emissions",
        "reason": "Unit-level SO2, NOx, CO2 and heat input totals per reporting year.",
    },
    "facility-attributes": {
        "title": "Facility and Unit Attributes",
        "mode": KIND_PAGINATED,
        "path": "/facilities-mgmt/facilities/attributes",
        "year_filter": "year",
        "category": "facility",
        "reason": "Location, fuel, controls and program participation for each unit-year.",
    },
    "allowance-holdings": {
        "title": "Allowance Holdings",
        "mode": KIND_PAGINATED,
        "path": "/account-mgmt/allowance-holdings",
        "year_filter": "vintageYear",
        "category": "allowance",
        "reason": "Current allowance balances by account, program and vintage year.",
    },
    "hourly-emissions": {
        "title": "Hourly Apportioned Emissions (streaming)",
        "mode": KIND_WINDOW,
        "path": "/streaming-services/emissions/apportioned/hourly",
        "category": "emissions",
        "reason": "Hour-level operating and emissions series for short date windows.",
    },
    "daily-emissions": {
        "title": "Daily Apportioned Emissions (streaming)",
        "mode": KIND_WINDOW,
        "path": "/streaming-services/emissions/apportioned/daily",
        "category": "emissions",
        "reason": "Day-level emissions series for short date windows.",
    },
    "bulk-facility": {
        "title": "Facility Attributes Bulk Files",
        "mode": KIND_CATALOG,
        "data_type": "Facility",
        "bulk_keys": "year",
        "category": "facility",
        "reason": "Prepackaged yearly facility files; faster than paging for many states.",
    },
    "bulk-allowance": {
        "title": "Allowance Bulk Files",
        "mode": KIND_CATALOG,
        "data_type": "Allowance",
        "bulk_keys": "",
        "category": "allowance",
        "reason": "Prepackaged allowance holdings and transactions files.",
    },
    "bulk-daily-emissions": {
        "title": "Daily Emissions Bulk Files",
        "mode": KIND_CATALOG,
        "data_type": "Emissions",
        "data_sub_type": "Daily",
        "bulk_keys": "year,state",
        "category": "emissions",
        "reason": "Per-state, per-year daily emissions files for multi-year history.",
    },
}

PROFILES: Dict[str, Dict[str, object]] = {
    "core": {
        "description": "Annual emissions, facility attributes and allowance holdings by state.",
        "datasets": [
            "annual-emissions",
            "facility-attributes",
            "allowance-holdings",
        ],
    },
    "streaming": {
        "description": "Hourly and daily emissions for a short date window.",
        "datasets": [
            "hourly-emissions",
            "daily-emissions",
        ],
    },
    "bulk": {
        "description": "Prepackaged bulk files filtered by data type, year and state.",
        "datasets": [
            "bulk-facility",
            "bulk-allowance",
            "bulk-daily-emissions",
        ],
    },
    "all": {
        "description": "All datasets in this catalog.",
        "datasets": list(DATASETS.keys()),
    },
}

DEFAULT_PROFILE = "core"

DATASET_ID_ALIASES: Dict[str, str] = {
    "emissions": "annual-emissions",
    "annual": "annual-emissions",
    "facility": "facility-attributes",
    "facilities": "facility-attributes",
    "allowance": "allowance-holdings",
    "allowances": "allowance-holdings",
    "hourly": "hourly-emissions",
    "daily": "daily-emissions",
}

US_STATE_CODES: List[str] = [
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "DC", "FL", "GA", "HI", "ID",
    "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO",
    "MT", "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA",
    "PR", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
]


def available_profiles() -> List[str]:
    return sorted(PROFILES.keys())


def dataset_mode(dataset_id: str) -> str:
    if dataset_id not in DATASETS:
        raise KeyError(f"Unknown dataset '{dataset_id}'. Choices: {', '.join(sorted(DATASETS))}")
    return DATASETS[dataset_id]["mode"]


def normalize_dataset_ids(dataset_ids: Iterable[str]) -> List[str]:
    unique: List[str] = []
    seen = set()
    for dataset_id in dataset_ids:
        cleaned = dataset_id.strip().lower().replace("_", "-")
        cleaned = DATASET_ID_ALIASES.get(cleaned, cleaned)
        if not cleaned or cleaned in seen:
            continue
        unique.append(cleaned)
        seen.add(cleaned)
    return unique


def resolve_dataset_ids(
    profile_names: Sequence[str] | None,
    explicit_dataset_ids: Sequence[str] | None,
    excluded_dataset_ids: Sequence[str] | None = None,
    datasets_only: bool = False,
) -> List[str]:
    selected: List[str] = []
    seen = set()

    selected_profiles: List[str] = [] if datasets_only else list(profile_names or [DEFAULT_PROFILE])
    for profile in selected_profiles:
        if profile not in PROFILES:
            raise KeyError(f"Unknown profile '{profile}'. Choices: {', '.join(available_profiles())}")
        for dataset_id in PROFILES[profile]["datasets"]:  # type: ignore[union-attr]
            if dataset_id not in seen:
                selected.append(dataset_id)
                seen.add(dataset_id)

    for dataset_id in normalize_dataset_ids(explicit_dataset_ids or []):
        if dataset_id not in DATASETS:
            raise KeyError(f"Unknown dataset '{dataset_id}'. Choices: {', '.join(sorted(DATASETS))}")
        if dataset_id not in seen:
            selected.append(dataset_id)
            seen.add(dataset_id)

    excluded = set(normalize_dataset_ids(excluded_dataset_ids or []))
    return [dataset_id for dataset_id in selected if dataset_id not in excluded]


def year_values(start_year: int, end_year: int) -> List[int]:
    if start_year > end_year:
        raise ValueError("start_year must be on or before end_year.")
    return list(range(start_year, end_year + 1))


def bulk_entry_selector(
    data_type: Optional[str] = None,
    data_sub_type: Optional[str] = None,
    start_year: Optional[int] = None,
    end_year: Optional[int] = None,
    state_codes: Optional[Iterable[str]] = None,
    require_state: bool = False,
) -> Callable[[CatalogEntry], bool]:
    wanted_type = data_type.lower() if data_type else None
    wanted_sub_type = data_sub_type.lower() if data_sub_type else None
    wanted_states = {code.strip().upper() for code in state_codes} if state_codes else None

    def select(entry: CatalogEntry) -> bool:
        if wanted_type and entry.data_type.lower() != wanted_type:
            return False
        if wanted_sub_type and entry.data_sub_type.lower() != wanted_sub_type:
            return False
        if start_year is not None or end_year is not None:
            year = entry.year
            if year is None:
                return False
            if start_year is not None and year < start_year:
                return False
            if end_year is not None and year > end_year:
                return False
        if require_state and entry.state_code is None:
            return False
        if wanted_states is not None and entry.state_code not in wanted_states:
            return False
        return True

    return select


def select_bulk_entries(entries: Iterable[CatalogEntry], **criteria: object) -> List[CatalogEntry]:
    select = bulk_entry_selector(**criteria)  # type: ignore[arg-type]
    return [entry for entry in entries if select(entry)]


def bulk_keys(dataset_id: str) -> List[str]:
    """Metadata keys the dataset's bulk files are partitioned by (``year``, ``state``)."""
    raw = DATASETS[dataset_id].get("bulk_keys", "")
    return [key.strip() for key in raw.split(",") if key.strip()]


def dataset_selector(
    dataset_id: str,
    start_year: Optional[int] = None,
    end_year: Optional[int] = None,
    state_codes: Optional[Iterable[str]] = None,
    data_type: Optional[str] = None,
    data_sub_type: Optional[str] = None,
) -> Callable[[CatalogEntry], bool]:
    # Bounds on a key the files are not split by would reject every file.
    metadata = DATASETS[dataset_id]
    keys = bulk_keys(dataset_id)
    by_year = "year" in keys
    by_state = "state" in keys
    return bulk_entry_selector(
        data_type=data_type or metadata.get("data_type"),
        data_sub_type=data_sub_type or metadata.get("data_sub_type"),
        start_year=start_year if by_year else None,
        end_year=end_year if by_year else None,
        state_codes=state_codes if by_state else None,
        require_state=by_state,
    )
