#!/usr/bin/env python3
"""Retrieve CAMPD datasets by page, by date window, or from the bulk-file catalog."""

from __future__ import annotations

import csv
import io
import json
import math
import re
import time
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import requests
from tqdm import tqdm

API_BASE_URL = "https://api.epa.gov/easey"
BULK_FILES_URL = "https://api.epa.gov/easey/bulk-files/"
CATALOG_PATH = "/camd-services/bulk-files"
USER_AGENT = "campd-retrieval/1.0"

DEFAULT_PAGE_SIZE = 100
DEFAULT_REQUEST_INTERVAL_SECONDS = 1.0
DEFAULT_TIMEOUT_SECONDS = 60
MAX_WINDOW_DAYS = 31

TOTAL_COUNT_HEADER = "x-total-count"
FIELD_MAPPINGS_HEADER = "x-field-mappings"

KIND_PAGINATED = "paginated-annual"
KIND_WINDOW = "streaming-window"
KIND_CATALOG = "bulk-catalog"
QUERY_KINDS = (KIND_PAGINATED, KIND_WINDOW, KIND_CATALOG)

# Cell value for columns a contributing page or file did not carry.
ABSENT = None

FilterValue = Union[str, int, Iterable[Union[str, int]]]
Observer = Callable[..., None]


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    text = str(value)
    if re.fullmatch(r"[A-Za-z0-9._:/+|\-]+", text):
        return text
    return json.dumps(text, ensure_ascii=True)


def log_event(event: str, **fields: object) -> None:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    print(" ".join(parts))


def _format_context(context: Mapping[str, object]) -> str:
    if not context:
        return ""
    return " [" + " ".join(f"{key}={_log_value(value)}" for key, value in context.items()) + "]"


class CampdError(Exception):
    """Base class for retrieval failures scoped to one query."""

    def __init__(self, message: str, context: Optional[Mapping[str, object]] = None) -> None:
        self.context: Dict[str, object] = dict(context or {})
        self.detail = message
        super().__init__(message + _format_context(self.context))


class RemoteError(CampdError):
    """The API answered with an error-range status."""

    def __init__(
        self,
        code: object,
        message: str,
        status: Optional[int] = None,
        context: Optional[Mapping[str, object]] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status = status
        super().__init__(f"Remote error {code}: {message}", context)


class ProtocolError(CampdError):
    """Required response metadata is missing or malformed."""


class AdvisoryWarning(UserWarning):
    """Non-fatal notice, such as a streaming window wider than recommended."""


def join_filter_value(value: FilterValue) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    return "|".join(str(item) for item in value)


def normalize_filters(
    filters: Union[None, Mapping[str, FilterValue], Sequence[Tuple[str, FilterValue]]],
) -> Tuple[Tuple[str, str], ...]:
    if not filters:
        return ()
    items = filters.items() if isinstance(filters, Mapping) else filters
    normalized: List[Tuple[str, str]] = []
    for name, value in items:
        if not name:
            raise ValueError("Filter names must be non-empty.")
        if value is None:
            continue
        joined = join_filter_value(value)
        if joined == "":
            continue
        normalized.append((str(name), joined))
    return tuple(normalized)


def _coerce_date(value: Union[date, str, None], name: str) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be YYYY-MM-DD, got '{value}'.") from exc


def parse_api_datetime(value: object) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    # Stamps without an offset are published in UTC.
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_column_name(name: str) -> str:
    """Map bulk-file headers such as ``SO2 Mass (short tons)`` to ``so2_mass_short_tons``."""
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name.strip())
    text = re.sub(r"[^0-9A-Za-z]+", "_", text).strip("_").lower()
    return text or "column"


@dataclass(frozen=True)
class QuerySpec:
    kind: str
    endpoint: str
    filters: Tuple[Tuple[str, str], ...] = ()
    page_size: Optional[int] = None
    begin_date: Optional[date] = None
    end_date: Optional[date] = None
    label: str = ""

    def __post_init__(self) -> None:
        if self.kind not in QUERY_KINDS:
            raise ValueError(f"Unknown query kind '{self.kind}'. Choices: {', '.join(QUERY_KINDS)}")
        if not self.endpoint or not str(self.endpoint).strip():
            raise ValueError("Query endpoint must be non-empty.")
        object.__setattr__(self, "filters", normalize_filters(self.filters))
        object.__setattr__(self, "begin_date", _coerce_date(self.begin_date, "begin_date"))
        object.__setattr__(self, "end_date", _coerce_date(self.end_date, "end_date"))
        if self.kind == KIND_PAGINATED:
            if not isinstance(self.page_size, int) or isinstance(self.page_size, bool) or self.page_size <= 0:
                raise ValueError("page_size must be a positive integer.")
        if self.kind == KIND_WINDOW:
            if self.begin_date is None or self.end_date is None:
                raise ValueError("Streaming-window queries need both begin_date and end_date.")
            if self.end_date < self.begin_date:
                raise ValueError("end_date must be on or after begin_date.")

    @classmethod
    def paginated(
        cls,
        endpoint: str,
        filters: Union[None, Mapping[str, FilterValue], Sequence[Tuple[str, FilterValue]]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        label: str = "",
    ) -> "QuerySpec":
        return cls(KIND_PAGINATED, endpoint, filters or (), page_size=page_size, label=label)  # type: ignore[arg-type]

    @classmethod
    def window(
        cls,
        endpoint: str,
        filters: Union[None, Mapping[str, FilterValue], Sequence[Tuple[str, FilterValue]]],
        begin_date: Union[date, str],
        end_date: Union[date, str],
        label: str = "",
    ) -> "QuerySpec":
        return cls(
            KIND_WINDOW,
            endpoint,
            filters or (),  # type: ignore[arg-type]
            begin_date=begin_date,  # type: ignore[arg-type]
            end_date=end_date,  # type: ignore[arg-type]
            label=label,
        )

    @classmethod
    def catalog(cls, endpoint: str = CATALOG_PATH, label: str = "") -> "QuerySpec":
        return cls(KIND_CATALOG, endpoint, label=label)

    @property
    def query_id(self) -> str:
        return self.label or self.endpoint

    @property
    def window_days(self) -> int:
        if self.begin_date is None or self.end_date is None:
            return 0
        return (self.end_date - self.begin_date).days

    def params(self) -> Dict[str, str]:
        return dict(self.filters)


@dataclass
class PageResult:
    page: int
    rows: List[Dict[str, Any]]
    # Only the probe page reports the total; later pages leave it unset.
    total_count: Optional[int] = None


@dataclass
class CatalogEntry:
    filename: str
    s3_path: str
    data_type: str
    megabytes: float
    last_updated: Optional[datetime]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: object) -> "CatalogEntry":
        if not isinstance(payload, dict):
            raise ProtocolError("Bulk catalog item is not an object.")
        filename = str(payload.get("filename") or "").strip()
        s3_path = str(payload.get("s3Path") or "").strip()
        if not filename or not s3_path:
            raise ProtocolError("Bulk catalog item lacks filename or s3Path.", {"entry": filename or "-"})
        metadata = payload.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        try:
            megabytes = float(payload.get("megaBytes") or 0.0)
        except (TypeError, ValueError):
            megabytes = 0.0
        return cls(
            filename=filename,
            s3_path=s3_path,
            data_type=str(metadata.get("dataType") or ""),
            megabytes=megabytes,
            last_updated=parse_api_datetime(payload.get("lastUpdated")),
            metadata=dict(metadata),
        )

    @property
    def data_sub_type(self) -> str:
        return str(self.metadata.get("dataSubType") or "")

    @property
    def state_code(self) -> Optional[str]:
        raw = self.metadata.get("stateCode")
        return str(raw).upper() if raw else None

    @property
    def year(self) -> Optional[int]:
        try:
            return int(self.metadata["year"])
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class AssembledTable:
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    total_count: Optional[int] = None
    field_mappings: Any = None
    failed_entries: List[CatalogEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)

    def extend(self, rows: Iterable[Mapping[str, Any]]) -> None:
        known = set(self.columns)
        for row in rows:
            for key in row:
                if key in known:
                    continue
                known.add(key)
                self.columns.append(key)
                for existing in self.rows:
                    existing[key] = ABSENT
            self.rows.append({column: row.get(column, ABSENT) for column in self.columns})


@dataclass
class RetrievalConfig:
    api_key: str = ""
    base_url: str = API_BASE_URL
    bulk_files_url: str = BULK_FILES_URL
    request_interval_seconds: float = DEFAULT_REQUEST_INTERVAL_SECONDS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    # One attempt by default; values above 1 retry transport failures only.
    max_retries: int = 1
    retry_sleep_seconds: float = 1.5


def remote_error_from_response(response: requests.Response, context: Mapping[str, object]) -> RemoteError:
    code: object = response.status_code
    message = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            code = error.get("code") or code
            message = str(error.get("message") or "").strip()
        elif isinstance(error, str):
            message = error.strip()
    if not message:
        message = (response.text or "").strip()
    if not message:
        message = "No error payload returned by API."
    return RemoteError(code, message, status=response.status_code, context=context)


def read_total_count(response: requests.Response, context: Mapping[str, object]) -> int:
    raw = response.headers.get(TOTAL_COUNT_HEADER)
    if raw is None:
        raise ProtocolError(f"Response is missing the {TOTAL_COUNT_HEADER} header.", context)
    try:
        total = int(str(raw).strip())
    except ValueError as exc:
        raise ProtocolError(f"Non-numeric {TOTAL_COUNT_HEADER} header: {raw!r}.", context) from exc
    if total < 0:
        raise ProtocolError(f"Negative {TOTAL_COUNT_HEADER} header: {raw!r}.", context)
    return total


def read_field_mappings(response: requests.Response, context: Mapping[str, object]) -> Any:
    raw = response.headers.get(FIELD_MAPPINGS_HEADER)
    if raw is None:
        raise ProtocolError(f"Response is missing the {FIELD_MAPPINGS_HEADER} header.", context)
    try:
        mappings = json.loads(raw)
    except ValueError as exc:
        raise ProtocolError(f"Malformed {FIELD_MAPPINGS_HEADER} header.", context) from exc
    if not isinstance(mappings, (list, dict)):
        raise ProtocolError(f"{FIELD_MAPPINGS_HEADER} header is not a JSON list or object.", context)
    return mappings


def decode_json(response: requests.Response, context: Mapping[str, object]) -> object:
    try:
        return response.json()
    except ValueError as exc:
        raise ProtocolError("Response body is not valid JSON.", context) from exc


def coerce_rows(payload: object, context: Mapping[str, object]) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        for key in ("data", "items", "results"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        raise ProtocolError("Unexpected API response shape. Expected an array of objects.", context)
    if any(not isinstance(row, dict) for row in payload):
        raise ProtocolError("Unexpected API response shape. Array holds non-object items.", context)
    return payload


def read_text_fallback(raw: bytes) -> str:
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="replace")


def parse_csv_rows(raw: bytes) -> List[Dict[str, Any]]:
    reader = csv.DictReader(io.StringIO(read_text_fallback(raw)), restval="")
    rows: List[Dict[str, Any]] = []
    for row in reader:
        rows.append({normalize_column_name(key): value for key, value in row.items() if key is not None})
    return rows


class RetrievalClient:
    def __init__(
        self,
        config: RetrievalConfig,
        session: Optional[requests.Session] = None,
        observer: Optional[Observer] = None,
        show_progress: bool = True,
    ) -> None:
        self.config = config
        self.request_interval_seconds = max(0.0, config.request_interval_seconds)
        self.next_request_at = 0.0
        self.observer: Observer = observer or log_event
        self.show_progress = show_progress
        self.requests_issued = 0
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return self.config.base_url.rstrip("/") + "/" + endpoint.lstrip("/")

    def _wait_for_slot(self) -> None:
        if self.request_interval_seconds > 0:
            now = time.monotonic()
            if now < self.next_request_at:
                time.sleep(self.next_request_at - now)

    def _request(
        self,
        url: str,
        params: Optional[Mapping[str, object]],
        context: Mapping[str, object],
    ) -> requests.Response:
        query: Dict[str, object] = dict(params or {})
        if self.config.api_key:
            query["api_key"] = self.config.api_key
        attempts = max(1, self.config.max_retries)
        for attempt in range(1, attempts + 1):
            self._wait_for_slot()
            try:
                response = self.session.request(
                    "GET",
                    url,
                    params=query,
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException:
                if attempt >= attempts:
                    raise
                time.sleep(self.config.retry_sleep_seconds * attempt)
                continue
            finally:
                self.next_request_at = time.monotonic() + self.request_interval_seconds
            self.requests_issued += 1
            if response.status_code >= 400:
                raise remote_error_from_response(response, context)
            return response
        raise RuntimeError("Retry loop exhausted unexpectedly.")

    def _fetch_page(self, url: str, query: QuerySpec, page: int, probe: bool = False) -> PageResult:
        context = {"query": query.query_id, "page": page}
        params = query.params()
        params["page"] = str(page)
        params["perPage"] = str(query.page_size)
        response = self._request(url, params, context)
        total = read_total_count(response, context) if probe else None
        rows = coerce_rows(decode_json(response, context), context)
        return PageResult(page=page, rows=rows, total_count=total)

    def run(
        self,
        query: QuerySpec,
        select: Optional[Callable[[CatalogEntry], bool]] = None,
        skip_failed: bool = False,
    ) -> AssembledTable:
        if query.kind == KIND_PAGINATED:
            return self._run_paginated(query)
        if query.kind == KIND_WINDOW:
            return self._run_window(query)
        entries = self.fetch_catalog(query.endpoint)
        if select is not None:
            entries = [entry for entry in entries if select(entry)]
        return self.download_catalog_entries(entries, skip_failed=skip_failed, label=query.query_id)

    def fetch_paginated(
        self,
        endpoint: str,
        filters: Union[None, Mapping[str, FilterValue], Sequence[Tuple[str, FilterValue]]] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        label: str = "",
    ) -> AssembledTable:
        return self._run_paginated(QuerySpec.paginated(endpoint, filters, page_size, label))

    def _run_paginated(self, query: QuerySpec) -> AssembledTable:
        url = self._url(query.endpoint)
        page_size = int(query.page_size or DEFAULT_PAGE_SIZE)
        self.observer("QUERY_START", query=query.query_id, mode=query.kind, page_size=page_size)

        probe = self._fetch_page(url, query, 1, probe=True)
        total = int(probe.total_count or 0)
        total_pages = math.ceil(total / page_size)
        self.observer("QUERY_PROBE", query=query.query_id, total_count=total, total_pages=total_pages)

        table = AssembledTable(total_count=total)
        if total == 0:
            self.observer("QUERY_DONE", query=query.query_id, rows=0, pages=0)
            return table

        pages_fetched = 0
        pbar = tqdm(
            total=total_pages,
            desc=f"Fetching {query.query_id}",
            unit="page",
            leave=False,
            disable=not self.show_progress,
        )
        try:
            for page in range(1, total_pages + 1):
                result = self._fetch_page(url, query, page)
                if not result.rows:
                    self.observer("PAGE_EMPTY", query=query.query_id, page=page, total_pages=total_pages)
                    break
                table.extend(result.rows)
                pages_fetched += 1
                pbar.update(1)
                pbar.set_postfix(rows=len(table))
                self.observer(
                    "PAGE_FETCHED",
                    query=query.query_id,
                    page=page,
                    rows=len(result.rows),
                    rows_total=len(table),
                )
        finally:
            pbar.close()

        if len(table) != total:
            self.observer("COUNT_MISMATCH", query=query.query_id, expected=total, received=len(table))
        self.observer("QUERY_DONE", query=query.query_id, rows=len(table), pages=pages_fetched)
        return table

    def fetch_window(
        self,
        endpoint: str,
        filters: Union[None, Mapping[str, FilterValue], Sequence[Tuple[str, FilterValue]]],
        begin_date: Union[date, str],
        end_date: Union[date, str],
        label: str = "",
    ) -> AssembledTable:
        return self._run_window(QuerySpec.window(endpoint, filters, begin_date, end_date, label))

    def _run_window(self, query: QuerySpec) -> AssembledTable:
        if query.begin_date is None or query.end_date is None:
            raise ValueError("Streaming-window queries need both begin_date and end_date.")
        context = {"query": query.query_id}
        self.observer(
            "QUERY_START",
            query=query.query_id,
            mode=query.kind,
            begin_date=query.begin_date.isoformat(),
            end_date=query.end_date.isoformat(),
        )
        if query.window_days > MAX_WINDOW_DAYS:
            self.observer(
                "WINDOW_ADVISORY",
                query=query.query_id,
                days=query.window_days,
                max_days=MAX_WINDOW_DAYS,
            )
            warnings.warn(
                f"{query.query_id}: {query.window_days}-day window exceeds the recommended "
                f"{MAX_WINDOW_DAYS} days; prefer bulk or paginated retrieval for wide windows.",
                AdvisoryWarning,
                stacklevel=3,
            )
        params = query.params()
        params["beginDate"] = query.begin_date.isoformat()
        params["endDate"] = query.end_date.isoformat()
        response = self._request(self._url(query.endpoint), params, context)
        mappings = read_field_mappings(response, context)
        rows = coerce_rows(decode_json(response, context), context)

        table = AssembledTable(field_mappings=mappings)
        table.extend(rows)
        self.observer("QUERY_DONE", query=query.query_id, rows=len(table), pages=1)
        return table

    def fetch_catalog(self, endpoint: Optional[str] = None) -> List[CatalogEntry]:
        url = self._url(endpoint or CATALOG_PATH)
        context = {"query": "bulk-catalog"}
        payload = decode_json(self._request(url, None, context), context)
        if not isinstance(payload, list):
            raise ProtocolError("Bulk catalog response is not an array.", context)
        entries = [CatalogEntry.from_payload(item) for item in payload]
        self.observer("CATALOG_FETCHED", entries=len(entries))
        return entries

    def entry_url(self, entry: CatalogEntry) -> str:
        return self.config.bulk_files_url.rstrip("/") + "/" + entry.s3_path.lstrip("/")

    def download_catalog_entries(
        self,
        entries: Sequence[CatalogEntry],
        skip_failed: bool = False,
        label: str = "",
    ) -> AssembledTable:
        """Download bulk files in order and stack them into one table.

        With ``skip_failed`` False the first failing entry raises and no table
        is returned. With ``skip_failed`` True failing entries are reported
        through the observer, collected in ``failed_entries``, and the remaining
        entries still download.
        """
        query_id = label or "bulk-files"
        table = AssembledTable()
        total = len(entries)
        for index, entry in enumerate(
            tqdm(entries, desc="Downloading bulk files", unit="file", leave=False, disable=not self.show_progress),
            start=1,
        ):
            context = {"query": query_id, "entry": entry.filename}
            try:
                response = self._request(self.entry_url(entry), None, context)
                rows = parse_csv_rows(response.content)
            except (RemoteError, ProtocolError) as exc:
                if not skip_failed:
                    raise
                table.failed_entries.append(entry)
                self.observer("ENTRY_FAILED", query=query_id, entry=entry.filename, error=str(exc))
                continue
            table.extend(rows)
            self.observer(
                "ENTRY_DOWNLOADED",
                query=query_id,
                entry=entry.filename,
                index=f"{index}/{total}",
                rows=len(rows),
                rows_total=len(table),
            )
        return table
