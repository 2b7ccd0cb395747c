from __future__ import annotations

import dataclasses
import json
import warnings
from datetime import date, datetime, timezone

import pytest
import requests

import campd_retrieval
from campd_retrieval import (
    ABSENT,
    KIND_CATALOG,
    AdvisoryWarning,
    AssembledTable,
    CatalogEntry,
    ProtocolError,
    QuerySpec,
    RemoteError,
    normalize_column_name,
    parse_api_datetime,
    parse_csv_rows,
)

ANNUAL = "/emissions-mgmt/emissions/apportioned/annual"
HOURLY = "/streaming-services/emissions/apportioned/hourly"


def _pages_requested(client):
    return [int(call["params"]["page"]) for call in client.session.calls]


def test_zero_total_issues_only_the_probe(make_client, paged):
    client = make_client(paged(0))

    table = client.fetch_paginated(ANNUAL, {"year": "2024", "stateCode": "WY"})

    assert len(client.session.calls) == 1
    assert len(table) == 0
    assert table.total_count == 0
    assert table.columns == []


def test_paginated_fetch_of_150_rows_uses_probe_plus_two_pages(make_client, paged):
    client = make_client(paged(150))

    table = client.fetch_paginated(ANNUAL, {"year": "1995|1996", "stateCode": "CA"}, page_size=100)

    assert len(client.session.calls) == 3
    assert _pages_requested(client) == [1, 1, 2]
    assert len(table) == 150
    assert [row["recordId"] for row in table.rows] == list(range(150))
    probe = client.session.calls[0]
    assert probe["url"] == "https://api.epa.gov/easey/emissions-mgmt/emissions/apportioned/annual"
    assert probe["params"] == {
        "year": "1995|1996",
        "stateCode": "CA",
        "page": "1",
        "perPage": "100",
        "api_key": "test-key",
    }


def test_full_pages_request_count_matches_page_plan(make_client, paged):
    client = make_client(paged(300))

    table = client.fetch_paginated(ANNUAL, {"stateCode": "TX"}, page_size=100)

    assert client.requests_issued == 4
    assert len(table) == table.total_count == 300


def test_multi_valued_filters_are_pipe_joined(make_client, paged):
    client = make_client(paged(1))

    client.fetch_paginated(ANNUAL, {"year": range(1995, 1998), "stateCode": ["CA", "NV"]})

    params = client.session.calls[0]["params"]
    assert params["year"] == "1995|1996|1997"
    assert params["stateCode"] == "CA|NV"


def test_empty_page_stops_the_loop_early(make_client, paged, events):
    client = make_client(paged(500, empty_from_page=3))

    table = client.fetch_paginated(ANNUAL, {"stateCode": "OH"}, page_size=100, label="annual:OH")

    assert _pages_requested(client) == [1, 1, 2, 3]
    assert len(table) == 200
    names = [name for name, _ in events]
    assert "PAGE_EMPTY" in names
    mismatch = dict(events)["COUNT_MISMATCH"]
    assert mismatch == {"query": "annual:OH", "expected": 500, "received": 200}


def test_error_status_mid_query_raises_remote_error(make_client, paged, respond):
    pages = paged(250)

    def handler(url, params):
        if params["page"] == "2":
            return respond(status=400, json_body={"error": {"code": "BAD_REQUEST", "message": "Invalid stateCode"}})
        return pages(url, params)

    client = make_client(handler)

    with pytest.raises(RemoteError) as excinfo:
        client.fetch_paginated(ANNUAL, {"stateCode": "ZZ"}, label="annual:ZZ")

    error = excinfo.value
    assert error.code == "BAD_REQUEST"
    assert error.message == "Invalid stateCode"
    assert error.status == 400
    assert error.context == {"query": "annual:ZZ", "page": 2}
    assert "annual:ZZ" in str(error)
    assert _pages_requested(client) == [1, 1, 2]


def test_error_without_json_body_uses_response_text(make_client, respond):
    client = make_client(lambda url, params: respond(status=503, text="upstream unavailable"))

    with pytest.raises(RemoteError) as excinfo:
        client.fetch_paginated(ANNUAL, {"stateCode": "CA"})

    assert excinfo.value.code == 503
    assert excinfo.value.message == "upstream unavailable"


@pytest.mark.parametrize("headers", [{}, {"x-total-count": "many"}, {"x-total-count": "-4"}])
def test_missing_or_malformed_total_count_is_a_protocol_error(make_client, respond, headers):
    client = make_client(lambda url, params: respond(json_body=[{"a": 1}], headers=headers))

    with pytest.raises(ProtocolError):
        client.fetch_paginated(ANNUAL, {"stateCode": "CA"})
    assert len(client.session.calls) == 1


def test_total_count_header_lookup_is_case_insensitive(make_client, respond):
    client = make_client(lambda url, params: respond(json_body=[{"a": 1}], headers={"X-Total-Count": "1"}))

    table = client.fetch_paginated(ANNUAL)

    assert len(table) == 1


def test_non_array_body_is_a_protocol_error(make_client, respond):
    client = make_client(lambda url, params: respond(json_body={"unexpected": True}, headers={"x-total-count": "3"}))

    with pytest.raises(ProtocolError):
        client.fetch_paginated(ANNUAL)


def test_columns_are_the_union_of_pages_with_absent_fill(make_client, paged):
    def row_for(index):
        if index < 2:
            return {"recordId": index}
        return {"recordId": index, "noxMass": index * 1.5}

    client = make_client(paged(4, row_for=row_for))

    table = client.fetch_paginated(ANNUAL, page_size=2)

    assert table.columns == ["recordId", "noxMass"]
    assert table.rows[0] == {"recordId": 0, "noxMass": ABSENT}
    assert table.rows[3] == {"recordId": 3, "noxMass": 4.5}


def test_page_events_reach_the_observer(make_client, paged, events):
    client = make_client(paged(3))

    client.fetch_paginated(ANNUAL, page_size=2, label="annual:CA")

    fetched = [fields for name, fields in events if name == "PAGE_FETCHED"]
    assert fetched == [
        {"query": "annual:CA", "page": 1, "rows": 2, "rows_total": 2},
        {"query": "annual:CA", "page": 2, "rows": 1, "rows_total": 3},
    ]
    assert events[0][0] == "QUERY_START"
    assert events[-1] == ("QUERY_DONE", {"query": "annual:CA", "rows": 3, "pages": 2})


def test_requests_are_spaced_by_the_minimum_interval(make_client, paged, monkeypatch):
    sleeps = []
    monkeypatch.setattr(campd_retrieval.time, "monotonic", lambda: 100.0)
    monkeypatch.setattr(campd_retrieval.time, "sleep", sleeps.append)
    client = make_client(paged(1), request_interval_seconds=1.0)

    client.fetch_paginated(ANNUAL)

    assert client.requests_issued == 2
    assert sleeps == [1.0]


def test_transport_failures_retry_only_when_enabled(make_client, paged, monkeypatch):
    monkeypatch.setattr(campd_retrieval.time, "sleep", lambda seconds: None)
    pages = paged(1)
    failures = {"left": 1}

    def flaky(url, params):
        if failures["left"]:
            failures["left"] -= 1
            raise requests.ConnectionError("reset by peer")
        return pages(url, params)

    client = make_client(flaky, max_retries=2)
    assert len(client.fetch_paginated(ANNUAL)) == 1

    failures["left"] = 1
    single_attempt = make_client(flaky)
    with pytest.raises(requests.ConnectionError):
        single_attempt.fetch_paginated(ANNUAL)


def test_query_spec_validation():
    with pytest.raises(ValueError):
        QuerySpec.paginated(ANNUAL, page_size=0)
    with pytest.raises(ValueError):
        QuerySpec.paginated("", page_size=10)
    with pytest.raises(ValueError):
        QuerySpec.window(HOURLY, {}, date(2024, 2, 1), date(2024, 1, 31))
    with pytest.raises(ValueError):
        QuerySpec("nightly", ANNUAL)

    query = QuerySpec.paginated(ANNUAL, {"year": [2020, 2021], "stateCode": "CA", "unitType": None})
    assert query.filters == (("year", "2020|2021"), ("stateCode", "CA"))
    with pytest.raises(dataclasses.FrozenInstanceError):
        query.page_size = 5  # type: ignore[misc]


def test_window_accepts_iso_strings_and_counts_days():
    query = QuerySpec.window(HOURLY, {"stateCode": "CA"}, "2024-01-01", "2024-01-01")

    assert query.begin_date == date(2024, 1, 1)
    assert query.window_days == 0


def _window_handler(respond, rows, mappings):
    headers = {"x-field-mappings": json.dumps(mappings)}
    return lambda url, params: respond(json_body=rows, headers=headers)


def test_wide_window_warns_but_still_fetches(make_client, respond, events):
    mappings = [{"label": "State", "value": "stateCode"}, {"label": "Gross Load (MW)", "value": "grossLoad"}]
    client = make_client(_window_handler(respond, [{"stateCode": "CA", "grossLoad": 12}], mappings))

    with pytest.warns(AdvisoryWarning):
        table = client.fetch_window(HOURLY, {"stateCode": "CA"}, date(2024, 1, 1), date(2024, 3, 1))

    assert len(client.session.calls) == 1
    assert client.session.calls[0]["params"]["beginDate"] == "2024-01-01"
    assert client.session.calls[0]["params"]["endDate"] == "2024-03-01"
    assert "page" not in client.session.calls[0]["params"]
    assert len(table) == 1
    assert table.field_mappings == mappings
    assert any(name == "WINDOW_ADVISORY" for name, _ in events)


def test_window_of_31_days_does_not_warn(make_client, respond):
    client = make_client(_window_handler(respond, [], []))

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        table = client.fetch_window(HOURLY, {"stateCode": "CA"}, date(2024, 1, 1), date(2024, 2, 1))

    assert not [item for item in caught if issubclass(item.category, AdvisoryWarning)]
    assert len(table) == 0


@pytest.mark.parametrize("header", [None, "not json", "42"])
def test_window_needs_valid_field_mappings(make_client, respond, header):
    headers = {} if header is None else {"x-field-mappings": header}
    client = make_client(lambda url, params: respond(json_body=[], headers=headers))

    with pytest.raises(ProtocolError):
        client.fetch_window(HOURLY, {}, "2024-01-01", "2024-01-02")


def test_window_error_status_raises_remote_error(make_client, respond):
    body = {"error": {"code": 400, "message": "Date range too large"}}
    client = make_client(lambda url, params: respond(status=400, json_body=body))

    with pytest.raises(RemoteError) as excinfo:
        client.fetch_window(HOURLY, {}, "2024-01-01", "2024-01-02")

    assert excinfo.value.code == 400
    assert excinfo.value.message == "Date range too large"


CATALOG = [
    {
        "filename": "emissions-daily-2023-ca.csv",
        "s3Path": "emissions/daily/state/emissions-daily-2023-ca.csv",
        "megaBytes": "12.5",
        "lastUpdated": "2024-04-02T10:15:00Z",
        "metadata": {"dataType": "Emissions", "dataSubType": "Daily", "year": "2023", "stateCode": "CA"},
    },
    {
        "filename": "facility-2023.csv",
        "s3Path": "facility/facility-2023.csv",
        "megaBytes": 3,
        "lastUpdated": "2024-01-10T00:00:00Z",
        "metadata": {"dataType": "Facility", "year": 2023},
    },
    {
        "filename": "allowance-holdings.csv",
        "s3Path": "allowance/allowance-holdings.csv",
        "megaBytes": 1.25,
        "lastUpdated": None,
        "metadata": {"dataType": "Allowance", "dataSubType": "Holdings"},
    },
]


def test_fetch_catalog_decodes_entries(make_client, respond):
    client = make_client(lambda url, params: respond(json_body=CATALOG))

    entries = client.fetch_catalog()

    assert client.session.calls[0]["url"] == "https://api.epa.gov/easey/camd-services/bulk-files"
    assert [entry.filename for entry in entries] == [item["filename"] for item in CATALOG]
    first = entries[0]
    assert first.data_type == "Emissions"
    assert first.data_sub_type == "Daily"
    assert first.megabytes == 12.5
    assert first.year == 2023
    assert first.state_code == "CA"
    assert first.last_updated == datetime(2024, 4, 2, 10, 15, tzinfo=timezone.utc)
    assert entries[2].year is None
    assert entries[2].last_updated is None


def test_catalog_item_without_s3_path_is_a_protocol_error():
    with pytest.raises(ProtocolError):
        CatalogEntry.from_payload({"filename": "x.csv", "metadata": {"dataType": "Facility"}})


def _entry(name, data_type="Emissions"):
    return CatalogEntry(
        filename=name,
        s3_path=f"files/{name}",
        data_type=data_type,
        megabytes=1.0,
        last_updated=None,
    )


FIRST_CSV = "Facility ID,SO2 Mass (short tons)\n1,0.5\n2,0.7\n3,\n"
SECOND_CSV = "Facility ID,State,Gross Load (MWh)\n" + "".join(f"{n},CA,{n * 10}\n" for n in range(4, 9))


def _file_server(respond, files):
    def handler(url, params):
        name = url.rsplit("/", 1)[-1]
        if name not in files:
            return respond(status=404, json_body={"error": {"code": 404, "message": f"{name} not found"}})
        return respond(text=files[name])

    return handler


def test_bulk_entries_concatenate_with_union_columns(make_client, respond):
    client = make_client(_file_server(respond, {"a.csv": FIRST_CSV, "b.csv": SECOND_CSV}))

    table = client.download_catalog_entries([_entry("a.csv"), _entry("b.csv")])

    assert client.session.calls[0]["url"] == "https://api.epa.gov/easey/bulk-files/files/a.csv"
    assert len(table) == 8
    assert table.columns == ["facility_id", "so2_mass_short_tons", "state", "gross_load_mwh"]
    assert table.rows[0] == {"facility_id": "1", "so2_mass_short_tons": "0.5", "state": ABSENT, "gross_load_mwh": ABSENT}
    # An empty cell in the file stays an empty string; only missing columns are absent.
    assert table.rows[2]["so2_mass_short_tons"] == ""
    assert table.rows[3]["so2_mass_short_tons"] is ABSENT
    assert table.rows[7]["gross_load_mwh"] == "80"


def test_bulk_failure_aborts_by_default(make_client, respond):
    client = make_client(_file_server(respond, {"a.csv": FIRST_CSV, "c.csv": SECOND_CSV}))

    with pytest.raises(RemoteError) as excinfo:
        client.download_catalog_entries([_entry("a.csv"), _entry("b.csv"), _entry("c.csv")], label="bulk:CA")

    assert excinfo.value.context == {"query": "bulk:CA", "entry": "b.csv"}
    assert excinfo.value.message == "b.csv not found"
    assert len(client.session.calls) == 2


def test_bulk_failure_is_skipped_when_requested(make_client, respond, events):
    client = make_client(_file_server(respond, {"a.csv": FIRST_CSV, "c.csv": SECOND_CSV}))

    table = client.download_catalog_entries(
        [_entry("a.csv"), _entry("b.csv"), _entry("c.csv")],
        skip_failed=True,
    )

    assert len(client.session.calls) == 3
    assert len(table) == 8
    assert [entry.filename for entry in table.failed_entries] == ["b.csv"]
    failed = [fields for name, fields in events if name == "ENTRY_FAILED"]
    assert failed[0]["entry"] == "b.csv"


def test_run_dispatches_catalog_queries_through_a_selector(make_client, respond):
    catalog = [
        {"filename": "a.csv", "s3Path": "files/a.csv", "metadata": {"dataType": "Emissions"}},
        {"filename": "skip.csv", "s3Path": "files/skip.csv", "metadata": {"dataType": "Facility"}},
    ]

    def handler(url, params):
        if url.endswith("/camd-services/bulk-files"):
            return respond(json_body=catalog)
        return _file_server(respond, {"a.csv": FIRST_CSV})(url, params)

    client = make_client(handler)

    table = client.run(
        QuerySpec.catalog(label="bulk-emissions"),
        select=lambda entry: entry.data_type == "Emissions",
    )

    assert QuerySpec.catalog().kind == KIND_CATALOG
    assert len(client.session.calls) == 2
    assert len(table) == 3


def test_assembled_table_backfills_new_columns():
    table = AssembledTable()
    table.extend([{"a": 1}])
    table.extend([{"b": 2}, {"a": 3, "b": 4}])

    assert table.columns == ["a", "b"]
    assert table.rows == [{"a": 1, "b": ABSENT}, {"a": ABSENT, "b": 2}, {"a": 3, "b": 4}]


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Facility ID", "facility_id"),
        ("SO2 Mass (short tons)", "so2_mass_short_tons"),
        ("CO2 Rate (short tons/mmBtu)", "co2_rate_short_tons_mm_btu"),
        ("stateCode", "state_code"),
        ("  NOx Rate ", "nox_rate"),
        ("***", "column"),
    ],
)
def test_normalize_column_name(raw, expected):
    assert normalize_column_name(raw) == expected


def test_window_query_without_dates_is_rejected_before_any_request(make_client, respond):
    client = make_client(lambda url, params: respond(json_body=[], headers={"x-field-mappings": "[]"}))
    query = QuerySpec.window(HOURLY, {"stateCode": "CA"}, "2024-01-01", "2024-01-02")
    object.__setattr__(query, "end_date", None)

    with pytest.raises(ValueError):
        client.run(query)

    assert client.session.calls == []


@pytest.mark.parametrize(
    "raw",
    ["2024-04-02T10:15:00", "2024-04-02T10:15:00Z", "2024-04-02T05:15:00-05:00"],
)
def test_api_datetimes_are_normalized_to_utc(raw):
    assert parse_api_datetime(raw) == datetime(2024, 4, 2, 10, 15, tzinfo=timezone.utc)


def test_short_csv_rows_fill_missing_cells_with_empty_strings():
    rows = parse_csv_rows(b"Facility ID,State,Gross Load (MWh)\n1,CA\n2,TX,30\n")

    assert rows == [
        {"facility_id": "1", "state": "CA", "gross_load_mwh": ""},
        {"facility_id": "2", "state": "TX", "gross_load_mwh": "30"},
    ]
