from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests

from campd_retrieval import RetrievalClient, RetrievalConfig


def build_response(
    status: int = 200,
    json_body: Any = None,
    text: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    if json_body is not None:
        response._content = json.dumps(json_body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    elif text is not None:
        response._content = text.encode("utf-8")
    else:
        response._content = b""
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class FakeSession:
    """Stands in for requests.Session; routes every GET through ``handler``."""

    def __init__(self, handler: Callable[[str, Dict[str, Any]], requests.Response]) -> None:
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> requests.Response:
        call = {"method": method, "url": url, "params": dict(params or {}), **kwargs}
        self.calls.append(call)
        return self.handler(url, call["params"])


def paginated_handler(
    total: int,
    empty_from_page: Optional[int] = None,
    row_for: Optional[Callable[[int], Dict[str, Any]]] = None,
) -> Callable[[str, Dict[str, Any]], requests.Response]:
    make_row = row_for or (lambda index: {"recordId": index, "stateCode": "CA"})

    def handler(url: str, params: Dict[str, Any]) -> requests.Response:
        page = int(params["page"])
        per_page = int(params["perPage"])
        start = (page - 1) * per_page
        stop = min(total, start + per_page)
        if empty_from_page is not None and page >= empty_from_page:
            rows: List[Dict[str, Any]] = []
        else:
            rows = [make_row(index) for index in range(start, stop)]
        return build_response(json_body=rows, headers={"x-total-count": str(total)})

    return handler


@pytest.fixture()
def respond() -> Callable[..., requests.Response]:
    return build_response


@pytest.fixture()
def paged() -> Callable[..., Callable[[str, Dict[str, Any]], requests.Response]]:
    return paginated_handler


@pytest.fixture()
def events() -> List[tuple]:
    return []


@pytest.fixture()
def make_client(events: List[tuple]) -> Callable[..., RetrievalClient]:
    def factory(handler: Callable[[str, Dict[str, Any]], requests.Response], **config: Any) -> RetrievalClient:
        config.setdefault("api_key", "test-key")
        config.setdefault("request_interval_seconds", 0.0)
        return RetrievalClient(
            RetrievalConfig(**config),
            session=FakeSession(handler),  # type: ignore[arg-type]
            observer=lambda event, **fields: events.append((event, fields)),
            show_progress=False,
        )

    return factory
