from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

BASE_URL = "http://billing.test"

Route = Union[Callable[[httpx.Request], httpx.Response], Tuple[int, Any], Any]


class FakeBillingAPI:
    """In-process stand-in for the billing REST API.

    Routes are keyed on method and path. A route is either a callable taking
    the request, a ``(status, body)`` tuple, or a JSON body served with 200.
    Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, response: Route) -> "FakeBillingAPI":
        self.routes[(method.upper(), path)] = response
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"success": False, "message": "Not found"})
        if callable(route):
            return route(request)
        if isinstance(route, tuple):
            status_code, body = route
            return httpx.Response(status_code, json=body)
        return httpx.Response(200, json=route)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method.upper() and request.url.path == path
        ]

    def bodies(self, method: str, path: str) -> List[Dict[str, Any]]:
        return [json.loads(request.content or b"{}") for request in self.calls(method, path)]

    def paths(self) -> List[str]:
        return [f"{request.method} {request.url.path}" for request in self.requests]


@pytest.fixture()
def fake_api() -> FakeBillingAPI:
    return FakeBillingAPI()
