"""Import helpers and fake HTTP hosts shared by the tests."""
from __future__ import annotations

import importlib.util
import io
import json
import sys
from pathlib import Path
from urllib import error
from urllib.parse import parse_qs, urlsplit

SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"

# Add scripts/ to sys.path so tests can import sonar_gitlab without installing it.
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))


def _import_script(name: str, filename: str):
    """Import a script file as a module using importlib."""
    spec = importlib.util.spec_from_file_location(name, SCRIPTS_DIR / filename)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


commenter_script = _import_script("sonar_gitlab_commenter_script", "sonar-gitlab-commenter.py")


class FakeResponse:
    def __init__(self, status: int = 200, body: object = None, headers: dict | None = None):
        self.status = status
        if body is None:
            self._body = b""
        elif isinstance(body, (bytes, str)):
            self._body = body.encode() if isinstance(body, str) else body
        else:
            self._body = json.dumps(body).encode()
        self.headers = headers or {}

    def read(self, _size: int = -1) -> bytes:
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *_args):
        return None


class Recorded:
    """One request seen by FakeOpener."""

    def __init__(self, req, timeout: float):
        parts = urlsplit(req.full_url)
        self.method = req.get_method()
        self.url = req.full_url
        self.path = parts.path
        self.query = {k: v[0] for k, v in parse_qs(parts.query).items()}
        raw = req.data.decode() if req.data else ""
        self.form = {k: v[0] for k, v in parse_qs(raw).items()}
        self.headers = {k.lower(): v for k, v in req.header_items()}
        self.timeout = timeout


class FakeOpener:
    """Routes `(method, path)` to canned responses and records every request.

    A route value may be a FakeResponse, a list of them (served in order),
    a callable taking the Recorded request, or an exception to raise.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.requests: list[Recorded] = []

    def __call__(self, req, timeout):
        rec = Recorded(req, timeout)
        self.requests.append(rec)
        key = (rec.method, rec.path)
        if key not in self.routes:
            raise AssertionError(f"unexpected request: {rec.method} {rec.url}")
        route = self.routes[key]
        if isinstance(route, list):
            route = route.pop(0)
        if callable(route) and not isinstance(route, FakeResponse):
            route = route(rec)
        if isinstance(route, BaseException):
            raise route
        if route.status >= 400:
            raise error.HTTPError(rec.url, route.status, "error", hdrs=None, fp=io.BytesIO(route.read()))
        return route

    def calls(self, method: str, path: str | None = None) -> list[Recorded]:
        return [r for r in self.requests if r.method == method and (path is None or r.path == path)]
