"""JSON-over-HTTP plumbing shared by the GitLab and SonarQube clients.

Requests go through an injectable opener `(request, timeout) -> response`
so callers (and tests) control the network. Every request is bounded by one
shared run Deadline. Nothing is retried.
"""

from __future__ import annotations

import http.client
import json
import socket
import time
from typing import Any, Callable, Mapping
from urllib import error, request
from urllib.parse import urlencode

HttpOpen = Callable[[request.Request, float], Any]

MAX_ERROR_BODY = 512
DEFAULT_REQUEST_TIMEOUT = 20.0
DEFAULT_RUN_TIMEOUT = 30.0


class HostError(RuntimeError):
    """An upstream host call failed."""

    def __init__(self, message: str, *, host: str = "", endpoint: str = "", status: int | None = None, body: str = ""):
        super().__init__(message)
        self.host = host
        self.endpoint = endpoint
        self.status = status
        self.body = body


class UnauthorizedError(HostError):
    """Credentials were rejected by the host."""


class DeadlineExceededError(HostError):
    """The run-wide deadline expired."""


class Deadline:
    """Wall-clock budget covering every request of a run."""

    def __init__(self, seconds: float = DEFAULT_RUN_TIMEOUT, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self.seconds = seconds
        self._expires_at = self._clock() + seconds

    def remaining(self) -> float:
        return self._expires_at - self._clock()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def timeout_for(self, host: str, endpoint: str, ceiling: float) -> float:
        """Per-request timeout: the smaller of ceiling and the time left."""
        left = self.remaining()
        if left <= 0:
            raise DeadlineExceededError(
                f"run deadline of {self.seconds:g}s exceeded before {host} request to {endpoint}",
                host=host,
                endpoint=endpoint,
            )
        return min(ceiling, left)


def _default_opener(req: request.Request, timeout: float) -> Any:
    return request.urlopen(req, timeout=timeout)


def _read_text(response: Any, limit: int = -1) -> str:
    read = getattr(response, "read", None)
    if read is None:
        return ""
    raw = read(limit) if limit >= 0 else read()
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return raw
    return ""


class JsonTransport:
    """Sends requests to one upstream host and decodes its JSON answers."""

    def __init__(
        self,
        host: str,
        base_url: str,
        headers: Mapping[str, str] | None = None,
        *,
        deadline: Deadline | None = None,
        opener: HttpOpen | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self.host = host
        self.base_url = base_url.strip().rstrip("/")
        self.headers = dict(headers or {})
        self.deadline: Deadline = deadline or Deadline()
        self.opener: HttpOpen = opener or _default_opener
        self.request_timeout = request_timeout

    def _unauthorized(self, status: int, endpoint: str) -> UnauthorizedError:
        return UnauthorizedError(
            f"unauthorized {self.host} API request: HTTP {status} from {endpoint}",
            host=self.host,
            endpoint=endpoint,
            status=status,
        )

    def _failed(self, status: int, endpoint: str, body: str) -> HostError:
        body = body.strip()
        return HostError(
            f"{self.host} API request failed for {endpoint}: HTTP {status}: {body}",
            host=self.host,
            endpoint=endpoint,
            status=status,
            body=body,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        *,
        query: Mapping[str, object] | None = None,
        form: Mapping[str, object] | None = None,
    ) -> tuple[Any, Mapping[str, str]]:
        """Send a request and return (decoded JSON payload, response headers).

        Responses with an empty body decode to None.
        """
        url = self.base_url + endpoint
        if query:
            url += "?" + urlencode({k: str(v) for k, v in query.items()})

        data = None
        headers = dict(self.headers)
        if form is not None:
            data = urlencode({k: str(v) for k, v in form.items()}).encode()
            headers["Content-Type"] = "application/x-www-form-urlencoded"

        req = request.Request(url, data=data, method=method, headers=headers)
        timeout = self.deadline.timeout_for(self.host, endpoint, self.request_timeout)

        try:
            with self.opener(req, timeout) as response:
                status = int(getattr(response, "status", 200) or 200)
                body = _read_text(response)
                response_headers = getattr(response, "headers", None) or {}
        except error.HTTPError as exc:
            status = int(getattr(exc, "code", 0))
            if status in (401, 403):
                raise self._unauthorized(status, endpoint) from exc
            raise self._failed(status, endpoint, _read_text(exc, MAX_ERROR_BODY)) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise self._connect_error(endpoint, exc) from exc
        except error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise self._connect_error(endpoint, exc.reason) from exc
            raise HostError(
                f"failed to connect to {self.host} at {self.base_url}: {exc.reason}",
                host=self.host,
                endpoint=endpoint,
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise self._connect_error(endpoint, exc) from exc

        if status in (401, 403):
            raise self._unauthorized(status, endpoint)
        if status < 200 or status >= 300:
            raise self._failed(status, endpoint, body[:MAX_ERROR_BODY])

        if not body.strip():
            return None, response_headers
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise HostError(
                f"failed to decode {self.host} response from {endpoint}: {exc}",
                host=self.host,
                endpoint=endpoint,
                status=status,
            ) from exc
        return payload, response_headers

    def _connect_error(self, endpoint: str, exc: BaseException) -> HostError:
        if self.deadline.expired():
            return DeadlineExceededError(
                f"run deadline of {self.deadline.seconds:g}s exceeded during {self.host} request to {endpoint}",
                host=self.host,
                endpoint=endpoint,
            )
        return HostError(
            f"failed to connect to {self.host} at {self.base_url}: {exc}",
            host=self.host,
            endpoint=endpoint,
        )
