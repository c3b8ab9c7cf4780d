"""
Load Engine — HTTP Exec Client.

Issues HTTP requests on behalf of virtual users and turns every call into
metric samples.  From the iteration's point of view a request is a plain
``await``: the calling virtual user is suspended until the response (or a
failure) arrives, while every other virtual user keeps running on the
same event loop.

Total latency is decomposed into the classic browser-style phases, read
from the ``trace`` extension that httpx forwards to httpcore:

  * **blocked** — waiting for a free connection from the pool
  * **connecting** — TCP handshake
  * **tls_handshaking** — TLS negotiation (HTTPS only)
  * **sending** — writing request headers and body
  * **waiting** — time to first byte (server think time)
  * **receiving** — reading the response body

Network failures never escape to the iteration.  They are recorded as a
failed request and returned as a :class:`Response` whose ``status`` is
``0``, so user code decides whether the iteration should carry on.

Key Concepts Demonstrated:
- Cooperative suspension with a shared ``httpx.AsyncClient`` pool
- Request tracing hooks for per-phase latency breakdown
- Lazy, cached body parsing with errors raised at the point of access
- Separating timeouts from other transport errors, as a reverse proxy does
"""

from __future__ import annotations

import json as jsonlib
import logging
import time
from collections.abc import Collection, Mapping
from typing import Any
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from load_engine.errors import RequestError, ResponseBodyError
from load_engine.metrics import MetricKind, MetricSink

logger = logging.getLogger(__name__)

PHASES = ("blocked", "connecting", "tls_handshaking", "sending", "waiting", "receiving")

# Statuses that count as success for ``http_req_failed``.
DEFAULT_EXPECTED_STATUSES = range(200, 400)

_MISSING = object()


def build_async_client(
    *,
    timeout: float,
    max_connections: int,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Create the connection pool shared by every virtual user of a run.

    Args:
        timeout: Default per-request timeout in seconds.
        max_connections: Upper bound on open connections; users waiting
            beyond it accumulate ``http_req_blocked`` time.
        transport: Optional transport override (tests pass
            ``httpx.MockTransport``).
    """
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        limits=limits,
        transport=transport,
        follow_redirects=True,
    )


def url_template(url: str) -> str:
    """Default ``name`` tag: the URL with query string and fragment removed."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class _PhaseTracer:
    """
    Collects httpcore trace events for one request.

    httpcore emits ``<prefix>.<step>.<started|complete|failed>`` events,
    e.g. ``connection.connect_tcp.started`` or
    ``http11.receive_response_headers.complete``.  Only the first
    occurrence of each ``<step>.<status>`` is kept.
    """

    def __init__(self) -> None:
        self.started = time.perf_counter()
        self.marks: dict[str, float] = {}

    async def __call__(self, event_name: str, info: Mapping[str, Any]) -> None:
        path, _, status = event_name.rpartition(".")
        step = path.split(".", 1)[-1]
        self.marks.setdefault(f"{step}.{status}", time.perf_counter())

    def _first(self, *keys: str) -> float | None:
        for key in keys:
            if key in self.marks:
                return self.marks[key]
        return None

    def _step(self, step: str, finished: float) -> float | None:
        start = self.marks.get(f"{step}.started")
        if start is None:
            return None
        end = self._first(f"{step}.complete", f"{step}.failed")
        return (end if end is not None else finished) - start

    def phases(self, finished: float, failed: bool) -> dict[str, float]:
        """
        Phase durations in milliseconds.

        On success every phase is present (0 for phases that did not
        happen, e.g. connecting on a re-used connection).  On failure
        only the phases reached before the failure are returned.
        """
        io_start = self._first(
            "connect_tcp.started", "connect_unix_socket.started", "send_request_headers.started"
        )
        if io_start is None:
            # No transport-level events: either the failure happened before
            # any I/O or the transport does not emit traces.
            if failed:
                return {"blocked": _ms(finished - self.started)}
            return {
                "blocked": 0.0,
                "connecting": 0.0,
                "tls_handshaking": 0.0,
                "sending": 0.0,
                "waiting": _ms(finished - self.started),
                "receiving": 0.0,
            }

        spans: dict[str, float | None] = {"blocked": io_start - self.started}
        connect = self._step("connect_tcp", finished)
        spans["connecting"] = connect if connect is not None else self._step("connect_unix_socket", finished)
        spans["tls_handshaking"] = self._step("start_tls", finished)

        send_start = self.marks.get("send_request_headers.started")
        send_end = self._first(
            "send_request_body.complete",
            "send_request_body.failed",
            "send_request_headers.complete",
            "send_request_headers.failed",
        )
        spans["sending"] = None if send_start is None else (send_end or finished) - send_start

        wait_start = self._first("send_request_body.complete", "send_request_headers.complete")
        wait_end = self._first("receive_response_headers.complete", "receive_response_headers.failed")
        spans["waiting"] = None if wait_start is None else (wait_end or finished) - wait_start

        receive_start = self.marks.get("receive_response_headers.complete")
        spans["receiving"] = None if receive_start is None else finished - receive_start

        phases = {}
        for phase in PHASES:
            value = spans.get(phase)
            if value is None:
                if failed:
                    continue
                value = 0.0
            phases[phase] = _ms(max(value, 0.0))
        return phases


def _ms(seconds: float) -> float:
    return seconds * 1000.0


def _error_code(exc: httpx.RequestError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.TooManyRedirects):
        return "too_many_redirects"
    if isinstance(exc, httpx.DecodingError):
        return "decoding_error"
    text = str(exc).lower()
    if "ssl" in text or "certificate" in text or "tls" in text:
        return "tls_failed"
    if isinstance(exc, httpx.ConnectError):
        return "connect_failed"
    if isinstance(exc, httpx.RemoteProtocolError):
        return "protocol_error"
    if isinstance(exc, httpx.UnsupportedProtocol):
        return "unsupported_protocol"
    return "request_failed"


def _header_bytes(headers: Mapping[str, str]) -> int:
    return sum(len(name) + len(value) + 4 for name, value in headers.items())


def _request_bytes(request: httpx.Request) -> int:
    try:
        body = len(request.content)
    except httpx.RequestNotRead:
        # streamed bodies (multipart uploads) are not buffered
        body = int(request.headers.get("content-length", 0))
    return body + _header_bytes(request.headers)


class Response:
    """
    Result of one HTTP call as seen by iteration code.

    Attributes:
        status: HTTP status code, or ``0`` if the request never completed.
        headers: Response headers (case-insensitive).
        body: Raw response body bytes.
        url: Final URL after redirects.
        method: Request method.
        timings: Phase durations in milliseconds plus ``duration``.
        error: Failure message for network-level errors, else ``None``.
        error_code: Short failure code (``"timeout"``, ``"connect_failed"``...).
        expected: Whether the status counted as a success.
    """

    def __init__(
        self,
        *,
        status: int,
        headers: httpx.Headers,
        body: bytes,
        url: str,
        method: str,
        timings: dict[str, float],
        expected: bool,
        encoding: str | None = None,
        error: RequestError | None = None,
    ):
        self.status = status
        self.headers = headers
        self.body = body
        self.url = url
        self.method = method
        self.timings = timings
        self.expected = expected
        self.encoding = encoding or "utf-8"
        self.error = str(error) if error is not None else None
        self.error_code = error.code if error is not None else None
        self._json: Any = _MISSING

    @property
    def ok(self) -> bool:
        return self.error is None and self.expected

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding, errors="replace")

    def json(self, selector: str | None = None) -> Any:
        """
        Decode the body as JSON, parsing it only on first access.

        Args:
            selector: Optional dotted path into the document, e.g.
                ``"pizza.name"`` or ``"pizza.ingredients.0"``.

        Returns:
            The decoded document, or the value at *selector*.

        Raises:
            ResponseBodyError: If the body is not valid JSON or the
                selector does not resolve.
        """
        if self._json is _MISSING:
            try:
                self._json = jsonlib.loads(self.body)
            except ValueError as exc:
                raise ResponseBodyError(
                    f"Response from {self.method} {self.url} is not valid JSON"
                ) from exc

        if selector is None:
            return self._json
        return _select(self._json, selector)

    def __repr__(self) -> str:
        return f"<Response {self.method} {self.url} [{self.status}]>"


def _select(document: Any, selector: str) -> Any:
    current = document
    for part in selector.split("."):
        try:
            if isinstance(current, list):
                current = current[int(part)]
            else:
                current = current[part]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ResponseBodyError(f"Selector {selector!r} does not resolve at {part!r}") from exc
    return current


class HttpClient:
    """
    Per-virtual-user facade over the shared connection pool.

    Every request made through it is tagged with the facade's default tags
    (scenario and VU id when created by the scheduler) and recorded into
    the run's :class:`~load_engine.metrics.MetricSink`.
    """

    def __init__(
        self,
        sink: MetricSink,
        client: httpx.AsyncClient,
        *,
        base_url: str | None = None,
        tags: Mapping[str, Any] | None = None,
    ):
        self.sink = sink
        self.client = client
        self.base_url = base_url
        self.tags = dict(tags or {})

    def with_tags(self, **tags: Any) -> HttpClient:
        """Return a facade sharing the same pool with extra default tags."""
        return HttpClient(self.sink, self.client, base_url=self.base_url, tags={**self.tags, **tags})

    def resolve(self, url: str) -> str:
        """Resolve a relative ``/path`` against the configured base target."""
        if self.base_url and url.startswith("/"):
            return urljoin(self.base_url.rstrip("/") + "/", url.lstrip("/"))
        return url

    async def request(
        self,
        method: str,
        url: str,
        body: str | bytes | Mapping[str, Any] | None = None,
        *,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        timeout: float | None = None,
        tags: Mapping[str, Any] | None = None,
        name: str | None = None,
        expected_statuses: Collection[int] | None = None,
    ) -> Response:
        """
        Send one request and record its metrics.

        Args:
            method: HTTP method.
            url: Absolute URL, or a ``/path`` resolved against the base
                target.
            body: Raw body (``str``/``bytes``) or a mapping sent as a form.
            json: Object serialised as a JSON body instead of *body*.
            headers: Extra request headers.
            params: Query-string parameters.
            timeout: Per-request timeout in seconds.
            tags: Extra tags for this request's samples.
            name: URL template used for the ``name`` tag, so that
                ``/api/pizza/1`` and ``/api/pizza/2`` aggregate together.
            expected_statuses: Statuses counted as success (200–399 by
                default).

        Returns:
            A :class:`Response`; ``status`` is ``0`` on network failure.
        """
        method = method.upper()
        target = self.resolve(url)
        expected_statuses = DEFAULT_EXPECTED_STATUSES if expected_statuses is None else expected_statuses

        kwargs: dict[str, Any] = {"headers": headers, "params": params}
        if json is not None:
            kwargs["json"] = json
        elif isinstance(body, Mapping):
            kwargs["data"] = body
        elif body is not None:
            kwargs["content"] = body
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout)

        tracer = _PhaseTracer()
        error: RequestError | None = None
        raw: httpx.Response | None = None
        try:
            raw = await self.client.request(method, target, extensions={"trace": tracer}, **kwargs)
        except httpx.TimeoutException as exc:
            error = RequestError(f"{method} {target} timed out", code="timeout")
            error.__cause__ = exc
        except httpx.RequestError as exc:
            error = RequestError(f"{method} {target} failed: {exc}", code=_error_code(exc))
            error.__cause__ = exc
        except httpx.InvalidURL as exc:
            error = RequestError(f"{method} {target} is not a valid URL: {exc}", code="invalid_url")
            error.__cause__ = exc
        finished = time.perf_counter()

        timings = tracer.phases(finished, failed=raw is None)
        if raw is not None:
            timings["duration"] = timings["sending"] + timings["waiting"] + timings["receiving"]

        request_tags = {
            **self.tags,
            "method": method,
            "url": target,
            "name": name or url_template(target),
            **(tags or {}),
        }

        if raw is None:
            logger.debug("Request failed: %s", error)
            request_tags.update(status=0, expected_response=False, error_code=error.code)
            self._record(request_tags, timings, failed=True, sent=0, received=0)
            return Response(
                status=0,
                headers=httpx.Headers(),
                body=b"",
                url=target,
                method=method,
                timings=timings,
                expected=False,
                error=error,
            )

        expected = raw.status_code in expected_statuses
        request_tags.update(status=raw.status_code, expected_response=expected)
        self._record(
            request_tags,
            timings,
            failed=not expected,
            sent=_request_bytes(raw.request),
            received=len(raw.content) + _header_bytes(raw.headers),
        )
        return Response(
            status=raw.status_code,
            headers=raw.headers,
            body=raw.content,
            url=str(raw.url),
            method=method,
            timings=timings,
            expected=expected,
            encoding=raw.charset_encoding,
        )

    def _record(self, tags: dict[str, Any], timings: dict[str, float], *, failed: bool, sent: int, received: int) -> None:
        sink = self.sink
        sink.record(MetricKind.COUNTER, "http_reqs", 1, tags)
        for phase in PHASES:
            if phase in timings:
                sink.record(MetricKind.TREND, f"http_req_{phase}", timings[phase], tags, is_time=True)
        if "duration" in timings:
            sink.record(MetricKind.TREND, "http_req_duration", timings["duration"], tags, is_time=True)
        sink.record(MetricKind.RATE, "http_req_failed", failed, tags)
        sink.record(MetricKind.COUNTER, "data_sent", sent, tags)
        sink.record(MetricKind.COUNTER, "data_received", received, tags)

    async def get(self, url: str, **kwargs: Any) -> Response:
        return await self.request("GET", url, **kwargs)

    async def head(self, url: str, **kwargs: Any) -> Response:
        return await self.request("HEAD", url, **kwargs)

    async def options(self, url: str, **kwargs: Any) -> Response:
        return await self.request("OPTIONS", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Response:
        return await self.request("DELETE", url, **kwargs)

    async def post(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request("POST", url, body, **kwargs)

    async def put(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request("PUT", url, body, **kwargs)

    async def patch(self, url: str, body: Any = None, **kwargs: Any) -> Response:
        return await self.request("PATCH", url, body, **kwargs)
