"""
Load Engine — Error Taxonomy and Callback Outcomes.

Every failure the engine can meet falls into one of five categories, and
the category decides whether the run keeps producing load:

* :class:`ConfigurationError` — malformed load profile, threshold or
  option.  Raised before setup; the test never starts.
* :class:`SetupError` — the user ``setup`` callback failed.  No virtual
  user is ever started and the result is a failed, non-executed test.
* :class:`IterationError` — one iteration raised.  Recorded as a failed
  iteration; the virtual user carries on.
* :class:`RequestError` — a network-level failure during an HTTP call.
  Recorded as a failed request and surfaced as a ``status == 0``
  response rather than raised.
* :class:`ThresholdViolation` — a pass/fail rule was breached.  Changes
  the verdict, never the collected data.

User callbacks are not trusted to raise the right class, so the
orchestrator wraps every invocation into an explicit :class:`Ok` /
:class:`Err` outcome via :func:`capture` and branches on the type.

Key Concepts Demonstrated:
- A small exception hierarchy with one root for ``except`` clauses
- Result-style sum types for user-supplied callbacks
- Exception chaining so the original traceback is never lost
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class LoadEngineError(Exception):
    """Root of every error raised by the load engine."""


class ConfigurationError(LoadEngineError):
    """Invalid options, load profile, threshold or metric definition."""


class MetricKindError(ConfigurationError):
    """A metric name was re-used with a different metric kind."""


class SetupError(LoadEngineError):
    """The ``setup`` callback raised or returned an :class:`Err`."""


class IterationError(LoadEngineError):
    """An iteration of a virtual user raised."""


class TeardownError(LoadEngineError):
    """The ``teardown`` callback raised or returned an :class:`Err`."""


class RequestError(LoadEngineError):
    """
    A network-level failure (timeout, refused connection, TLS failure).

    Attributes:
        code: Short machine-readable failure code, e.g. ``"timeout"``.
    """

    def __init__(self, message: str, code: str = "request_failed"):
        super().__init__(message)
        self.code = code


class ThresholdViolation(LoadEngineError):
    """One or more thresholds evaluated to failed."""

    def __init__(self, failed: list[str]):
        super().__init__("Thresholds breached: " + ", ".join(failed))
        self.failed = failed


class ResponseBodyError(ValueError):
    """The response body could not be parsed as requested."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful callback outcome carrying the returned value."""

    value: T


@dataclass(frozen=True)
class Err:
    """Failed callback outcome carrying the classified error."""

    error: LoadEngineError

    @property
    def message(self) -> str:
        cause = self.error.__cause__
        if cause is not None:
            return f"{self.error}: {cause}"
        return str(self.error)


Outcome = Union[Ok[Any], Err]


async def capture(
    callback: Callable[..., Awaitable[Any]],
    *args: Any,
    error_class: type[LoadEngineError],
) -> Outcome:
    """
    Await *callback* and wrap whatever happens into an outcome.

    A callback may signal failure either by raising or by returning an
    :class:`Err` itself.  Exceptions are re-classified as *error_class*
    with the original chained as ``__cause__``.

    Args:
        callback: The user coroutine function to invoke.
        *args: Positional arguments forwarded to *callback*.
        error_class: Category used for raised exceptions.

    Returns:
        ``Ok(return_value)`` or ``Err(error_class(...))``.
    """
    try:
        value = await callback(*args)
    except Exception as exc:
        name = getattr(callback, "__name__", "callback")
        error = error_class(f"{name} raised {type(exc).__name__}")
        error.__cause__ = exc
        return Err(error)

    if isinstance(value, Err):
        return value
    if isinstance(value, Ok):
        return value
    return Ok(value)
