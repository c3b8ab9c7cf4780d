"""
Load Engine — Script Runner.

Runs a test script module and turns its result into a process exit code.
A script module exports a fixed set of names:

- ``options`` — the options mapping (profile, thresholds...)
- ``default`` and/or the functions named by scenario ``exec`` keys
- optional ``setup``, ``teardown`` and ``handle_summary``

Exit codes follow a three-state convention so that CI can distinguish
"thresholds breached" from "test could not execute":

- ``0`` — the run passed
- ``1`` — at least one threshold was breached (or aborted the run)
- ``2`` — the script is invalid, or setup/teardown failed

Each foundations script ends with::

    if __name__ == "__main__":
        raise SystemExit(run_script(sys.modules[__name__]))
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from types import ModuleType
from typing import Any

from load_engine.errors import ConfigurationError
from load_engine.lifecycle import LoadTest, TestResult, TestStatus
from load_engine.options import parse_options
from load_engine.summary import text_summary, write_outputs

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_SCRIPT_ERROR = 2

_PROFILE_KEYS = frozenset({"scenarios", "stages", "vus", "duration", "iterations"})


def build_test(module: ModuleType, options_override: Mapping[str, Any] | None = None, **kwargs: Any) -> LoadTest:
    """
    Create a :class:`LoadTest` from a script module.

    Args:
        module: The script module.
        options_override: Keys replacing the module's own ``options``.
        **kwargs: Forwarded to :class:`LoadTest` (``config``,
            ``transport``, ``env``).

    Raises:
        ConfigurationError: If the module's options or callbacks are invalid.
    """
    raw = dict(getattr(module, "options", None) or {})
    if options_override:
        if _PROFILE_KEYS.intersection(options_override):
            for key in _PROFILE_KEYS:
                raw.pop(key, None)
        raw.update(options_override)
    options = parse_options(raw)

    functions = {
        name: getattr(module, name)
        for name in options.profile.exec_names
        if callable(getattr(module, name, None))
    }
    return LoadTest(
        options,
        functions=functions,
        setup=getattr(module, "setup", None),
        teardown=getattr(module, "teardown", None),
        handle_summary=getattr(module, "handle_summary", None),
        **kwargs,
    )


def exit_code(result: TestResult) -> int:
    if result.status is TestStatus.PASSED:
        return EXIT_PASS
    if result.status in (TestStatus.THRESHOLDS_FAILED, TestStatus.ABORTED_BY_THRESHOLD):
        return EXIT_THRESHOLD_BREACH
    return EXIT_SCRIPT_ERROR


def run_script(module: ModuleType, options_override: Mapping[str, Any] | None = None, **kwargs: Any) -> int:
    """
    Run a script module end to end and return its exit code.

    Outputs returned by the module's ``handle_summary`` are written;
    without one the text summary is printed to stdout.
    """
    try:
        test = build_test(module, options_override, **kwargs)
    except ConfigurationError as exc:
        logger.error("Invalid test script %s: %s", module.__name__, exc)
        return EXIT_SCRIPT_ERROR

    result = test.run()
    if test.outputs is not None:
        write_outputs(test.outputs)
    elif test.summary is not None:
        sys.stdout.write(text_summary(test.summary))
    return exit_code(result)
