"""
Load Engine — a load-generation and metrics-aggregation engine.

Simulates many concurrent virtual users executing a scripted iteration
against an HTTP service, collects timing and business metrics from every
request, and judges the run against declarative thresholds.

Key Concepts Demonstrated:
- asyncio tasks as cheap virtual users with explicit suspension points
- A single owned metric sink passed into every execution context
- Explicit Ok/Err outcomes for user-supplied callbacks
- Environment-aware configuration loading via get_config
"""

from __future__ import annotations

import logging

from load_engine.config import get_config
from load_engine.errors import (
    ConfigurationError,
    Err,
    IterationError,
    LoadEngineError,
    Ok,
    RequestError,
    SetupError,
    TeardownError,
    ThresholdViolation,
)
from load_engine.lifecycle import LoadTest, TestResult, TestStatus
from load_engine.options import TestOptions, load_options, parse_options
from load_engine.runner import run_script

logging.basicConfig(
    level=get_config().LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

__all__ = [
    "ConfigurationError",
    "Err",
    "IterationError",
    "LoadEngineError",
    "LoadTest",
    "Ok",
    "RequestError",
    "SetupError",
    "TeardownError",
    "TestOptions",
    "TestResult",
    "TestStatus",
    "ThresholdViolation",
    "load_options",
    "parse_options",
    "run_script",
]
