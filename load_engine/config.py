"""
Load Engine — Configuration.

Defines environment-specific configuration classes for the engine.  Each
class captures the default target URL, HTTP client limits, scheduler
cadence and lifecycle timeouts.  The ``get_config`` factory selects the
right class based on the ``LOAD_ENGINE_ENV`` environment variable (or an
explicit key).

Key Concepts Demonstrated:
- Class-based configuration with inheritance for DRY defaults
- Environment-variable overrides so CI can retarget a run without edits
- Separate testing configuration with fast ticks and short timeouts
"""

from __future__ import annotations

import os


def _float_env(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


class Config:
    """
    Base (shared) configuration for the engine.

    All environment-specific classes inherit from ``Config`` so that
    common defaults only need to be stated once.
    """

    # Base target substituted into relative request URLs.  Matches the
    # port the QuickPizza container listens on locally.
    BASE_URL: str = os.environ.get("BASE_URL", "http://localhost:3333")

    # Per-request timeout in seconds.
    HTTP_TIMEOUT: float = _float_env("HTTP_TIMEOUT", "60")

    # Size of the shared connection pool.  Virtual users waiting for a
    # free connection show up in ``http_req_blocked``.
    MAX_CONNECTIONS: int = int(os.environ.get("MAX_CONNECTIONS", "1000"))

    # Seconds between re-evaluations of the ramping target.
    SCHEDULER_TICK: float = _float_env("SCHEDULER_TICK", "0.1")

    # Seconds between mid-run checks of abortOnFail thresholds.
    THRESHOLD_POLL_INTERVAL: float = _float_env("THRESHOLD_POLL_INTERVAL", "2")

    # Seconds an in-flight iteration may run past the end of its scenario
    # before it is cancelled.
    GRACEFUL_STOP: float = _float_env("GRACEFUL_STOP", "30")

    SETUP_TIMEOUT: float = _float_env("SETUP_TIMEOUT", "60")
    TEARDOWN_TIMEOUT: float = _float_env("TEARDOWN_TIMEOUT", "60")

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    # Aggregates shown for Trend metrics in the end-of-test summary.
    SUMMARY_TREND_STATS: tuple[str, ...] = tuple(
        os.environ.get("SUMMARY_TREND_STATS", "avg,min,med,max,p(90),p(95)").split(",")
    )


class DevelopmentConfig(Config):
    """Development defaults: verbose logging against a local QuickPizza."""

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """
    Test-suite overrides.

    Ticks and timeouts are shrunk so scheduler and lifecycle tests finish
    in well under a second per scenario.
    """

    __test__ = False

    BASE_URL: str = os.environ.get("TEST_BASE_URL", "http://quickpizza.test")
    HTTP_TIMEOUT: float = _float_env("TEST_HTTP_TIMEOUT", "2")
    SCHEDULER_TICK: float = 0.01
    THRESHOLD_POLL_INTERVAL: float = 0.05
    GRACEFUL_STOP: float = 1.0
    SETUP_TIMEOUT: float = 5.0
    TEARDOWN_TIMEOUT: float = 5.0


class ProductionConfig(Config):
    """
    CI / shared-environment overrides.

    All values are expected to come from environment variables set by the
    pipeline that launches the run.
    """

    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "WARNING")


# Lookup table mapping environment name strings to their config classes.
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env: str | None = None) -> type[Config]:
    """
    Return the configuration class for the given environment.

    Args:
        env: One of ``"development"``, ``"testing"``, or
            ``"production"``.  When *None*, the ``LOAD_ENGINE_ENV``
            environment variable is consulted, falling back to
            ``"development"`` if unset.

    Returns:
        The ``Config`` subclass matching the requested environment,
        or ``DevelopmentConfig`` if the key is unrecognised.
    """
    if env is None:
        env = os.environ.get("LOAD_ENGINE_ENV", "development")
    return config.get(env, config["default"])
