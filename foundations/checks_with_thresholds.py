"""
Checks with thresholds — business assertions gated by a threshold.

A failing check never stops an iteration; it is recorded in the
``checks`` rate.  The ``checks: rate > 0.95`` threshold turns those
recorded failures into a failed run.
"""

from __future__ import annotations

import logging
import sys

from foundations.helpers import ensure_available, order_pizza, record_pizza, think
from load_engine.runner import run_script

logger = logging.getLogger(__name__)

options = {
    "stages": [
        {"duration": "5s", "target": 5},
        {"duration": "10s", "target": 5},
        {"duration": "5s", "target": 0},
    ],
    "thresholds": {
        "http_req_failed": ["rate<0.01"],
        "http_req_duration": ["p(95)<500", "p(99)<1000"],
        "quickpizza_ingredients": [{"threshold": "avg<8", "abortOnFail": False}],
        "checks": ["rate > 0.95"],
    },
}


async def setup(vu):
    await ensure_available(vu)


async def default(vu, data):
    response = await order_pizza(vu)
    vu.check(response, {"Pizza creation successful": lambda r: r.status == 200})
    record_pizza(vu, response.json("pizza"))
    await think(vu)


async def teardown(vu, data):
    logger.info("Test completed: the checks threshold gates business logic, not just latency")


if __name__ == "__main__":
    raise SystemExit(run_script(sys.modules[__name__]))
