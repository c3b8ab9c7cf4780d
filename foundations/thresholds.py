"""
Thresholds — pass/fail criteria over the collected metrics.

The run fails if more than 1% of requests fail, if the 95th/99th
percentile latency exceeds 500ms/1s, or if pizzas average 8 or more
ingredients.
"""

from __future__ import annotations

import sys

from foundations.helpers import ensure_available, order_pizza, record_pizza, think
from load_engine.runner import run_script

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
    },
}


async def setup(vu):
    await ensure_available(vu)


async def default(vu, data):
    response = await order_pizza(vu)
    vu.check(response, {"Pizza creation successful": lambda r: r.status == 200})

    # A body without a pizza fails the iteration.
    record_pizza(vu, response.json("pizza"))
    await think(vu)


if __name__ == "__main__":
    raise SystemExit(run_script(sys.modules[__name__]))
