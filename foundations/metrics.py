"""
Metrics — custom business metrics next to the built-in ones.

Besides the HTTP timings the engine records on its own, every successful
order adds to two business metrics:

- ``quickpizza_number_of_pizzas`` (Counter) — pizzas created
- ``quickpizza_ingredients`` (Trend) — ingredients per pizza
"""

from __future__ import annotations

import logging
import sys

from foundations.helpers import ensure_available, order_pizza, record_pizza, safe_pizza, think
from load_engine.runner import run_script

logger = logging.getLogger(__name__)

options = {
    "stages": [
        {"duration": "5s", "target": 5},
        {"duration": "10s", "target": 5},
        {"duration": "5s", "target": 0},
    ],
}


async def setup(vu):
    await ensure_available(vu)


async def default(vu, data):
    response = await order_pizza(vu)
    vu.check(
        response,
        {
            "status is 200": lambda r: r.status == 200,
            "response has pizza": lambda r: bool(safe_pizza(r)),
            "pizza has name": lambda r: "name" in safe_pizza(r),
            "pizza has ingredients": lambda r: bool(safe_pizza(r).get("ingredients")),
        },
    )

    pizza = safe_pizza(response)
    if response.status == 200 and pizza:
        record_pizza(vu, pizza)
    else:
        logger.warning("Pizza creation failed: status %s", response.status)
    await think(vu)


async def teardown(vu, data):
    logger.info("Custom metrics recorded: quickpizza_number_of_pizzas, quickpizza_ingredients")


if __name__ == "__main__":
    raise SystemExit(run_script(sys.modules[__name__]))
