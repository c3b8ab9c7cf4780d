"""
Lifecycle — setup and teardown around the load.

``setup`` runs once before any virtual user starts and refuses to start
the test if QuickPizza is not answering.  ``teardown`` runs once after
the last user has finished, even if the run was aborted.
"""

from __future__ import annotations

import logging
import sys

from foundations.helpers import ensure_available, order_pizza, safe_pizza, think
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
    success = vu.check(
        response,
        {
            "Pizza API responds with 200": lambda r: r.status == 200,
            "Response contains pizza data": lambda r: bool(safe_pizza(r)),
            "Pizza has a name": lambda r: "name" in safe_pizza(r),
            "Pizza has ingredients": lambda r: bool(safe_pizza(r).get("ingredients")),
        },
    )

    if success:
        pizza = safe_pizza(response)
        logger.info("Generated: %s (%d ingredients)", pizza["name"], len(pizza["ingredients"]))
    else:
        logger.error("Pizza generation failed: status %s", response.status)
    await think(vu)


async def teardown(vu, data):
    logger.info("Lifecycle test completed")


if __name__ == "__main__":
    raise SystemExit(run_script(sys.modules[__name__]))
