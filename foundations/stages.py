"""
Stages — ramp virtual users through a staged load profile.

Ramps from 0 to 20 users over 5 seconds, holds 20 users for 20 seconds,
then ramps back down to 0 over 5 seconds.  Every iteration orders one
pizza and checks that the order succeeded.
"""

from __future__ import annotations

import logging
import sys

from foundations.helpers import order_pizza, think
from load_engine.runner import run_script

logger = logging.getLogger(__name__)

options = {
    "stages": [
        {"duration": "5s", "target": 20},
        {"duration": "20s", "target": 20},
        {"duration": "5s", "target": 0},
    ],
}


async def default(vu, data):
    response = await order_pizza(vu)
    vu.check(response, {"status is 200": lambda r: r.status == 200})
    logger.info(
        "%s (%d ingredients)",
        response.json("pizza.name"),
        len(response.json("pizza.ingredients")),
    )
    await think(vu)


if __name__ == "__main__":
    raise SystemExit(run_script(sys.modules[__name__]))
