"""
Scenarios — several independently scheduled sub-tests.

``smoke`` runs one user for 10 seconds; ``stress`` starts at the 10 second
mark and ramps to 5 users.  Both run ``get_pizza``.  The options live in
``scenarios.yml`` next to this module.

``handle_summary`` writes the structured summary to ``summary.json`` and
the text table to stdout.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from foundations.helpers import ensure_available, order_pizza, record_pizza, think
from load_engine.options import read_options_file
from load_engine.runner import run_script
from load_engine.summary import text_summary

logger = logging.getLogger(__name__)

OPTIONS_FILE = Path(__file__).with_name("scenarios.yml")

options = read_options_file(OPTIONS_FILE)


async def setup(vu):
    await ensure_available(vu)


async def get_pizza(vu, data):
    response = await order_pizza(vu)
    vu.check(response, {"Pizza creation successful": lambda r: r.status == 200})
    record_pizza(vu, response.json("pizza"))
    await think(vu)


async def teardown(vu, data):
    logger.info("Multi-scenario test completed: results include both smoke and stress")


def handle_summary(summary):
    return {
        "summary.json": json.dumps(summary, indent=2),
        "stdout": text_summary(summary),
    }


if __name__ == "__main__":
    raise SystemExit(run_script(sys.modules[__name__]))
