"""
Helper utilities shared by the foundations scripts.

Provides the pieces every QuickPizza script repeats: the pizza
restrictions payload, the auth header, a setup-time availability
check and the custom business metrics.  Keeping them in one module means a
change to the QuickPizza API is made in one place.

Key Concepts Demonstrated:
- Relative paths, so the run's ``baseUrl`` decides the target
- Tolerant JSON parsing so a 5xx body never crashes an iteration
- Custom Counter and Trend metrics registered on the run's sink
"""

from __future__ import annotations

import logging
from typing import Any

from load_engine.http import Response
from load_engine.metrics import MetricHandle
from load_engine.scheduler import VUContext

logger = logging.getLogger(__name__)

AUTH_TOKEN = "abcdef0123456789"

PIZZAS_METRIC = "quickpizza_number_of_pizzas"
INGREDIENTS_METRIC = "quickpizza_ingredients"

# A health-conscious customer who dislikes pepperoni and owns no knife.
RESTRICTIONS: dict[str, Any] = {
    "maxCaloriesPerSlice": 500,
    "mustBeVegetarian": False,
    "excludedIngredients": ["pepperoni"],
    "excludedTools": ["knife"],
    "maxNumberOfToppings": 6,
    "minNumberOfToppings": 2,
}


def pizza_headers() -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"token {AUTH_TOKEN}",
    }


async def ensure_available(vu: VUContext) -> None:
    """
    Fail setup unless the QuickPizza home page answers ``200``.

    Raises:
        RuntimeError: If the service responds with any other status (or
            not at all).
    """
    url = vu.http.resolve("/")
    logger.info("Setup: verifying QuickPizza availability at %s", url)
    response = await vu.http.get("/")
    if response.status != 200:
        raise RuntimeError(
            f"Setup failed: got unexpected status code {response.status} when trying to reach {url}"
        )
    logger.info("Setup: QuickPizza is available and responding")


async def order_pizza(vu: VUContext) -> Response:
    """POST the standard restrictions to ``/api/pizza``."""
    return await vu.http.post(
        "/api/pizza",
        json=RESTRICTIONS,
        headers=pizza_headers(),
    )


def safe_pizza(response: Response) -> dict[str, Any]:
    """
    Return the ``pizza`` object of a response, or ``{}`` if there is none.

    Non-JSON bodies (e.g. on 5xx errors) and bodies without a pizza both
    yield an empty dict.
    """
    try:
        data = response.json()
    except ValueError:
        return {}

    if isinstance(data, dict) and isinstance(data.get("pizza"), dict):
        return data["pizza"]
    return {}


def pizza_metrics(vu: VUContext) -> tuple[MetricHandle, MetricHandle]:
    """Return the (pizzas Counter, ingredients Trend) pair for this run."""
    return vu.metrics.counter(PIZZAS_METRIC), vu.metrics.trend(INGREDIENTS_METRIC)


def record_pizza(vu: VUContext, pizza: dict[str, Any]) -> int:
    """Count one pizza and its ingredient count; returns that count."""
    pizzas, ingredients = pizza_metrics(vu)
    ingredient_count = len(pizza.get("ingredients") or [])
    pizzas.add(1)
    ingredients.add(ingredient_count)
    logger.info("Created: %s (%d ingredients)", pizza.get("name"), ingredient_count)
    return ingredient_count


async def think(vu: VUContext) -> None:
    """Pause between iterations like a real customer (``THINK_TIME``, default 1s)."""
    await vu.sleep(float(vu.env.get("THINK_TIME", "1")))
