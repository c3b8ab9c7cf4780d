"""
Stub QuickPizza application for integration tests.

A minimal Flask imitation of the QuickPizza endpoints the foundations
scripts exercise, plus a few misbehaving endpoints used to provoke the
engine's failure paths.  It holds no state beyond its configuration.

Endpoints:
    GET  /                    — home page (setup availability check)
    POST /api/pizza           — pizza recommendation; needs ``Authorization: token <x>``
    GET  /api/status/<code>   — answers with the requested status code
    GET  /api/slow            — sleeps ``?delay=`` seconds before answering
    GET  /api/not-json        — 200 with a plain-text body
"""

from __future__ import annotations

import logging
import time
from typing import Any

from faker import Faker
from flask import Blueprint, Flask, current_app, jsonify, request

logger = logging.getLogger(__name__)

stub_bp = Blueprint("quickpizza_stub", __name__)

fake = Faker()

DEFAULT_INGREDIENTS = ("Mozzarella", "Tomato sauce", "Basil")
TOOLS = ("Pizza cutter", "Scissors", "Spatula")


def create_stub_app(
    *,
    ingredients: tuple[str, ...] = DEFAULT_INGREDIENTS,
    home_status: int = 200,
    pizza_status: int = 200,
) -> Flask:
    """
    Build a stub QuickPizza app.

    Args:
        ingredients: Ingredients of every recommended pizza, so tests can
            predict the ingredients Trend exactly.
        home_status: Status of ``GET /``; anything but 200 makes the
            foundations setup functions fail.
        pizza_status: Status of ``POST /api/pizza`` for authorised calls.
    """
    app = Flask(__name__)
    app.config.update(
        TESTING=True,
        STUB_INGREDIENTS=list(ingredients),
        STUB_HOME_STATUS=home_status,
        STUB_PIZZA_STATUS=pizza_status,
    )
    app.register_blueprint(stub_bp)
    return app


@stub_bp.route("/", methods=["GET"])
def home() -> Any:
    status = current_app.config["STUB_HOME_STATUS"]
    return "<html><body><h1>QuickPizza</h1></body></html>", status


@stub_bp.route("/api/pizza", methods=["POST"])
def recommend_pizza() -> Any:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("token ") or not auth_header[len("token "):].strip():
        return jsonify({"error": "Missing or invalid token"}), 401

    restrictions = request.get_json(silent=True)
    if not isinstance(restrictions, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    status = current_app.config["STUB_PIZZA_STATUS"]
    if status != 200:
        return jsonify({"error": "Pizza oven unavailable"}), status

    excluded = set(restrictions.get("excludedIngredients") or [])
    pizza = {
        "id": fake.random_int(min=1, max=100000),
        "name": f"{fake.color_name()} {fake.last_name()} Special",
        "ingredients": [
            {"name": name} for name in current_app.config["STUB_INGREDIENTS"] if name not in excluded
        ],
        "tool": fake.random_element(elements=TOOLS),
    }
    return jsonify({"pizza": pizza, "calories": fake.random_int(min=200, max=500)})


@stub_bp.route("/api/status/<int:code>", methods=["GET", "POST"])
def status(code: int) -> Any:
    return jsonify({"status": code}), code


@stub_bp.route("/api/slow", methods=["GET"])
def slow() -> Any:
    delay = float(request.args.get("delay", "0.1"))
    time.sleep(delay)
    return jsonify({"slept": delay})


@stub_bp.route("/api/not-json", methods=["GET"])
def not_json() -> Any:
    return "definitely not json", 200, {"Content-Type": "text/plain"}
