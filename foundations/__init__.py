"""
Foundations — QuickPizza load-test scripts.

Each module is a self-contained test script for the load engine, in the
order a newcomer would learn the concepts:

- ``stages`` — ramping virtual users through a staged load profile
- ``lifecycle`` — setup and teardown around the load
- ``metrics`` — custom business metrics next to the built-in ones
- ``thresholds`` — pass/fail criteria over those metrics
- ``checks_with_thresholds`` — business assertions gated by a threshold
- ``scenarios`` — several independently scheduled scenarios and a custom
  summary

Run one with ``python -m foundations.<name>``; the target defaults to
``http://localhost:3333`` and is overridden with ``BASE_URL``.
"""
