"""
Test suite for the QuickPizza load engine.

This package contains:
- unit/: isolated tests of each engine module, HTTP mocked with
  ``httpx.MockTransport``
- integration/: whole runs against a live stub QuickPizza server
"""
