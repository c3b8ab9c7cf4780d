"""
Integration test package for the load engine.

Tests drive complete runs over real sockets against the stub QuickPizza
app and demonstrate:
- End-to-end lifecycle behaviour
- Per-phase timing from real connections
- Failure handling for unreachable and misbehaving targets
"""
