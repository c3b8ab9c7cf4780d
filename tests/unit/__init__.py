"""Unit tests for the load engine modules."""
