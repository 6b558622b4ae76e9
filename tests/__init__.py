"""
Vigil test suite.

Tests are organized by layer:
    tests/unit/         Unit tests (in-memory or temporary SQLite, no network)
    tests/integration/  Integration tests (engine wiring, monitor daemon, CLI)

Run all tests:
    pytest

Run with coverage:
    pytest --cov=vigil
"""
