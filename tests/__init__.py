"""
Slot Engine Tests

Unit tests run against an in-memory SQLite store (aiosqlite), an in-memory
messaging gateway and a recording notification channel; no PostgreSQL,
Redis or Twilio account is needed.

Running Tests:
    # Install with test extras
    pip install -e ".[test]"

    # Run all tests
    pytest -v

    # Run one module
    pytest tests/unit/test_orchestrator.py -v
"""
