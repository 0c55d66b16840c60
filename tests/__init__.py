"""
Test Suite

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures
    ├── unit/               # Unit tests
    │   ├── test_engine/    # State machine, conditions, hooks, auto-transitions
    │   ├── test_services/  # Process service, tasks, sync
    │   └── test_repositories/
    └── integration/        # HTTP API tests

To run tests:
    pytest tests/
    pytest tests/unit/
    pytest tests/integration/
"""
