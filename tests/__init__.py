"""
Test Suite for the Stack Bootstrapper

Test Structure:
- unit/: env loading, resource ensuring, health polling, compose, CLI
- integration/: LocalBackend against the filesystem and a Docker daemon

Running Tests:
    pytest                       # Run all tests
    pytest -m unit               # Fast tests only
    pytest -m "not docker"       # Skip tests needing a Docker daemon
"""
