"""
deploy-laravel tests.

Commands never reach a real host: ``conftest.FakeHost`` replaces the module's
command runner and answers by substring rules.

Running Tests:
    pytest tests/
"""
