"""Root conftest.py for pytest.

Puts the project root on sys.path before any test imports, so the flat
`config`, `core` and `iam` packages resolve without an install.
"""
import os
import sys

# Must happen at import time
project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

os.environ.setdefault("PYTHONPATH", project_root)


def pytest_configure(config):
    """Configure pytest path early in the process."""
    if project_root not in sys.path:
        sys.path.insert(0, project_root)
    config.addinivalue_line("markers", "sqlite: tests backed by a temporary SQLite file")
