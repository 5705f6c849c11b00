import os
import tempfile

# api.py builds a module-level app on import; keep its database out of the working tree.
os.environ.setdefault("LENDING_DB_FILE", os.path.join(tempfile.mkdtemp(prefix="lending-tests-"), "library.db"))

import pytest
from fastapi.testclient import TestClient

from config import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_key="test-admin-key",
        db_file=str(tmp_path / "library.db"),
        lock_timeout=5.0,
        default_page_size=6,
        max_page_size=50,
    )


@pytest.fixture
def lib(settings):
    # Every test gets its own database file
    from lending.library import Library

    lib = Library(settings=settings)
    yield lib
    lib.close()


@pytest.fixture
def client(settings, lib):
    from api import create_app

    with TestClient(create_app(settings=settings, library=lib)) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(settings):
    return {"X-API-Key": settings.api_key}
