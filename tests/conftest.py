import os
import tempfile

# app configures its database at import; keep that out of the working tree.
os.environ.setdefault("VISTA_STATE_DIR", tempfile.mkdtemp(prefix="vista-tests-"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import app  # noqa: E402
import db  # noqa: E402

SEED_VARS = (
    "CVAT_URL",
    "CVAT_USERNAME",
    "CVAT_PASSWORD",
    "CVAT_CACHE_TIMEOUT_MS",
    "JENKINS_URL",
    "JENKINS_USERNAME",
    "JENKINS_API_TOKEN",
)


@pytest.fixture()
def state_db(tmp_path, monkeypatch):
    """Fresh database and services per test, with no credentials seeded."""
    for name in SEED_VARS:
        monkeypatch.delenv(name, raising=False)
    try:
        original_db_file = db.path()
    except RuntimeError:
        original_db_file = None
    original_state = dict(app.STATE)
    app.init_services(tmp_path / ".state" / "vista.db")
    try:
        yield app.STATE
    finally:
        app.STATE.clear()
        app.STATE.update(original_state)
        if original_db_file is not None:
            db.configure(original_db_file)


@pytest.fixture()
def media_root(tmp_path, state_db):
    """Isolated videos root; host paths are reported under /host/videos."""
    root = tmp_path / "videos"
    root.mkdir()
    app.STATE["root"] = root
    app.STATE["host_root"] = "/host/videos"
    yield root


@pytest.fixture()
def client(media_root):
    with TestClient(app.app) as test_client:
        yield test_client
