from datetime import datetime, timedelta, timezone

import pytest

from diundash import RecordStore, create_app

API_KEY = "s3cret-key"


class StepClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(tmp_path, clock):
    s = RecordStore(str(tmp_path / "data" / "diun.db"), now=clock)
    yield s
    s.close()


@pytest.fixture
def static_dir(tmp_path):
    d = tmp_path / "static"
    (d / "css").mkdir(parents=True)
    (d / "index.html").write_text("<html><body>dashboard</body></html>")
    (d / "css" / "site.css").write_text("body{}")
    return d


@pytest.fixture
def app(store, static_dir):
    return create_app(API_KEY, store, str(static_dir))


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def api_key():
    return API_KEY


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {API_KEY}"}


@pytest.fixture
def webhook():
    return {
        "image": "nginx:latest",
        "created": "2024-01-01T00:00:00Z",
        "digest": "sha256:abc",
        "diun_version": "4.0",
        "hostname": "h1",
        "hub_link": "https://hub/x",
        "mime_type": "application/json",
        "platform": "linux/amd64",
        "provider": "hub",
        "status": "new",
    }
