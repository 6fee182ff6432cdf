import json as _json

import pytest
from apscheduler.schedulers.base import STATE_RUNNING

import scanverify.app as station
from scanverify.services.camera import CameraError, ScannerSession, ScannerState


class FakeResponse:
    def __init__(self, status=200, body=None, content=None, headers=None):
        self.status_code = status
        self._body = body
        self.headers = headers or {}
        if content is not None:
            self.content = content
        elif body is not None:
            self.content = _json.dumps(body).encode("utf-8")
        else:
            self.content = b""

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeHttp:
    """Stands in for requests.Session; answers by (METHOD, endpoint)."""

    def __init__(self, base="http://api.test/api"):
        self.base = base
        self.routes = {}
        self.calls = []

    def on(self, method, endpoint, status=200, body=None, **kw):
        self.routes[(method.upper(), endpoint)] = FakeResponse(status, body, **kw)
        return self

    def fail(self, method, endpoint, exc):
        self.routes[(method.upper(), endpoint)] = exc
        return self

    def request(self, method, url, json=None, params=None, headers=None, timeout=None):
        endpoint = url[len(self.base):]
        self.calls.append({
            "method": method, "endpoint": endpoint, "json": json,
            "params": params, "headers": headers or {},
        })
        resp = self.routes.get((method.upper(), endpoint))
        if resp is None:
            return FakeResponse(404, {"error": "not found"})
        if isinstance(resp, Exception):
            raise resp
        return resp

    def last(self, method, endpoint):
        for c in reversed(self.calls):
            if c["method"] == method and c["endpoint"] == endpoint:
                return c
        return None


class FakeReader:
    """CameraReader double: same state machine, no device."""

    def __init__(self, fail_start=False):
        self.state = ScannerState.NOT_STARTED
        self.fail_start = fail_start
        self.on_decoded = None
        self.starts = 0
        self.stops = 0

    def get_state(self):
        return self.state

    def start(self, on_decoded):
        if self.fail_start:
            raise CameraError("Cannot open camera device 0")
        if self.state != ScannerState.NOT_STARTED:
            raise CameraError("already running")
        self.on_decoded = on_decoded
        self.state = ScannerState.SCANNING
        self.starts += 1

    def stop(self):
        if self.state == ScannerState.NOT_STARTED:
            raise CameraError("not running")
        self.state = ScannerState.NOT_STARTED
        self.stops += 1

    def decode(self, barcode):
        self.on_decoded(barcode)


class FakeScheduler:
    state = STATE_RUNNING

    def __init__(self):
        self.jobs = []

    def add_job(self, func, **kw):
        self.jobs.append((func, kw))

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for func, _ in jobs:
            func()


class ReaderFactory:
    def __init__(self):
        self.created = []
        self.fail_start = False

    def __call__(self):
        r = FakeReader(fail_start=self.fail_start)
        self.created.append(r)
        return r


ADMIN = {"id": 1, "username": "admin", "name": "Ayu Admin", "role": "admin"}
USER = {"id": 2, "username": "budi", "name": "budi santoso", "role": "user"}


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def readers():
    return ReaderFactory()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def app(http, readers, scheduler):
    flask_app = station.app
    saved_ext = {k: flask_app.extensions[k] for k in ("api_session", "scanner", "scheduler")}
    saved_cfg = dict(flask_app.config)

    flask_app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        API_BASE=http.base,
        RESCAN_DELAY=1.5,
    )
    station.limiter.enabled = False
    flask_app.extensions["api_session"] = http
    flask_app.extensions["scanner"] = ScannerSession(readers)
    flask_app.extensions["scheduler"] = scheduler
    yield flask_app

    flask_app.extensions.update(saved_ext)
    flask_app.config.clear()
    flask_app.config.update(saved_cfg)


@pytest.fixture
def client(app):
    return app.test_client()


def _login_as(client, user, token="tok-123"):
    with client.session_transaction() as s:
        s["token"] = token
        s["user"] = dict(user)
    return client


@pytest.fixture
def admin_client(client):
    return _login_as(client, ADMIN)


@pytest.fixture
def user_client(client):
    return _login_as(client, USER)


@pytest.fixture
def scanner(app):
    return app.extensions["scanner"]
