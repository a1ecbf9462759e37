import pytest
from fastapi.testclient import TestClient

import auth
import web
from store import Store

ADMIN = ("admin", "admin-pass")


@pytest.fixture
def store(tmp_path):
    return Store(tmp_path / "data.db")


@pytest.fixture
def app_store(store):
    config = {
        "auth": {
            "secret_key": "test-secret",
            "admin_username": ADMIN[0],
            "admin_password": ADMIN[1],
            "bcrypt_rounds": 4,
        },
    }
    auth.init_auth(config, store)
    web.init_app(store)
    return store


@pytest.fixture
def login(app_store):
    """返回一个按用户登录的客户端工厂，每个用户各自持有 Cookie"""

    def _login(username=ADMIN[0], password=ADMIN[1]) -> TestClient:
        client = TestClient(web.app)
        resp = client.post("/api/login", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return client

    return _login


@pytest.fixture
def admin(login):
    return login()


@pytest.fixture
def anon(app_store):
    return TestClient(web.app)
