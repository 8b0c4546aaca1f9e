import pytest
from flask import Flask

from authservice.api.decorators import require_admin, require_authority
from authservice.api.errors import register_error_handlers
from authservice.config import AuthzConfig

from conftest import make_app_config


@pytest.fixture()
def guarded_app(tmp_path):
    app = Flask(__name__)
    app.config.update(
        TESTING=True,
        SECRET_KEY="test-secret",
        APP_CONFIG=make_app_config(tmp_path, authz=AuthzConfig(admin_group="STAFF_ADMIN")),
    )
    register_error_handlers(app)

    @app.route("/hr")
    @require_authority("ROLE_HR")
    def hr_only():
        return {"ok": True}

    @app.route("/admin")
    @require_admin
    def admin_only():
        return {"ok": True}

    return app


def _login(client, *authorities):
    with client.session_transaction() as sess:
        sess["user"] = {"id": 1, "sub": "sub-1", "email": "a@example.com"}
        sess["authorities"] = list(authorities)


def test_no_session_is_401(guarded_app):
    response = guarded_app.test_client().get("/hr")
    assert response.status_code == 401
    assert response.get_json()["message"] == "Authentication required"


def test_missing_authority_is_403(guarded_app):
    client = guarded_app.test_client()
    _login(client, "ROLE_USER")

    response = client.get("/hr")

    assert response.status_code == 403
    assert response.get_json()["message"] == "Required role: ROLE_HR"


def test_matching_authority_passes(guarded_app):
    client = guarded_app.test_client()
    _login(client, "ROLE_USER", "ROLE_HR")
    assert client.get("/hr").get_json() == {"ok": True}


def test_require_admin_follows_configured_group(guarded_app):
    client = guarded_app.test_client()
    _login(client, "ROLE_ADMIN")
    assert client.get("/admin").status_code == 403

    _login(client, "ROLE_STAFF_ADMIN")
    assert client.get("/admin").status_code == 200
