import io

import openpyxl
import pytest
from flask import g

from qadesk import create_app
from qadesk.extensions import db
from qadesk.models import AudioFile, Organization, User
from qadesk.services.evaluations import create_template

PASSWORD = "password123"


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "STORAGE_BACKEND": "local",
        "LOCAL_STORAGE_DIR": str(tmp_path / "blobs"),
        "LOCAL_BLOB_BASE_URL": "http://localhost/local-blobs",
        "WTF_CSRF_ENABLED": False,
        "FEEDBACK_NOTIFICATIONS": False,
    })

    # the test keeps one app context open, so drop the cached user per request
    @app.before_request
    def _forget_cached_user():
        g.pop("_login_user", None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def blob_client(app):
    return app.extensions["blob_client"]


@pytest.fixture
def org(app):
    o = Organization(name="Acme Support")
    db.session.add(o)
    db.session.commit()
    return o


@pytest.fixture
def make_user(org):
    counter = {"n": 0}

    def _make(role="quality_analyst", manager=None, email=None, org_id=None, full_name=None):
        counter["n"] += 1
        u = User(
            org_id=org_id or org.id,
            email=email or f"{role}{counter['n']}@example.com",
            full_name=full_name or f"{role.title()} {counter['n']}",
            role=role,
            manager_id=manager.id if manager is not None else None,
        )
        u.set_password(PASSWORD)
        db.session.add(u)
        db.session.commit()
        return u
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def login(client):
    def _login(user):
        resp = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return client
    return _login


@pytest.fixture
def make_template(org, admin):
    """Template from the API payload shape; returns the persisted row."""
    def _make(pillars, threshold=None, status="active", name="Call quality"):
        template = create_template(org.id, admin.id, {
            "name": name,
            "status": status,
            "feedbackThreshold": threshold,
            "pillars": pillars,
        })
        db.session.commit()
        return template
    return _make


@pytest.fixture
def simple_template(make_template):
    """Two pillars (60/40): one yes/no/na parameter and one numeric parameter."""
    def _make(threshold=None, fatal=False):
        return make_template([
            {"name": "Compliance", "weightage": 60, "parameters": [
                {"name": "Greeting", "ratingType": "yes_no_na", "weightage": 100, "isFatal": fatal},
            ]},
            {"name": "Soft skills", "weightage": 40, "parameters": [
                {"name": "Empathy", "ratingType": "numeric", "weightage": 100},
            ]},
        ], threshold=threshold)
    return _make


@pytest.fixture
def make_audio_file(org, admin):
    def _make(filename="call.mp3", status="pending", call_metrics=None, language="english", duration=None):
        af = AudioFile(
            org_id=org.id,
            filename=filename,
            original_filename=filename,
            file_url=f"http://localhost/local-blobs/calls/{filename}",
            file_size=1024,
            duration=duration,
            language=language,
            call_metrics=call_metrics or {},
            status=status,
            uploaded_by=admin.id,
        )
        db.session.add(af)
        db.session.commit()
        return af
    return _make


def xlsx_bytes(rows):
    """Workbook bytes with ``rows[0]`` as the header row."""
    wb = openpyxl.Workbook()
    ws = wb.active
    for r in rows:
        ws.append(list(r))
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture
def xlsx():
    return xlsx_bytes
