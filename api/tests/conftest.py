import os
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_EMAIL", "studio@example.com")

from studio_sign.main import app  # noqa: E402
from studio_sign import db as db_module  # noqa: E402
from studio_sign.db import get_session  # noqa: E402
from studio_sign import storage as storage_module  # noqa: E402
from studio_sign import email as email_module  # noqa: E402
from studio_sign.models import Client  # noqa: E402

SIMPLE_SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="
SIGNATURE_DATA_URL = f"data:image/png;base64,{SIMPLE_SIGNATURE_B64}"

ADMIN_HEADERS = {"X-Access-Token": os.getenv("ADMIN_ACCESS_TOKEN", "admin-test-token")}

WEDDING_BODY = (
    "<h1>{{event_type}} Photography Agreement</h1>"
    "<p>Client: {{client.name}} ({{client.email}})</p>"
    "<p>Event date: {{event_date}}</p>"
    "{{#if total_amount}}<p>Total: {{total_amount}}</p>{{/if}}"
    "{{#unless deposit_paid}}<p>A deposit is due on signing.</p>{{/unless}}"
    "<p>Reference {{contract_number}}</p>"
)

WEDDING_SCHEMA = [
    {
        "title": "Event",
        "fields": [
            {"name": "event_type", "type": "select", "label": "Event type", "required": True,
             "options": ["Wedding", "Portrait", "Corporate"], "default": "Wedding"},
            {"name": "event_date", "type": "date", "label": "Event date", "required": True},
            {"name": "total_amount", "type": "currency", "label": "Total", "required": True, "min": 0},
        ],
    }
]


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise KeyError(key)
        return store[key]

    monkeypatch.setattr(storage_module, "put_bytes", fake_put_bytes)
    monkeypatch.setattr(storage_module, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, text_body, html_body=None, attachments=None, reply_to=None):
        messages.append(
            {
                "to": to,
                "subject": subject,
                "text": text_body,
                "html": html_body,
                "attachments": attachments or [],
            }
        )

    monkeypatch.setattr(email_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def session(test_engine, setup_db, mock_storage, sent_emails):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def client(test_engine, setup_db, mock_storage, sent_emails):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def jane(test_engine, setup_db):
    with Session(test_engine) as s:
        row = Client(name="Jane Doe", email="jane@example.com", phone="+44 20 7946 0000")
        s.add(row)
        s.commit()
        s.refresh(row)
        return row


@pytest.fixture
def wedding_template(client):
    resp = client.post(
        "/api/admin/contract-templates",
        json={"name": "Wedding Agreement", "event_type": "Wedding", "body_html": WEDDING_BODY,
              "variables_schema": WEDDING_SCHEMA},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()
