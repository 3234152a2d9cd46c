import os

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["NOTIFY_BACKEND"] = "local"
os.environ["JWT_SECRET_KEY"] = "test-secret"

import pytest
from fastapi.testclient import TestClient

from database import SessionLocal, engine
from main import app
from models import Base

PASSWORD = "Secret123"


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


class Account:
    def __init__(self, id, username, token):
        self.id = id
        self.username = username
        self.token = token

    @property
    def headers(self):
        return {"cookie": f"session_token={self.token}"}


@pytest.fixture
def make_user(client):
    def _make_user(username, email=None, password=PASSWORD):
        response = client.post(
            "/auth/register",
            json={"username": username, "email": email or f"{username}@example.com", "password": password},
        )
        assert response.status_code == 201, response.text
        token = response.cookies["session_token"]
        # Each test request carries its own cookie header.
        client.cookies.clear()
        return Account(response.json()["id"], username, token)

    return _make_user


@pytest.fixture
def open_conversation(client):
    def _open(owner, redeemer):
        code = client.post("/chats/codes", headers=owner.headers).json()["code"]
        response = client.post("/chats", json={"code": code}, headers=redeemer.headers)
        assert response.status_code == 201, response.text
        return response.json()["conversationId"]

    return _open
