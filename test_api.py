import asyncio

import jwt
from sqlalchemy.exc import OperationalError

import main
from config import SESSION_COOKIE_NAME
from security import sign_token

PASSWORD = "Secret123"


class TestAuth:
    def test_register_sets_session_cookie(self, client):
        response = client.post(
            "/auth/register",
            json={"username": "alice", "email": "alice@example.com", "password": PASSWORD, "bio": "hi"},
        )
        assert response.status_code == 201
        data = response.json()
        assert data["ok"] is True
        assert isinstance(data["id"], int)

        cookie = response.headers["set-cookie"]
        assert "session_token=" in cookie
        assert "HttpOnly" in cookie
        assert "samesite=lax" in cookie.lower()
        assert "Max-Age=604800" in cookie

        claims = jwt.decode(response.cookies["session_token"], "test-secret", algorithms=["HS256"])
        assert claims["sub"] == str(data["id"])
        assert claims["exp"] - claims["iat"] == 604800

    def test_register_duplicate_username(self, client, make_user):
        make_user("alice")
        response = client.post(
            "/auth/register",
            json={"username": "alice", "email": "other@example.com", "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json() == {"ok": False, "error": "CONFLICT", "message": "Username already exists"}

    def test_register_duplicate_user(self, client, make_user):
        make_user("alice")
        response = client.post(
            "/auth/register",
            json={"username": "alice", "email": "alice@example.com", "password": PASSWORD},
        )
        assert response.status_code == 409
        assert response.json()["message"] == "This user already exists."

    def test_register_validation(self, client):
        cases = [
            {"username": "a" * 17, "email": "long@example.com", "password": PASSWORD},
            {"username": "bob", "email": "not-an-email", "password": PASSWORD},
            {"username": "bob", "email": "bob@example.com", "password": "short"},
            {"username": "bob", "email": "bob@example.com", "password": "alllowercase1"},
            {"username": "bob", "email": "bob@example.com"},
        ]
        for body in cases:
            response = client.post("/auth/register", json=body)
            assert response.status_code == 400, body
            data = response.json()
            assert data["error"] == "VALIDATION"
            assert data["message"].startswith("Your request was invalid")

    def test_login_by_username_and_email(self, client, make_user):
        alice = make_user("alice")

        response = client.post("/auth/login", json={"person": "alice", "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["id"] == alice.id
        assert "session_token" in response.cookies

        response = client.post(
            "/auth/login",
            json={"person": "alice@example.com", "password": PASSWORD, "isEmail": True},
        )
        assert response.status_code == 200
        assert response.json()["id"] == alice.id

    def test_login_invalid_credentials(self, client, make_user):
        make_user("alice")
        wrong_password = client.post("/auth/login", json={"person": "alice", "password": "Wrong123"})
        unknown_user = client.post("/auth/login", json={"person": "nobody", "password": PASSWORD})

        for response in (wrong_password, unknown_user):
            assert response.status_code == 401
            assert response.json()["message"] == "Invalid credentials"

    def test_logout_clears_cookie(self, client, make_user):
        alice = make_user("alice")
        response = client.post("/auth/logout", headers=alice.headers)
        assert response.status_code == 200
        assert 'session_token=""' in response.headers["set-cookie"] or "Max-Age=0" in response.headers["set-cookie"]


class TestSession:
    def test_missing_cookie(self, client):
        response = client.get("/users/me")
        assert response.status_code == 401
        assert response.json()["message"] == "No session cookie found"

    def test_tampered_token(self, client, make_user):
        alice = make_user("alice")
        response = client.get("/users/me", headers={"cookie": f"session_token={alice.token}x"})
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHENTICATED"

    def test_expired_token(self, client, make_user):
        alice = make_user("alice")
        token = sign_token(alice.id, now=1)
        response = client.get("/users/me", headers={"cookie": f"session_token={token}"})
        assert response.status_code == 401
        assert response.json()["message"] == "Session expired"

    def test_session_cookie_name(self, client, make_user):
        alice = make_user("alice")
        response = client.get("/users/me", headers={"cookie": f"{SESSION_COOKIE_NAME}={alice.token}"})
        assert response.status_code == 200
        assert response.json()["id"] == alice.id


class TestUsers:
    def test_get_me(self, client, make_user):
        alice = make_user("alice")
        response = client.get("/users/me", headers=alice.headers)
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == alice.id
        assert data["username"] == "alice"
        assert data["email"] == "alice@example.com"
        assert data["createdAt"].endswith("Z")
        assert "passwordHash" not in data

    def test_update_profile(self, client, make_user):
        alice = make_user("alice")
        response = client.patch(
            "/users/profile",
            json={"username": "alicia", "bio": "new bio", "password": PASSWORD},
            headers=alice.headers,
        )
        assert response.status_code == 200
        assert sorted(response.json()["updatedFields"]) == ["bio", "username"]

        me = client.get("/users/me", headers=alice.headers).json()
        assert me["username"] == "alicia"
        assert me["bio"] == "new bio"

    def test_update_profile_nothing_to_change(self, client, make_user):
        alice = make_user("alice")
        response = client.patch(
            "/users/profile",
            json={"username": "alice", "password": PASSWORD},
            headers=alice.headers,
        )
        assert response.status_code == 200
        assert response.json()["updatedFields"] == []

    def test_update_profile_requires_password(self, client, make_user):
        alice = make_user("alice")
        response = client.patch(
            "/users/profile",
            json={"bio": "new bio", "password": "Wrong123"},
            headers=alice.headers,
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid password"

    def test_update_profile_taken_email(self, client, make_user):
        alice = make_user("alice")
        make_user("bob")
        response = client.patch(
            "/users/profile",
            json={"email": "bob@example.com", "password": PASSWORD},
            headers=alice.headers,
        )
        assert response.status_code == 409
        assert response.json()["message"] == "Email already exists"

    def test_change_password(self, client, make_user):
        alice = make_user("alice")
        response = client.patch(
            "/users/password",
            json={"oldPassword": PASSWORD, "newPassword": "Fresh456"},
            headers=alice.headers,
        )
        assert response.status_code == 200

        assert client.post("/auth/login", json={"person": "alice", "password": PASSWORD}).status_code == 401
        assert client.post("/auth/login", json={"person": "alice", "password": "Fresh456"}).status_code == 200

    def test_change_password_wrong_old(self, client, make_user):
        alice = make_user("alice")
        response = client.patch(
            "/users/password",
            json={"oldPassword": "Wrong123", "newPassword": "Fresh456"},
            headers=alice.headers,
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid old password"


class TestHealth:
    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "message" in response.json()

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["database"] == "OK"
        assert data["broker"] == "local: OK"

    def test_health_pings_database_off_the_event_loop(self, client, monkeypatch):
        callers = []

        def fake_ping():
            try:
                asyncio.get_running_loop()
                callers.append("event loop")
            except RuntimeError:
                callers.append("worker thread")

        monkeypatch.setattr(main, "ping_db", fake_ping)
        assert client.get("/health").json()["database"] == "OK"
        assert callers == ["worker thread"]

    def test_health_reports_database_failure(self, client, monkeypatch):
        def unavailable():
            raise OperationalError("SELECT 1", {}, Exception("database is down"))

        monkeypatch.setattr(main, "ping_db", unavailable)
        data = client.get("/health").json()
        assert data["status"] == "ERROR"
        assert data["database"].startswith("ERROR")

    def test_unknown_route_has_error_shape(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["ok"] is False
