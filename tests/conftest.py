import os
import time
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List

import jwt
import pytest

# Configure before the app module reads its environment
JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"
os.environ["SUPABASE_URL"] = "https://example.supabase.co"
os.environ["SUPABASE_ANON_KEY"] = "test-anon-key"
os.environ["SUPABASE_JWT_SECRET"] = JWT_SECRET
os.environ["DISABLE_RATE_LIMITS"] = "1"
os.environ.pop("FLASK_ENV", None)

import app as server  # noqa: E402


# --------------------------------------------------------
# ------------------ In-memory Supabase  -----------------
# --------------------------------------------------------

class FakeBackendError(Exception):
    pass


class FakeAuthError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class FakeResponse:
    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Just enough of the postgrest query builder for the app's calls."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.order_by = None
        self.limit_n = None
        self.count_mode = None

    def select(self, *columns, count=None):
        self.op = "select"
        self.count_mode = count
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda r: r.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda r: r.get(column) != value)
        return self

    def is_(self, column, value):
        if value in (None, "null"):
            self.filters.append(lambda r: r.get(column) is None)
        else:
            self.filters.append(lambda r: r.get(column) is value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda r: r.get(column) in values)
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def limit(self, n):
        self.limit_n = n
        return self

    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        if (self.table, self.op) in self.db.fail_on:
            raise FakeBackendError(f"{self.op} on {self.table} failed")
        for hook in list(self.db.hooks):
            hook(self.table, self.op, self)

        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            created = []
            for item in items:
                row = dict(item)
                row.setdefault("id", str(uuid.uuid4()))
                rows.append(row)
                created.append(dict(row))
            return FakeResponse(created)

        matched = [r for r in rows if self._matches(r)]

        if self.op == "update":
            for r in matched:
                r.update(self.payload)
            return FakeResponse([dict(r) for r in matched])

        if self.op == "delete":
            self.db.tables[self.table] = [r for r in rows if not self._matches(r)]
            return FakeResponse([dict(r) for r in matched])

        if self.order_by:
            column, desc = self.order_by
            matched = sorted(
                matched,
                key=lambda r: (r.get(column) is None, r.get(column) if r.get(column) is not None else 0),
                reverse=desc,
            )
        count = len(matched) if self.count_mode else None
        if self.limit_n is not None:
            matched = matched[: self.limit_n]
        return FakeResponse([dict(r) for r in matched], count)


class FakeAuthAdmin:
    def __init__(self, auth: "FakeAuth"):
        self.auth = auth

    def sign_out(self, token):
        self.auth.signed_out.append(token)

    def delete_user(self, user_id):
        self.auth.deleted_users.append(user_id)
        for email, acct in list(self.auth.accounts.items()):
            if acct["id"] == user_id:
                del self.auth.accounts[email]


class FakeAuth:
    def __init__(self):
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.sign_in_errors: List[Exception] = []
        self.sign_in_calls = 0
        self.reset_requests = []
        self.signed_out = []
        self.deleted_users = []
        self.sessions_set = []
        self.password_updates = []
        self.admin = FakeAuthAdmin(self)

    def add_account(self, email, password, user_id=None):
        user_id = user_id or str(uuid.uuid4())
        self.accounts[email] = {"id": user_id, "password": password}
        return user_id

    def _result(self, user_id, email, with_session=True):
        user = SimpleNamespace(id=user_id, email=email)
        session = make_session(user_id, email) if with_session else None
        return SimpleNamespace(user=user, session=session)

    def sign_up(self, credentials):
        email = credentials["email"]
        if email in self.accounts:
            raise FakeAuthError("User already registered", 422)
        user_id = self.add_account(email, credentials["password"])
        return self._result(user_id, email, with_session=False)

    def sign_in_with_password(self, credentials):
        self.sign_in_calls += 1
        if self.sign_in_errors:
            raise self.sign_in_errors.pop(0)
        acct = self.accounts.get(credentials["email"])
        if not acct or acct["password"] != credentials["password"]:
            raise FakeAuthError("Invalid login credentials", 400)
        return self._result(acct["id"], credentials["email"])

    def refresh_session(self, refresh_token):
        if not refresh_token.startswith("refresh-"):
            raise FakeAuthError("Invalid Refresh Token", 400)
        user_id = refresh_token[len("refresh-"):]
        return self._result(user_id, None)

    def reset_password_for_email(self, email, options=None):
        self.reset_requests.append((email, options))

    def verify_otp(self, params):
        if params.get("token_hash") != "good-hash":
            raise FakeAuthError("Email link is invalid or has expired", 403)
        return self._result(str(uuid.uuid4()), "reset@example.com")

    def set_session(self, access_token, refresh_token):
        self.sessions_set.append((access_token, refresh_token))
        return SimpleNamespace(user=None, session=make_session("someone", None))

    def update_user(self, attributes):
        self.password_updates.append(attributes.get("password"))
        return SimpleNamespace(user=None)

    def get_user(self, token):
        raise FakeAuthError("not used when a JWT secret is configured", 401)


class FakeSupabase:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_on = set()
        self.hooks = []
        self.auth = FakeAuth()

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.get(name, [])

    def row(self, name, row_id):
        return next((r for r in self.rows(name) if r.get("id") == row_id), None)


# --------------------------------------------------------
# ----------------------- Helpers  -----------------------
# --------------------------------------------------------

def now_iso():
    return datetime.now(timezone.utc).isoformat()


def make_token(user_id: str, email: str = None, expires_in: int = 3600) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "role": "authenticated",
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def make_session(user_id, email):
    return SimpleNamespace(
        access_token=make_token(user_id, email),
        refresh_token=f"refresh-{user_id}",
        expires_at=int(time.time()) + 3600,
        expires_in=3600,
        token_type="bearer",
    )


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


def seed_user(db: FakeSupabase, name="Dan", points=100, admin=False, email=None) -> str:
    user_id = str(uuid.uuid4())
    db.table("users").insert({
        "id": user_id,
        "email": email or f"{name.lower()}_{user_id[:6]}@example.com",
        "name": name,
        "role": "admin" if admin else "member",
        "points": points,
        "created_at": now_iso(),
        "updated_at": now_iso(),
    }).execute()
    if admin:
        db.table("admin_users").insert({"id": user_id}).execute()
    return user_id


def seed_champion(db: FakeSupabase, name="Dan", **flags) -> str:
    row = {
        "name": name,
        "is_eliminated": False,
        "is_winner": False,
        "has_redemption_chance": False,
        "is_redeemed": False,
        "created_at": now_iso(),
    }
    row.update(flags)
    return db.table("champions").insert(row).execute().data[0]["id"]


def points_of(db: FakeSupabase, user_id: str) -> int:
    return db.row("users", user_id)["points"]


# --------------------------------------------------------
# ----------------------- Fixtures  ----------------------
# --------------------------------------------------------

@pytest.fixture
def db(monkeypatch):
    fake = FakeSupabase()
    monkeypatch.setattr(server, "_supabase", fake)
    monkeypatch.setattr(server, "new_auth_client", lambda: fake)
    monkeypatch.setattr(server.time, "sleep", lambda s: None)
    return fake


@pytest.fixture
def client(db):
    server.app.config["TESTING"] = True
    with server.app.test_client() as c:
        yield c


@pytest.fixture
def admin_id(db):
    return seed_user(db, name="Admin", points=0, admin=True)
