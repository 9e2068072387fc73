# app.py
from functools import wraps
from datetime import datetime, timezone
from flask import Flask, request, jsonify, make_response, send_from_directory
from flask_cors import CORS
from supabase import create_client
from supabase.client import ClientOptions
from dotenv import load_dotenv
from collections import defaultdict
from werkzeug.exceptions import HTTPException
import threading
import time
import uuid
import jwt
import re
import os

import betting

# --------------------------------------------------------
# ----------------- Environment variables  ---------------
# --------------------------------------------------------

class APIError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

# load .env
load_dotenv()


def normalize_supabase_url(url):
    """Accept bare project hosts ('xyz.supabase.co') as well as full URLs."""
    if not url:
        return url
    url = url.strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


SUPABASE_URL = normalize_supabase_url(os.getenv("SUPABASE_URL"))
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

# Supabase signs access tokens with the project JWT secret (HS256).
# If unset, tokens are verified by asking the auth server instead.
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")

DISABLE_RATE_LIMITS = os.getenv("DISABLE_RATE_LIMITS", "0") == "1"
ENABLE_DEBUG_LOGS = os.getenv("ENABLE_DEBUG_LOGS", "0") == "1"

PORT = int(os.getenv("PORT", "3001"))
FLASK_ENV = os.getenv("FLASK_ENV", "development")
APP_URL = os.getenv("APP_URL")  # e.g. "https://polydan.herokuapp.com"

PASSWORD_RESET_REDIRECT_URL = (
    os.getenv("PASSWORD_RESET_REDIRECT_URL")
    or (f"{APP_URL.rstrip('/')}/reset-password" if APP_URL else None)
)

# Pool economics
STARTING_POINTS = int(os.getenv("STARTING_POINTS", "0"))
SIDE_BET_ODDS = float(os.getenv("SIDE_BET_ODDS", "2.0"))

# Table used by /api/test-db
DB_PROBE_TABLE = os.getenv("DB_PROBE_TABLE", "champions")

# Sign-in backoff (attempts, first delay in seconds; doubles each retry)
SIGNIN_MAX_ATTEMPTS = int(os.getenv("SIGNIN_MAX_ATTEMPTS", "3"))
SIGNIN_BACKOFF_SECONDS = float(os.getenv("SIGNIN_BACKOFF_SECONDS", "0.5"))

# Compare-and-set attempts when moving points
POINTS_UPDATE_ATTEMPTS = 5

PASSWORD_MIN_LENGTH = 8
NAME_MAX_LENGTH = 50
CHAMPION_NAME_MAX_LENGTH = 100

EMAIL_REGEX = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

RETRYABLE_AUTH_STATUSES = {429, 500, 502, 503, 504}
RETRYABLE_ERROR_CLASSES = {
    "AuthRetryableError",
    "ConnectError",
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
}

SENSITIVE_TOKENS = [t for t in [
    SUPABASE_ANON_KEY,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_JWT_SECRET,
] if t]


def redact(s: str) -> str:
    if not isinstance(s, str):
        return s
    redacted = s
    for token in SENSITIVE_TOKENS:
        if token and token in redacted:
            redacted = redacted.replace(token, "[REDACTED]")
    return redacted


def safe_print(*args, **kwargs):
    parts = []
    for a in args:
        parts.append(redact(str(a)))
    print(*parts, **kwargs)


# --------------------------------------------------------
# -------------------- Supabase clients  -----------------
# --------------------------------------------------------

# Shared data client. Created on first use so the app can boot (and be
# tested) without a reachable backend.
_supabase = None
_supabase_lock = threading.Lock()


def _require_supabase_config():
    if not SUPABASE_URL or not SUPABASE_ANON_KEY:
        raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be set in .env")


def get_supabase():
    global _supabase
    if _supabase is None:
        with _supabase_lock:
            if _supabase is None:
                _require_supabase_config()
                _supabase = create_client(
                    SUPABASE_URL,
                    SUPABASE_SERVICE_ROLE_KEY or SUPABASE_ANON_KEY,
                    options=ClientOptions(
                        headers={"x-application-name": "polydan"},
                        auto_refresh_token=False,
                        persist_session=False,
                    ),
                )
    return _supabase


def new_auth_client():
    """
    Fresh anon-key client for a single auth call.
    Signing in on the shared client would switch its table calls to the
    user's token, so sessions never touch get_supabase().
    """
    _require_supabase_config()
    return create_client(
        SUPABASE_URL,
        SUPABASE_ANON_KEY,
        options=ClientOptions(auto_refresh_token=False, persist_session=False),
    )


app = Flask(__name__)

FRONTEND_BUILD_DIR = os.path.join(app.root_path, os.getenv("FRONTEND_BUILD_DIR", "build"))

# CORS configuration
# -------------------
# In production: only the configured origins
# In development: also allow the local dev servers
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
DEV_ORIGINS = ["http://localhost:5173", "http://localhost:3000"]

allowed_origins = list(CORS_ORIGINS)
if APP_URL:
    allowed_origins.append(APP_URL.rstrip("/"))
if FLASK_ENV != "production" or not allowed_origins:
    allowed_origins.extend(DEV_ORIGINS)

CORS(app, resources={r"/api/*": {"origins": allowed_origins}})


# --------------------------------------------------------
# ---------------- In-memory rate limiting  --------------
# --------------------------------------------------------

RATE_LIMITS = {
    # bucket_name: (max_attempts, window_seconds)
    "api_ip": (100, 15 * 60),          # every /api call per IP per 15min

    "signin_ip": (10, 60),             # 10 sign-in attempts per IP per 60s
    "signin_identifier": (5, 60),      # 5 sign-in attempts per email per 60s

    "signup_ip": (3, 3600),            # 3 registrations per IP per hour

    "reset_ip": (5, 300),              # 5 reset requests per IP per 5min
    "reset_identifier": (3, 300),      # 3 reset requests per email per 5min
}

_rate_events = defaultdict(list)
_rate_lock = threading.Lock()


def get_client_ip():
    """
    Try to get the real client IP, honoring X-Forwarded-For when behind a proxy.
    """
    xfwd = request.headers.get("X-Forwarded-For", "")
    if xfwd:
        # X-Forwarded-For: client, proxy1, proxy2, ...
        return xfwd.split(",")[0].strip()
    return request.remote_addr or "unknown"


def is_rate_limited(bucket: str, key: str) -> bool:
    """
    Returns True if this (bucket, key) has exceeded its limit within the window.
    Otherwise records the attempt and returns False.
    """
    if DISABLE_RATE_LIMITS:
        return False

    try:
        limit, window = RATE_LIMITS[bucket]
    except KeyError:
        # Unknown bucket: fail open
        if ENABLE_DEBUG_LOGS:
            safe_print(f"[RL] Unknown bucket: {bucket}")
        return False

    now = time.time()

    with _rate_lock:
        events = [t for t in _rate_events[(bucket, key)] if now - t < window]
        _rate_events[(bucket, key)] = events

        if ENABLE_DEBUG_LOGS:
            # Do NOT log the key (could be email or IP)
            safe_print(f"[RL] bucket={bucket} count_before={len(events)} limit={limit}")

        if len(events) >= limit:
            if ENABLE_DEBUG_LOGS:
                safe_print(f"[RL] 🚫 RATE LIMITED bucket={bucket}")
            return True

        events.append(now)

    return False


@app.before_request
def _api_rate_limit():
    if not request.path.startswith("/api/") or request.path == "/api/health":
        return None
    if request.method == "OPTIONS":
        return None
    if is_rate_limited("api_ip", get_client_ip()):
        return jsonify({"error": "Too many requests, please try again later."}), 429
    return None


# --------------------------------------------------------
# -------------------- Error handlers  -------------------
# --------------------------------------------------------

@app.errorhandler(APIError)
def handle_api_error(err: APIError):
    safe_print(f"APIError: {err.message}")
    return jsonify({"error": err.message}), err.status_code


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    return jsonify({"error": e.description or e.name}), e.code


@app.errorhandler(Exception)
def handle_any(e):
    # Avoid logging the full message; it can carry payloads
    safe_print("🔴 Unhandled exception (class):", type(e).__name__)
    return jsonify({"error": "Internal server error"}), 500


# --------------------------------------------------------
# ----------------------- Helpers  -----------------------
# --------------------------------------------------------

def now_utc():
    return datetime.now(timezone.utc)


def now_iso():
    return now_utc().isoformat()


def is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, TypeError):
        return False


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def first_row(rows):
    return rows[0] if rows else None


def is_strong_password(pw):
    """
    Basic password policy:
      - at least PASSWORD_MIN_LENGTH characters
      - at least one letter
      - at least one digit
    """
    if not isinstance(pw, str) or not pw:
        return False, "Password is required."

    if len(pw) < PASSWORD_MIN_LENGTH:
        return False, f"Password must be at least {PASSWORD_MIN_LENGTH} characters long."

    if not re.search(r"[A-Za-z]", pw):
        return False, "Password must include at least one letter."

    if not re.search(r"\d", pw):
        return False, "Password must include at least one number."

    return True, ""


def auth_error_message(e) -> str:
    return getattr(e, "message", None) or str(e) or type(e).__name__


def is_transient_auth_error(e) -> bool:
    if type(e).__name__ in RETRYABLE_ERROR_CLASSES:
        return True
    return getattr(e, "status", None) in RETRYABLE_AUTH_STATUSES


def session_payload(session):
    if session is None:
        return None
    return {
        "access_token": getattr(session, "access_token", None),
        "refresh_token": getattr(session, "refresh_token", None),
        "expires_at": getattr(session, "expires_at", None),
        "expires_in": getattr(session, "expires_in", None),
        "token_type": getattr(session, "token_type", "bearer"),
    }


def profile_view(row: dict, is_admin_flag=None) -> dict:
    out = {
        "id": row.get("id"),
        "email": row.get("email"),
        "name": row.get("name"),
        "role": row.get("role") or "member",
        "points": row.get("points") or 0,
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    }
    if is_admin_flag is not None:
        out["is_admin"] = bool(is_admin_flag)
    return out


# --------------------------------------------------------
# ------------------- Auth helpers  ----------------------
# --------------------------------------------------------
# Clients authenticate with the Supabase access token in the
# Authorization: Bearer header. No cookies, so classic CSRF does not apply.

def decode_token(token):
    """
    Returns {"user_id", "email"} for a valid access token, else None.
    """
    if SUPABASE_JWT_SECRET:
        try:
            payload = jwt.decode(
                token,
                SUPABASE_JWT_SECRET,
                algorithms=[JWT_ALGORITHM],
                audience=JWT_AUDIENCE,
            )
        except jwt.ExpiredSignatureError:
            return None
        except jwt.InvalidTokenError:
            return None
        if not payload.get("sub"):
            return None
        return {"user_id": payload["sub"], "email": payload.get("email")}

    try:
        res = new_auth_client().auth.get_user(token)
    except Exception as e:
        if ENABLE_DEBUG_LOGS:
            safe_print("🔴 Token check failed (class):", type(e).__name__)
        return None
    user = getattr(res, "user", None)
    if not user:
        return None
    return {"user_id": user.id, "email": getattr(user, "email", None)}


def require_auth(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Missing or invalid Authorization header"}), 401

        token = auth_header.split(" ", 1)[1].strip()
        payload = decode_token(token)
        if not payload:
            return jsonify({"error": "Invalid or expired token"}), 401

        payload["token"] = token
        request.user = payload
        return f(*args, **kwargs)
    return wrapper


def is_admin(user_id) -> bool:
    rows = (
        get_supabase().table("admin_users")
        .select("id")
        .eq("id", user_id)
        .limit(1)
        .execute()
        .data
    )
    return bool(rows)


def require_admin(f):
    @wraps(f)
    @require_auth
    def wrapper(*args, **kwargs):
        try:
            admin = is_admin(request.user["user_id"])
        except Exception as e:
            safe_print("🔴 DB error in admin check (class):", type(e).__name__)
            return jsonify({"error": "Database error"}), 500

        if not admin:
            return jsonify({"error": "Forbidden"}), 403

        request.user["is_admin"] = True
        return f(*args, **kwargs)
    return wrapper


# --------------------------------------------------------
# ------------------- Points ledger  ---------------------
# --------------------------------------------------------

def record_transaction(user_id, amount, tx_type, description, reference_id=None):
    row = {
        "user_id": user_id,
        "amount": amount,
        "type": tx_type,
        "description": description,
        "reference_id": reference_id,
        "created_at": now_iso(),
    }
    res = get_supabase().table("transactions").insert(row).execute()
    return first_row(res.data) or row


def adjust_points(user_id, delta, tx_type, description, reference_id=None):
    """
    Move `delta` points on a user's balance and log a transaction.

    The update only applies if the balance is still the one we read
    (compare-and-set on `points`), so two concurrent debits cannot both
    spend the same points. Balances never go below zero.
    Returns the new balance.
    """
    sb = get_supabase()

    for attempt in range(1, POINTS_UPDATE_ATTEMPTS + 1):
        rows = (
            sb.table("users")
            .select("id, points")
            .eq("id", user_id)
            .limit(1)
            .execute()
            .data
        )
        if not rows:
            raise APIError("User not found", 404)

        raw = rows[0].get("points")
        current = raw or 0
        new_balance = current + delta
        if new_balance < 0:
            raise APIError("Insufficient points", 400)

        q = sb.table("users").update({"points": new_balance, "updated_at": now_iso()}).eq("id", user_id)
        q = q.is_("points", "null") if raw is None else q.eq("points", raw)
        updated = q.execute().data

        if updated:
            record_transaction(user_id, delta, tx_type, description, reference_id)
            return new_balance

        if ENABLE_DEBUG_LOGS:
            safe_print(f"[points] balance moved under us, attempt {attempt}/{POINTS_UPDATE_ATTEMPTS}")

    raise APIError("Your balance changed while processing. Please try again.", 409)


def reopen_row(table, row_id):
    """Undo a settlement claim on a bet or wager whose payout did not go through."""
    get_supabase().table(table).update({
        "is_resolved": False,
        "payout": None,
        "resolved_at": None,
    }).eq("id", row_id).execute()


# --------------------------------------------------------
# ------------------ Champion helpers  -------------------
# --------------------------------------------------------

def fetch_champion(champion_id):
    if not is_uuid(champion_id):
        return None
    rows = (
        get_supabase().table("champions")
        .select("*")
        .eq("id", champion_id)
        .limit(1)
        .execute()
        .data
    )
    return first_row(rows)


def fetch_winner():
    rows = (
        get_supabase().table("champions")
        .select("*")
        .eq("is_winner", True)
        .limit(1)
        .execute()
        .data
    )
    return first_row(rows)


def champions_by_id():
    rows = get_supabase().table("champions").select("*").execute().data or []
    return {c["id"]: c for c in rows}


def settle_open_bets():
    """
    Resolve every open bet whose outcome is decided (see betting.bet_outcome)
    and credit winners. Each bet is claimed with an `is_resolved = false`
    guard so a bet is never paid twice.
    """
    sb = get_supabase()

    by_id = champions_by_id()
    winner = next((c for c in by_id.values() if c.get("is_winner")), None)
    winner_id = winner["id"] if winner else None

    open_bets = (
        sb.table("bets")
        .select("*")
        .eq("is_resolved", False)
        .order("created_at", desc=False)
        .execute()
        .data
    ) or []

    summary = {"settled": 0, "won": 0, "lost": 0, "paid_out": 0, "still_open": 0, "skipped": 0}

    for bet in open_bets:
        champion = by_id.get(bet.get("champion_id"))
        outcome = betting.bet_outcome(bet, champion, winner_id)
        if outcome == betting.OPEN:
            summary["still_open"] += 1
            continue

        payout = betting.settlement_payout(bet, outcome)
        stamp = now_iso()
        claimed = (
            sb.table("bets")
            .update({"is_resolved": True, "payout": payout, "resolved_at": stamp, "updated_at": stamp})
            .eq("id", bet["id"])
            .eq("is_resolved", False)
            .execute()
            .data
        )
        if not claimed:
            continue

        if payout:
            name = (champion or {}).get("name") or "champion"
            try:
                adjust_points(bet["user_id"], payout, "payout", f"Payout for bet on {name}", reference_id=bet["id"])
            except APIError as e:
                # Bet goes back to open so the next settlement run can pay it
                safe_print(f"⚠️ Payout for bet {bet['id']} failed ({e.message}), leaving it open")
                reopen_row("bets", bet["id"])
                summary["skipped"] += 1
                continue

        summary["settled"] += 1
        summary["paid_out"] += payout
        if outcome == betting.WON:
            summary["won"] += 1
        else:
            summary["lost"] += 1

    return summary


# --------------------------------------------------------
# ------------------- Service endpoints  -----------------
# --------------------------------------------------------

@app.route("/api/health", methods=["GET"])
def health():
    resp = make_response(jsonify({"status": "ok"}), 200)
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    resp.headers["Pragma"] = "no-cache"
    return resp


@app.route("/api/test-db", methods=["GET"])
def test_db():
    try:
        rows = (
            get_supabase().table(DB_PROBE_TABLE)
            .select("*")
            .limit(1)
            .execute()
            .data
        ) or []
    except Exception as e:
        safe_print("🔴 DB probe failed (class):", type(e).__name__)
        return jsonify({"error": redact(auth_error_message(e))}), 500

    return jsonify({"rows": len(rows)}), 200


# --------------------------------------------------------
# --------------- Authentication endpoints  --------------
# --------------------------------------------------------

@app.route("/api/auth/sign-up", methods=["POST"])
def sign_up():
    data = json_body()

    ip = get_client_ip()
    if is_rate_limited("signup_ip", ip):
        return jsonify({
            "error": "Too many sign-up attempts from this IP. Please try again later."
        }), 429

    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    name = (data.get("name") or "").strip()

    if not email or not password or not name:
        return jsonify({"error": "Email, password, and name are required"}), 400

    if not re.match(EMAIL_REGEX, email):
        return jsonify({"error": "Invalid email format"}), 400

    if len(name) > NAME_MAX_LENGTH:
        return jsonify({"error": f"Name must be at most {NAME_MAX_LENGTH} characters"}), 400

    ok, msg = is_strong_password(password)
    if not ok:
        return jsonify({"error": msg}), 400

    try:
        res = new_auth_client().auth.sign_up({
            "email": email,
            "password": password,
            "options": {"data": {"name": name}},
        })
    except Exception as e:
        safe_print("🔴 Auth sign-up error (class):", type(e).__name__)
        message = auth_error_message(e)
        lowered = message.lower()
        if "security purposes" in lowered or "after" in lowered:
            return jsonify({"error": "Please wait a moment before trying to sign up again."}), 429
        status = getattr(e, "status", None)
        if not isinstance(status, int) or not 400 <= status < 500:
            status = 400
        return jsonify({"error": redact(message)}), status

    user = getattr(res, "user", None)
    if not user:
        return jsonify({"error": "No user data returned from signup"}), 500

    stamp = now_iso()
    profile = {
        "id": user.id,
        "email": email,
        "name": name,
        "role": "member",
        "points": STARTING_POINTS,
        "is_super": False,
        "is_anonymous": False,
        "created_at": stamp,
        "updated_at": stamp,
    }

    try:
        get_supabase().table("users").insert(profile).execute()
        if STARTING_POINTS > 0:
            record_transaction(user.id, STARTING_POINTS, "grant", "Starting points")
    except Exception as e:
        safe_print("🔴 Profile creation error (class):", type(e).__name__)
        return jsonify({"error": "Failed to create user profile"}), 500

    return jsonify({
        "message": "User registered successfully",
        "user": profile_view(profile, False),
        "session": session_payload(getattr(res, "session", None)),
    }), 201


def sign_in_with_backoff(email, password):
    """
    Password sign-in, retrying transient failures (429/5xx/network)
    with exponential backoff. Credential errors are raised immediately.
    """
    delay = SIGNIN_BACKOFF_SECONDS
    for attempt in range(1, SIGNIN_MAX_ATTEMPTS + 1):
        try:
            return new_auth_client().auth.sign_in_with_password({
                "email": email,
                "password": password,
            })
        except Exception as e:
            if not is_transient_auth_error(e) or attempt >= SIGNIN_MAX_ATTEMPTS:
                raise
            safe_print(
                f"⚠️ Sign-in attempt {attempt}/{SIGNIN_MAX_ATTEMPTS} failed "
                f"({type(e).__name__}). Retrying in {delay}s..."
            )
            time.sleep(delay)
            delay *= 2


@app.route("/api/auth/sign-in", methods=["POST"])
def sign_in():
    data = json_body()

    ip = get_client_ip()
    if is_rate_limited("signin_ip", ip):
        return jsonify({
            "error": "Too many login attempts. Please wait a bit and try again."
        }), 429

    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required"}), 400

    if is_rate_limited("signin_identifier", email):
        return jsonify({
            "error": "Too many login attempts. Please wait a bit and try again."
        }), 429

    if not re.match(EMAIL_REGEX, email):
        return jsonify({"error": "Invalid email or password"}), 401

    try:
        res = sign_in_with_backoff(email, password)
    except Exception as e:
        if is_transient_auth_error(e):
            safe_print("🔴 Sign-in gave up after retries (class):", type(e).__name__)
            return jsonify({"error": "Sign-in is temporarily unavailable. Please try again."}), 503
        return jsonify({"error": "Invalid email or password"}), 401

    user = getattr(res, "user", None)
    session = getattr(res, "session", None)
    if not user or not session:
        return jsonify({"error": "Invalid email or password"}), 401

    try:
        rows = (
            get_supabase().table("users")
            .select("*")
            .eq("id", user.id)
            .limit(1)
            .execute()
            .data
        )
        admin = is_admin(user.id)
    except Exception as e:
        safe_print("🔴 DB error in /api/auth/sign-in (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    profile = first_row(rows) or {"id": user.id, "email": email}

    return jsonify({
        "message": "Login successful",
        "session": session_payload(session),
        "user": profile_view(profile, admin),
    }), 200


@app.route("/api/auth/sign-out", methods=["POST"])
@require_auth
def sign_out():
    try:
        new_auth_client().auth.admin.sign_out(request.user["token"])
    except Exception as e:
        safe_print("🔴 Sign-out error (class):", type(e).__name__)
        return jsonify({"error": "Sign out failed"}), 500
    return jsonify({"message": "Signed out"}), 200


@app.route("/api/auth/refresh", methods=["POST"])
def refresh_session():
    data = json_body()
    refresh_token = (data.get("refresh_token") or "").strip()
    if not refresh_token:
        return jsonify({"error": "Refresh token is required"}), 400

    try:
        res = new_auth_client().auth.refresh_session(refresh_token)
    except Exception as e:
        if ENABLE_DEBUG_LOGS:
            safe_print("🔴 Refresh failed (class):", type(e).__name__)
        return jsonify({"error": "Invalid or expired refresh token"}), 401

    session = getattr(res, "session", None)
    if not session:
        return jsonify({"error": "Invalid or expired refresh token"}), 401

    return jsonify({"session": session_payload(session)}), 200


RESET_NEUTRAL_MESSAGE = "If an account exists for that email, password reset instructions have been sent."
INVALID_RESET_LINK = "Invalid reset link. Please request a new password reset."


@app.route("/api/auth/forgot-password", methods=["POST"])
def forgot_password():
    data = json_body()

    ip = get_client_ip()
    if is_rate_limited("reset_ip", ip):
        # Same neutral response to avoid info leaks
        return jsonify({"message": RESET_NEUTRAL_MESSAGE}), 200

    email = (data.get("email") or "").strip().lower()
    if not email:
        return jsonify({"error": "Email is required"}), 400

    if not re.match(EMAIL_REGEX, email):
        return jsonify({"message": RESET_NEUTRAL_MESSAGE}), 200

    if is_rate_limited("reset_identifier", email):
        return jsonify({"message": RESET_NEUTRAL_MESSAGE}), 200

    options = {"redirect_to": PASSWORD_RESET_REDIRECT_URL} if PASSWORD_RESET_REDIRECT_URL else {}

    try:
        new_auth_client().auth.reset_password_for_email(email, options)
    except Exception as e:
        # Do not reveal whether the address exists
        safe_print("🔴 Reset email failed (class):", type(e).__name__)

    return jsonify({"message": RESET_NEUTRAL_MESSAGE}), 200


@app.route("/api/auth/recovery-session", methods=["POST"])
def recovery_session():
    """
    Exchange a password-reset link for a session.
    Accepts either {token_hash} (email template link) or
    {access_token, refresh_token} (tokens from the URL fragment).
    """
    data = json_body()
    token_hash = (data.get("token_hash") or "").strip()
    access_token = (data.get("access_token") or "").strip()
    refresh_token = (data.get("refresh_token") or "").strip()

    if not token_hash and not access_token:
        return jsonify({"error": INVALID_RESET_LINK}), 400

    client = new_auth_client()
    try:
        if token_hash:
            res = client.auth.verify_otp({"token_hash": token_hash, "type": "recovery"})
        else:
            res = client.auth.set_session(access_token, refresh_token)
    except Exception as e:
        safe_print("🔴 Recovery session error (class):", type(e).__name__)
        return jsonify({"error": INVALID_RESET_LINK}), 400

    session = getattr(res, "session", None)
    if not session:
        return jsonify({"error": INVALID_RESET_LINK}), 400

    user = getattr(res, "user", None)
    return jsonify({
        "session": session_payload(session),
        "user": {"id": getattr(user, "id", None), "email": getattr(user, "email", None)},
    }), 200


@app.route("/api/auth/update-password", methods=["POST"])
@require_auth
def update_password():
    data = json_body()
    password = data.get("password") or ""
    confirm_password = data.get("confirm_password") or ""
    refresh_token = (data.get("refresh_token") or "").strip()

    if not password or not confirm_password:
        return jsonify({"error": "Password and confirmation are required"}), 400

    if password != confirm_password:
        return jsonify({"error": "Passwords do not match"}), 400

    ok, msg = is_strong_password(password)
    if not ok:
        return jsonify({"error": msg}), 400

    if not refresh_token:
        return jsonify({"error": "Refresh token is required"}), 400

    client = new_auth_client()
    try:
        client.auth.set_session(request.user["token"], refresh_token)
        client.auth.update_user({"password": password})
    except Exception as e:
        safe_print("🔴 Password update error (class):", type(e).__name__)
        return jsonify({"error": redact(auth_error_message(e)) or "Failed to reset password"}), 400

    return jsonify({"message": "Password updated successfully"}), 200


@app.route("/api/auth/me", methods=["GET"])
@require_auth
def me():
    user_id = request.user["user_id"]
    try:
        rows = (
            get_supabase().table("users")
            .select("*")
            .eq("id", user_id)
            .limit(1)
            .execute()
            .data
        )
        admin = is_admin(user_id)
    except Exception as e:
        safe_print("🔴 DB error in /api/auth/me (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    if not rows:
        return jsonify({"error": "User not found"}), 404

    return jsonify({"user": profile_view(rows[0], admin)}), 200


# --------------------------------------------------------
# ------------------ Champion endpoints  -----------------
# --------------------------------------------------------

@app.route("/api/champions", methods=["GET"])
def list_champions():
    try:
        rows = (
            get_supabase().table("champions")
            .select("*")
            .order("name", desc=False)
            .execute()
            .data
        ) or []
    except Exception as e:
        safe_print("🔴 DB error in /api/champions (class):", type(e).__name__)
        return jsonify({"error": "Failed to fetch champions"}), 500

    return jsonify([betting.champion_view(c) for c in rows]), 200


@app.route("/api/admin/champions", methods=["POST"])
@require_admin
def add_champion():
    data = json_body()
    name = (data.get("name") or "").strip()

    if not name:
        return jsonify({"error": "Champion name is required"}), 400
    if len(name) > CHAMPION_NAME_MAX_LENGTH:
        return jsonify({"error": f"Champion name must be at most {CHAMPION_NAME_MAX_LENGTH} characters"}), 400

    sb = get_supabase()
    existing = sb.table("champions").select("id").eq("name", name).limit(1).execute().data
    if existing:
        return jsonify({"error": "A champion with that name already exists"}), 400

    stamp = now_iso()
    try:
        champion = first_row(
            sb.table("champions")
            .insert({
                "name": name,
                "is_eliminated": False,
                "is_winner": False,
                "has_redemption_chance": False,
                "is_redeemed": False,
                "created_at": stamp,
                "updated_at": stamp,
            })
            .execute()
            .data
        )
    except Exception as e:
        safe_print("🔴 Error adding champion (class):", type(e).__name__)
        return jsonify({"error": "Failed to add champion"}), 500

    return jsonify({"message": "Champion added", "champion": betting.champion_view(champion)}), 201


@app.route("/api/admin/champions/<champion_id>/elimination", methods=["POST"])
@require_admin
def toggle_elimination(champion_id):
    champion = fetch_champion(champion_id)
    if not champion:
        return jsonify({"error": "Champion not found"}), 404

    eliminated = not bool(champion.get("is_eliminated"))

    try:
        updated = first_row(
            get_supabase().table("champions")
            .update({
                "is_eliminated": eliminated,
                "is_winner": False,  # eliminating or restoring always clears the winner flag
                "updated_at": now_iso(),
            })
            .eq("id", champion["id"])
            .execute()
            .data
        )
    except Exception as e:
        safe_print("🔴 Error updating champion status (class):", type(e).__name__)
        return jsonify({"error": "Failed to update champion status"}), 500

    updated = updated or {**champion, "is_eliminated": eliminated, "is_winner": False}
    return jsonify({
        "message": "Champion eliminated" if eliminated else "Champion restored",
        "champion": betting.champion_view(updated),
    }), 200


@app.route("/api/admin/champions/<champion_id>/winner", methods=["POST"])
@require_admin
def set_winner(champion_id):
    champion = fetch_champion(champion_id)
    if not champion:
        return jsonify({"error": "Champion not found"}), 404

    sb = get_supabase()
    stamp = now_iso()
    try:
        # Only one winner at a time
        sb.table("champions").update({"is_winner": False, "updated_at": stamp}).neq("id", champion["id"]).execute()

        updated = first_row(
            sb.table("champions")
            .update({"is_winner": True, "is_eliminated": False, "updated_at": stamp})
            .eq("id", champion["id"])
            .execute()
            .data
        )
    except Exception as e:
        safe_print("🔴 Error setting winner (class):", type(e).__name__)
        return jsonify({"error": "Failed to set winner"}), 500

    updated = updated or {**champion, "is_winner": True, "is_eliminated": False}
    return jsonify({"message": "Winner set", "champion": betting.champion_view(updated)}), 200


# --------------------------------------------------------
# -------------------- Bet endpoints  --------------------
# --------------------------------------------------------

@app.route("/api/bets", methods=["GET"])
@require_auth
def list_bets():
    user_id = request.user["user_id"]
    scope = request.args.get("scope", "mine")
    status = request.args.get("status")

    sb = get_supabase()
    try:
        q = sb.table("bets").select("*")
        if scope == "all":
            if not is_admin(user_id):
                return jsonify({"error": "Forbidden"}), 403
        else:
            q = q.eq("user_id", user_id)

        if status == "open":
            q = q.eq("is_resolved", False)
        elif status == "resolved":
            q = q.eq("is_resolved", True)

        rows = q.order("created_at", desc=True).execute().data or []
        by_id = champions_by_id()
    except Exception as e:
        safe_print("🔴 DB error in /api/bets (class):", type(e).__name__)
        return jsonify({"error": "Failed to fetch data"}), 500

    return jsonify([betting.bet_view(b, by_id) for b in rows]), 200


@app.route("/api/bets/quote", methods=["GET"])
def quote_bet():
    champion = fetch_champion(request.args.get("champion_id"))
    if not champion:
        return jsonify({"error": "Invalid champion selection"}), 400

    is_for = betting.parse_bool(request.args.get("is_for"), default=True)
    amount = betting.parse_points(request.args.get("amount")) or 0
    odds = betting.calculate_odds(champion, is_for)

    return jsonify({
        "champion_id": champion["id"],
        "is_for": is_for,
        "amount": amount,
        "odds": odds,
        "potential_payout": betting.potential_payout(amount, odds),
    }), 200


@app.route("/api/bets", methods=["POST"])
@require_auth
def place_bet():
    data = json_body()
    user_id = request.user["user_id"]

    champion_id = data.get("champion_id")
    amount = betting.parse_points(data.get("amount"))
    is_for = betting.parse_bool(data.get("is_for"), default=None)

    if amount is None:
        return jsonify({"error": "Bet amount must be a positive whole number of points"}), 400
    if is_for is None:
        return jsonify({"error": "Bet type must be 'for' or 'against'"}), 400

    champion = fetch_champion(champion_id)
    if not champion:
        return jsonify({"error": "Invalid champion selection"}), 400

    if fetch_winner():
        return jsonify({"error": "Betting is closed: a winner has been declared"}), 400

    odds = betting.calculate_odds(champion, is_for)
    if odds == 0:
        return jsonify({"error": "Cannot bet on eliminated champions"}), 400

    bet_id = str(uuid.uuid4())
    side = "for" if is_for else "against"

    # Raises APIError("Insufficient points") before anything is written
    balance = adjust_points(user_id, -amount, "bet", f"Bet {side} {champion['name']}", reference_id=bet_id)

    stamp = now_iso()
    row = {
        "id": bet_id,
        "user_id": user_id,
        "champion_id": champion["id"],
        "amount": amount,
        "odds": odds,
        "is_for": is_for,
        "is_resolved": False,
        "created_at": stamp,
        "updated_at": stamp,
    }
    try:
        bet = first_row(get_supabase().table("bets").insert(row).execute().data) or row
    except Exception as e:
        safe_print("🔴 Bet insert failed, refunding stake (class):", type(e).__name__)
        adjust_points(user_id, amount, "refund", f"Refund for failed bet on {champion['name']}", reference_id=bet_id)
        return jsonify({"error": "Failed to place bet"}), 500

    return jsonify({
        "message": "Bet placed",
        "bet": betting.bet_view(bet, {champion["id"]: champion}),
        "points": balance,
    }), 201


@app.route("/api/admin/payouts/settle", methods=["POST"])
@require_admin
def settle_payouts():
    summary = settle_open_bets()
    safe_print(
        f"💰 Settlement: settled={summary['settled']} won={summary['won']} "
        f"lost={summary['lost']} paid_out={summary['paid_out']}"
    )
    return jsonify({"message": "Bets settled", **summary}), 200


@app.route("/api/admin/bets/<bet_id>/resolve", methods=["POST"])
@require_admin
def resolve_bet(bet_id):
    if not is_uuid(bet_id):
        return jsonify({"error": "Invalid bet id"}), 400

    data = json_body()
    raw = data.get("payout")
    if isinstance(raw, bool):
        payout = None
    elif raw in (0, "0"):
        payout = 0
    else:
        payout = betting.parse_points(raw)
    if payout is None:
        return jsonify({"error": "Payout must be a whole number of points (0 or more)"}), 400

    sb = get_supabase()
    bet = first_row(sb.table("bets").select("*").eq("id", bet_id).limit(1).execute().data)
    if not bet:
        return jsonify({"error": "Bet not found"}), 404
    if bet.get("is_resolved"):
        return jsonify({"error": "Bet already resolved"}), 400

    stamp = now_iso()
    claimed = (
        sb.table("bets")
        .update({"is_resolved": True, "payout": payout, "resolved_at": stamp, "updated_at": stamp})
        .eq("id", bet_id)
        .eq("is_resolved", False)
        .execute()
        .data
    )
    if not claimed:
        return jsonify({"error": "Bet already resolved"}), 409

    balance = None
    if payout:
        try:
            balance = adjust_points(bet["user_id"], payout, "payout", "Manual bet payout", reference_id=bet_id)
        except Exception:
            reopen_row("bets", bet_id)
            raise

    return jsonify({"message": "Bet resolved", "bet_id": bet_id, "payout": payout, "points": balance}), 200


# --------------------------------------------------------
# ---------------- Transactions & points  ----------------
# --------------------------------------------------------

@app.route("/api/transactions", methods=["GET"])
@require_auth
def list_transactions():
    user_id = request.user["user_id"]
    scope = request.args.get("scope")
    target = request.args.get("user_id")

    try:
        q = get_supabase().table("transactions").select("*")
        if scope == "all" or (target and target != user_id):
            if not is_admin(user_id):
                return jsonify({"error": "Forbidden"}), 403
            if target:
                q = q.eq("user_id", target)
        else:
            q = q.eq("user_id", user_id)

        rows = q.order("created_at", desc=True).execute().data or []
    except Exception as e:
        safe_print("🔴 DB error in /api/transactions (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    return jsonify(rows), 200


@app.route("/api/admin/users/<user_id>/points", methods=["POST"])
@require_admin
def admin_adjust_points(user_id):
    if not is_uuid(user_id):
        return jsonify({"error": "Invalid user id"}), 400

    data = json_body()
    amount = betting.parse_signed_points(data.get("amount"))
    if amount is None:
        return jsonify({"error": "Amount must be a non-zero whole number of points"}), 400

    description = (data.get("description") or "").strip() or "Admin adjustment"
    balance = adjust_points(user_id, amount, "adjustment", description)

    return jsonify({"message": "Points updated", "user_id": user_id, "points": balance}), 200


# --------------------------------------------------------
# ------------------ Side bet endpoints  -----------------
# --------------------------------------------------------

def fetch_side_bet(side_bet_id):
    if not is_uuid(side_bet_id):
        return None
    return first_row(
        get_supabase().table("side_bets")
        .select("*")
        .eq("id", side_bet_id)
        .limit(1)
        .execute()
        .data
    )


def fetch_side_bet_options(side_bet_ids):
    if not side_bet_ids:
        return []
    return (
        get_supabase().table("side_bet_options")
        .select("*")
        .in_("side_bet_id", list(side_bet_ids))
        .execute()
        .data
    ) or []


def reopen_side_bet(side_bet_id):
    get_supabase().table("side_bets").update({
        "is_resolved": False,
        "resolved_at": None,
        "updated_at": now_iso(),
    }).eq("id", side_bet_id).execute()


@app.route("/api/side-bets", methods=["GET"])
def list_side_bets():
    try:
        side_bets = (
            get_supabase().table("side_bets")
            .select("*")
            .order("created_at", desc=True)
            .execute()
            .data
        ) or []
        options = fetch_side_bet_options({sb["id"] for sb in side_bets})
    except Exception as e:
        safe_print("🔴 DB error in /api/side-bets (class):", type(e).__name__)
        return jsonify({"error": "Error loading side bets"}), 500

    options_by_bet = defaultdict(list)
    for o in options:
        options_by_bet[o["side_bet_id"]].append({
            "id": o["id"],
            "description": o.get("description"),
            "is_correct": bool(o.get("is_correct")),
        })

    output = []
    for sb in side_bets:
        output.append({
            "id": sb["id"],
            "title": sb.get("title"),
            "description": sb.get("description"),
            "created_by": sb.get("created_by"),
            "is_resolved": bool(sb.get("is_resolved")),
            "resolved_at": sb.get("resolved_at"),
            "created_at": sb.get("created_at"),
            "odds": SIDE_BET_ODDS,
            "options": options_by_bet.get(sb["id"], []),
        })
    return jsonify(output), 200


@app.route("/api/admin/side-bets", methods=["POST"])
@require_admin
def create_side_bet():
    data = json_body()
    title = (data.get("title") or "").strip()
    description = (data.get("description") or "").strip()
    raw_options = data.get("options") or []

    if not title:
        return jsonify({"error": "Title is required"}), 400
    if not isinstance(raw_options, list):
        return jsonify({"error": "Options must be a list"}), 400

    options = []
    seen = set()
    for o in raw_options:
        text = (str(o) if o is not None else "").strip()
        if text and text.lower() not in seen:
            seen.add(text.lower())
            options.append(text)

    if len(options) < 2:
        return jsonify({"error": "A side bet needs at least two distinct options"}), 400

    sb = get_supabase()
    stamp = now_iso()
    try:
        side_bet = first_row(
            sb.table("side_bets")
            .insert({
                "title": title,
                "description": description,
                "created_by": request.user["user_id"],
                "is_resolved": False,
                "created_at": stamp,
                "updated_at": stamp,
            })
            .execute()
            .data
        )
        option_rows = (
            sb.table("side_bet_options")
            .insert([
                {"side_bet_id": side_bet["id"], "description": text, "is_correct": False}
                for text in options
            ])
            .execute()
            .data
        ) or []
    except Exception as e:
        safe_print("🔴 Error creating side bet (class):", type(e).__name__)
        return jsonify({"error": "Failed to create side bet"}), 500

    return jsonify({
        "message": "Side bet created",
        "side_bet": {
            **side_bet,
            "odds": SIDE_BET_ODDS,
            "options": [
                {"id": o["id"], "description": o.get("description"), "is_correct": False}
                for o in option_rows
            ],
        },
    }), 201


@app.route("/api/side-bets/<side_bet_id>/wagers", methods=["POST"])
@require_auth
def place_side_bet_wager(side_bet_id):
    data = json_body()
    user_id = request.user["user_id"]

    amount = betting.parse_points(data.get("amount"))
    option_id = data.get("option_id")

    if amount is None:
        return jsonify({"error": "Wager amount must be a positive whole number of points"}), 400

    side_bet = fetch_side_bet(side_bet_id)
    if not side_bet:
        return jsonify({"error": "Side bet not found"}), 404
    if side_bet.get("is_resolved"):
        return jsonify({"error": "Side bet is already resolved"}), 400

    options = fetch_side_bet_options([side_bet["id"]])
    option = next((o for o in options if str(o["id"]) == str(option_id)), None)
    if not option:
        return jsonify({"error": "Invalid option for this side bet"}), 400

    wager_id = str(uuid.uuid4())
    balance = adjust_points(
        user_id, -amount, "side_bet", f"Wager on '{side_bet.get('title')}'", reference_id=wager_id
    )

    row = {
        "id": wager_id,
        "user_id": user_id,
        "side_bet_id": side_bet["id"],
        "option_id": option["id"],
        "amount": amount,
        "odds": SIDE_BET_ODDS,
        "is_resolved": False,
        "created_at": now_iso(),
    }
    try:
        wager = first_row(get_supabase().table("side_bet_wagers").insert(row).execute().data) or row
    except Exception as e:
        safe_print("🔴 Wager insert failed, refunding stake (class):", type(e).__name__)
        adjust_points(user_id, amount, "refund", "Refund for failed side bet wager", reference_id=wager_id)
        return jsonify({"error": "Failed to place wager"}), 500

    return jsonify({
        "message": "Wager placed",
        "wager": {**wager, "potential_payout": betting.potential_payout(amount, SIDE_BET_ODDS)},
        "points": balance,
    }), 201


@app.route("/api/side-bets/wagers", methods=["GET"])
@require_auth
def list_my_wagers():
    try:
        rows = (
            get_supabase().table("side_bet_wagers")
            .select("*")
            .eq("user_id", request.user["user_id"])
            .order("created_at", desc=True)
            .execute()
            .data
        ) or []
    except Exception as e:
        safe_print("🔴 DB error in /api/side-bets/wagers (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    return jsonify([
        {**w, "potential_payout": betting.potential_payout(w.get("amount") or 0, w.get("odds") or 0)}
        for w in rows
    ]), 200


@app.route("/api/admin/side-bets/<side_bet_id>/resolve", methods=["POST"])
@require_admin
def resolve_side_bet(side_bet_id):
    data = json_body()
    option_id = data.get("option_id")

    side_bet = fetch_side_bet(side_bet_id)
    if not side_bet:
        return jsonify({"error": "Side bet not found"}), 404
    if side_bet.get("is_resolved"):
        return jsonify({"error": "Side bet already resolved"}), 400

    options = fetch_side_bet_options([side_bet["id"]])
    option = next((o for o in options if str(o["id"]) == str(option_id)), None)
    if not option:
        return jsonify({"error": "Invalid option for this side bet"}), 400

    sb = get_supabase()
    stamp = now_iso()

    claimed = (
        sb.table("side_bets")
        .update({"is_resolved": True, "resolved_at": stamp, "updated_at": stamp})
        .eq("id", side_bet["id"])
        .eq("is_resolved", False)
        .execute()
        .data
    )
    if not claimed:
        return jsonify({"error": "Side bet already resolved"}), 409

    summary = {"settled": 0, "won": 0, "lost": 0, "paid_out": 0, "skipped": 0}
    title = side_bet.get("title")

    try:
        sb.table("side_bet_options").update({"is_correct": False}).eq("side_bet_id", side_bet["id"]).execute()
        sb.table("side_bet_options").update({"is_correct": True}).eq("id", option["id"]).execute()

        wagers = (
            sb.table("side_bet_wagers")
            .select("*")
            .eq("side_bet_id", side_bet["id"])
            .eq("is_resolved", False)
            .execute()
            .data
        ) or []

        for w in wagers:
            outcome = betting.wager_outcome(w, option["id"])
            payout = betting.settlement_payout(w, outcome)
            done = (
                sb.table("side_bet_wagers")
                .update({"is_resolved": True, "payout": payout, "resolved_at": stamp})
                .eq("id", w["id"])
                .eq("is_resolved", False)
                .execute()
                .data
            )
            if not done:
                continue
            if payout:
                try:
                    adjust_points(
                        w["user_id"], payout, "payout",
                        f"Payout for side bet '{title}'", reference_id=w["id"],
                    )
                except APIError as e:
                    safe_print(f"⚠️ Payout for wager {w['id']} failed ({e.message}), leaving it open")
                    reopen_row("side_bet_wagers", w["id"])
                    summary["skipped"] += 1
                    continue
            summary["settled"] += 1
            summary["paid_out"] += payout
            summary["won" if outcome == betting.WON else "lost"] += 1
    except Exception:
        reopen_side_bet(side_bet["id"])
        raise

    if summary["skipped"]:
        # Stay open so resolving again pays the wagers left behind
        reopen_side_bet(side_bet["id"])
        message = "Side bet partially resolved, some payouts failed"
    else:
        message = "Side bet resolved"

    return jsonify({"message": message, "side_bet_id": side_bet["id"], "option_id": option["id"], **summary}), 200


# --------------------------------------------------------
# --------------------- IOU endpoints  -------------------
# --------------------------------------------------------

def fetch_iou(iou_id):
    if not is_uuid(iou_id):
        return None
    return first_row(
        get_supabase().table("ious").select("*").eq("id", iou_id).limit(1).execute().data
    )


@app.route("/api/ious", methods=["GET"])
@require_auth
def list_ious():
    user_id = request.user["user_id"]
    sb = get_supabase()
    try:
        owed = sb.table("ious").select("*").eq("from_user_id", user_id).execute().data or []
        owing = sb.table("ious").select("*").eq("to_user_id", user_id).execute().data or []

        user_ids = {i["from_user_id"] for i in owed + owing} | {i["to_user_id"] for i in owed + owing}
        names = {}
        if user_ids:
            users = sb.table("users").select("id, name").in_("id", list(user_ids)).execute().data or []
            names = {u["id"]: u.get("name") for u in users}
    except Exception as e:
        safe_print("🔴 DB error in /api/ious (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    merged = {i["id"]: i for i in owed + owing}
    rows = sorted(merged.values(), key=lambda i: i.get("created_at") or "", reverse=True)

    return jsonify([
        {
            **i,
            "from_name": names.get(i["from_user_id"]),
            "to_name": names.get(i["to_user_id"]),
            "direction": "you_owe" if i["from_user_id"] == user_id else "owed_to_you",
        }
        for i in rows
    ]), 200


@app.route("/api/ious", methods=["POST"])
@require_auth
def create_iou():
    data = json_body()
    user_id = request.user["user_id"]
    to_user_id = data.get("to_user_id")
    amount = betting.parse_points(data.get("amount"))
    description = (data.get("description") or "").strip()

    if not is_uuid(to_user_id):
        return jsonify({"error": "Invalid recipient"}), 400
    if str(to_user_id) == str(user_id):
        return jsonify({"error": "You cannot owe yourself"}), 400
    if amount is None:
        return jsonify({"error": "Amount must be a positive whole number of points"}), 400

    sb = get_supabase()
    target = sb.table("users").select("id").eq("id", to_user_id).limit(1).execute().data
    if not target:
        return jsonify({"error": "Recipient not found"}), 404

    iou = first_row(
        sb.table("ious")
        .insert({
            "from_user_id": user_id,
            "to_user_id": to_user_id,
            "amount": amount,
            "description": description,
            "is_paid": False,
            "is_cancelled": False,
            "created_at": now_iso(),
        })
        .execute()
        .data
    )
    return jsonify({"message": "IOU created", "iou": iou}), 201


@app.route("/api/ious/<iou_id>/pay", methods=["POST"])
@require_auth
def pay_iou(iou_id):
    user_id = request.user["user_id"]
    iou = fetch_iou(iou_id)
    if not iou:
        return jsonify({"error": "IOU not found"}), 404

    if iou["from_user_id"] != user_id and not is_admin(user_id):
        return jsonify({"error": "Only the debtor or an admin can pay this IOU"}), 403

    if iou.get("is_paid") or iou.get("is_cancelled"):
        return jsonify({"error": "IOU is already settled"}), 400

    sb = get_supabase()
    claimed = (
        sb.table("ious")
        .update({"is_paid": True, "paid_at": now_iso()})
        .eq("id", iou["id"])
        .eq("is_paid", False)
        .eq("is_cancelled", False)
        .execute()
        .data
    )
    if not claimed:
        return jsonify({"error": "IOU is already settled"}), 409

    amount = iou["amount"]
    note = iou.get("description") or "IOU"

    def unclaim():
        sb.table("ious").update({"is_paid": False, "paid_at": None}).eq("id", iou["id"]).execute()

    try:
        adjust_points(iou["from_user_id"], -amount, "iou", f"Paid IOU: {note}", reference_id=iou["id"])
    except Exception:
        unclaim()
        raise

    try:
        adjust_points(iou["to_user_id"], amount, "iou", f"Received IOU: {note}", reference_id=iou["id"])
    except Exception as e:
        safe_print("🔴 IOU credit failed, refunding debtor (class):", type(e).__name__)
        adjust_points(iou["from_user_id"], amount, "refund", f"Refund for unpaid IOU: {note}", reference_id=iou["id"])
        unclaim()
        raise

    return jsonify({"message": "IOU paid", "iou_id": iou["id"], "amount": amount}), 200


@app.route("/api/ious/<iou_id>/cancel", methods=["POST"])
@require_auth
def cancel_iou(iou_id):
    user_id = request.user["user_id"]
    iou = fetch_iou(iou_id)
    if not iou:
        return jsonify({"error": "IOU not found"}), 404

    if iou["to_user_id"] != user_id and not is_admin(user_id):
        return jsonify({"error": "Only the creditor or an admin can cancel this IOU"}), 403

    if iou.get("is_paid") or iou.get("is_cancelled"):
        return jsonify({"error": "IOU is already settled"}), 400

    cancelled = (
        get_supabase().table("ious")
        .update({"is_cancelled": True})
        .eq("id", iou["id"])
        .eq("is_paid", False)
        .eq("is_cancelled", False)
        .execute()
        .data
    )
    if not cancelled:
        return jsonify({"error": "IOU is already settled"}), 409
    return jsonify({"message": "IOU cancelled", "iou_id": iou["id"]}), 200


# --------------------------------------------------------
# ------------ Redemption challenge endpoints  -----------
# --------------------------------------------------------

@app.route("/api/redemption-challenges", methods=["GET"])
def list_redemption_challenges():
    try:
        rows = (
            get_supabase().table("redemption_challenges")
            .select("*")
            .order("created_at", desc=True)
            .execute()
            .data
        ) or []
        by_id = champions_by_id()
    except Exception as e:
        safe_print("🔴 DB error in /api/redemption-challenges (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    return jsonify([
        {**r, "champion_name": (by_id.get(r.get("champion_id")) or {}).get("name")}
        for r in rows
    ]), 200


@app.route("/api/admin/champions/<champion_id>/redemption", methods=["POST"])
@require_admin
def create_redemption_challenge(champion_id):
    data = json_body()
    description = (data.get("description") or "").strip()

    champion = fetch_champion(champion_id)
    if not champion:
        return jsonify({"error": "Champion not found"}), 404
    if not champion.get("is_eliminated"):
        return jsonify({"error": "Only eliminated champions can get a redemption chance"}), 400
    if champion.get("has_redemption_chance"):
        return jsonify({"error": "Champion already has a pending redemption challenge"}), 400
    if not description:
        return jsonify({"error": "Description is required"}), 400

    sb = get_supabase()
    stamp = now_iso()
    challenge = first_row(
        sb.table("redemption_challenges")
        .insert({
            "champion_id": champion["id"],
            "description": description,
            "is_completed": False,
            "succeeded": None,
            "created_at": stamp,
        })
        .execute()
        .data
    )
    sb.table("champions").update({"has_redemption_chance": True, "updated_at": stamp}).eq("id", champion["id"]).execute()

    return jsonify({"message": "Redemption challenge created", "challenge": challenge}), 201


@app.route("/api/admin/redemption-challenges/<challenge_id>/complete", methods=["POST"])
@require_admin
def complete_redemption_challenge(challenge_id):
    if not is_uuid(challenge_id):
        return jsonify({"error": "Invalid challenge id"}), 400

    data = json_body()
    succeeded = betting.parse_bool(data.get("succeeded"))
    if succeeded is None:
        return jsonify({"error": "succeeded must be true or false"}), 400

    sb = get_supabase()
    challenge = first_row(
        sb.table("redemption_challenges").select("*").eq("id", challenge_id).limit(1).execute().data
    )
    if not challenge:
        return jsonify({"error": "Challenge not found"}), 404
    if challenge.get("is_completed"):
        return jsonify({"error": "Challenge already completed"}), 400

    stamp = now_iso()
    claimed = (
        sb.table("redemption_challenges")
        .update({"is_completed": True, "succeeded": succeeded, "completed_at": stamp})
        .eq("id", challenge["id"])
        .eq("is_completed", False)
        .execute()
        .data
    )
    if not claimed:
        return jsonify({"error": "Challenge already completed"}), 409

    champion_fields = {"has_redemption_chance": False, "updated_at": stamp}
    if succeeded:
        champion_fields.update({"is_redeemed": True, "is_eliminated": False})
    sb.table("champions").update(champion_fields).eq("id", challenge["champion_id"]).execute()

    return jsonify({
        "message": "Champion redeemed" if succeeded else "Redemption failed",
        "challenge_id": challenge["id"],
        "champion_id": challenge["champion_id"],
        "succeeded": succeeded,
    }), 200


# --------------------------------------------------------
# ----------------- User admin endpoints  ----------------
# --------------------------------------------------------

@app.route("/api/admin/users", methods=["GET"])
@require_admin
def admin_list_users():
    sb = get_supabase()
    try:
        users = sb.table("users").select("*").order("created_at", desc=True).execute().data or []
        admin_ids = {a["id"] for a in (sb.table("admin_users").select("id").execute().data or [])}
    except Exception as e:
        safe_print("🔴 DB error in /api/admin/users (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    return jsonify([profile_view(u, u["id"] in admin_ids) for u in users]), 200


@app.route("/api/admin/users/<user_id>/admin", methods=["POST"])
@require_admin
def toggle_admin_status(user_id):
    if not is_uuid(user_id):
        return jsonify({"error": "Invalid user id"}), 400

    sb = get_supabase()
    target = first_row(sb.table("users").select("id, email").eq("id", user_id).limit(1).execute().data)
    if not target:
        return jsonify({"error": "User not found"}), 404

    was_admin = is_admin(user_id)
    if was_admin and str(user_id) == str(request.user["user_id"]):
        return jsonify({"error": "You cannot remove your own admin status"}), 400

    try:
        if was_admin:
            sb.table("admin_users").delete().eq("id", user_id).execute()
            sb.table("users").update({"role": "member", "updated_at": now_iso()}).eq("id", user_id).execute()
        else:
            sb.table("admin_users").insert({"id": user_id}).execute()
            sb.table("users").update({"role": "admin", "updated_at": now_iso()}).eq("id", user_id).execute()
    except Exception as e:
        safe_print("🔴 Error toggling admin status (class):", type(e).__name__)
        return jsonify({"error": "Failed to update admin status"}), 500

    verb = "removed from" if was_admin else "granted to"
    return jsonify({
        "message": f"Admin status {verb} {target.get('email')}",
        "user_id": user_id,
        "is_admin": not was_admin,
    }), 200


@app.route("/api/admin/users/<user_id>", methods=["DELETE"])
@require_admin
def admin_delete_user(user_id):
    if not is_uuid(user_id):
        return jsonify({"error": "Invalid user id"}), 400
    if str(user_id) == str(request.user["user_id"]):
        return jsonify({"error": "You cannot delete your own account"}), 400

    sb = get_supabase()
    target = first_row(sb.table("users").select("id, email").eq("id", user_id).limit(1).execute().data)
    if not target:
        return jsonify({"error": "User not found"}), 404

    open_positions = (
        sb.table("bets").select("id").eq("user_id", user_id).eq("is_resolved", False).limit(1).execute().data
        or sb.table("side_bet_wagers").select("id").eq("user_id", user_id).eq("is_resolved", False).limit(1).execute().data
        or [
            i for i in (
                (sb.table("ious").select("*").eq("from_user_id", user_id).execute().data or [])
                + (sb.table("ious").select("*").eq("to_user_id", user_id).execute().data or [])
            )
            if not i.get("is_paid") and not i.get("is_cancelled")
        ]
    )
    if open_positions:
        return jsonify({
            "error": "User still has open bets, wagers or IOUs. Settle or cancel them first."
        }), 400

    try:
        sb.table("admin_users").delete().eq("id", user_id).execute()
        sb.table("users").delete().eq("id", user_id).execute()
    except Exception as e:
        safe_print("🔴 Error deleting user row (class):", type(e).__name__)
        return jsonify({"error": "Failed to delete user"}), 500

    try:
        sb.auth.admin.delete_user(user_id)
    except Exception as e:
        safe_print("🔴 Error deleting auth account (class):", type(e).__name__)
        return jsonify({"error": "User profile deleted, but the auth account could not be removed"}), 500

    return jsonify({"message": "User deleted successfully", "user_id": user_id}), 200


@app.route("/api/admin/stats", methods=["GET"])
@require_admin
def admin_stats():
    sb = get_supabase()

    def count_of(res):
        count = getattr(res, "count", None)
        return count if count is not None else len(res.data or [])

    try:
        users_res = sb.table("users").select("id, points", count="exact").execute()
        champions = sb.table("champions").select("id, is_eliminated").execute().data or []
        bets_res = sb.table("bets").select("id", count="exact").execute()
        open_res = sb.table("bets").select("id", count="exact").eq("is_resolved", False).execute()
        tx_res = sb.table("transactions").select("id", count="exact").execute()
    except Exception as e:
        safe_print("🔴 Error fetching stats (class):", type(e).__name__)
        return jsonify({"error": "Database error"}), 500

    return jsonify({
        "total_users": count_of(users_res),
        "total_champions": len(champions),
        "active_champions": len([c for c in champions if not c.get("is_eliminated")]),
        "total_bets": count_of(bets_res),
        "open_bets": count_of(open_res),
        "total_transactions": count_of(tx_res),
        "total_points": sum((u.get("points") or 0) for u in (users_res.data or [])),
    }), 200


@app.route("/api/leaderboard", methods=["GET"])
def leaderboard():
    try:
        rows = (
            get_supabase().table("users")
            .select("id, name, points, role")
            .order("points", desc=True)
            .execute()
            .data
        ) or []
    except Exception as e:
        safe_print("🔴 Error in /api/leaderboard (class):", type(e).__name__)
        return jsonify({"error": "Error loading leaderboard."}), 500

    return jsonify([
        {
            "rank": idx,
            "id": u["id"],
            "name": u.get("name"),
            "points": u.get("points") or 0,
            "role": u.get("role") or "member",
        }
        for idx, u in enumerate(rows, start=1)
    ]), 200


# --------------------------------------------------------
# ------------------- Front end build  -------------------
# --------------------------------------------------------

@app.route("/", defaults={"path": ""}, methods=["GET"])
@app.route("/<path:path>", methods=["GET"])
def serve_frontend(path):
    """
    Production: serve the built front end, falling back to index.html so
    client-side routes (/bets, /admin, ...) load the app.
    """
    if path.startswith("api/"):
        return jsonify({"error": "Not found"}), 404

    if FLASK_ENV != "production":
        if not path:
            return jsonify({"message": "PolyDan backend running"}), 200
        return jsonify({"error": "Not found"}), 404

    if path and os.path.isfile(os.path.join(FRONTEND_BUILD_DIR, path)):
        return send_from_directory(FRONTEND_BUILD_DIR, path)

    if not os.path.isfile(os.path.join(FRONTEND_BUILD_DIR, "index.html")):
        return jsonify({"error": "Front end build not found"}), 404

    return send_from_directory(FRONTEND_BUILD_DIR, "index.html")


# --------------------------------------------------------
# --------------------- M  A  I  N  ----------------------
# --------------------------------------------------------

if __name__ == "__main__":
    # Use FLASK_DEBUG=1 in your local env if you want debug mode
    debug_mode = os.getenv("FLASK_DEBUG", "0") == "1"
    safe_print(f"Server listening on port {PORT}")
    app.run(host="0.0.0.0", port=PORT, debug=debug_mode)
