# main.py: ScoreX attempt API (Flask + psycopg3 pool)
# Caller identity comes from the Flask session (Google login) or a trusted proxy header.

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, abort, request, redirect, g, session, jsonify

# Database (psycopg 3)
from psycopg import conninfo
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from exam import create_exam_blueprint
from attempt import create_attempt_blueprint
from feedback import generate_feedback
from stats import create_completion_recorder
from rate_limit import RateLimiter, MemoryRateLimitStore

# =============================================================================
# Config
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

DATABASE_URL = (os.getenv("DATABASE_URL") or "").strip()
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or 5432)
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS")
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")

# Header set by the identity-aware proxy in front of the service, "accounts.google.com:<email>"
PROXY_EMAIL_HEADER = "X-Goog-Authenticated-User-Email"

API_RATE_LIMIT = int(os.getenv("API_RATE_LIMIT") or 100)
API_RATE_WINDOW_SECONDS = int(os.getenv("API_RATE_WINDOW_SECONDS") or 60)

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)

# =============================================================================
# Database
# =============================================================================
def _conninfo() -> str:
    """DATABASE_URL when set, otherwise a conninfo built from the DB_* parts."""
    if DATABASE_URL:
        scheme, rest = DATABASE_URL.split("://", 1) if "://" in DATABASE_URL else ("", DATABASE_URL)
        # accept SQLAlchemy-style "postgresql+psycopg://"
        if scheme.startswith("postgres") and "+" in scheme:
            return "postgresql://" + rest
        return DATABASE_URL
    if not (DB_NAME and DB_USER):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME and DB_USER (plus DB_PASS/DB_HOST/DB_PORT).")
    print(f"[db] connecting to {DB_HOST}:{DB_PORT}/{DB_NAME}", flush=True)
    return conninfo.make_conninfo(
        host=DB_HOST, port=DB_PORT, dbname=DB_NAME, user=DB_USER,
        password=DB_PASS or "", connect_timeout=10, options="-c search_path=public",
    )

_pool: Optional[ConnectionPool] = None

def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        _pool = ConnectionPool(conninfo=_conninfo(), min_size=1, max_size=DB_POOL_MAX,
                               kwargs={"row_factory": dict_row})
    return _pool

@contextmanager
def _cursor(commit: bool):
    with _get_pool().connection() as conn:
        with conn.cursor() as cur:
            yield cur
        if commit:
            conn.commit()

def fetch_all(q, params=None):
    with _cursor(commit=False) as cur:
        cur.execute(q, params or ())
        return cur.fetchall()

def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with _cursor(commit=True) as cur:
        cur.execute(q, params or ())

def execute_returning(q, params=None):
    with _cursor(commit=True) as cur:
        cur.execute(q, params or ())
        return cur.fetchall()

# =============================================================================
# Identity
# =============================================================================
def _request_email() -> Optional[str]:
    email = (session.get("user") or {}).get("email")
    if not email:
        # "accounts.google.com:alice@example.com" -> "alice@example.com"
        email = (request.headers.get(PROXY_EMAIL_HEADER) or "").rpartition(":")[2]
    email = (email or "").strip().lower()
    return email or None

def _user_id_for(email: str) -> int:
    rows = execute_returning("""
        INSERT INTO public.users (email, name)
        VALUES (%s, %s)
        ON CONFLICT (email) DO UPDATE SET email = EXCLUDED.email
        RETURNING id;
    """, (email, email.split("@", 1)[0]))
    return rows[0]["id"]

@app.before_request
def attach_identity():
    email = _request_email()
    if email:
        # a failing lookup is a server error, not an anonymous caller
        g.user_email = email
        g.user_id = _user_id_for(email)

# =============================================================================
# Google login
# =============================================================================
oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
else:
    print("[auth] Google login not configured; proxy header identity only.", flush=True)

auth_bp = Blueprint("auth", __name__, url_prefix=(BASE_PATH or "") + "/auth")

def _local_path(target: Optional[str]) -> str:
    if target and target.startswith("/") and not target.startswith("//"):
        return target
    return BASE_PATH or "/"

@auth_bp.get("/login")
def login():
    if oauth is None:
        abort(503, description="Google login is not configured.")
    session["login_next"] = _local_path(request.args.get("next"))
    return oauth.google.authorize_redirect(request.url_root.rstrip("/") + (BASE_PATH or "") + "/auth/callback")

@auth_bp.get("/callback")
def auth_callback():
    if oauth is None:
        abort(503, description="Google login is not configured.")
    token = oauth.google.authorize_access_token()
    claims = token.get("userinfo") or oauth.google.userinfo() or {}
    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google login returned no email.")
    session["user"] = {"email": email, "name": claims.get("name")}
    print(f"[auth] signed in {email}", flush=True)
    return redirect(_local_path(session.pop("login_next", None)))

@auth_bp.post("/logout")
def logout():
    session.clear()
    return jsonify({"ok": True})

app.register_blueprint(auth_bp)

# =============================================================================
# Health + app-wide error replies
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
    except Exception as e:
        print(f"[db] health check failed: {e}", flush=True)
        return jsonify({"ok": False, "error": "database unavailable"}), 503
    return jsonify({"ok": bool(row and row.get("ok") == 1)})

@app.errorhandler(404)
def not_found(_e):
    return jsonify({"ok": False, "error": "Not found"}), 404

@app.errorhandler(500)
def server_error(_e):
    return jsonify({"ok": False, "error": "An unexpected error occurred."}), 500

# =============================================================================
# API blueprints
# =============================================================================
_db_deps: Dict[str, Any] = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
}

app.register_blueprint(create_exam_blueprint(BASE_PATH, _db_deps))
app.register_blueprint(create_attempt_blueprint(BASE_PATH, {
    **_db_deps,
    "generate_feedback": generate_feedback,
    "record_completion": create_completion_recorder(_db_deps),
    "rate_limiter": RateLimiter(API_RATE_LIMIT, API_RATE_WINDOW_SECONDS, store=MemoryRateLimitStore()),
}))

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
