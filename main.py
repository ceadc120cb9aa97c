# main.py — Matiku LMS, BASE_PATH-aware (Supabase Postgres via psycopg3 pool + Supabase Auth/Storage)
# Teachers ("guru") and their students ("siswa"); every request carries the
# signed-in user's role from public.profiles.

import os
import re
from functools import lru_cache
from typing import Optional
from urllib.parse import quote

from flask import Flask, redirect, request, session, url_for, g, flash
from markupsafe import Markup, escape

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from ai_client import AIClient
from backend import Backend
from exam_session import SessionRegistry, format_clock

# Blueprints
from auth import ROLES, create_auth_blueprint, home_endpoint_for, load_profile
from classroom import create_classroom_blueprint
from assessment import create_assessment_blueprint
from exam import create_exam_blueprint, create_exam_admin_blueprint
from student import create_student_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
STATIC_URL_PATH = (BASE_PATH + "/static") if BASE_PATH else "/static"

app = Flask(
    __name__,
    static_folder="static",
    static_url_path=STATIC_URL_PATH,
    template_folder="templates",
)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
    MAX_CONTENT_LENGTH=int(os.getenv("MAX_UPLOAD_MB") or 50) * 1024 * 1024,
)

AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}
CHAT_HISTORY_LIMIT = int(os.getenv("CHAT_HISTORY_LIMIT") or 20)
AVATAR_MAX_MB = float(os.getenv("AVATAR_MAX_MB") or 5)

# =============================================================================
# OAuth (Google) — supports base or full callback in OAUTH_REDIRECT_BASE
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

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
    print("[auth] Google OAuth not configured; email/password sign-in only.", flush=True)


def _bp(path: str = "") -> str:
    """Prefix a path with BASE_PATH (if set)."""
    p = path or "/"
    if not p.startswith("/"):
        p = "/" + p
    if BASE_PATH and (p == BASE_PATH or p.startswith(BASE_PATH + "/")):
        return p
    return (BASE_PATH + p) if BASE_PATH else p

# =============================================================================
# Collaborators
# =============================================================================
backend = Backend.from_env()
ai = AIClient.from_env()
exam_sessions = SessionRegistry()
app.extensions["exam_sessions"] = exam_sessions


def notify(teacher_id: Optional[str], message: str):
    """Append a teacher notification; failures are logged, never raised."""
    if not teacher_id:
        return
    try:
        backend.execute("""
            INSERT INTO public.notifications (teacher_id, message, read)
            VALUES (%s, %s, FALSE);
        """, (teacher_id, message))
    except Exception as e:
        print(f"[notify] insert failed for {teacher_id}: {e}")

# =============================================================================
# Rendering helpers (Markdown for AI replies)
# =============================================================================
ALLOW_RAW_HTML = os.getenv("ALLOW_RAW_HTML", "0").lower() in {"1", "true", "yes"}
SANITIZE_HTML = os.getenv("SANITIZE_HTML", "1").lower() in {"1", "true", "yes"}

BLEACH_ALLOWED_TAGS = [
    "a", "b", "blockquote", "code", "em", "i", "li", "ol", "strong", "ul",
    "p", "h1", "h2", "h3", "h4", "h5", "h6", "pre", "hr", "br", "span",
    "table", "thead", "tbody", "tr", "th", "td",
]
BLEACH_ALLOWED_ATTRS = {
    "*": ["class"],
    "a": ["href", "title", "rel"],
}
BLEACH_ALLOWED_PROTOCOLS = ["http", "https", "mailto"]

_HTML_PATTERN = re.compile(r"</?\w+[^>]*>")


def _sanitize_if_enabled(html: str) -> str:
    if not SANITIZE_HTML:
        return html
    import bleach
    return bleach.clean(
        html,
        tags=BLEACH_ALLOWED_TAGS,
        attributes=BLEACH_ALLOWED_ATTRS,
        protocols=BLEACH_ALLOWED_PROTOCOLS,
        strip=True,
    )


@lru_cache(maxsize=512)
def _render_rich_cached(text: str, allow_raw: bool, sanitize_flag: bool) -> str:
    if not text:
        return ""
    if not allow_raw and _HTML_PATTERN.search(text):
        text = str(escape(text))
    try:
        import markdown

        html = markdown.markdown(
            text,
            extensions=["fenced_code", "tables", "sane_lists"],
            output_format="html5",
        )
    except ImportError:
        html = "<p>" + escape(text).replace("\n\n", "</p><p>").replace("\n", "<br/>") + "</p>"
        return str(html)
    return _sanitize_if_enabled(html)


def render_rich(text: Optional[str]) -> Markup:
    if text is None:
        return Markup("")
    text_str = text if isinstance(text, str) else str(text)
    return Markup(_render_rich_cached(text_str, ALLOW_RAW_HTML, SANITIZE_HTML))


app.jinja_env.filters["rich"] = render_rich
app.jinja_env.filters["clock"] = format_clock

# =============================================================================
# Jinja helpers
# =============================================================================
@app.context_processor
def inject_user_and_base():
    return {
        "current_user": session.get("user"),
        "current_role": getattr(g, "user_role", None),
        "base_path": BASE_PATH,
        "bp": _bp,
    }

# =============================================================================
# Identity
# =============================================================================
_PUBLIC_EXACT = {"/healthz", "/favicon.ico", "/login", "/signup", "/logout",
                 "/verification-success", "/auth/google", "/auth/google/callback", "/auth/role"}


def _is_public_path(path: str) -> bool:
    if path.startswith(STATIC_URL_PATH):
        return True
    if BASE_PATH and path.startswith(BASE_PATH):
        path = path[len(BASE_PATH):] or "/"
    return path.rstrip("/") in _PUBLIC_EXACT


@app.before_request
def enforce_or_attach_identity():
    if _is_public_path(request.path):
        return
    user = session.get("user")
    if not user:
        if AUTH_REQUIRED:
            full = request.full_path if request.query_string else request.path
            return redirect(f"{_bp('/login')}?next={quote(full, safe='/:?&=')}")
        return
    g.user_id = user["id"]
    g.user_email = user.get("email")
    try:
        profile = load_profile(backend.fetch_one, user["id"])
    except Exception as e:
        print(f"[auth] profile lookup failed for {user.get('email')}: {e}")
        session.clear()
        flash(f"Terjadi masalah saat memuat profil Anda: {e}. Anda akan dikeluarkan.", "error")
        return redirect(url_for("auth.login"))
    role = (profile or {}).get("role")
    if role not in ROLES:
        return redirect(url_for("auth.choose_role"))
    g.user_role = role

# =============================================================================
# Routes (health, landing)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = backend.fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)


@app.get("/favicon.ico")
def favicon():
    return ("", 204)


@app.get(_bp("/"))
def index():
    return redirect(url_for(home_endpoint_for(getattr(g, "user_role", None))))

# =============================================================================
# Blueprints
# =============================================================================
_deps = dict(backend.deps())
_deps.update({
    "ai": ai,
    "notify": notify,
    "bucket": backend.bucket,
    "registry": exam_sessions,
    "chat_history_limit": CHAT_HISTORY_LIMIT,
    "avatar_max_mb": AVATAR_MAX_MB,
    "oauth": oauth,
    "oauth_redirect_base": OAUTH_REDIRECT_BASE,
})

app.register_blueprint(create_auth_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_classroom_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_assessment_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_exam_admin_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_exam_blueprint(BASE_PATH, _deps))
app.register_blueprint(create_student_blueprint(BASE_PATH, _deps))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
