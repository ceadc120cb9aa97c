# auth.py
# -----------------------------------------------------------------------------
# Sign-in / sign-up / Google / role choice.
# - Email+password and sign-up go straight to Supabase Auth
# - Google: Authlib does the OAuth dance, the ID token is exchanged for a
#   Supabase session so every account lives in auth.users
# - First login without a profile role -> /auth/role ("Saya Guru" / "Saya Siswa")
# -----------------------------------------------------------------------------

import random
import re
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from flask import (
    Blueprint, request, redirect, url_for, session, flash, render_template, abort
)

ROLES = ("guru", "siswa")
USERNAME_MAX = 15
USERNAME_TRIES = 5
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# -----------------------------------------------------------------------------
# Role resolution (pure helpers; fetch/execute injected)
# -----------------------------------------------------------------------------
def load_profile(fetch_one: Callable, user_id: str) -> Optional[Dict[str, Any]]:
    return fetch_one("""
        SELECT id, email, username, role, teacher_id, created_at
          FROM public.profiles
         WHERE id = %s;
    """, (user_id,))


def base_username(display_name: Optional[str], now: Optional[float] = None) -> str:
    raw = re.sub(r"\s", "", (display_name or "").lower())
    if not raw:
        raw = f"user{int((now or time.time()) * 1000)}"
    return raw[:USERNAME_MAX]


def unique_username(fetch_one: Callable, base: str,
                    rand: Optional[Callable[[int, int], int]] = None) -> str:
    rand = rand or random.randint
    candidate = base
    for _ in range(USERNAME_TRIES):
        taken = fetch_one("SELECT id FROM public.profiles WHERE username = %s;", (candidate,))
        if not taken:
            return candidate
        candidate = f"{base[:10]}{rand(1000, 9999)}"
    raise RuntimeError("Gagal membuat username unik.")


def assign_role(fetch_one: Callable, execute_returning: Callable,
                user: Dict[str, Any], role: str) -> Dict[str, Any]:
    """Create the profile row (with a fresh username) or set the role on it."""
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    profile = load_profile(fetch_one, user["id"])
    if profile is None:
        username = unique_username(fetch_one, base_username(user.get("display_name")))
        rows = execute_returning("""
            INSERT INTO public.profiles (id, email, username, role)
            VALUES (%s, %s, %s, %s)
            RETURNING id, email, username, role, teacher_id, created_at;
        """, (user["id"], user.get("email"), username, role))
    else:
        rows = execute_returning("""
            UPDATE public.profiles SET role = %s
             WHERE id = %s
            RETURNING id, email, username, role, teacher_id, created_at;
        """, (role, user["id"]))
    if not rows:
        raise RuntimeError("Profil tidak dapat disimpan.")
    return rows[0]


def home_endpoint_for(role: Optional[str]) -> str:
    if role == "guru":
        return "guru.dashboard"
    if role == "siswa":
        return "siswa.dashboard"
    return "auth.choose_role"


# -----------------------------------------------------------------------------
# Blueprint
# -----------------------------------------------------------------------------
def create_auth_blueprint(base_path: str, deps: Dict[str, Any], name: str = "auth") -> Blueprint:
    """
    Required deps: fetch_one, execute_returning, sign_in_with_password, sign_up
    Optional deps: sign_in_with_id_token, oauth (Authlib registry with 'google')
    """
    bp = Blueprint(name, __name__, url_prefix=base_path or None)

    fetch_one: Callable = deps["fetch_one"]
    execute_returning: Callable = deps["execute_returning"]
    sign_in_with_password: Callable = deps["sign_in_with_password"]
    sign_up: Callable = deps["sign_up"]
    sign_in_with_id_token: Optional[Callable] = deps.get("sign_in_with_id_token")
    oauth = deps.get("oauth")
    redirect_base: str = (deps.get("oauth_redirect_base") or "").rstrip("/")

    def _sanitize_next(next_url: Optional[str]) -> Optional[str]:
        if not next_url:
            return None
        parts = urlsplit(next_url)
        if parts.scheme or parts.netloc:
            return None
        path = parts.path or "/"
        if "/login" in path or "/auth" in path or "/signup" in path:
            return None
        return urlunsplit(("", "", path, parts.query, "")) or None

    def _establish(user: Dict[str, Any]):
        session.clear()
        session["user"] = {
            "id": user["id"],
            "email": user.get("email"),
            "display_name": user.get("display_name"),
            "avatar_url": user.get("avatar_url"),
        }

    def _after_sign_in():
        user = session["user"]
        try:
            profile = load_profile(fetch_one, user["id"])
        except Exception as e:
            print(f"[auth] profile lookup failed for {user.get('email')}: {e}")
            session.clear()
            flash(f"Terjadi masalah saat memuat profil Anda: {e}. Anda akan dikeluarkan.", "error")
            return redirect(url_for(f"{bp.name}.login"))
        if not profile or profile.get("role") not in ROLES:
            return redirect(url_for(f"{bp.name}.choose_role"))
        nxt = _sanitize_next(session.pop("login_next", None))
        return redirect(nxt or url_for(home_endpoint_for(profile["role"])))

    def _callback_url() -> str:
        if redirect_base:
            if redirect_base.endswith("/auth/google/callback"):
                return redirect_base
            return redirect_base + "/auth/google/callback"
        return url_for(f"{bp.name}.google_callback", _external=True)

    # ---- email / password ----------------------------------------------------
    @bp.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "GET":
            nxt = _sanitize_next(request.args.get("next"))
            if nxt:
                session["login_next"] = nxt
            return render_template("auth/login.html", google_enabled=oauth is not None)

        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        if not email or not password:
            flash("Email dan kata sandi harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.login"))
        nxt = session.get("login_next")
        try:
            user = sign_in_with_password(email, password)
        except Exception as e:
            print(f"[auth] password sign-in failed for {email}: {e}")
            flash(f"Gagal masuk: {getattr(e, 'message', None) or e}", "error")
            return redirect(url_for(f"{bp.name}.login"))
        _establish(user)
        if nxt:
            session["login_next"] = nxt
        return _after_sign_in()

    @bp.route("/signup", methods=["GET", "POST"])
    def signup():
        if request.method == "GET":
            return render_template("auth/signup.html", google_enabled=oauth is not None)

        display_name = (request.form.get("display_name") or "").strip()
        email = (request.form.get("email") or "").strip().lower()
        password = request.form.get("password") or ""
        if not display_name or not EMAIL_RE.match(email) or len(password) < 6:
            flash("Nama, email yang valid, dan kata sandi (min. 6 karakter) harus diisi.", "error")
            return redirect(url_for(f"{bp.name}.signup"))
        try:
            sign_up(email, password, display_name,
                    url_for(f"{bp.name}.verification_success", _external=True))
        except Exception as e:
            print(f"[auth] sign-up failed for {email}: {e}")
            flash(f"Gagal mendaftar: {getattr(e, 'message', None) or e}", "error")
            return redirect(url_for(f"{bp.name}.signup"))
        flash("Pendaftaran berhasil! Silakan periksa email Anda untuk verifikasi.", "success")
        return redirect(url_for(f"{bp.name}.login"))

    @bp.get("/verification-success")
    def verification_success():
        return render_template("auth/verified.html")

    # ---- Google --------------------------------------------------------------
    @bp.get("/auth/google")
    def google_login():
        if oauth is None or sign_in_with_id_token is None:
            abort(503, description="Google sign-in is not configured.")
        return oauth.google.authorize_redirect(_callback_url())

    @bp.get("/auth/google/callback")
    def google_callback():
        if oauth is None or sign_in_with_id_token is None:
            abort(503, description="Google sign-in is not configured.")
        try:
            token = oauth.google.authorize_access_token()
            id_token = (token or {}).get("id_token")
            if not id_token:
                raise RuntimeError("Google did not return an ID token.")
            user = sign_in_with_id_token("google", id_token)
        except Exception as e:
            print(f"[auth] google sign-in failed: {e}")
            flash(f"Error Login Google: {e}", "error")
            return redirect(url_for(f"{bp.name}.login"))
        nxt = session.get("login_next")
        _establish(user)
        if nxt:
            session["login_next"] = nxt
        return _after_sign_in()

    # ---- role choice ---------------------------------------------------------
    @bp.route("/auth/role", methods=["GET", "POST"])
    def choose_role():
        user = session.get("user")
        if not user:
            return redirect(url_for(f"{bp.name}.login"))
        try:
            existing = load_profile(fetch_one, user["id"])
        except Exception as e:
            print(f"[auth] profile lookup failed for {user.get('email')}: {e}")
            session.clear()
            flash(f"Terjadi masalah saat memuat profil Anda: {e}. Anda akan dikeluarkan.", "error")
            return redirect(url_for(f"{bp.name}.login"))
        # A role is chosen once; later requests go straight to its workspace
        if existing and existing.get("role") in ROLES:
            return redirect(url_for(home_endpoint_for(existing["role"])))
        if request.method == "GET":
            return render_template("auth/choose_role.html")

        choice = (request.form.get("role") or "").strip().lower()
        if choice not in ROLES:
            # Dismissing the dialog signs the user out
            session.clear()
            flash("Anda harus memilih peran untuk melanjutkan.", "info")
            return redirect(url_for(f"{bp.name}.login"))
        try:
            profile = assign_role(fetch_one, execute_returning, user, choice)
        except Exception as e:
            print(f"[auth] role assignment failed for {user.get('email')}: {e}")
            session.clear()
            flash(f"Terjadi masalah saat memuat profil Anda: {e}. Anda akan dikeluarkan.", "error")
            return redirect(url_for(f"{bp.name}.login"))
        print(f"[auth] {user.get('email')} registered as {profile['role']}")
        return redirect(url_for(home_endpoint_for(profile["role"])))

    @bp.route("/logout", methods=["GET", "POST"])
    def logout():
        session.clear()
        flash("Anda telah keluar.", "success")
        return redirect(url_for(f"{bp.name}.login"))

    return bp

