# backend.py — hosted backend handle (Supabase Postgres + Auth + Storage)
# One Backend instance is built in main.py and its bound methods are handed to
# blueprints through their deps dicts; nothing else imports a global client.

import os
import re
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, parse_qs, unquote

from psycopg import conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

DEFAULT_BUCKET = "matiku_storage"


# =============================================================================
# Connection settings
# =============================================================================
def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break
    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    host = (qs.get("host") or [p.hostname])[0]
    if host:
        kwargs["host"] = host
    if p.port:
        kwargs["port"] = p.port
    # Supabase only accepts TLS connections
    kwargs["sslmode"] = (qs.get("sslmode") or ["require"])[0]
    return kwargs


def _tcp_kwargs() -> dict:
    name, user = os.getenv("DB_NAME"), os.getenv("DB_USER")
    password = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")
    if not all([name, user, password]):
        raise RuntimeError("DATABASE_URL or DB_NAME, DB_USER, DB_PASS must be set.")
    return {
        "host": os.getenv("DB_HOST") or "127.0.0.1",
        "port": int(os.getenv("DB_PORT") or "5432"),
        "dbname": name,
        "user": user,
        "password": password,
        "sslmode": os.getenv("DB_SSLMODE") or "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }


def connection_kwargs() -> dict:
    """DATABASE_URL_LOCAL (dev) > DATABASE_URL > discrete DB_* settings."""
    if os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}:
        print("[db] FORCE_TCP: using DB_* settings", flush=True)
        return _tcp_kwargs()
    for var in ("DATABASE_URL_LOCAL", "DATABASE_URL"):
        url = os.getenv(var)
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
            print(f"[db] Using {var} -> {kwargs.get('host', 'localhost')}:{kwargs.get('port', 5432)}", flush=True)
            return kwargs
        except Exception as e:
            print(f"[db] Ignoring {var}: {e}")
    return _tcp_kwargs()


def clean_storage_path(path: Any) -> str:
    if not isinstance(path, str):
        return ""
    p = path.strip().replace("\\", "/").lstrip("/")
    return re.sub(r"/{2,}", "/", p)


def safe_filename(name: Optional[str]) -> str:
    base = (name or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    base = re.sub(r"[^A-Za-z0-9._ -]+", "_", base)
    return base or f"file_{int(time.time())}"


# =============================================================================
# Backend
# =============================================================================
class Backend:
    def __init__(self, supabase_client: Any = None, pool_kwargs: Optional[dict] = None,
                 bucket: str = DEFAULT_BUCKET, max_pool_size: int = 6):
        self._sb = supabase_client
        self._pool_kwargs = pool_kwargs
        self._pool: Optional[ConnectionPool] = None
        self._max_pool_size = max_pool_size
        self.bucket = bucket

    @classmethod
    def from_env(cls) -> "Backend":
        url = (os.getenv("SUPABASE_URL") or "").strip()
        key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_KEY") or "").strip()
        client = None
        if url and key:
            from supabase import create_client
            client = create_client(url, key)
        else:
            print("[auth] SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not set; auth and storage disabled.", flush=True)
        return cls(client, bucket=os.getenv("SUPABASE_STORAGE_BUCKET") or DEFAULT_BUCKET)

    # ---- relational ----------------------------------------------------------
    def init_pool(self):
        if self._pool is not None:
            return
        kwargs = self._pool_kwargs or connection_kwargs()
        self._pool = ConnectionPool(conninfo.make_conninfo(**kwargs), min_size=1,
                                    max_size=self._max_pool_size, open=True)

    @contextmanager
    def connection(self):
        if self._pool is None:
            self.init_pool()
        with self._pool.connection() as conn:
            yield conn

    def fetch_all(self, q, params=None) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(q, params or ())
                return cur.fetchall()

    def fetch_one(self, q, params=None) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(q, params)
        return rows[0] if rows else None

    def execute(self, q, params=None):
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(q, params or ())
            conn.commit()

    def execute_returning(self, q, params=None) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(q, params or ())
                rows = cur.fetchall()
            conn.commit()
            return rows

    @contextmanager
    def transaction(self):
        """One connection, one commit. Yields run(q, params) -> rows; an
        exception inside the block rolls everything back."""
        with self.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                def run(q, params=None) -> List[Dict[str, Any]]:
                    cur.execute(q, params or ())
                    return cur.fetchall() if cur.description else []
                try:
                    yield run
                except Exception:
                    conn.rollback()
                    raise
            conn.commit()

    # ---- auth ----------------------------------------------------------------
    def _client(self):
        if self._sb is None:
            raise RuntimeError("Supabase is not configured.")
        return self._sb

    @staticmethod
    def _user_dict(res: Any) -> Dict[str, Any]:
        user = getattr(res, "user", None)
        if user is None:
            raise RuntimeError("Authentication failed.")
        session = getattr(res, "session", None)
        meta = getattr(user, "user_metadata", None) or {}
        return {
            "id": str(user.id),
            "email": (user.email or "").strip().lower(),
            "display_name": meta.get("display_name") or meta.get("full_name") or meta.get("name"),
            "avatar_url": meta.get("avatar_url"),
            "access_token": getattr(session, "access_token", None),
            "confirmed": bool(getattr(user, "email_confirmed_at", None) or getattr(user, "confirmed_at", None)),
        }

    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        res = self._client().auth.sign_in_with_password({"email": email, "password": password})
        return self._user_dict(res)

    def sign_up(self, email: str, password: str, display_name: str,
                redirect_to: Optional[str] = None) -> Dict[str, Any]:
        options: Dict[str, Any] = {"data": {"display_name": display_name}}
        if redirect_to:
            options["email_redirect_to"] = redirect_to
        res = self._client().auth.sign_up({"email": email, "password": password, "options": options})
        return self._user_dict(res)

    def sign_in_with_id_token(self, provider: str, id_token: str, nonce: Optional[str] = None) -> Dict[str, Any]:
        creds: Dict[str, Any] = {"provider": provider, "token": id_token}
        if nonce:
            creds["nonce"] = nonce
        res = self._client().auth.sign_in_with_id_token(creds)
        return self._user_dict(res)

    def update_user_metadata(self, user_id: str, data: Dict[str, Any]):
        self._client().auth.admin.update_user_by_id(user_id, {"user_metadata": data})

    # ---- storage -------------------------------------------------------------
    def _bucket(self):
        return self._client().storage.from_(self.bucket)

    def upload(self, path: str, data: bytes, content_type: str, upsert: bool = True) -> str:
        p = clean_storage_path(path)
        if not p:
            raise ValueError("Storage upload: empty path.")
        # Header values must be strings
        options = {"content-type": str(content_type or "application/octet-stream"),
                   "cache-control": "3600",
                   "upsert": "true" if upsert else "false"}
        self._bucket().upload(p, data, options)
        return p

    def public_url(self, path: str) -> str:
        url = self._bucket().get_public_url(clean_storage_path(path))
        return url.rstrip("?") if isinstance(url, str) else str(url)

    def remove(self, paths: List[str]):
        cleaned = [clean_storage_path(p) for p in paths if clean_storage_path(p)]
        if cleaned:
            self._bucket().remove(cleaned)

    def list_files(self, folder: str) -> List[Dict[str, Any]]:
        rows = self._bucket().list(clean_storage_path(folder), {
            "limit": 100,
            "offset": 0,
            "sortBy": {"column": "created_at", "order": "desc"},
        })
        out: List[Dict[str, Any]] = []
        for r in rows or []:
            name = r.get("name") if isinstance(r, dict) else getattr(r, "name", None)
            # Supabase lists a placeholder entry for empty folders
            if not name or name == ".emptyFolderPlaceholder":
                continue
            meta = (r.get("metadata") if isinstance(r, dict) else None) or {}
            out.append({
                "name": name,
                "size": int(meta.get("size") or 0),
                "mimetype": meta.get("mimetype"),
                "created_at": r.get("created_at") if isinstance(r, dict) else None,
            })
        return out

    def deps(self) -> Dict[str, Any]:
        """Callables handed to blueprint factories."""
        return {
            "fetch_one": self.fetch_one,
            "fetch_all": self.fetch_all,
            "execute": self.execute,
            "execute_returning": self.execute_returning,
            "transaction": self.transaction,
            "upload": self.upload,
            "public_url": self.public_url,
            "remove_files": self.remove,
            "list_files": self.list_files,
            "sign_in_with_password": self.sign_in_with_password,
            "sign_up": self.sign_up,
            "sign_in_with_id_token": self.sign_in_with_id_token,
            "update_user_metadata": self.update_user_metadata,
        }


def storage_path_from_url(url: Optional[str], bucket: str = DEFAULT_BUCKET) -> Optional[str]:
    """Object path inside the bucket for one of its public URLs."""
    if not url:
        return None
    marker = f"/{bucket}/"
    if marker not in url:
        return None
    return clean_storage_path(unquote(url.split(marker, 1)[1].split("?", 1)[0]))


def format_bytes(num: int, decimals: int = 2) -> str:
    if not num:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    size = float(num)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{round(size, max(0, decimals)):g} {units[i]}"
