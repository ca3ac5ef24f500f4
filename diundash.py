"""
diundash - a small dashboard backend for Diun image update notifications.

Diun posts a webhook for every new or updated image it sees. Each notification
is upserted into a single SQLite table keyed by the image reference, so the
table always holds the latest known state per image:

  POST   /api/diun              webhook receiver (bearer token required)
  GET    /api/images            every tracked image, most recently updated first
  DELETE /api/images/<image>    forget an image (bearer token required)
  POST   /api/verify            check an API key before the UI stores it
  GET    /admin                 admin page from the static directory
  GET    /*                     static dashboard assets
"""

import os
import sys
import hmac
import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from functools import wraps

from flask import (
    Blueprint, Flask, Response, abort, current_app, jsonify, request,
    send_from_directory,
)
from werkzeug.security import safe_join

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

log = logging.getLogger("diundash")


def configure_logging(level_name: str):
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S", level=level)
    logging.getLogger().setLevel(level)
    # werkzeug logs every request at INFO; only show it when debugging
    logging.getLogger("werkzeug").setLevel(logging.NOTSET if level <= logging.DEBUG else logging.ERROR)


configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
API_KEY_VAR        = "DIUNDASH_API_KEY"
DEFAULT_ENV_FILE   = "./.env"
DEFAULT_DB_PATH    = "./data/diun.db"
DEFAULT_STATIC_DIR = "./static"
DEFAULT_HOST       = "0.0.0.0"
DEFAULT_PORT       = 5030

WEBHOOK_FIELDS = (
    "image", "created", "digest", "diun_version", "hostname", "hub_link",
    "mime_type", "platform", "provider", "status",
)

HELLO_FRAGMENT = """
        <h2>Hello, World! \U0001F30D</h2>
        <p>This response was loaded via HTMX!</p>
    """


class DiundashError(Exception):
    """Base class for errors raised by diundash."""


class ConfigError(DiundashError):
    pass


class StoreError(DiundashError):
    """A database operation failed. The message carries the sqlite detail."""


class PayloadError(DiundashError):
    """A webhook body is not a valid Diun notification."""


def read_env(path: str) -> dict:
    """Parse a dotenv-style file into a dict. A missing file yields {}."""
    env = {}
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                if line.startswith("export "):
                    line = line[len("export "):]
                k, v = line.split("=", 1)
                v = v.strip()
                if len(v) >= 2 and v[0] == v[-1] and v[0] in "\"'":
                    v = v[1:-1]
                env[k.strip()] = v
    except FileNotFoundError:
        log.debug("No env file at %s", path)
    return env


def load_env_file(path: str, environ=None) -> int:
    """Copy variables from ``path`` into the environment without overriding
    anything already set. Returns how many variables were applied."""
    environ = os.environ if environ is None else environ
    applied = 0
    for k, v in read_env(path).items():
        if k not in environ:
            environ[k] = v
            applied += 1
    return applied


def load_settings(environ=None) -> dict:
    environ = os.environ if environ is None else environ

    api_key = environ.get(API_KEY_VAR, "").strip()
    if not api_key:
        raise ConfigError(f"{API_KEY_VAR} environment variable must be set")

    port = environ.get("PORT", str(DEFAULT_PORT))
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"PORT must be an integer, got {port!r}") from None

    return {
        "api_key":    api_key,
        "db_path":    environ.get("DB_PATH", DEFAULT_DB_PATH),
        "static_dir": environ.get("STATIC_DIR", DEFAULT_STATIC_DIR),
        "host":       environ.get("HOST", DEFAULT_HOST),
        "port":       port,
        "log_level":  environ.get("LOG_LEVEL", "INFO").upper(),
    }


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecordStore:
    """The ``webhooks`` table behind one shared SQLite connection.

    The connection is used from every request thread, so each operation runs
    entirely under ``self._lock``, commit or rollback included.
    """

    def __init__(self, db_path: str, now=None):
        self.db_path = db_path
        self._now = now or _utc_now
        self._lock = threading.Lock()

        db_dir = os.path.dirname(os.path.abspath(db_path))
        try:
            os.makedirs(db_dir, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"cannot create data directory {db_dir}: {exc}") from exc

        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.execute("""CREATE TABLE IF NOT EXISTS webhooks (
                    image TEXT PRIMARY KEY,
                    created TEXT NOT NULL,
                    digest TEXT NOT NULL,
                    diun_version TEXT NOT NULL,
                    hostname TEXT NOT NULL,
                    hub_link TEXT NOT NULL,
                    metadata TEXT,
                    mime_type TEXT NOT NULL,
                    platform TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_at TEXT NOT NULL)""")
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open database {db_path}: {exc}") from exc
        log.debug("Database ready at %s", db_path)

    def _timestamp(self) -> str:
        return self._now().astimezone(timezone.utc).isoformat(timespec="microseconds")

    def upsert(self, record: dict) -> str:
        """Insert or fully replace the row for ``record["image"]``.

        ``record["metadata"]`` must already be JSON text or None. Returns the
        ``updated_at`` value written.
        """
        params = {k: record[k] for k in WEBHOOK_FIELDS}
        params["metadata"] = record.get("metadata")
        with self._lock:
            params["updated_at"] = self._timestamp()
            try:
                with self._conn:
                    self._conn.execute(
                        """INSERT INTO webhooks (
                            image, created, digest, diun_version, hostname, hub_link,
                            metadata, mime_type, platform, provider, status, updated_at
                        ) VALUES (
                            :image, :created, :digest, :diun_version, :hostname, :hub_link,
                            :metadata, :mime_type, :platform, :provider, :status, :updated_at
                        )
                        ON CONFLICT(image) DO UPDATE SET
                            created=excluded.created,
                            digest=excluded.digest,
                            diun_version=excluded.diun_version,
                            hostname=excluded.hostname,
                            hub_link=excluded.hub_link,
                            metadata=excluded.metadata,
                            mime_type=excluded.mime_type,
                            platform=excluded.platform,
                            provider=excluded.provider,
                            status=excluded.status,
                            updated_at=excluded.updated_at""",
                        params,
                    )
            except sqlite3.Error as exc:
                raise StoreError(f"upsert {params['image']}: {exc}") from exc
        return params["updated_at"]

    def list_all(self) -> list:
        with self._lock:
            try:
                rows = self._conn.execute(
                    """SELECT image, created, digest, diun_version, hostname, hub_link,
                              metadata, mime_type, platform, provider, status, updated_at
                       FROM webhooks ORDER BY updated_at DESC""").fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"list images: {exc}") from exc
        return [dict(r) for r in rows]

    def delete(self, image: str) -> int:
        """Remove ``image`` if present. Returns the number of rows deleted."""
        with self._lock:
            try:
                with self._conn:
                    cur = self._conn.execute("DELETE FROM webhooks WHERE image=?", (image,))
            except sqlite3.Error as exc:
                raise StoreError(f"delete {image}: {exc}") from exc
        return cur.rowcount

    def count(self) -> int:
        with self._lock:
            try:
                return self._conn.execute("SELECT COUNT(*) FROM webhooks").fetchone()[0]
            except sqlite3.Error as exc:
                raise StoreError(f"count images: {exc}") from exc

    def close(self):
        with self._lock:
            self._conn.close()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def bearer_token(header):
    if not header or not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):]


def token_matches(provided, secret: str) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


def require_api_key(view):
    """Reject the request with 401 unless it carries ``Bearer <api key>``."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        token = bearer_token(request.headers.get("Authorization"))
        if not token_matches(token, current_app.config[API_KEY_VAR]):
            log.warning("Rejected %s %s from %s: invalid or missing API key",
                        request.method, request.path, request.remote_addr)
            return _error("Invalid or missing API key", 401)
        return view(*args, **kwargs)
    return wrapper


# ---------------------------------------------------------------------------
# Webhook parsing
# ---------------------------------------------------------------------------

def parse_webhook(payload) -> dict:
    """Validate a Diun notification and return the record to store."""
    if not isinstance(payload, dict):
        raise PayloadError("Webhook body must be a JSON object")

    missing = [f for f in WEBHOOK_FIELDS if f not in payload]
    if missing:
        raise PayloadError(f"Missing required field(s): {', '.join(missing)}")
    wrong = [f for f in WEBHOOK_FIELDS if not isinstance(payload[f], str)]
    if wrong:
        raise PayloadError(f"Field(s) must be strings: {', '.join(wrong)}")

    record = {f: payload[f] for f in WEBHOOK_FIELDS}
    metadata = payload.get("metadata")
    record["metadata"] = json.dumps(metadata) if metadata is not None else None
    return record


def _log_webhook(record: dict):
    log.info("=== Diun webhook received ===")
    log.info("Image: %s | Status: %s | Digest: %s",
             record["image"], record["status"], record["digest"])
    log.info("Platform: %s | Provider: %s | Hostname: %s",
             record["platform"], record["provider"], record["hostname"])
    log.info("Created: %s | Diun version: %s | MIME type: %s",
             record["created"], record["diun_version"], record["mime_type"])
    if record["metadata"] is not None:
        log.info("Metadata: %s", record["metadata"])


# ---------------------------------------------------------------------------
# Flask routes
# ---------------------------------------------------------------------------
bp = Blueprint("diundash", __name__)


def get_store() -> RecordStore:
    return current_app.extensions["diundash_store"]


def _error(message: str, status: int):
    return jsonify({"status": "error", "message": message}), status


@bp.route("/api/hello")
def hello():
    return Response(HELLO_FRAGMENT, mimetype="text/html")


@bp.route("/api/diun", methods=["POST"])
@require_api_key
def diun_webhook():
    payload = request.get_json(silent=True)
    if payload is None:
        return _error("Invalid JSON body", 400)
    try:
        record = parse_webhook(payload)
    except PayloadError as exc:
        return _error(str(exc), 400)

    _log_webhook(record)
    try:
        get_store().upsert(record)
    except StoreError as exc:
        log.error("Database error: %s", exc)
        return _error("Failed to save webhook to database", 500)

    log.info("Saved %s to database", record["image"])
    return jsonify({"status": "received", "message": "Webhook processed and saved successfully"})


@bp.route("/api/verify", methods=["POST"])
def verify_api_key():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error("Invalid JSON body", 400)
    if "api_key" not in data:
        return _error("Missing API key", 400)
    if not isinstance(data["api_key"], str):
        return _error("Invalid API key format", 400)

    if token_matches(data["api_key"], current_app.config[API_KEY_VAR]):
        return jsonify({"status": "success", "message": "API key verified"})
    return _error("Invalid API key", 401)


@bp.route("/api/images")
def list_images():
    try:
        images = get_store().list_all()
    except StoreError as exc:
        log.error("Database error: %s", exc)
        return _error("Failed to retrieve images from database", 500)
    return jsonify({"status": "success", "count": len(images), "images": images})


@bp.route("/api/images/<path:image>", methods=["DELETE"])
@require_api_key
def delete_image(image):
    try:
        removed = get_store().delete(image)
    except StoreError as exc:
        log.error("Database error: %s", exc)
        return _error("Failed to delete image from database", 500)
    log.info("Deleted %s (%d row(s))", image, removed)
    return jsonify({"status": "success", "message": "Image deleted successfully"})


@bp.route("/admin")
def admin():
    path = os.path.join(current_app.config["STATIC_DIR"], "index.html")
    try:
        with open(path, encoding="utf-8") as f:
            content = f.read()
    except OSError:
        return Response("Admin page not found", status=404, mimetype="text/plain")
    return Response(content, mimetype="text/html")


@bp.route("/health")
def health():
    try:
        tracked = get_store().count()
    except StoreError as exc:
        log.error("Database error: %s", exc)
        return _error("Database unavailable", 500)
    return jsonify({"status": "ok", "images_tracked": tracked})


def resolve_static(static_dir: str, filename: str):
    """Map a request path onto a file under ``static_dir``.

    Directories resolve to their index.html. Returns the path relative to
    ``static_dir``, or None if it escapes the directory.
    """
    full = safe_join(static_dir, filename) if filename else static_dir
    if full is None:
        return None
    if os.path.isdir(full):
        return "/".join(p for p in (filename.strip("/"), "index.html") if p)
    return filename


@bp.route("/", defaults={"filename": ""})
@bp.route("/<path:filename>")
def static_files(filename):
    static_dir = current_app.config["STATIC_DIR"]
    relative = resolve_static(static_dir, filename)
    if relative is None:
        abort(404)
    return send_from_directory(static_dir, relative)


def create_app(api_key: str, store: RecordStore, static_dir: str = DEFAULT_STATIC_DIR) -> Flask:
    app = Flask(__name__, static_folder=None)
    app.config[API_KEY_VAR] = api_key
    app.config["STATIC_DIR"] = os.path.abspath(static_dir)
    app.extensions["diundash_store"] = store
    app.register_blueprint(bp)
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    env_file = os.environ.get("ENV_FILE_PATH", DEFAULT_ENV_FILE)
    applied = load_env_file(env_file)
    try:
        settings = load_settings()
    except ConfigError as exc:
        log.critical("%s", exc)
        sys.exit(1)
    configure_logging(settings["log_level"])

    log.info("=== diundash - Diun image update dashboard ===")
    if applied:
        log.info("Loaded %d variable(s) from %s", applied, env_file)
    try:
        store = RecordStore(settings["db_path"])
    except StoreError as exc:
        log.critical("Failed to initialize database: %s", exc)
        sys.exit(1)

    log.info("Database: %s | Static files: %s", settings["db_path"], settings["static_dir"])
    log.info("Listening on %s:%d", settings["host"], settings["port"])
    app = create_app(settings["api_key"], store, settings["static_dir"])
    try:
        app.run(host=settings["host"], port=settings["port"], debug=False, threaded=True)
    finally:
        store.close()


if __name__ == "__main__":
    main()
