import logging
import os
import threading
import uuid
from contextlib import contextmanager
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from flask import (
    Flask,
    Response,
    abort,
    current_app,
    g,
    has_request_context,
    jsonify,
    make_response,
    redirect,
    request,
    send_file,
)
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .auth import (
    AdminTokenStore,
    AuthError,
    UnauthorizedError,
    load_secret_key,
    resolve_admin_password_hash,
)
from .metadata import (
    add_url_link,
    create_folder,
    delete_entry,
    find_url_link,
    is_reserved_name,
    resolve_directory,
    save_raw_metadata,
    set_file_properties,
    set_folder_description,
    update_record,
)
from .storage import (
    BYTES_PER_MB,
    DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
    DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE,
    DEFAULT_MAX_UPLOAD_MB,
    FILES_DIR,
    LOGS_DIR,
    DirectoryDownloadError,
    EntryNotFoundError,
    InvalidRequestError,
    StorageError,
    StorageIOError,
    ensure_directories,
    get_config_mtime,
    load_config,
    resolve_storage_path,
    sanitize_log_value,
    save_upload,
    validate_filename,
)


LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
TOKEN_EXTENSION_KEY = "filehost.tokens"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONFIG_CACHE: Dict[str, Any] = load_config()
_CONFIG_CACHE_MTIME: float = get_config_mtime()
_config_lock = threading.RLock()


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()


def get_config(refresh: bool = False) -> Dict[str, Any]:
    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    with _config_lock:
        current_mtime = get_config_mtime()
        if refresh or current_mtime > _CONFIG_CACHE_MTIME:
            _CONFIG_CACHE = load_config()
            _CONFIG_CACHE_MTIME = current_mtime
        return _CONFIG_CACHE.copy()


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return max(1, fallback)
    return max(1, parsed)


def login_rate_limit_string() -> str:
    value = _coerce_positive_int(
        get_config().get("login_rate_limit_per_minute"), DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE
    )
    return f"{value} per minute"


def download_rate_limit_string() -> str:
    value = _coerce_positive_int(
        get_config().get("download_rate_limit_per_minute"),
        DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE,
    )
    return f"{value} per minute"


def metadata_sources() -> List[str]:
    return list(get_config().get("metadata_sources") or [])


app = Flask(__name__)

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=os.environ.get("FILEHOST_RATE_LIMIT_STORAGE", "memory://"),
)

app.config["MAX_CONTENT_LENGTH"] = int(
    _coerce_positive_int(_CONFIG_CACHE.get("max_upload_size_mb"), DEFAULT_MAX_UPLOAD_MB) * BYTES_PER_MB
)
app.config["SECRET_KEY"] = load_secret_key()
app.logger.setLevel(numeric_level)
app.extensions[TOKEN_EXTENSION_KEY] = AdminTokenStore(
    app.config["SECRET_KEY"], resolve_admin_password_hash(_CONFIG_CACHE)
)

_base_lifecycle_logger = logging.getLogger("filehost.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def token_store() -> AdminTokenStore:
    return current_app.extensions[TOKEN_EXTENSION_KEY]


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        stream = getattr(file_storage, "stream", None)
        if stream is not None:
            try:
                stream.close()
            except OSError as error:
                lifecycle_logger.warning(
                    "stream_close_failed filename=%s error=%s",
                    sanitize_log_value(file_storage.filename or ""),
                    sanitize_log_value(str(error)),
                )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.after_request
def add_cors_headers(response: Response):
    """Open the API to browser clients served from other origins."""

    response.headers["Access-Control-Allow-Origin"] = get_config().get("cors_allow_origin") or "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(StorageError)
def handle_storage_error(error: StorageError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed path=%s status=%d error=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.message),
        )
    else:
        lifecycle_logger.warning(
            "request_rejected path=%s status=%d error=%s",
            sanitize_log_value(request.path),
            error.status_code,
            sanitize_log_value(error.message),
        )
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(AuthError)
def handle_auth_error(error: AuthError):
    lifecycle_logger.warning(
        "admin_auth_failed endpoint=%s method=%s reason=%s",
        request.endpoint,
        request.method,
        error.message,
    )
    return jsonify(error.to_payload()), error.status_code


@app.errorhandler(404)
def handle_not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


@app.errorhandler(413)
def handle_file_too_large(error):  # pragma: no cover - framework hook
    return jsonify({"error": "File too large"}), 413


@app.errorhandler(429)
def handle_rate_limit(error):  # pragma: no cover - framework hook
    description = getattr(error, "description", "Too many requests")
    return jsonify({"error": "Rate limit exceeded", "message": str(description)}), 429


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    if isinstance(error, HTTPException):
        return jsonify({"error": error.description}), error.code
    lifecycle_logger.exception(
        "request_crashed method=%s path=%s error=%s",
        request.method,
        sanitize_log_value(request.path),
        sanitize_log_value(str(error)),
    )
    return jsonify({"error": str(error)}), 500


def _extract_bearer_token() -> Optional[str]:
    authorization = request.headers.get("Authorization", "").strip()
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def require_admin(view: Callable):
    @wraps(view)
    def wrapped(*args, **kwargs):
        try:
            token_store().require(_extract_bearer_token())
        except AuthError as error:
            lifecycle_logger.warning(
                "admin_auth_failed endpoint=%s method=%s reason=%s",
                request.endpoint,
                request.method,
                error.message,
            )
            return make_response(jsonify(error.to_payload()), error.status_code)
        return view(*args, **kwargs)

    return wrapped


def _json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return payload


@app.route("/api/browse", methods=["GET"])
def browse():
    requested = request.args.get("path", "")
    listing = resolve_directory(requested, root=FILES_DIR, sources=metadata_sources())
    lifecycle_logger.info(
        "directory_browsed path=%s items=%d",
        sanitize_log_value(requested),
        len(listing["items"]),
    )
    return jsonify(listing)


@app.route("/api/download", methods=["GET"])
@limiter.limit(lambda: download_rate_limit_string())
def download():
    requested = request.args.get("path", "")
    file_path, relative = resolve_storage_path(requested, FILES_DIR)
    if not relative:
        raise DirectoryDownloadError("Cannot download a directory")

    if not file_path.exists():
        link = find_url_link(relative, root=FILES_DIR, sources=metadata_sources())
        if link is not None:
            lifecycle_logger.info("url_link_followed path=%s", sanitize_log_value(relative))
            return redirect(link["url"], code=302)
        lifecycle_logger.warning("file_download_missing path=%s", sanitize_log_value(relative))
        raise EntryNotFoundError("File not found")

    if file_path.is_dir():
        raise DirectoryDownloadError("Cannot download a directory")

    lifecycle_logger.info("file_downloaded path=%s", sanitize_log_value(relative))
    try:
        return send_file(file_path, as_attachment=True, download_name=file_path.name)
    except FileNotFoundError:
        lifecycle_logger.warning("file_download_missing_race path=%s", sanitize_log_value(relative))
        abort(404)
    except OSError as error:
        lifecycle_logger.exception(
            "file_download_error path=%s error=%s",
            sanitize_log_value(relative),
            str(error),
        )
        raise StorageIOError(f"Failed to read file: {error}") from error


@app.route("/api/admin/login", methods=["POST"])
@limiter.limit(lambda: login_rate_limit_string())
def admin_login():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise InvalidRequestError("Malformed request body")
    password = payload.get("password")
    if not isinstance(password, str) or not password:
        raise UnauthorizedError("Password is required")

    token = token_store().login(password)
    lifecycle_logger.info("admin_login_succeeded remote=%s", get_remote_address())
    return jsonify({"token": token})


@app.route("/api/admin/logout", methods=["POST"])
@require_admin
def admin_logout():
    token_store().invalidate()
    return jsonify({"success": True})


def _collect_uploads() -> List[Tuple[FileStorage, str]]:
    uploads = request.files.getlist("files") + request.files.getlist("file")
    accepted: List[Tuple[FileStorage, str]] = []
    for upload in uploads:
        if not isinstance(upload, FileStorage) or not upload.filename:
            continue
        filename = upload.filename.replace("\\", "/").rsplit("/", 1)[-1]
        is_valid_name, name_error = validate_filename(filename)
        if not is_valid_name:
            app.logger.warning(
                "upload_failed reason=invalid_filename filename=%s",
                sanitize_log_value(upload.filename),
            )
            raise InvalidRequestError(name_error or "Invalid filename")
        if is_reserved_name(filename):
            app.logger.warning(
                "upload_failed reason=reserved_filename filename=%s",
                sanitize_log_value(filename),
            )
            raise InvalidRequestError("Name is reserved for metadata files")
        accepted.append((upload, filename))
    return accepted


@app.route("/api/admin/upload", methods=["POST"])
@require_admin
def admin_upload():
    dir_path = request.form.get("path", "")
    description = request.form.get("description", "")
    directory, relative = resolve_storage_path(dir_path, FILES_DIR)
    if not directory.is_dir():
        raise EntryNotFoundError("Directory not found")

    uploads = _collect_uploads()
    if not uploads:
        app.logger.warning("upload_failed reason=no_file_selected")
        raise InvalidRequestError("No files uploaded")

    max_bytes = app.config.get("MAX_CONTENT_LENGTH")
    saved: List[Dict[str, Any]] = []
    for upload, filename in uploads:
        with upload_stream_handler(upload):
            size = save_upload(directory, upload, filename, max_bytes)
        if description.strip():
            update_record(
                relative,
                filename,
                {"description": description},
                root=FILES_DIR,
                sources=metadata_sources(),
            )
        saved.append({"name": filename, "size": size})

    lifecycle_logger.info(
        "upload_completed directory=%s files=%d",
        sanitize_log_value(relative),
        len(saved),
    )
    return jsonify({"success": True, "files": saved})


@app.route("/api/admin/create-folder", methods=["POST"])
@require_admin
def admin_create_folder():
    payload = _json_payload()
    created = create_folder(payload.get("path", ""), payload.get("name"), root=FILES_DIR)
    lifecycle_logger.info("folder_created path=%s", sanitize_log_value(created))
    return jsonify({"success": True})


@app.route("/api/admin/delete", methods=["DELETE"])
@require_admin
def admin_delete():
    payload = request.get_json(silent=True)
    target = payload.get("path") if isinstance(payload, dict) else None
    if target is None:
        target = request.args.get("path")
    if not isinstance(target, str) or not target:
        raise InvalidRequestError("Path is required")

    removed = delete_entry(target, root=FILES_DIR, sources=metadata_sources())
    lifecycle_logger.info(
        "entry_removed path=%s kind=%s", sanitize_log_value(target), removed
    )
    return jsonify({"success": True})


@app.route("/api/admin/save-metadata", methods=["POST"])
@require_admin
def admin_save_metadata():
    payload = _json_payload()
    save_raw_metadata(payload.get("path"), payload.get("content"), root=FILES_DIR)
    return jsonify({"success": True})


@app.route("/api/admin/update-file-properties", methods=["POST"])
@require_admin
def admin_update_file_properties():
    payload = _json_payload()
    set_file_properties(
        payload.get("path", ""),
        payload.get("fileName"),
        payload,
        root=FILES_DIR,
        sources=metadata_sources(),
    )
    return jsonify({"success": True})


@app.route("/api/admin/update-folder-properties", methods=["POST"])
@require_admin
def admin_update_folder_properties():
    payload = _json_payload()
    set_folder_description(
        payload.get("path", ""),
        payload.get("folderName"),
        payload.get("description"),
        root=FILES_DIR,
        sources=metadata_sources(),
    )
    return jsonify({"success": True})


@app.route("/api/admin/add-url", methods=["POST"])
@require_admin
def admin_add_url():
    payload = _json_payload()
    add_url_link(
        payload.get("path", ""),
        payload.get("name"),
        payload.get("url"),
        payload,
        root=FILES_DIR,
        sources=metadata_sources(),
    )
    return jsonify({"success": True})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False)
