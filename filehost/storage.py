import json
import logging
import math
import os
import re
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from werkzeug.datastructures import FileStorage
from werkzeug.security import generate_password_hash


logger = logging.getLogger("filehost.storage")

BASE_DIR = Path(__file__).resolve().parent.parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILEHOST_STORAGE_ROOT", BASE_DIR)
FILES_DIR = _resolve_env_path("FILEHOST_FILES_DIR", STORAGE_ROOT / "public" / "files")
DATA_DIR = _resolve_env_path("FILEHOST_DATA_DIR", STORAGE_ROOT / "data")
LOGS_DIR = _resolve_env_path("FILEHOST_LOGS_DIR", STORAGE_ROOT / "logs")
CONFIG_PATH = DATA_DIR / "config.json"

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
UPLOAD_TEMP_SUFFIX = ".part"
WRITE_TEMP_SUFFIX = ".tmp"
DEFAULT_ADMIN_PASSWORD = "admin123"

METADATA_SOURCE_NAMES = ("index", "monolithic")

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("filehost.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


MAX_FILENAME_LENGTH = _safe_int_env("FILEHOST_MAX_FILENAME_LENGTH", 255)
DEFAULT_MAX_UPLOAD_MB = _safe_int_env("MAX_UPLOAD_SIZE_MB", 500)
DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEHOST_RATE_LIMIT_LOGINS_PER_MINUTE", 10)
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEHOST_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)


def _default_password_hash() -> str:
    return generate_password_hash(DEFAULT_ADMIN_PASSWORD)


DEFAULT_CONFIG = {
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "login_rate_limit_per_minute": float(DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE),
    "download_rate_limit_per_minute": float(DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE),
    "metadata_sources": list(METADATA_SOURCE_NAMES),
    "cors_allow_origin": "*",
    "admin_password_hash": _default_password_hash(),
}

CONFIG_NUMERIC_KEYS = {
    "max_upload_size_mb",
    "login_rate_limit_per_minute",
    "download_rate_limit_per_minute",
}

CONFIG_STRING_KEYS = {"cors_allow_origin", "admin_password_hash"}


class StorageError(Exception):
    """Base class for failures reported back to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message}


class InvalidPathError(StorageError):
    """Raised when a path escapes the storage root or names nothing usable."""

    status_code = 400


class EntryNotFoundError(StorageError):
    status_code = 404


class NotDirectoryError(StorageError):
    status_code = 400


class DirectoryDownloadError(StorageError):
    status_code = 400


class AlreadyExistsError(StorageError):
    status_code = 400


class NameConflictError(StorageError):
    status_code = 400


class InvalidContentError(StorageError):
    status_code = 400


class InvalidRequestError(StorageError):
    status_code = 400


class StorageIOError(StorageError):
    """Raised when the filesystem rejects a physical operation."""

    status_code = 500


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity.

    Args:
        value: Value to coerce to float
        default: Default value to use if coercion fails

    Returns:
        Float value or default
    """
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_sources(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",")]
    if not isinstance(value, (list, tuple)):
        return list(METADATA_SOURCE_NAMES)

    sources: List[str] = []
    for entry in value:
        if not isinstance(entry, str):
            continue
        name = entry.strip().lower()
        if name in METADATA_SOURCE_NAMES and name not in sources:
            sources.append(name)
    return sources


def _normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    if config.get("max_upload_size_mb", 0) < 1:
        config["max_upload_size_mb"] = float(DEFAULT_MAX_UPLOAD_MB)

    if config.get("login_rate_limit_per_minute", 0) < 1:
        config["login_rate_limit_per_minute"] = float(
            DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE
        )

    if config.get("download_rate_limit_per_minute", 0) < 1:
        config["download_rate_limit_per_minute"] = float(
            DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE
        )

    for key in CONFIG_STRING_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), str):
            value = raw_config.get(key).strip()
            config[key] = value or config[key]

    if "metadata_sources" in raw_config:
        config["metadata_sources"] = _normalize_sources(raw_config.get("metadata_sources"))
    else:
        config["metadata_sources"] = list(METADATA_SOURCE_NAMES)

    return config


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    FILES_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def write_text_atomic(path: Path, text: str) -> None:
    """Replace *path* with *text* through a temporary sibling file."""

    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}{WRITE_TEMP_SUFFIX}")
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())

        # Atomic rename on POSIX systems (overwrites destination)
        temp_path.replace(path)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def write_json_atomic(path: Path, document: Any) -> None:
    write_text_atomic(path, json.dumps(document, indent=2, ensure_ascii=False) + "\n")


def load_config() -> Dict[str, Any]:
    ensure_directories()
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                logging.getLogger("filehost.config").warning(
                    "config_parse_failed path=%s", CONFIG_PATH
                )
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, Any]) -> None:
    ensure_directories()
    write_json_atomic(CONFIG_PATH, _normalize_config(config))


def get_config_mtime() -> float:
    try:
        return CONFIG_PATH.stat().st_mtime
    except FileNotFoundError:
        return 0.0


def resolve_storage_path(
    requested: Optional[str], root: Optional[Path] = None
) -> Tuple[Path, str]:
    """Join *requested* onto the storage root and reject anything escaping it.

    Returns the absolute path together with its normalized, slash-separated
    form relative to the root (``""`` for the root itself).
    """

    base = os.path.normpath(str(root if root is not None else FILES_DIR))
    raw = requested or ""
    if "\x00" in raw:
        raise InvalidPathError("Invalid path")

    candidate = os.path.normpath(os.path.join(base, raw.lstrip("/")))
    prefix = base.rstrip(os.sep) + os.sep
    if candidate != base and not candidate.startswith(prefix):
        logger.warning("path_traversal_rejected path=%s", sanitize_log_value(raw))
        raise InvalidPathError("Invalid path")

    if candidate == base:
        return Path(candidate), ""
    return Path(candidate), Path(os.path.relpath(candidate, base)).as_posix()


def split_relative_path(relative: str) -> Tuple[str, str]:
    """Split a normalized relative path into ``(parent, name)``."""

    if "/" not in relative:
        return "", relative
    parent, name = relative.rsplit("/", 1)
    return parent, name


def join_relative_path(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


def is_temporary_artifact(name: str) -> bool:
    """Return True for the hidden temp files left by an in-flight or interrupted write."""

    return name.startswith(".") and name.endswith((UPLOAD_TEMP_SUFFIX, WRITE_TEMP_SUFFIX))


def validate_filename(filename: str) -> Tuple[bool, Optional[str]]:
    """Validate entry names for length and disallowed characters."""

    if not filename or not filename.strip():
        return False, "Name cannot be empty"

    if len(filename) > MAX_FILENAME_LENGTH:
        return (
            False,
            f"Name exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
        )

    if "\x00" in filename or "/" in filename or "\\" in filename:
        return False, "Name contains invalid characters"

    if filename in {".", ".."}:
        return False, "Name is reserved"

    return True, None


def list_physical_entries(directory: Path) -> List[Dict[str, Any]]:
    """Return name, kind, size and mtime for every child of *directory*."""

    entries: List[Dict[str, Any]] = []
    try:
        iterator = os.scandir(directory)
    except OSError as error:
        raise StorageIOError(f"Failed to list directory: {error}") from error

    with iterator:
        for item in iterator:
            if is_temporary_artifact(item.name):
                continue
            try:
                stats = item.stat()
                is_directory = item.is_dir()
            except OSError as error:
                logger.warning(
                    "entry_stat_failed name=%s error=%s",
                    sanitize_log_value(item.name),
                    error,
                )
                continue
            entries.append(
                {
                    "name": item.name,
                    "is_directory": is_directory,
                    "size": 0 if is_directory else stats.st_size,
                    "mtime": stats.st_mtime,
                }
            )
    return entries


def create_directory(path: Path) -> None:
    if os.path.lexists(path):
        raise AlreadyExistsError("Folder already exists")
    try:
        path.mkdir(parents=True)
    except FileExistsError as error:
        raise AlreadyExistsError("Folder already exists") from error
    except OSError as error:
        raise StorageIOError(str(error)) from error
    logger.info("directory_created path=%s", sanitize_log_value(str(path)))


def delete_path(path: Path) -> bool:
    """Delete a file or a whole directory tree; return True for directories."""

    is_directory = path.is_dir() and not path.is_symlink()
    try:
        if is_directory:
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError as error:
        raise EntryNotFoundError("File not found") from error
    except OSError as error:
        raise StorageIOError(str(error)) from error

    logger.info(
        "entry_deleted path=%s directory=%s",
        sanitize_log_value(str(path)),
        is_directory,
    )
    return is_directory


def save_upload(
    directory: Path,
    file_storage: FileStorage,
    filename: str,
    max_bytes: Optional[int] = None,
) -> int:
    """Stream an uploaded file into *directory* and return the bytes written."""

    destination_path = directory / filename
    temp_path = directory / f".{filename}.{uuid.uuid4().hex}{UPLOAD_TEMP_SUFFIX}"
    written = 0
    try:
        with temp_path.open("wb") as destination:
            while True:
                chunk = file_storage.stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                if max_bytes and written + len(chunk) > max_bytes:
                    raise InvalidRequestError("File too large")
                destination.write(chunk)
                written += len(chunk)
        temp_path.replace(destination_path)
    except StorageError:
        temp_path.unlink(missing_ok=True)
        raise
    except OSError as error:
        temp_path.unlink(missing_ok=True)
        raise StorageIOError(str(error)) from error

    logger.info(
        "file_uploaded path=%s size=%d",
        sanitize_log_value(str(destination_path)),
        written,
    )
    return written
