import logging
import os
import secrets
import threading
from secrets import compare_digest
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, URLSafeSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from .storage import DATA_DIR, DEFAULT_ADMIN_PASSWORD, ensure_directories


logger = logging.getLogger("filehost.auth")

TOKEN_SALT = "filehost-admin-token"


class AuthError(Exception):
    """Base class for admin authentication failures."""

    status_code = 401

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, str]:
        return {"error": self.message}


class UnauthorizedError(AuthError):
    """Raised when no credentials were supplied or the password is wrong."""


class InvalidTokenError(AuthError):
    """Raised when a bearer token is not the currently issued one."""


def load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()
        try:
            fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            logger.warning("secret_key_empty path=%s regenerating", secret_path)
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)

        generated = secrets.token_hex(32)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(generated)
            handle.flush()
            os.fsync(handle.fileno())
        logger.warning("secret_key_generated path=%s", secret_path)
        return generated
    except OSError as error:
        logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Tokens will not survive a restart. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


def resolve_admin_password_hash(config: Dict[str, Any]) -> str:
    """Pick the admin password hash; ``FILEHOST_ADMIN_PASSWORD`` wins over config."""

    env_password = os.environ.get("FILEHOST_ADMIN_PASSWORD")
    if env_password:
        return generate_password_hash(env_password)

    stored = config.get("admin_password_hash")
    if isinstance(stored, str) and stored:
        return stored

    logger.warning("admin_password_default_in_use")
    return generate_password_hash(DEFAULT_ADMIN_PASSWORD)


class AdminTokenStore:
    """Holds the single admin token that is valid at any time.

    Issuing a token replaces the previous one; tokens never expire on their own
    and are forgotten when the process exits.
    """

    def __init__(self, secret_key: str, password_hash: str) -> None:
        self._serializer = URLSafeSerializer(secret_key, salt=TOKEN_SALT)
        self._password_hash = password_hash
        self._current: Optional[str] = None
        self._lock = threading.Lock()

    def check_password(self, password: Any) -> bool:
        if not isinstance(password, str) or not password:
            return False
        return check_password_hash(self._password_hash, password)

    def issue(self) -> str:
        token = self._serializer.dumps({"nonce": secrets.token_hex(16)})
        with self._lock:
            replaced = self._current is not None
            self._current = token
        logger.info("admin_token_issued replaced_previous=%s", replaced)
        return token

    def login(self, password: Any) -> str:
        if not self.check_password(password):
            logger.warning("admin_login_failed")
            raise UnauthorizedError("Invalid password")
        return self.issue()

    def validate(self, token: Optional[str]) -> bool:
        if not token:
            return False
        with self._lock:
            current = self._current
        if current is None or not compare_digest(current.encode("utf-8"), token.encode("utf-8")):
            return False
        try:
            self._serializer.loads(token)
        except BadSignature:
            return False
        return True

    def require(self, token: Optional[str]) -> None:
        if not token:
            raise UnauthorizedError("Unauthorized")
        if not self.validate(token):
            raise InvalidTokenError("Invalid token")

    def invalidate(self) -> None:
        with self._lock:
            self._current = None
        logger.info("admin_token_invalidated")
