"""
Accounts, Sessions and the Session Authentication Guard

Covers password digests, email registration and login, external identity
login, session creation stamped with client information, and the per-request
guard that resolves a bearer token to its user while pruning that user's
expired sessions.
"""

import hashlib
import ipaddress
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import bcrypt

from .database import Database, storage_errors
from .exceptions import BadRequestError, InternalError, UnauthorizedError
from .identity import ExternalIdentity
from .statements import format_timestamp

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Username or password is incorrect."


def _pw_prehash(password: str) -> bytes:
    """SHA-256 first so bcrypt's 72-byte input limit never truncates."""
    return hashlib.sha256(password.encode("utf-8")).digest()


def hash_password(password: str, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_pw_prehash(password), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_pw_prehash(password), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored digest
        return False


class Platform(Enum):
    WEB = "web"
    DESKTOP = "desktop"
    MOBILE = "mobile"
    UNKNOWN = "unknown"

    @classmethod
    def classify(cls, value: Optional[str]) -> "Platform":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class ClientInfo:
    ip: str
    platform: Platform
    user_agent: str


def normalize_ip(raw: Optional[str]) -> Optional[str]:
    """Return the address as a single-host network (``10.0.0.1/32``), or None."""
    if not raw:
        return None
    try:
        return str(ipaddress.ip_network(raw.strip(), strict=False))
    except ValueError:
        return None


def client_info_from_headers(headers: Dict[str, str], peer_host: Optional[str],
                             platform_cookie: Optional[str] = None) -> ClientInfo:
    """
    Build ``ClientInfo`` from request headers and the socket peer.

    Args:
        headers: Request headers with lower-cased names
        peer_host: Host of the connecting socket, if known
        platform_cookie: Value of the ``client_platform`` cookie

    Raises:
        BadRequestError: no usable client address
    """
    candidates = []
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        candidates.append(forwarded.split(",")[0])
    candidates.append(headers.get("x-real-ip"))
    candidates.append(peer_host)

    ip = next((n for n in (normalize_ip(c) for c in candidates) if n), None)
    if ip is None:
        raise BadRequestError("Could not identify ip of client.")

    platform = Platform.classify(platform_cookie or headers.get("x-client-platform"))
    return ClientInfo(ip=ip, platform=platform, user_agent=headers.get("user-agent", ""))


def parse_session_token(token: Optional[str]) -> str:
    """Validate a bearer token's shape; tokens are UUIDs."""
    if not token:
        raise UnauthorizedError("Missing authorization header.")
    try:
        return str(uuid.UUID(token.strip()))
    except ValueError:
        raise UnauthorizedError("Bearer session token must be valid UUID.")


class SessionGuard:
    """
    Resolves a bearer token to the owning user.

    Pruning of the user's expired sessions runs on every call, on the
    request's critical path.
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.db = db
        self.clock = clock

    def authenticate(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Return the user row owning the session ``token``.

        Raises:
            UnauthorizedError: token missing, malformed, unknown or expired
            InternalError: session points at a user that does not exist
        """
        session_id = parse_session_token(token)
        now = format_timestamp(self.clock())

        # The prune must commit even when this request is rejected, so the
        # outcome is decided inside the transaction and raised after it.
        with self.db.transaction() as conn:
            with storage_errors("authenticate session"):
                session = conn.execute(
                    "SELECT id, user_id, expire_at FROM sessions WHERE id = ?", (session_id,)
                ).fetchone()
                if session is None:
                    user = None
                else:
                    pruned = conn.execute(
                        "DELETE FROM sessions WHERE user_id = ? AND expire_at <= ?",
                        (session["user_id"], now),
                    ).rowcount
                    if pruned:
                        logger.info(f"Pruned {pruned} expired sessions for user {session['user_id']}")
                    user = conn.execute(
                        "SELECT id, username, created_at, updated_at FROM users WHERE id = ?",
                        (session["user_id"],),
                    ).fetchone()

        if session is None:
            raise UnauthorizedError("Invalid session token.")
        # Re-check rather than trusting the delete above
        if session["expire_at"] <= now:
            raise UnauthorizedError("Session has expired.")
        if user is None:
            logger.error(f"Session {session_id} points to missing user {session['user_id']}")
            raise InternalError("Session points to invalid user.")
        return dict(user)


class AccountService:
    """Registration, login and session issuing."""

    def __init__(self, db: Database, session_duration: timedelta = timedelta(days=7),
                 bcrypt_rounds: int = 12,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.db = db
        self.session_duration = session_duration
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock

    def _create_user(self, conn, username: str) -> str:
        user_id = str(uuid.uuid4())
        now = format_timestamp(self.clock())
        conn.execute(
            "INSERT INTO users (id, username, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (user_id, username, now, now),
        )
        return user_id

    def create_session(self, user_id: str, client: ClientInfo) -> str:
        """Insert a session for ``user_id`` and return its token."""
        session_id = str(uuid.uuid4())
        created_at = self.clock()
        expire_at = created_at + self.session_duration
        with self.db.transaction() as conn:
            with storage_errors("create session"):
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, ip, platform, user_agent, created_at, expire_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id, user_id, client.ip, client.platform.value, client.user_agent,
                        format_timestamp(created_at), format_timestamp(expire_at),
                    ),
                )
        logger.info(f"Created session for user {user_id} ({client.platform.value})")
        return session_id

    def register_email(self, email: str, password: str, username: str) -> str:
        """
        Create a user with an email login.

        Raises:
            BadRequestError: email already taken
        """
        email = email.strip().lower()
        password_hash = hash_password(password, self.bcrypt_rounds)
        with self.db.transaction() as conn:
            with storage_errors("register user"):
                taken = conn.execute(
                    "SELECT 1 FROM email_user_logins WHERE email = ?", (email,)
                ).fetchone()
                if taken is not None:
                    raise BadRequestError("Email is already taken.")
                user_id = self._create_user(conn, username)
                conn.execute(
                    "INSERT INTO email_user_logins (id, user_id, email, password_hash) VALUES (?, ?, ?, ?)",
                    (str(uuid.uuid4()), user_id, email, password_hash),
                )
        logger.info(f"Registered user {user_id} with email login")
        return user_id

    def login_email(self, email: str, password: str, client: ClientInfo) -> Dict[str, str]:
        """Check credentials and open a session."""
        with self.db.connection() as conn:
            with storage_errors("fetch email login"):
                login = conn.execute(
                    "SELECT user_id, password_hash FROM email_user_logins WHERE email = ?",
                    (email.strip().lower(),),
                ).fetchone()
        if login is None or not verify_password(password, login["password_hash"]):
            logger.info("Rejected email login")
            raise UnauthorizedError(INVALID_CREDENTIALS)
        token = self.create_session(login["user_id"], client)
        return {"user_id": login["user_id"], "session_token": token}

    def login_external(self, identity: ExternalIdentity, client: ClientInfo) -> Dict[str, str]:
        """Find or create the user bound to an external identity, then open a session."""
        with self.db.transaction() as conn:
            with storage_errors("external login"):
                login = conn.execute(
                    "SELECT user_id FROM discord_user_logins WHERE client_id = ?",
                    (identity.client_id,),
                ).fetchone()
                if login is not None:
                    user_id = login["user_id"]
                else:
                    user_id = self._create_user(conn, identity.username)
                    conn.execute(
                        "INSERT INTO discord_user_logins (id, user_id, client_id) VALUES (?, ?, ?)",
                        (str(uuid.uuid4()), user_id, identity.client_id),
                    )
                    logger.info(f"Registered user {user_id} with external identity")
            token = self.create_session(user_id, client)
        return {"user_id": user_id, "session_token": token}

    def describe_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """The caller's profile: logins and sessions."""
        with self.db.connection() as conn:
            with storage_errors("fetch user"):
                email = conn.execute(
                    "SELECT email FROM email_user_logins WHERE user_id = ?", (user["id"],)
                ).fetchone()
                discord = conn.execute(
                    "SELECT client_id FROM discord_user_logins WHERE user_id = ?", (user["id"],)
                ).fetchone()
                sessions = conn.execute(
                    "SELECT id, ip, platform, user_agent, created_at, expire_at FROM sessions "
                    "WHERE user_id = ? ORDER BY rowid",
                    (user["id"],),
                ).fetchall()
        return {
            **user,
            "email_login": dict(email) if email else None,
            "discord_login": dict(discord) if discord else None,
            "sessions": [dict(s) for s in sessions],
        }
