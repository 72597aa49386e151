"""
Identity provider: credential accounts, session tokens and auth events.

An ``IdentitySession`` is one auth session handle. The primary session drives
the app; ``IdentityProvider.create_session()`` hands out independent handles so
a caregiver can provision a senior account without signing themselves out.
"""
import asyncio
import inspect
import json
import logging
import uuid
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Set
from urllib.parse import quote

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel

import config

logger = logging.getLogger(__name__)

# Password hashing configuration
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SIGNED_IN = "signed_in"
RESTORED = "restored"
SIGNED_OUT = "signed_out"


class IdentityError(Exception):
    """Auth failure whose message is safe to show to the user verbatim."""
    status_code = 400


class InvalidCredentialsError(IdentityError):
    status_code = 401

    def __init__(self, message: str = "Invalid email or password."):
        super().__init__(message)


class EmailInUseError(IdentityError):
    def __init__(self, message: str = "Email already registered"):
        super().__init__(message)


class WeakPasswordError(IdentityError):
    def __init__(self, message: str = f"Password should be at least {config.MIN_PASSWORD_LENGTH} characters"):
        super().__init__(message)


class InvalidTokenError(IdentityError):
    status_code = 401

    def __init__(self, message: str = "Invalid authentication token"):
        super().__init__(message)


class AuthEvent(BaseModel):
    kind: str  # signed_in, restored, signed_out
    identity_id: Optional[str] = None
    email: Optional[str] = None
    token: Optional[str] = None

    @property
    def is_signed_in(self) -> bool:
        return self.kind in {SIGNED_IN, RESTORED} and bool(self.identity_id)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
    return encoded_jwt


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        raise InvalidTokenError()
    if not payload.get("sub"):
        raise InvalidTokenError()
    return payload


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class IdentityProvider:
    """Credential store. Subclasses provide account persistence."""

    async def _load_account(self, email: str) -> Optional[dict]:
        raise NotImplementedError

    async def _save_account(self, account: dict) -> None:
        raise NotImplementedError

    def create_session(self) -> "IdentitySession":
        return IdentitySession(self)

    async def create_account(self, email: str, password: str) -> dict:
        email = normalize_email(email)
        if not email or "@" not in email:
            raise IdentityError("Please enter a valid email address")
        if len(password or "") < config.MIN_PASSWORD_LENGTH:
            raise WeakPasswordError()
        if await self._load_account(email):
            raise EmailInUseError()
        account = {
            "identity_id": f"user_{uuid.uuid4().hex[:12]}",
            "email": email,
            "hashed_password": get_password_hash(password),
            "created_at": datetime.now(timezone.utc).isoformat()
        }
        await self._save_account(account)
        logger.info(f"Created identity {account['identity_id']}")
        return account

    async def check_credentials(self, email: str, password: str) -> dict:
        account = await self._load_account(normalize_email(email))
        if not account or not verify_password(password, account["hashed_password"]):
            raise InvalidCredentialsError()
        return account

    def issue_token(self, account: dict) -> str:
        return create_access_token(
            data={"sub": account["identity_id"], "email": account["email"]},
            expires_delta=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
        )


class MongoIdentityProvider(IdentityProvider):
    def __init__(self, db):
        self.db = db

    async def _load_account(self, email: str) -> Optional[dict]:
        return await self.db.identities.find_one({"email": email}, {"_id": 0})

    async def _save_account(self, account: dict) -> None:
        await self.db.identities.insert_one(dict(account))


class LocalIdentityProvider(IdentityProvider):
    """Accounts kept as ``identity_<email>.json`` files next to the local key store."""

    def __init__(self, data_dir):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, email: str) -> Path:
        # Percent-encoding keeps distinct addresses in distinct files.
        return self.data_dir / f"identity_{quote(email, safe='@._-')}.json"

    async def _load_account(self, email: str) -> Optional[dict]:
        path = self._path(email)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    async def _save_account(self, account: dict) -> None:
        self._path(account["email"]).write_text(json.dumps(account), encoding="utf-8")


class IdentitySession:
    """A single signed-in identity plus its auth-event listeners."""

    def __init__(self, provider: IdentityProvider):
        self.provider = provider
        self.identity_id: Optional[str] = None
        self.email: Optional[str] = None
        self.token: Optional[str] = None
        self._listeners: List[Callable[[AuthEvent], object]] = []
        self._pending: Set[asyncio.Future] = set()

    def on_auth_event(self, callback: Callable[[AuthEvent], object]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    async def _emit(self, event: AuthEvent) -> None:
        # Listeners run as tasks; settle() waits for them.
        for listener in list(self._listeners):
            outcome = listener(event)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def settle(self) -> None:
        """
        Wait until every listener started by previous events has finished.
        The first listener error is re-raised once all of them are done.
        """
        errors = []
        while self._pending:
            results = await asyncio.gather(*list(self._pending), return_exceptions=True)
            errors.extend(r for r in results if isinstance(r, Exception))
        if errors:
            raise errors[0]

    async def _start(self, account: dict, kind: str) -> str:
        self.identity_id = account["identity_id"]
        self.email = account["email"]
        self.token = self.provider.issue_token(account)
        await self._emit(AuthEvent(kind=kind, identity_id=self.identity_id, email=self.email, token=self.token))
        return self.identity_id

    async def register(self, email: str, password: str) -> str:
        account = await self.provider.create_account(email, password)
        return await self._start(account, SIGNED_IN)

    async def sign_in(self, email: str, password: str) -> str:
        account = await self.provider.check_credentials(email, password)
        return await self._start(account, SIGNED_IN)

    async def restore(self, token: str) -> str:
        payload = decode_access_token(token)
        self.identity_id = payload["sub"]
        self.email = payload.get("email")
        self.token = token
        await self._emit(AuthEvent(kind=RESTORED, identity_id=self.identity_id, email=self.email, token=token))
        return self.identity_id

    async def sign_out(self) -> None:
        was_signed_in = self.identity_id is not None
        self.identity_id = None
        self.email = None
        self.token = None
        if was_signed_in:
            await self._emit(AuthEvent(kind=SIGNED_OUT))
