import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, unquote

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure

import config
from identity import (
    AuthEvent, IdentityProvider, IdentitySession, MongoIdentityProvider, LocalIdentityProvider
)
from models import User, UserRole, UserPreferences, AnalysisResult, new_history_id

logger = logging.getLogger(__name__)

# Key characters stored verbatim in file names; everything else is percent-encoded.
KEY_SAFE_CHARS = "@._-"

PreferencesCallback = Callable[[UserPreferences], None]
ErrorCallback = Callable[[Exception], None]


def sort_history(results: List[AnalysisResult], limit: Optional[int] = None) -> List[AnalysisResult]:
    """Newest first. Stores do not guarantee ordering, so callers always re-sort."""
    ordered = sorted(results, key=lambda r: r.timestamp, reverse=True)
    return ordered[:limit] if limit is not None else ordered


class PersistenceGateway:
    """Store + identity capabilities the session core depends on. No business logic."""

    identity: IdentityProvider

    # ---- users ----
    async def get_profile(self, user_id: str) -> Optional[User]:
        raise NotImplementedError

    async def upsert_profile(self, profile: User) -> None:
        raise NotImplementedError

    async def create_profile_if_absent(self, profile: User) -> User:
        """Insert ``profile`` unless one exists for its id; return whichever is stored."""
        raise NotImplementedError

    async def find_seniors_of_caregiver(self, caregiver_id: str) -> List[User]:
        raise NotImplementedError

    # ---- preferences ----
    async def get_preferences(self, target_id: str) -> Optional[UserPreferences]:
        raise NotImplementedError

    async def upsert_preferences(self, target_id: str, changes: dict) -> None:
        raise NotImplementedError

    def subscribe_preferences(
        self,
        target_id: str,
        on_change: PreferencesCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Callable[[], None]:
        raise NotImplementedError

    # ---- history ----
    async def insert_history(self, result: AnalysisResult) -> str:
        raise NotImplementedError

    async def list_history(self, target_id: str, limit: int = config.HISTORY_PAGE_SIZE) -> List[AnalysisResult]:
        raise NotImplementedError

    async def get_history_entry(self, result_id: str) -> Optional[AnalysisResult]:
        raise NotImplementedError

    # ---- identity ----
    _primary_session: Optional[IdentitySession] = None

    def new_identity_session(self) -> IdentitySession:
        return self.identity.create_session()

    @property
    def primary_session(self) -> IdentitySession:
        """Session handle used by the identity capabilities below."""
        if self._primary_session is None:
            self._primary_session = self.new_identity_session()
        return self._primary_session

    async def authenticate(self, email: str, password: str) -> str:
        return await self.primary_session.sign_in(email, password)

    async def register(self, email: str, password: str) -> str:
        return await self.primary_session.register(email, password)

    async def restore(self, token: str) -> str:
        return await self.primary_session.restore(token)

    async def sign_out(self) -> None:
        await self.primary_session.sign_out()

    def on_auth_event(self, callback: Callable[[AuthEvent], object]) -> Callable[[], None]:
        return self.primary_session.on_auth_event(callback)

    async def register_as_secondary_identity(self, email: str, password: str) -> str:
        """
        Create an identity on a throwaway session handle so the caller's own
        session never sees a sign-in or sign-out event.
        """
        secondary = self.identity.create_session()
        try:
            return await secondary.register(email, password)
        finally:
            await secondary.sign_out()

    async def close(self) -> None:
        return None


# ==================== MONGODB ====================

class MongoGateway(PersistenceGateway):
    def __init__(self, client, db_name: str = config.DB_NAME):
        self.client = client
        self.db = client[db_name]
        self.identity = MongoIdentityProvider(self.db)

    async def ensure_indexes(self) -> None:
        await self.db.users.create_index("id", unique=True)
        await self.db.users.create_index("caregiverId")
        await self.db.preferences.create_index("id", unique=True)
        await self.db.history.create_index([("userId", 1), ("timestamp", -1)])
        await self.db.identities.create_index("email", unique=True)

    async def get_profile(self, user_id: str) -> Optional[User]:
        doc = await self.db.users.find_one({"id": user_id}, {"_id": 0})
        return User(**doc) if doc else None

    async def upsert_profile(self, profile: User) -> None:
        await self.db.users.update_one(
            {"id": profile.id},
            {"$set": profile.to_document()},
            upsert=True
        )

    async def create_profile_if_absent(self, profile: User) -> User:
        await self.db.users.update_one(
            {"id": profile.id},
            {"$setOnInsert": profile.to_document()},
            upsert=True
        )
        stored = await self.get_profile(profile.id)
        return stored or profile

    async def find_seniors_of_caregiver(self, caregiver_id: str) -> List[User]:
        docs = await self.db.users.find(
            {"caregiverId": caregiver_id, "role": UserRole.SENIOR.value},
            {"_id": 0}
        ).to_list(200)
        return [User(**d) for d in docs]

    async def get_preferences(self, target_id: str) -> Optional[UserPreferences]:
        doc = await self.db.preferences.find_one({"id": target_id}, {"_id": 0})
        return UserPreferences(**doc) if doc else None

    async def upsert_preferences(self, target_id: str, changes: dict) -> None:
        if not changes:
            return
        await self.db.preferences.update_one(
            {"id": target_id},
            {"$set": dict(changes), "$setOnInsert": {"id": target_id}},
            upsert=True
        )

    def subscribe_preferences(
        self,
        target_id: str,
        on_change: PreferencesCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Callable[[], None]:
        task = asyncio.ensure_future(self._watch_preferences(target_id, on_change, on_error))

        def unsubscribe():
            task.cancel()
        return unsubscribe

    async def _watch_preferences(self, target_id, on_change, on_error):
        try:
            last = await self.db.preferences.find_one({"id": target_id}, {"_id": 0})
            if last:
                on_change(UserPreferences(**last))
            try:
                pipeline = [{"$match": {"fullDocument.id": target_id}}]
                async with self.db.preferences.watch(pipeline, full_document="updateLookup") as stream:
                    async for change in stream:
                        doc = change.get("fullDocument")
                        if doc:
                            doc.pop("_id", None)
                            on_change(UserPreferences(**doc))
            except OperationFailure as e:
                # Standalone servers have no change streams.
                logger.info(f"Change stream unavailable for preferences/{target_id}, polling: {e}")
                await self._poll_preferences(target_id, last, on_change)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Preferences subscription for {target_id} stopped: {e}")
            if on_error:
                on_error(e)

    async def _poll_preferences(self, target_id, last, on_change):
        while True:
            await asyncio.sleep(config.PREFS_POLL_SECONDS)
            doc = await self.db.preferences.find_one({"id": target_id}, {"_id": 0})
            if doc and doc != last:
                last = doc
                on_change(UserPreferences(**doc))

    async def insert_history(self, result: AnalysisResult) -> str:
        doc = result.to_document()
        if not doc.get("id"):
            doc["id"] = new_history_id()
        await self.db.history.insert_one(doc)
        return doc["id"]

    async def list_history(self, target_id: str, limit: int = config.HISTORY_PAGE_SIZE) -> List[AnalysisResult]:
        docs = await self.db.history.find(
            {"userId": target_id},
            {"_id": 0}
        ).sort("timestamp", -1).to_list(limit)
        return sort_history([AnalysisResult(**d) for d in docs], limit)

    async def get_history_entry(self, result_id: str) -> Optional[AnalysisResult]:
        doc = await self.db.history.find_one({"id": result_id}, {"_id": 0})
        return AnalysisResult(**doc) if doc else None

    async def close(self) -> None:
        self.client.close()


# ==================== LOCAL KEY STORE ====================

class LocalKeyStore:
    """
    Flat JSON key/value store, one file per key:
      user_<id>.json, seniors_<callerId>.json, history_<targetId>.json, prefs_<targetId>.json
    """

    def __init__(self, base_dir):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_dir / f"{quote(key, safe=KEY_SAFE_CHARS)}.json"

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"Corrupt local record {key}, ignoring")
            return default

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(value, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(path)

    def keys(self, prefix: str) -> List[str]:
        pattern = f"{quote(prefix, safe=KEY_SAFE_CHARS)}*.json"
        return sorted(unquote(p.stem) for p in self.base_dir.glob(pattern))


class LocalStorageGateway(PersistenceGateway):
    """Offline substitute for the document store; subscribers are notified in-process."""

    def __init__(self, data_dir=config.DATA_DIR):
        self.store = LocalKeyStore(data_dir)
        self.identity = LocalIdentityProvider(data_dir)
        self._subscribers: Dict[str, List[tuple]] = {}

    async def get_profile(self, user_id: str) -> Optional[User]:
        doc = self.store.get(f"user_{user_id}")
        return User(**doc) if doc else None

    async def upsert_profile(self, profile: User) -> None:
        key = f"user_{profile.id}"
        merged = dict(self.store.get(key, {}))
        merged.update(profile.to_document())
        self.store.set(key, merged)
        caregiver_id = merged.get("caregiverId")
        if caregiver_id:
            # seniors_<caregiverId> is an index over the caregiverId back-reference.
            index_key = f"seniors_{caregiver_id}"
            senior_ids = self.store.get(index_key, [])
            if profile.id not in senior_ids:
                senior_ids.append(profile.id)
                self.store.set(index_key, senior_ids)

    async def create_profile_if_absent(self, profile: User) -> User:
        existing = await self.get_profile(profile.id)
        if existing:
            return existing
        await self.upsert_profile(profile)
        return profile

    async def find_seniors_of_caregiver(self, caregiver_id: str) -> List[User]:
        seniors = []
        for senior_id in self.store.get(f"seniors_{caregiver_id}", []):
            senior = await self.get_profile(senior_id)
            if senior and senior.caregiver_id == caregiver_id and senior.role == UserRole.SENIOR:
                seniors.append(senior)
        return seniors

    async def get_preferences(self, target_id: str) -> Optional[UserPreferences]:
        doc = self.store.get(f"prefs_{target_id}")
        return UserPreferences(**doc) if doc else None

    async def upsert_preferences(self, target_id: str, changes: dict) -> None:
        if not changes:
            return
        key = f"prefs_{target_id}"
        merged = dict(self.store.get(key, {}))
        merged.update(changes)
        self.store.set(key, merged)
        self._notify(target_id, UserPreferences(**merged))

    def _notify(self, target_id: str, prefs: UserPreferences) -> None:
        for on_change, on_error in list(self._subscribers.get(target_id, [])):
            try:
                on_change(prefs)
            except Exception as e:
                logger.warning(f"Preferences listener for {target_id} failed: {e}")
                if on_error:
                    on_error(e)

    def subscribe_preferences(
        self,
        target_id: str,
        on_change: PreferencesCallback,
        on_error: Optional[ErrorCallback] = None
    ) -> Callable[[], None]:
        entry = (on_change, on_error)
        self._subscribers.setdefault(target_id, []).append(entry)
        current = self.store.get(f"prefs_{target_id}")
        if current:
            on_change(UserPreferences(**current))

        def unsubscribe():
            listeners = self._subscribers.get(target_id, [])
            if entry in listeners:
                listeners.remove(entry)
        return unsubscribe

    def subscriber_count(self, target_id: str) -> int:
        return len(self._subscribers.get(target_id, []))

    async def insert_history(self, result: AnalysisResult) -> str:
        doc = result.to_document()
        if not doc.get("id"):
            doc["id"] = new_history_id()
        key = f"history_{result.user_id}"
        entries = self.store.get(key, [])
        entries.append(doc)
        self.store.set(key, entries)
        return doc["id"]

    async def list_history(self, target_id: str, limit: int = config.HISTORY_PAGE_SIZE) -> List[AnalysisResult]:
        entries = self.store.get(f"history_{target_id}", [])
        return sort_history([AnalysisResult(**d) for d in entries], limit)

    async def get_history_entry(self, result_id: str) -> Optional[AnalysisResult]:
        for key in self.store.keys("history_"):
            for doc in self.store.get(key, []):
                if doc.get("id") == result_id:
                    return AnalysisResult(**doc)
        return None


def build_gateway() -> PersistenceGateway:
    """MongoDB when MONGO_URL is configured, otherwise the local key store."""
    if config.MONGO_URL:
        logger.info(f"Using MongoDB database {config.DB_NAME}")
        return MongoGateway(AsyncIOMotorClient(config.MONGO_URL), config.DB_NAME)
    logger.info(f"MONGO_URL not set, using local storage at {config.DATA_DIR}")
    return LocalStorageGateway(config.DATA_DIR)
