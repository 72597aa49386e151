"""
Session reconciliation for one signed-in account.

Owns who is logged in, which senior's records are being viewed (the active
target), and a live local copy of that target's preferences and history kept
in step with the store. Local mutations are optimistic: they are applied first
and persisted in the background; a failed persist only raises the error banner.
"""
import asyncio
import logging
from typing import List, Optional, Set, Union

from pydantic import BaseModel, Field

import config
from gateway import PersistenceGateway, sort_history
from identity import AuthEvent, IdentitySession, normalize_email
from models import (
    User, UserRole, UserPreferences, PreferencesUpdate, AnalysisResult, AnalysisType,
    default_profile, build_analysis_result, normalize_font_size
)
from retry import fetch_or_heal
from speech import SpeechOutputService, get_speech_service
from vision import VisionAnalysisClient, strip_data_url

logger = logging.getLogger(__name__)

HISTORY_SAVE_FAILED = "We couldn't save this scan to the history. It is still shown here."
PREFERENCES_SAVE_FAILED = "We couldn't save your settings. They will apply on this device for now."


class SessionError(Exception):
    """A user-initiated action that cannot run in the current session state."""
    status_code = 400


class TargetAccessError(SessionError):
    status_code = 403


class ProfileUnavailableError(SessionError):
    status_code = 503

    def __init__(self, message: str = "We couldn't load your profile. Please try again in a moment."):
        super().__init__(message)


class SessionContext(BaseModel):
    current_user: Optional[User] = None
    active_target_id: Optional[str] = None
    seniors: List[User] = []
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    history: List[AnalysisResult] = []
    has_read_note: bool = False
    on_dashboard: bool = False
    error_banner: Optional[str] = None


class SessionCore:
    def __init__(
        self,
        gateway: PersistenceGateway,
        auth: Optional[IdentitySession] = None,
        vision: Optional[VisionAnalysisClient] = None,
        speech: Optional[SpeechOutputService] = None,
        profile_attempts: int = config.PROFILE_FETCH_ATTEMPTS,
        profile_delay_ms: int = config.PROFILE_FETCH_DELAY_MS,
        note_delay_ms: int = config.NOTE_READOUT_DELAY_MS,
        history_limit: int = config.HISTORY_PAGE_SIZE
    ):
        self.gateway = gateway
        self.auth = auth or gateway.new_identity_session()
        self.vision = vision or VisionAnalysisClient()
        self.speech = speech or get_speech_service()
        self.profile_attempts = profile_attempts
        self.profile_delay_ms = profile_delay_ms
        self.note_delay_ms = note_delay_ms
        self.history_limit = history_limit

        self.context = SessionContext()
        self._auth_epoch = 0
        self._observe_epoch = 0
        self._select_seq = 0
        self._unsubscribe_prefs = None
        self._note_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Future] = set()
        self._unsubscribe_auth = self.auth.on_auth_event(self.on_auth_change)

    # ==================== AUTH ====================

    async def sign_up(self, email: str, password: str, name: str, role: UserRole = UserRole.SENIOR) -> User:
        identity_id = await self.auth.register(email, password)
        profile = User(id=identity_id, name=name.strip(), email=normalize_email(email), role=role)
        await self.gateway.upsert_profile(profile)
        try:
            await self.auth.settle()
        except Exception as e:
            logger.warning(f"Sign-in reconciliation for {identity_id} failed: {e}")
        current = self.context.current_user
        if current is None or current.id != identity_id or current.role != profile.role:
            # The sign-in listener healed before our write landed.
            await self._activate(profile)
        return self.context.current_user

    async def login(self, email: str, password: str) -> User:
        await self.auth.sign_in(email, password)
        return await self._settle_sign_in()

    async def restore(self, token: str) -> User:
        await self.auth.restore(token)
        return await self._settle_sign_in()

    async def _settle_sign_in(self) -> User:
        """Wait for the sign-in listener; a session without a profile is signed out again."""
        try:
            await self.auth.settle()
        except Exception as e:
            logger.error(f"Loading the profile for {self.auth.identity_id} failed: {e}")
        user = self.context.current_user
        if user is None or user.id != self.auth.identity_id:
            await self.logout()
            raise ProfileUnavailableError()
        return user

    async def logout(self) -> None:
        await self.auth.sign_out()
        await self.auth.settle()

    async def on_auth_change(self, event: AuthEvent) -> None:
        self._auth_epoch += 1
        epoch = self._auth_epoch
        if not event.is_signed_in:
            logger.info("Signed out, clearing session")
            self._reset()
            return

        identity_id = event.identity_id
        profile = await fetch_or_heal(
            f"users/{identity_id}",
            lookup=lambda: self.gateway.get_profile(identity_id),
            make_default=lambda: default_profile(identity_id, event.email or ""),
            persist=self.gateway.create_profile_if_absent,
            attempts=self.profile_attempts,
            delay_ms=self.profile_delay_ms
        )
        if epoch != self._auth_epoch:
            logger.info(f"Auth event for {identity_id} superseded, dropping")
            return
        await self._activate(profile)

    async def _activate(self, profile: User) -> None:
        ctx = self.context
        ctx.current_user = profile
        ctx.error_banner = None
        logger.info(f"Session active for {profile.id} ({profile.role})")
        if profile.is_caregiver:
            self._set_target(None)
            await self.refresh_seniors()
        else:
            ctx.seniors = []
            ctx.has_read_note = False
            self._set_target(profile.id)

    def _reset(self) -> None:
        self._select_seq += 1
        self._stop_observing()
        self._cancel_note()
        self.speech.cancel()
        self.context = SessionContext()

    async def close(self) -> None:
        self._unsubscribe_auth()
        self._reset()
        await self.drain()

    # ==================== TARGETS ====================

    async def refresh_seniors(self) -> List[User]:
        user = self.context.current_user
        if user is None or not user.is_caregiver:
            return []
        try:
            seniors = await self.gateway.find_seniors_of_caregiver(user.id)
        except Exception as e:
            logger.warning(f"Could not load seniors for {user.id}: {e}")
            return self.context.seniors
        if self.context.current_user is user:
            self.context.seniors = sorted(seniors, key=lambda s: s.name.lower())
        return self.context.seniors

    async def select_target(self, senior_id: Optional[str]) -> Optional[str]:
        user = self._require_user()
        self._select_seq += 1
        seq = self._select_seq
        if not user.is_caregiver:
            if senior_id in (None, user.id):
                return self.context.active_target_id
            raise TargetAccessError("Senior accounts can only view their own records")
        if senior_id is None:
            self._set_target(None)
            return None
        if not self._is_managed(senior_id):
            await self.refresh_seniors()
            if seq != self._select_seq:
                return self.context.active_target_id
            if not self._is_managed(senior_id):
                raise TargetAccessError("That person is not on your list of seniors")
        self._set_target(senior_id)
        return senior_id

    def _is_managed(self, senior_id: str) -> bool:
        return any(s.id == senior_id for s in self.context.seniors)

    def _set_target(self, target_id: Optional[str]) -> None:
        if target_id == self.context.active_target_id and self._unsubscribe_prefs is not None:
            return
        self.context.active_target_id = target_id
        self._cancel_note()
        self.observe_target(target_id)

    def observe_target(self, target_id: Optional[str]) -> None:
        """Swap the live preferences subscription and reload history for ``target_id``."""
        self._stop_observing()
        self._observe_epoch += 1
        epoch = self._observe_epoch
        self.context.preferences = UserPreferences()
        self.context.history = []
        if target_id is None:
            return
        try:
            self._unsubscribe_prefs = self.gateway.subscribe_preferences(
                target_id,
                self._preferences_handler(target_id, epoch),
                self._preferences_error_handler(target_id)
            )
        except Exception as e:
            logger.warning(f"Preferences subscription for {target_id} rejected: {e}")
        self._spawn(self._load_history(target_id, epoch))

    def _stop_observing(self) -> None:
        if self._unsubscribe_prefs is not None:
            self._unsubscribe_prefs()
            self._unsubscribe_prefs = None

    def _preferences_handler(self, target_id: str, epoch: int):
        def handle(prefs: UserPreferences) -> None:
            if epoch != self._observe_epoch or target_id != self.context.active_target_id:
                logger.debug(f"Discarding stale preferences for {target_id}")
                return
            self.context.preferences = prefs
            self._maybe_schedule_note()
        return handle

    def _preferences_error_handler(self, target_id: str):
        def handle(error: Exception) -> None:
            logger.warning(f"Preferences for {target_id} stopped updating: {error}")
        return handle

    async def _load_history(self, target_id: str, epoch: int) -> None:
        try:
            fetched = await self.gateway.list_history(target_id, self.history_limit)
        except Exception as e:
            logger.warning(f"History fetch for {target_id} failed, showing none: {e}")
            fetched = []
        if epoch != self._observe_epoch:
            return
        # Keep anything recorded locally while the fetch was in flight.
        fetched_ids = {r.id for r in fetched}
        pending = [r for r in self.context.history if r.id not in fetched_ids]
        self.context.history = sort_history(pending + list(fetched), self.history_limit)

    # ==================== MUTATIONS ====================

    def record_analysis(self, result: AnalysisResult) -> AnalysisResult:
        """Show the result immediately and persist it in the background; never rolled back."""
        if result.user_id == self.context.active_target_id:
            self.context.history = [result] + [r for r in self.context.history if r.id != result.id]
        self._spawn(self._persist_history(result))
        return result

    async def _persist_history(self, result: AnalysisResult) -> None:
        try:
            await self.gateway.insert_history(result)
        except Exception as e:
            logger.error(f"Saving history {result.id} failed: {e}")
            self.context.error_banner = HISTORY_SAVE_FAILED

    def update_preferences(self, update: Union[PreferencesUpdate, dict]) -> UserPreferences:
        target_id = self.context.active_target_id
        if target_id is None:
            return self.context.preferences
        if isinstance(update, PreferencesUpdate):
            changes = update.changes()
        else:
            changes = PreferencesUpdate(**update).changes()
        if "fontSize" in changes:
            changes["fontSize"] = normalize_font_size(changes["fontSize"])
        if not changes:
            return self.context.preferences
        merged = {**self.context.preferences.model_dump(by_alias=True), **changes}
        self.context.preferences = UserPreferences(**merged)
        self._spawn(self._persist_preferences(target_id, changes))
        self._maybe_schedule_note()
        return self.context.preferences

    async def _persist_preferences(self, target_id: str, changes: dict) -> None:
        try:
            await self.gateway.upsert_preferences(target_id, changes)
        except Exception as e:
            logger.error(f"Saving preferences for {target_id} failed: {e}")
            self.context.error_banner = PREFERENCES_SAVE_FAILED

    async def create_managed_senior(self, name: str, email: str, password: str) -> User:
        caregiver = self._require_user()
        if not caregiver.is_caregiver:
            raise SessionError("Only caregivers can add a senior")
        if not (name or "").strip() or not (email or "").strip() or not password:
            raise SessionError("Please fill in all fields to create the senior's account.")
        senior_id = await self.gateway.register_as_secondary_identity(email, password)
        senior = User(
            id=senior_id,
            name=name.strip(),
            email=normalize_email(email),
            role=UserRole.SENIOR,
            caregiverId=caregiver.id
        )
        await self.gateway.upsert_profile(senior)
        await self.refresh_seniors()
        if not self._is_managed(senior_id) and self.context.current_user is caregiver:
            self.context.seniors = self.context.seniors + [senior]
        logger.info(f"Caregiver {caregiver.id} added senior {senior_id}")
        return senior

    def dismiss_error(self) -> None:
        self.context.error_banner = None

    # ==================== ANALYSIS ====================

    async def analyze_capture(self, image_base64: str, analysis_type: AnalysisType) -> AnalysisResult:
        user = self._require_user()
        target_id = self.context.active_target_id
        if target_id is None:
            raise SessionError("Choose a senior before scanning")
        details = await self.vision.analyze_image(
            image_base64,
            analysis_type,
            self.context.preferences.medication_schedule
        )
        result = build_analysis_result(
            AnalysisType(analysis_type),
            details,
            target_id=target_id,
            performed_by=user.id,
            image_url=f"data:image/jpeg;base64,{strip_data_url(image_base64)}"
        )
        return self.record_analysis(result)

    async def get_history_entry(self, result_id: str) -> AnalysisResult:
        self._require_user()
        for item in self.context.history:
            if item.id == result_id:
                return item
        entry = await self.gateway.get_history_entry(result_id)
        if entry is None or entry.user_id != self.context.active_target_id:
            raise TargetAccessError("That scan is not available")
        return entry

    async def ask_followup(self, result_id: str, question: str) -> str:
        if not (question or "").strip():
            raise SessionError("Please ask a question")
        entry = await self.get_history_entry(result_id)
        return await self.vision.ask_followup(entry, question.strip())

    # ==================== CAREGIVER NOTE ====================

    def visit_dashboard(self) -> None:
        self.context.on_dashboard = True
        self._maybe_schedule_note()

    def leave_dashboard(self) -> None:
        self.context.on_dashboard = False
        self._cancel_note()

    def _maybe_schedule_note(self) -> None:
        ctx = self.context
        user = ctx.current_user
        if user is None or user.is_caregiver or not ctx.on_dashboard or ctx.has_read_note:
            return
        if not (ctx.preferences.caregiver_note or "").strip():
            return
        if self._note_task is not None and not self._note_task.done():
            return
        self._note_task = asyncio.ensure_future(self._read_note_later())

    async def _read_note_later(self) -> None:
        await asyncio.sleep(self.note_delay_ms / 1000)
        ctx = self.context
        note = (ctx.preferences.caregiver_note or "").strip()
        if ctx.has_read_note or not ctx.on_dashboard or not note:
            return
        ctx.has_read_note = True
        self.speech.speak(f"Message from your caregiver: {note}")

    def _cancel_note(self) -> None:
        if self._note_task is not None and not self._note_task.done():
            self._note_task.cancel()
        self._note_task = None

    # ==================== HELPERS ====================

    def _require_user(self) -> User:
        if self.context.current_user is None:
            raise SessionError("Please sign in first")
        return self.context.current_user

    def _spawn(self, coro) -> asyncio.Future:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background persistence and history loads to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def snapshot(self) -> dict:
        ctx = self.context
        return {
            "user": ctx.current_user.to_document() if ctx.current_user else None,
            "activeTargetId": ctx.active_target_id,
            "seniors": [s.to_document() for s in ctx.seniors],
            "preferences": ctx.preferences.to_document(),
            "history": [r.to_document() for r in ctx.history],
            "hasReadNote": ctx.has_read_note,
            "errorBanner": ctx.error_banner
        }
