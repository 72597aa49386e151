from fastapi import FastAPI, APIRouter, HTTPException, Depends, UploadFile, File, Form, Request, Response
from starlette.middleware.cors import CORSMiddleware
import logging
from collections import OrderedDict
from typing import Optional, List

import config
from capture import CaptureProvider, CaptureError
from gateway import build_gateway, MongoGateway
from identity import IdentityError, InvalidTokenError, decode_access_token
from models import (
    UserCreate, UserLogin, SeniorCreate, PreferencesUpdate, AnalysisType,
    FollowupQuestion, TargetSelect, TTSRequest
)
from session_core import SessionCore, SessionError
from speech import SpeechOutputService, make_openai_synthesizer, build_readout_text
from vision import VisionAnalysisClient, VisionAnalysisError

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 12 * 1024 * 1024

gateway = build_gateway()
vision_client = VisionAnalysisClient()

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# ==================== SESSIONS ====================

class SessionRegistry:
    """Live session cores keyed by access token, oldest evicted first."""

    def __init__(self, max_sessions: int = 500):
        self.max_sessions = max_sessions
        self._cores: "OrderedDict[str, SessionCore]" = OrderedDict()
        self._captures: dict = {}

    def build_core(self) -> SessionCore:
        speech = SpeechOutputService(make_openai_synthesizer())
        return SessionCore(gateway, vision=vision_client, speech=speech)

    def get(self, token: str) -> Optional[SessionCore]:
        core = self._cores.get(token)
        if core is not None:
            self._cores.move_to_end(token)
        return core

    async def add(self, token: str, core: SessionCore) -> SessionCore:
        """Register ``core`` for ``token`` and return the core now serving it."""
        existing = self._cores.get(token)
        if existing is not None and existing is not core:
            # Another request restored this token first; keep that core.
            self._cores.move_to_end(token)
            await core.close()
            return existing
        self._cores[token] = core
        self._cores.move_to_end(token)
        while len(self._cores) > self.max_sessions:
            old_token, old_core = self._cores.popitem(last=False)
            self._captures.pop(old_token, None)
            await old_core.close()
        return core

    async def remove(self, token: str) -> None:
        core = self._cores.pop(token, None)
        self._captures.pop(token, None)
        if core is not None:
            await core.close()

    def capture_for(self, token: str) -> CaptureProvider:
        if token not in self._captures:
            self._captures[token] = CaptureProvider()
        return self._captures[token]

    async def close_all(self) -> None:
        for token in list(self._cores):
            await self.remove(token)


sessions = SessionRegistry()


def read_token(request: Request) -> Optional[str]:
    token = request.cookies.get("access_token")

    # Fallback to Authorization header
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ")[1]
    return token


async def get_current_session(request: Request) -> SessionCore:
    """Get the session core for the JWT in the cookie or Authorization header, restoring it if needed"""
    token = read_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    core = sessions.get(token)
    if core is None:
        try:
            decode_access_token(token)
        except InvalidTokenError as e:
            raise HTTPException(status_code=401, detail=str(e))
        core = sessions.build_core()
        try:
            await core.restore(token)
        except SessionError as e:
            await core.close()
            raise_for_session_error(e)
        core = await sessions.add(token, core)

    if core.context.current_user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return core


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key="access_token",
        value=token,
        httponly=True,
        secure=True,
        samesite="none",
        path="/",
        max_age=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    )


def raise_for_session_error(e: Exception) -> None:
    if isinstance(e, (IdentityError, SessionError)):
        raise HTTPException(status_code=e.status_code, detail=str(e))
    if isinstance(e, (VisionAnalysisError, CaptureError)):
        raise HTTPException(status_code=502 if isinstance(e, VisionAnalysisError) else 400, detail=str(e))
    raise e

# ==================== AUTH ====================

@api_router.post("/auth/register")
async def register(response: Response, user_data: UserCreate):
    """Register a new user and sign them in"""
    core = sessions.build_core()
    try:
        user = await core.sign_up(user_data.email, user_data.password, user_data.name, user_data.role)
    except (IdentityError, SessionError) as e:
        await core.close()
        raise_for_session_error(e)

    token = core.auth.token
    await sessions.add(token, core)
    set_session_cookie(response, token)
    return {"message": "User registered successfully", "user": user.to_document(), "access_token": token}

@api_router.post("/auth/login")
async def login(response: Response, form_data: UserLogin):
    """Login user and set JWT cookie"""
    core = sessions.build_core()
    try:
        user = await core.login(form_data.email, form_data.password)
    except (IdentityError, SessionError) as e:
        await core.close()
        raise_for_session_error(e)

    token = core.auth.token
    await sessions.add(token, core)
    set_session_cookie(response, token)
    return {"message": "Login successful", "user": user.to_document(), "access_token": token}

@api_router.get("/auth/me")
async def get_me(core: SessionCore = Depends(get_current_session)):
    """Get current user info"""
    return core.context.current_user.to_document()

@api_router.post("/auth/logout")
async def logout(request: Request, response: Response):
    """Logout user"""
    token = read_token(request)
    if token:
        core = sessions.get(token)
        if core is not None:
            await core.logout()
        await sessions.remove(token)
    response.delete_cookie(key="access_token", path="/")
    return {"message": "Logged out"}

# ==================== SESSION ====================

@api_router.get("/session", response_model=dict)
async def get_session_state(core: SessionCore = Depends(get_current_session)):
    return core.snapshot()

@api_router.post("/session/target", response_model=dict)
async def select_session_target(
    payload: TargetSelect,
    core: SessionCore = Depends(get_current_session)
):
    try:
        await core.select_target(payload.senior_id)
    except SessionError as e:
        raise_for_session_error(e)
    await core.drain()
    return core.snapshot()

@api_router.post("/session/dashboard", response_model=dict)
async def visit_dashboard(core: SessionCore = Depends(get_current_session)):
    core.visit_dashboard()
    return core.snapshot()

@api_router.delete("/session/dashboard", response_model=dict)
async def leave_dashboard(core: SessionCore = Depends(get_current_session)):
    core.leave_dashboard()
    return core.snapshot()

@api_router.delete("/session/error", response_model=dict)
async def dismiss_session_error(core: SessionCore = Depends(get_current_session)):
    core.dismiss_error()
    return core.snapshot()

@api_router.get("/session/speech")
async def get_current_speech(core: SessionCore = Depends(get_current_session)):
    """Latest utterance for the view to play"""
    utterance = core.speech.current
    return utterance.model_dump() if utterance else {"status": "idle"}

@api_router.post("/session/speech/stop")
async def stop_speech(core: SessionCore = Depends(get_current_session)):
    core.speech.cancel()
    return {"message": "Stopped"}

# ==================== SENIORS ====================

@api_router.get("/seniors", response_model=List[dict])
async def get_managed_seniors(core: SessionCore = Depends(get_current_session)):
    """Seniors whose caregiverId points at the current caregiver"""
    seniors = await core.refresh_seniors()
    return [s.to_document() for s in seniors]

@api_router.post("/seniors", response_model=dict)
async def create_managed_senior(
    senior: SeniorCreate,
    core: SessionCore = Depends(get_current_session)
):
    """Create a senior login without disturbing the caregiver's own session"""
    try:
        created = await core.create_managed_senior(senior.name, senior.email, senior.password)
    except (IdentityError, SessionError) as e:
        raise_for_session_error(e)
    return created.to_document()

# ==================== PREFERENCES ====================

@api_router.get("/preferences", response_model=dict)
async def get_preferences(core: SessionCore = Depends(get_current_session)):
    return core.context.preferences.to_document()

@api_router.put("/preferences", response_model=dict)
async def update_preferences(
    update: PreferencesUpdate,
    core: SessionCore = Depends(get_current_session)
):
    if core.context.active_target_id is None:
        raise HTTPException(status_code=400, detail="Choose a senior first")
    prefs = core.update_preferences(update)
    return prefs.to_document()

# ==================== HISTORY & ANALYSIS ====================

@api_router.get("/history", response_model=List[dict])
async def get_history(core: SessionCore = Depends(get_current_session)):
    await core.drain()
    return [r.to_document() for r in core.context.history]

@api_router.get("/history/{result_id}", response_model=dict)
async def get_history_entry(
    result_id: str,
    core: SessionCore = Depends(get_current_session)
):
    try:
        entry = await core.get_history_entry(result_id)
    except SessionError as e:
        raise_for_session_error(e)
    return entry.to_document()

@api_router.post("/history/{result_id}/speak")
async def speak_history_entry(
    result_id: str,
    core: SessionCore = Depends(get_current_session)
):
    try:
        entry = await core.get_history_entry(result_id)
    except SessionError as e:
        raise_for_session_error(e)
    utterance = core.speech.speak(build_readout_text(entry))
    return utterance.model_dump() if utterance else {"status": "idle"}

@api_router.post("/analyze", response_model=dict)
async def analyze_photo(
    request: Request,
    file: UploadFile = File(...),
    analysis_type: str = Form(...),
    core: SessionCore = Depends(get_current_session)
):
    """Encode the uploaded photo, run it through the vision model and record the result"""
    try:
        kind = AnalysisType(analysis_type.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail="analysis_type must be PILLBOX, FINE_PRINT or DOCUMENT")

    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="That photo is too large")

    capture = sessions.capture_for(read_token(request))
    try:
        image = await capture.capture_file(content)
        result = await core.analyze_capture(image.base64, kind)
    except (CaptureError, SessionError, VisionAnalysisError) as e:
        raise_for_session_error(e)

    core.speech.speak(build_readout_text(result))
    return result.to_document()

@api_router.post("/history/{result_id}/ask", response_model=dict)
async def ask_about_result(
    result_id: str,
    payload: FollowupQuestion,
    core: SessionCore = Depends(get_current_session)
):
    try:
        answer = await core.ask_followup(result_id, payload.question)
    except (SessionError, VisionAnalysisError) as e:
        raise_for_session_error(e)
    core.speech.speak(answer)
    return {"answer": answer}

# ==================== VOICE ====================

@api_router.post("/tts")
async def text_to_speech(
    request: TTSRequest,
    core: SessionCore = Depends(get_current_session)
):
    """Convert text to speech using OpenAI TTS"""
    synthesize = make_openai_synthesizer(voice=request.voice) if request.voice else None
    if core.speech.speak(request.text, synthesize=synthesize) is None:
        raise HTTPException(status_code=400, detail="Nothing to say")
    utterance = await core.speech.wait()
    if utterance is None or utterance.status != "ready":
        raise HTTPException(status_code=500, detail="Failed to generate speech")
    return {"audio": utterance.audio, "format": utterance.format}

@api_router.get("/")
async def root():
    return {"message": "EagleView API"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def prepare_store():
    if isinstance(gateway, MongoGateway):
        await gateway.ensure_indexes()

@app.on_event("shutdown")
async def shutdown_db_client():
    await sessions.close_all()
    await gateway.close()
