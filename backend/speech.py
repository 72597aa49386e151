import asyncio
import base64
import logging
import uuid
from typing import Awaitable, Callable, Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

import config
from models import AnalysisResult, AnalysisType

logger = logging.getLogger(__name__)

Synthesizer = Callable[[str], Awaitable[bytes]]


class Utterance(BaseModel):
    id: str = Field(default_factory=lambda: f"utt_{uuid.uuid4().hex[:10]}")
    text: str
    status: str = "speaking"  # speaking, ready, cancelled, failed
    audio: Optional[str] = None  # base64 mp3
    format: str = "mp3"


def make_openai_synthesizer(client: Optional[AsyncOpenAI] = None, voice: str = config.TTS_VOICE) -> Synthesizer:
    async def synthesize(text: str) -> bytes:
        openai_client = client or AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        response = await openai_client.audio.speech.create(
            model=config.TTS_MODEL,
            voice=voice,
            input=text[:config.TTS_MAX_CHARS],
            speed=config.TTS_SPEED  # Slightly slower for elderly users
        )
        return response.content
    return synthesize


class SpeechOutputService:
    """One utterance slot. Starting a new utterance cancels the current one; nothing is queued."""

    def __init__(self, synthesize: Optional[Synthesizer] = None):
        self._synthesize = synthesize or make_openai_synthesizer()
        self._task: Optional[asyncio.Task] = None
        self.current: Optional[Utterance] = None

    @property
    def is_speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    def speak(self, text: str, synthesize: Optional[Synthesizer] = None) -> Optional[Utterance]:
        """Start speaking ``text``, optionally with a one-off synthesizer such as another voice."""
        text = (text or "").strip()
        if not text:
            return None
        self.cancel()
        utterance = Utterance(text=text)
        self.current = utterance
        self._task = asyncio.ensure_future(self._render(utterance, synthesize or self._synthesize))
        return utterance

    async def _render(self, utterance: Utterance, synthesize: Synthesizer) -> None:
        try:
            audio = await synthesize(utterance.text)
            utterance.audio = base64.b64encode(audio).decode('utf-8')
            utterance.status = "ready"
        except asyncio.CancelledError:
            utterance.status = "cancelled"
            raise
        except Exception as e:
            logger.error(f"TTS error: {e}")
            utterance.status = "failed"

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            if self.current is not None:
                self.current.status = "cancelled"
        self._task = None

    async def wait(self) -> Optional[Utterance]:
        """Wait for the current utterance to finish rendering (or be cancelled)."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return self.current


_default_service: Optional[SpeechOutputService] = None


def get_speech_service() -> SpeechOutputService:
    global _default_service
    if _default_service is None:
        _default_service = SpeechOutputService()
    return _default_service


def build_readout_text(result: AnalysisResult) -> str:
    """Text read aloud when a result is opened."""
    details = result.details or {}
    parts = [f"Result: {result.summary}."]
    if result.type == AnalysisType.PILLBOX:
        compartments = details.get("compartments") or []
        if compartments:
            parts.append("Here is what I see:")
            for c in compartments:
                parts.append(f"{c.get('name', '')} is {c.get('status', '')}. {c.get('description', '')}.")
    elif result.type == AnalysisType.FINE_PRINT:
        if details.get("dosage"):
            parts.append(f"Dosage: {details['dosage']}.")
        if details.get("warnings"):
            parts.append(f"Warnings: {details['warnings']}.")
        if details.get("fullSnippet"):
            parts.append(f"Additional text found: {details['fullSnippet']}.")
    elif result.type == AnalysisType.DOCUMENT:
        parts.append(f"Document type: {details.get('docType', 'unknown')}.")
        if details.get("fraudRisk"):
            parts.append(f"Fraud risk level is {details['fraudRisk']}.")
        if details.get("fraudReasoning"):
            parts.append(f"Reasoning: {details['fraudReasoning']}.")
    return " ".join(parts)
