import asyncio

import pytest

from gateway import LocalStorageGateway
from models import PillboxDetails, DocumentDetails, FinePrintDetails, AnalysisType
from session_core import SessionCore
from speech import SpeechOutputService


class FakeVision:
    """Stands in for the hosted vision model; returns canned details per analysis type."""

    def __init__(self, details=None, error=None):
        self.details = details or {}
        self.error = error
        self.calls = []

    async def analyze_image(self, image_base64, analysis_type, medication_schedule=None):
        self.calls.append((AnalysisType(analysis_type), medication_schedule))
        if self.error:
            raise self.error
        if analysis_type in self.details:
            return self.details[analysis_type]
        if analysis_type == AnalysisType.DOCUMENT:
            return DocumentDetails(docType="bill", summary="A utility bill.", fraudRisk="Low")
        if analysis_type == AnalysisType.FINE_PRINT:
            return FinePrintDetails(summary="Take one tablet daily.", dosage="1 tablet")
        return PillboxDetails(summary="All compartments look full.")

    async def ask_followup(self, result, question):
        return f"About your {result.type}: {question}"


class RecordingSynth:
    def __init__(self, delay=0):
        self.delay = delay
        self.spoken = []

    async def __call__(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.spoken.append(text)
        return b"mp3-bytes"


@pytest.fixture
def gateway(tmp_path):
    """Local key store gateway in an isolated directory"""
    return LocalStorageGateway(tmp_path / "store")


@pytest.fixture
def synth():
    return RecordingSynth()


@pytest.fixture
def make_core(gateway, synth):
    """Factory for session cores with fast retry timings and fake collaborators"""
    def factory(vision=None, **overrides):
        options = {
            "profile_attempts": 3,
            "profile_delay_ms": 5,
            "note_delay_ms": 20,
        }
        options.update(overrides)
        return SessionCore(
            gateway,
            vision=vision or FakeVision(),
            speech=SpeechOutputService(synth),
            **options
        )
    return factory
