"""
Vision client tests with a stubbed OpenAI client (no network).
"""
import asyncio
import json
from types import SimpleNamespace

import pytest

from models import AnalysisResult, AnalysisType, DocumentDetails, FinePrintDetails, PillboxDetails
from vision import (
    FRIENDLY_FOLLOWUP_ERROR, FRIENDLY_VISION_ERROR, SYSTEM_PROMPTS,
    VisionAnalysisClient, VisionAnalysisError, build_prompt, parse_details, strip_data_url
)


class StubCompletions:
    def __init__(self, content=None, error=None, delay=0):
        self.content = content
        self.error = error
        self.delay = delay
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def stub_client(**kwargs):
    completions = StubCompletions(**kwargs)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class TestPrompts:
    def test_pillbox_prompt_includes_schedule(self):
        prompt = build_prompt(AnalysisType.PILLBOX, "  Aspirin 8am  ")
        assert prompt.startswith(SYSTEM_PROMPTS[AnalysisType.PILLBOX])
        assert "Aspirin 8am" in prompt

    def test_blank_schedule_uses_plain_prompt(self):
        assert build_prompt(AnalysisType.PILLBOX, "   ") == SYSTEM_PROMPTS[AnalysisType.PILLBOX]

    def test_schedule_ignored_for_other_types(self):
        assert build_prompt("DOCUMENT", "Aspirin 8am") == SYSTEM_PROMPTS[AnalysisType.DOCUMENT]

    def test_strip_data_url(self):
        assert strip_data_url("data:image/png;base64,abc=") == "abc="
        assert strip_data_url("abc=") == "abc="


class TestParseDetails:
    def test_document_fraud_risk_is_normalized(self):
        details = parse_details(AnalysisType.DOCUMENT, json.dumps({
            "docType": "letter", "summary": "Prize claim", "fraudRisk": "HIGH RISK"
        }))
        assert isinstance(details, DocumentDetails)
        assert details.fraud_risk == "High"

    def test_unknown_fraud_risk_falls_back_to_medium(self):
        details = parse_details(AnalysisType.DOCUMENT, '{"fraudRisk": "unclear"}')
        assert details.fraud_risk == "Medium"

    def test_fine_print_snippet_alias(self):
        details = parse_details(AnalysisType.FINE_PRINT, '{"summary": "s", "fullSnippet": "Take with food"}')
        assert isinstance(details, FinePrintDetails)
        assert details.full_snippet == "Take with food"

    def test_pillbox_compartments(self):
        details = parse_details(AnalysisType.PILLBOX, json.dumps({
            "summary": "Monday is empty",
            "compartments": [{"name": "Monday AM", "status": "Empty"}]
        }))
        assert isinstance(details, PillboxDetails)
        assert details.compartments[0].name == "Monday AM"

    def test_non_object_is_rejected(self):
        with pytest.raises(ValueError):
            parse_details(AnalysisType.DOCUMENT, "[1, 2]")


class TestAnalyzeImage:
    def test_request_uses_json_mode_and_data_url(self):
        client, completions = stub_client(content='{"summary": "All full"}')
        vision = VisionAnalysisClient(client=client, model="test-model")
        details = asyncio.run(vision.analyze_image("data:image/jpeg;base64,QUJD", AnalysisType.PILLBOX, "Vitamin D"))

        assert details.summary == "All full"
        request = completions.requests[0]
        assert request["model"] == "test-model"
        assert request["response_format"] == {"type": "json_object"}
        assert "Vitamin D" in request["messages"][0]["content"]
        image_part = request["messages"][1]["content"][1]
        assert image_part["image_url"]["url"] == "data:image/jpeg;base64,QUJD"

    def test_malformed_json_becomes_friendly_error(self):
        client, _ = stub_client(content="not json")
        vision = VisionAnalysisClient(client=client)
        with pytest.raises(VisionAnalysisError) as exc_info:
            asyncio.run(vision.analyze_image("QUJD", AnalysisType.DOCUMENT))
        assert str(exc_info.value) == FRIENDLY_VISION_ERROR

    def test_network_failure_becomes_friendly_error(self):
        client, _ = stub_client(error=ConnectionError("reset"))
        vision = VisionAnalysisClient(client=client)
        with pytest.raises(VisionAnalysisError):
            asyncio.run(vision.analyze_image("QUJD", AnalysisType.FINE_PRINT))

    def test_timeout_becomes_friendly_error(self):
        client, _ = stub_client(content="{}", delay=1)
        vision = VisionAnalysisClient(client=client, timeout_seconds=0.01)
        with pytest.raises(VisionAnalysisError) as exc_info:
            asyncio.run(vision.analyze_image("QUJD", AnalysisType.DOCUMENT))
        assert str(exc_info.value) == FRIENDLY_VISION_ERROR


class TestFollowup:
    def make_result(self, image_url=""):
        return AnalysisResult(
            userId="s1", performedBy="s1", type=AnalysisType.FINE_PRINT,
            summary="Label", details={"dosage": "2 tablets"}, imageUrl=image_url
        )

    def test_answer_includes_result_context(self):
        client, completions = stub_client(content=" Take two tablets. ")
        vision = VisionAnalysisClient(client=client, followup_model="small-model")
        answer = asyncio.run(vision.ask_followup(self.make_result("data:image/jpeg;base64,QUJD"), "How many?"))

        assert answer == "Take two tablets."
        request = completions.requests[0]
        assert request["model"] == "small-model"
        assert "2 tablets" in request["messages"][0]["content"]
        assert len(request["messages"][1]["content"]) == 2

    def test_empty_answer_uses_apology(self):
        client, _ = stub_client(content="")
        vision = VisionAnalysisClient(client=client)
        assert asyncio.run(vision.ask_followup(self.make_result(), "Anything?")) == FRIENDLY_FOLLOWUP_ERROR

    def test_failure_raises_followup_error(self):
        client, _ = stub_client(error=RuntimeError("quota"))
        vision = VisionAnalysisClient(client=client)
        with pytest.raises(VisionAnalysisError) as exc_info:
            asyncio.run(vision.ask_followup(self.make_result(), "Anything?"))
        assert str(exc_info.value) == FRIENDLY_FOLLOWUP_ERROR
