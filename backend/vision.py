import asyncio
import json
import logging
from typing import Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

import config
from models import AnalysisType, AnalysisResult, DETAILS_BY_TYPE

logger = logging.getLogger(__name__)

FRIENDLY_VISION_ERROR = "I had trouble seeing that. Could you try taking a clearer photo?"
FRIENDLY_FOLLOWUP_ERROR = "I'm sorry, I couldn't answer that right now. Could you try asking again?"

SYSTEM_PROMPTS = {
    AnalysisType.PILLBOX: (
        "You are helping a senior check their weekly pill organizer. "
        "Look at every compartment you can see and report whether it is full, empty, or partially filled, "
        "and describe the pills inside (color, shape, count).\n"
        "Return strict JSON only: "
        "{\"summary\": \"one short sentence\", "
        "\"compartments\": [{\"name\": \"e.g. Monday AM\", \"status\": \"Full|Empty|Partial\", \"description\": \"...\"}]}"
    ),
    AnalysisType.FINE_PRINT: (
        "You are reading small print on a medication label, package or contract for a senior with low vision. "
        "Extract the dosage instructions, any warnings, and the expiry date if present.\n"
        "Return strict JSON only: "
        "{\"summary\": \"one short sentence\", \"dosage\": \"...\", \"warnings\": \"...\", "
        "\"expiry\": \"...\", \"fullSnippet\": \"the most important text, verbatim\"}. "
        "Leave out any field you cannot read."
    ),
    AnalysisType.DOCUMENT: (
        "You are reviewing a piece of mail or a printed document for a senior and checking it for signs of fraud "
        "(urgent payment demands, gift cards, unusual senders, threats, requests for personal details).\n"
        "Return strict JSON only: "
        "{\"docType\": \"bill|letter|advertisement|notice|other\", \"summary\": \"one short sentence\", "
        "\"sender\": \"...\", \"amount\": \"...\", \"dueDate\": \"...\", "
        "\"fraudRisk\": \"Low|Medium|High\", \"fraudReasoning\": \"...\"}"
    ),
}


def get_pillbox_prompt(medication_schedule: str) -> str:
    return (
        SYSTEM_PROMPTS[AnalysisType.PILLBOX]
        + "\nThe senior's medication schedule is:\n"
        + medication_schedule.strip()
        + "\nCompare what you see against this schedule and say clearly in the summary if anything looks missed or wrong."
    )


def build_prompt(analysis_type: AnalysisType, medication_schedule: Optional[str] = None) -> str:
    analysis_type = AnalysisType(analysis_type)
    if analysis_type == AnalysisType.PILLBOX and (medication_schedule or "").strip():
        return get_pillbox_prompt(medication_schedule)
    return SYSTEM_PROMPTS[analysis_type]


def strip_data_url(image: str) -> str:
    """Return the bare base64 payload of a data URL (or the input if it is already bare)."""
    if image.startswith("data:") and "," in image:
        return image.split(",", 1)[1]
    return image


def parse_details(analysis_type: AnalysisType, raw: str) -> BaseModel:
    """Parse the model's JSON text into the details model for ``analysis_type``."""
    parsed = json.loads(raw) if raw else {}
    if not isinstance(parsed, dict):
        raise ValueError("Vision response is not a JSON object")
    return DETAILS_BY_TYPE[AnalysisType(analysis_type)](**parsed)


class VisionAnalysisError(Exception):
    """Network failure, timeout or unparseable response; message is user-facing."""

    def __init__(self, message: str = FRIENDLY_VISION_ERROR):
        super().__init__(message)


class VisionAnalysisClient:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: str = config.VISION_MODEL,
        followup_model: str = config.FOLLOWUP_MODEL,
        timeout_seconds: float = config.VISION_TIMEOUT_SECONDS
    ):
        self._client = client
        self.model = model
        self.followup_model = followup_model
        self.timeout_seconds = timeout_seconds

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
        return self._client

    async def analyze_image(
        self,
        image_base64: str,
        analysis_type: AnalysisType,
        medication_schedule: Optional[str] = None
    ) -> BaseModel:
        prompt = build_prompt(analysis_type, medication_schedule)
        image_url = f"data:image/jpeg;base64,{strip_data_url(image_base64)}"
        try:
            completion = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    temperature=0,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": prompt},
                        {"role": "user", "content": [
                            {"type": "text", "text": "Analyze this photo."},
                            {"type": "image_url", "image_url": {"url": image_url}}
                        ]}
                    ]
                ),
                timeout=self.timeout_seconds
            )
            raw = (completion.choices[0].message.content or "").strip()
            return parse_details(analysis_type, raw)
        except asyncio.TimeoutError:
            logger.error(f"Vision analysis timed out after {self.timeout_seconds}s")
            raise VisionAnalysisError()
        except (ValueError, ValidationError) as e:
            logger.error(f"Vision analysis returned unusable JSON: {e}")
            raise VisionAnalysisError()
        except Exception as e:
            logger.error(f"Vision analysis error: {e}")
            raise VisionAnalysisError()

    async def ask_followup(self, result: AnalysisResult, question: str) -> str:
        """Answer one free-text question about an earlier scan, using its image and structured result."""
        context = json.dumps(result.details, ensure_ascii=False)
        system_message = f"""You are a patient, friendly assistant helping a senior understand a photo they took.
The photo was analyzed as {result.type} and the structured result was:
{context}

Guidelines:
- Answer in 2-3 short, plain sentences
- Only use what is visible in the photo or in the result
- If you are not sure, say so kindly
- Never give medical advice beyond what the label says; suggest asking a pharmacist or caregiver"""
        image_url = f"data:image/jpeg;base64,{strip_data_url(result.image_url)}" if result.image_url else None
        user_content = [{"type": "text", "text": question}]
        if image_url:
            user_content.append({"type": "image_url", "image_url": {"url": image_url}})
        try:
            completion = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.followup_model,
                    max_tokens=200,
                    temperature=0.3,
                    messages=[
                        {"role": "system", "content": system_message},
                        {"role": "user", "content": user_content}
                    ]
                ),
                timeout=self.timeout_seconds
            )
            answer = (completion.choices[0].message.content or "").strip()
        except Exception as e:
            logger.error(f"Follow-up question error: {e}")
            raise VisionAnalysisError(FRIENDLY_FOLLOWUP_ERROR)
        return answer or FRIENDLY_FOLLOWUP_ERROR
