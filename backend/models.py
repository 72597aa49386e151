from enum import Enum
from typing import List, Optional, Any, Dict
import secrets
import time

from pydantic import BaseModel, Field, ConfigDict, field_validator

HISTORY_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


class UserRole(str, Enum):
    SENIOR = "SENIOR"
    CAREGIVER = "CAREGIVER"


class AnalysisType(str, Enum):
    PILLBOX = "PILLBOX"
    FINE_PRINT = "FINE_PRINT"
    DOCUMENT = "DOCUMENT"


class FraudRisk(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class StoreModel(BaseModel):
    """Base for records that round-trip through the document store with camelCase keys."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, use_enum_values=True)

    def to_document(self) -> dict:
        # Absent optional fields are omitted, never written as null.
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ==================== USERS ====================

class User(StoreModel):
    id: str
    name: str
    email: str
    role: UserRole = UserRole.SENIOR
    caregiver_id: Optional[str] = Field(default=None, alias="caregiverId")

    @property
    def is_caregiver(self) -> bool:
        return self.role == UserRole.CAREGIVER


def default_profile(identity_id: str, email: str) -> User:
    """Minimal SENIOR profile used when a signed-in identity has no profile document."""
    local_part = (email or "").split("@")[0] or "friend"
    return User(id=identity_id, name=local_part, email=email or "", role=UserRole.SENIOR)


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    role: UserRole = UserRole.SENIOR


class UserLogin(BaseModel):
    email: str
    password: str


class SeniorCreate(BaseModel):
    name: str
    email: str
    password: str


# ==================== PREFERENCES ====================

class UserPreferences(StoreModel):
    high_contrast: bool = Field(default=False, alias="highContrast")
    font_size: str = Field(default="normal", alias="fontSize")  # normal, large
    medication_schedule: str = Field(default="", alias="medicationSchedule")
    caregiver_note: Optional[str] = Field(default=None, alias="caregiverNote")


class PreferencesUpdate(StoreModel):
    """Partial preferences; only the fields that were sent are written."""
    high_contrast: Optional[bool] = Field(default=None, alias="highContrast")
    font_size: Optional[str] = Field(default=None, alias="fontSize")
    medication_schedule: Optional[str] = Field(default=None, alias="medicationSchedule")
    caregiver_note: Optional[str] = Field(default=None, alias="caregiverNote")

    def changes(self) -> dict:
        sent = self.model_dump(mode="json", by_alias=True, exclude_unset=True)
        # Only the note may be cleared with null; other fields always hold a value.
        return {k: v for k, v in sent.items() if v is not None or k == "caregiverNote"}


def normalize_font_size(value: Optional[str], fallback: str = "normal") -> str:
    cleaned = (value or "").strip().lower()
    return cleaned if cleaned in {"normal", "large"} else fallback


# ==================== ANALYSIS ====================

class Compartment(StoreModel):
    name: str = ""
    status: str = ""
    description: str = ""


class PillboxDetails(StoreModel):
    summary: str = ""
    compartments: List[Compartment] = []


class FinePrintDetails(StoreModel):
    summary: str = ""
    dosage: Optional[str] = None
    warnings: Optional[str] = None
    expiry: Optional[str] = None
    full_snippet: Optional[str] = Field(default=None, alias="fullSnippet")


class DocumentDetails(StoreModel):
    doc_type: str = Field(default="", alias="docType")
    summary: str = ""
    sender: Optional[str] = None
    amount: Optional[str] = None
    due_date: Optional[str] = Field(default=None, alias="dueDate")
    fraud_risk: FraudRisk = Field(default=FraudRisk.LOW, alias="fraudRisk")
    fraud_reasoning: Optional[str] = Field(default=None, alias="fraudReasoning")

    @field_validator("fraud_risk", mode="before")
    @classmethod
    def normalize_fraud_risk(cls, value):
        return normalize_fraud_risk(value)


def normalize_fraud_risk(value: Any, fallback: str = "Medium") -> str:
    """Map model output like 'high' or 'HIGH RISK' onto Low/Medium/High."""
    lowered = str(value or "").strip().lower()
    for level in ("high", "medium", "low"):
        if lowered.startswith(level):
            return level.capitalize()
    return fallback


DETAILS_BY_TYPE = {
    AnalysisType.PILLBOX: PillboxDetails,
    AnalysisType.FINE_PRINT: FinePrintDetails,
    AnalysisType.DOCUMENT: DocumentDetails,
}


def new_history_id() -> str:
    return "".join(secrets.choice(HISTORY_ID_ALPHABET) for _ in range(9))


def now_ms() -> int:
    return int(time.time() * 1000)


class AnalysisResult(StoreModel):
    id: str = Field(default_factory=new_history_id)
    user_id: str = Field(alias="userId")
    performed_by: str = Field(alias="performedBy")
    timestamp: int = Field(default_factory=now_ms)
    type: AnalysisType
    image_url: str = Field(default="", alias="imageUrl")
    summary: str = ""
    details: Dict[str, Any] = {}
    fraud_risk: Optional[FraudRisk] = Field(default=None, alias="fraudRisk")

    @field_validator("fraud_risk", mode="before")
    @classmethod
    def normalize_fraud_risk(cls, value):
        if value is None or value == "":
            return None
        return normalize_fraud_risk(value)

    def to_document(self) -> dict:
        doc = super().to_document()
        if self.type != AnalysisType.DOCUMENT.value:
            doc.pop("fraudRisk", None)
        return doc


def build_analysis_result(
    analysis_type: AnalysisType,
    details: BaseModel,
    target_id: str,
    performed_by: str,
    image_url: str
) -> AnalysisResult:
    """Wrap parsed model output into a history record for the target senior."""
    payload = details.model_dump(mode="json", by_alias=True, exclude_none=True)
    fraud_risk = None
    if analysis_type == AnalysisType.DOCUMENT:
        fraud_risk = payload.get("fraudRisk")
    return AnalysisResult(
        userId=target_id,
        performedBy=performed_by,
        type=analysis_type,
        imageUrl=image_url,
        summary=payload.get("summary") or "I've analyzed the image.",
        details=payload,
        fraudRisk=fraud_risk
    )


class FollowupQuestion(BaseModel):
    question: str


class TargetSelect(BaseModel):
    senior_id: Optional[str] = None


class TTSRequest(BaseModel):
    text: str
    voice: Optional[str] = None
