"""
Document and AI boundary schemas.

Each document class maps to a store collection:
- Group       -> "groups"
- Candidate   -> "candidates"
- Vote        -> "votes" (keyed "{nationalId}_{groupId}")
- ElectionSettings -> "settings/election"
- HistoryEntry -> "history"
"""
import json
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator

NATIONAL_ID_PATTERN = r'^[0-9]{16}$'


class Group(BaseModel):
    """A ballot category, e.g. "Presidential"."""
    name: str = Field(..., min_length=2, description="Group name")
    description: str = Field("", description="Optional description of the race")

    @field_validator('name', 'description', mode='before')
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class Candidate(BaseModel):
    name: str = Field(..., min_length=2, description="Candidate name")
    description: str = Field("", description="Short biography or platform")
    imageUrl: HttpUrl = Field(..., description="Portrait URL")
    groupId: str = Field(..., min_length=1, description="ID of the group the candidate runs in")

    @field_validator('name', 'description', mode='before')
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    def to_document(self):
        doc = self.model_dump()
        doc['imageUrl'] = str(self.imageUrl)
        return doc


class Vote(BaseModel):
    candidateId: str
    candidateName: str
    groupId: str
    nationalId: str = Field(..., pattern=NATIONAL_ID_PATTERN)
    timestamp: str = Field(..., description="ISO-8601 time the vote was recorded")


class ElectionSettings(BaseModel):
    status: Literal['active', 'ended'] = 'active'
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    activeGroupId: Optional[str] = None

    @field_validator('startDate', 'endDate', 'activeGroupId', mode='before')
    @classmethod
    def blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('startDate', 'endDate')
    @classmethod
    def naive_is_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode='after')
    def check_window(self):
        if self.startDate and self.endDate and self.endDate <= self.startDate:
            raise ValueError("endDate must be after startDate")
        return self

    def to_document(self):
        return {
            'status': self.status,
            'startDate': self.startDate.isoformat() if self.startDate else None,
            'endDate': self.endDate.isoformat() if self.endDate else None,
            'activeGroupId': self.activeGroupId,
        }


class HistoryEntry(BaseModel):
    name: str
    date: str
    totalVotes: int = 0
    winner: str = "N/A"
    groups: List[dict] = Field(default_factory=list)


# ------------------------------- AI contracts -------------------------------

class TranslationInput(BaseModel):
    text: str = Field(..., min_length=1, description="The text to translate.")
    language: Literal['en', 'kin', 'fr'] = Field(
        ..., description="Target language (en: English, kin: Kinyarwanda, fr: French)."
    )


class TranslationOutput(BaseModel):
    translatedText: str


class FraudAnalysisInput(BaseModel):
    votingData: str = Field(..., description="JSON string with voter IDs and candidate choices.")

    @field_validator('votingData')
    @classmethod
    def must_be_json(cls, v):
        try:
            json.loads(v)
        except (TypeError, ValueError):
            raise ValueError("Invalid JSON format.")
        return v


class FraudAnalysisOutput(BaseModel):
    anomalies: List[str] = Field(default_factory=list)
    summary: str


class NidaVerificationInput(BaseModel):
    nationalId: str = Field(..., min_length=16, max_length=16)
    dob: str = Field(..., description="Date of birth as YYYY-MM-DD.")
    district: Optional[str] = None


class NidaVerificationOutput(BaseModel):
    isValid: bool
    fullName: Optional[str] = None
    reason: Optional[str] = None
