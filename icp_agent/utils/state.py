from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Literal, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

Stage = Literal[
    "init",
    "outreach_type",
    "inbound_flow",
    "outbound_target_knowledge",
    "outbound_known_target",
    "outbound_icp_discovery",
    "confirmation",
    "ready_for_execution",
]
Status = Literal["collecting_info", "awaiting_confirmation", "ready_for_execution"]
OutreachType = Literal["inbound", "outbound"]
TargetKnowledge = Literal["known", "discovery"]
DealShape = Literal["smb", "mid-market", "enterprise"]
Strategy = Literal["people_search", "company_search", "people_enrichment"]

STAGES = (
    "init",
    "outreach_type",
    "inbound_flow",
    "outbound_target_knowledge",
    "outbound_known_target",
    "outbound_icp_discovery",
    "confirmation",
    "ready_for_execution",
)
STATUSES = ("collecting_info", "awaiting_confirmation", "ready_for_execution")
DEAL_SHAPES = ("smb", "mid-market", "enterprise")

# Merge-only list fields, in summary order
LIST_FIELDS = ("linkedin_urls", "companies", "roles", "industries", "locations")
# First-writer-wins scalar fields
SCALAR_FIELDS = (
    "outreach_type",
    "target_knowledge",
    "inbound_source",
    "inbound_data_ready",
    "capture_rules",
    "problem_statement",
    "company_size",
    "deal_type",
)

_CHOICES: Dict[str, tuple] = {
    "outreach_type": ("inbound", "outbound"),
    "target_knowledge": ("known", "discovery"),
    "company_size": DEAL_SHAPES,
    "deal_type": DEAL_SHAPES,
    "inferred_strategy": ("people_search", "company_search", "people_enrichment"),
}


def _coerce_choice(field: str, value: Any) -> Any:
    if value is None:
        return None
    raw = str(value).strip().lower()
    if raw in _CHOICES[field]:
        return raw
    logger.debug("dropping unknown %s value: %r", field, value)
    return None


class ConversationContext(BaseModel):
    """Accumulated ICP answers plus the current stage pointer for one conversation.

    Serialized with camelCase keys (``to_blob``) because the blob is stored and
    read by services outside this package; attributes stay snake_case.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    stage: Stage = "init"
    status: Status = "collecting_info"
    outreach_type: Optional[OutreachType] = None
    target_knowledge: Optional[TargetKnowledge] = None
    inbound_source: Optional[str] = None
    inbound_data_ready: Optional[bool] = None
    capture_rules: Optional[str] = None
    linkedin_urls: List[str] = Field(default_factory=list)
    companies: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    industries: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    problem_statement: Optional[str] = None
    company_size: Optional[DealShape] = None
    deal_type: Optional[DealShape] = None
    confirmed: Optional[bool] = None
    inferred_strategy: Optional[Strategy] = None
    confidence_score: int = 0

    @field_validator("stage", mode="before")
    @classmethod
    def _known_stage(cls, value: Any) -> Any:
        # Stale blobs from retired flows restart at init; self-heal moves them forward
        if value is None or str(value) not in STAGES:
            if value is not None:
                logger.info("unknown stage %r in stored context; restarting at init", value)
            return "init"
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value: Any) -> Any:
        if value is None or str(value) not in STATUSES:
            return "collecting_info"
        return str(value)

    @field_validator("outreach_type", "target_knowledge", "company_size", "deal_type", "inferred_strategy", mode="before")
    @classmethod
    def _known_choice(cls, value: Any, info) -> Any:
        return _coerce_choice(info.field_name, value)

    @field_validator("linkedin_urls", "companies", "roles", "industries", "locations", mode="before")
    @classmethod
    def _list_of_text(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _bounded_score(cls, value: Any) -> Any:
        try:
            return max(0, min(100, int(value or 0)))
        except Exception:
            return 0

    def to_blob(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_blob(cls, blob: Any) -> "ConversationContext":
        """Rehydrate a stored context; ``None`` or an empty blob yields a fresh one."""
        if blob is None:
            return cls()
        if isinstance(blob, ConversationContext):
            return blob.model_copy(deep=True)
        if isinstance(blob, (str, bytes)):
            text = blob.decode("utf-8") if isinstance(blob, bytes) else blob
            blob = json.loads(text) if text.strip() else {}
        if not isinstance(blob, dict):
            raise TypeError(f"context blob must be a mapping, got {type(blob).__name__}")
        # Host services sometimes store the whole metadata envelope
        if isinstance(blob.get("assistantContext"), dict):
            blob = blob["assistantContext"]
        return cls.model_validate(blob)


class ExtractedIntent(BaseModel):
    """Partial field values recovered from one utterance.

    Also the JSON schema the structured extraction prompt asks for, so keys are
    accepted in camelCase.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    outreach_type: Optional[OutreachType] = None
    target_knowledge: Optional[TargetKnowledge] = None
    inbound_source: Optional[str] = None
    inbound_data_ready: Optional[bool] = None
    capture_rules: Optional[str] = None
    roles: Optional[List[str]] = None
    industries: Optional[List[str]] = None
    locations: Optional[List[str]] = None
    companies: Optional[List[str]] = None
    linkedin_urls: Optional[List[str]] = None
    problem_statement: Optional[str] = None
    company_size: Optional[DealShape] = None
    deal_type: Optional[DealShape] = None
    confidence_score: Optional[int] = Field(default=None, ge=0, le=100)

    @field_validator("outreach_type", "target_knowledge", "company_size", "deal_type", mode="before")
    @classmethod
    def _known_choice(cls, value: Any, info) -> Any:
        return _coerce_choice(info.field_name, value)

    @field_validator("roles", "industries", "locations", "companies", "linkedin_urls", mode="before")
    @classmethod
    def _list_of_text(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            # left for pydantic to reject
            return value
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    @field_validator("inbound_source", "capture_rules", "problem_statement", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def found(self) -> List[str]:
        """Names of fields that carry a value."""
        out: List[str] = []
        for name in SCALAR_FIELDS:
            if getattr(self, name) is not None:
                out.append(name)
        for name in LIST_FIELDS:
            if getattr(self, name):
                out.append(name)
        return out


class TurnResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    response: str
    context: ConversationContext
    status: Status
    ready_for_execution: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Utterance(TypedDict, total=False):
    role: str
    content: str
    timestamp: Optional[str]


class TurnState(TypedDict, total=False):
    message: str
    conversation_id: Optional[str]
    history: List[Utterance]
    context: ConversationContext
    stage_in: str
    response: str
    # which tier produced extraction / phrasing this turn (diagnostics)
    tiers: Dict[str, str]
    backfilled: List[str]
    healed: List[str]
