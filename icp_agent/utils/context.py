"""
Context model helpers: creation, merge, readiness and the human-readable digest.

Everything here is pure. Helpers return new ``ConversationContext`` instances and
never mutate their arguments, so a turn that fails half way leaves the caller's
context untouched.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .state import (
    LIST_FIELDS,
    SCALAR_FIELDS,
    ConversationContext,
    ExtractedIntent,
)

# Open questions per stage, in the order they are asked. "targets" is satisfied
# by either LinkedIn profile URLs or company names.
STAGE_FIELDS: Dict[str, tuple] = {
    "init": ("outreach_type",),
    "outreach_type": ("outreach_type",),
    "outbound_target_knowledge": ("target_knowledge",),
    "inbound_flow": ("inbound_source", "inbound_data_ready", "capture_rules"),
    "outbound_known_target": ("targets", "roles", "locations"),
    "outbound_icp_discovery": (
        "problem_statement",
        "roles",
        "industries",
        "company_size",
        "locations",
        "deal_type",
    ),
    "confirmation": (),
    "ready_for_execution": (),
}

BRANCH_STAGES = ("inbound_flow", "outbound_known_target", "outbound_icp_discovery")

INBOUND_SOURCE_NAMES = {
    "website": "Website form",
    "whatsapp": "WhatsApp",
    "ads": "Ads",
    "crm": "CRM import",
    "webhook": "Webhook or API",
    "email": "Email",
    "linkedin": "LinkedIn",
}


def init_context() -> ConversationContext:
    return ConversationContext()


def status_for_stage(stage: str) -> str:
    if stage == "confirmation":
        return "awaiting_confirmation"
    if stage == "ready_for_execution":
        return "ready_for_execution"
    return "collecting_info"


def union_values(existing: Iterable[str], incoming: Iterable[str]) -> List[str]:
    """Ordered case-insensitive union; the first spelling seen is kept."""
    out: List[str] = []
    seen = set()
    for value in list(existing or []) + list(incoming or []):
        text = str(value or "").strip()
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(text)
    return out


def merge_fields(
    context: ConversationContext,
    partial: Union[ExtractedIntent, Mapping[str, Any], None],
) -> ConversationContext:
    """Return ``context`` with ``partial`` folded in.

    Lists are unioned; scalars are only written when currently unset, so a later
    ambiguous extraction cannot clobber an earlier answer.
    """
    updated = context.model_copy(deep=True)
    if partial is None:
        return updated
    if not isinstance(partial, ExtractedIntent):
        partial = ExtractedIntent.model_validate(dict(partial))
    for name in SCALAR_FIELDS:
        value = getattr(partial, name)
        if value is None:
            continue
        if getattr(updated, name) is None:
            setattr(updated, name, value)
    for name in LIST_FIELDS:
        incoming = getattr(partial, name) or []
        if incoming:
            setattr(updated, name, union_values(getattr(updated, name), incoming))
    if partial.confidence_score:
        updated.confidence_score = max(updated.confidence_score, int(partial.confidence_score))
    return updated


def _field_present(context: ConversationContext, field: str) -> bool:
    if field == "targets":
        return bool(context.linkedin_urls or context.companies)
    if field == "capture_rules":
        # only required when lead data is not ready yet
        return context.inbound_data_ready is not False or bool(context.capture_rules)
    value = getattr(context, field)
    if isinstance(value, list):
        return bool(value)
    return value is not None


def missing_field(context: ConversationContext, stage: Optional[str] = None) -> Optional[str]:
    """First unanswered field of ``stage`` (default: the context's stage)."""
    for field in STAGE_FIELDS.get(stage or context.stage, ()):
        if not _field_present(context, field):
            return field
    return None


def branch_stage(context: ConversationContext) -> Optional[str]:
    if context.outreach_type == "inbound":
        return "inbound_flow"
    if context.outreach_type == "outbound":
        if context.target_knowledge == "known":
            return "outbound_known_target"
        if context.target_knowledge == "discovery":
            return "outbound_icp_discovery"
    return None


def fallback_stage(context: ConversationContext) -> str:
    """Stage implied by the branch fields alone."""
    if context.outreach_type == "inbound":
        return "inbound_flow"
    if context.outreach_type == "outbound":
        return branch_stage(context) or "outbound_target_knowledge"
    return "outreach_type"


def is_context_ready(context: ConversationContext) -> bool:
    stage = branch_stage(context)
    if stage is None:
        return False
    return missing_field(context, stage) is None


def infer_strategy(context: ConversationContext) -> Optional[str]:
    if context.outreach_type != "outbound":
        return None
    if context.target_knowledge == "discovery":
        return "people_search"
    if context.target_knowledge == "known":
        return "people_enrichment" if context.linkedin_urls else "company_search"
    return None


def summarize(context: ConversationContext) -> str:
    """Short deterministic digest, one ``Label: value`` line per captured field."""
    lines: List[str] = []
    if context.outreach_type:
        lines.append(f"Outreach: {context.outreach_type}")
    if context.target_knowledge:
        label = "known targets" if context.target_knowledge == "known" else "discovery"
        lines.append(f"Target knowledge: {label}")
    if context.inbound_source:
        name = INBOUND_SOURCE_NAMES.get(context.inbound_source, context.inbound_source)
        lines.append(f"Lead source: {name}")
    if context.inbound_data_ready is not None:
        lines.append(f"Lead data ready: {'yes' if context.inbound_data_ready else 'no'}")
    if context.capture_rules:
        lines.append(f"Capture: {context.capture_rules}")
    if context.linkedin_urls:
        lines.append(f"LinkedIn profiles: {len(context.linkedin_urls)} provided")
    if context.companies:
        lines.append(f"Companies: {', '.join(context.companies)}")
    if context.problem_statement:
        lines.append(f"Problem: {context.problem_statement}")
    if context.roles:
        lines.append(f"Roles: {', '.join(context.roles)}")
    if context.industries:
        lines.append(f"Industries: {', '.join(context.industries)}")
    if context.company_size:
        lines.append(f"Company size: {context.company_size}")
    if context.locations:
        lines.append(f"Locations: {', '.join(context.locations)}")
    if context.deal_type:
        lines.append(f"Deal type: {context.deal_type}")
    return "\n".join(lines) or "No details captured yet."
