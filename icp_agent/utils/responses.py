"""
Outbound message composition.

The generative tier phrases the next question from a per-stage instruction; the
template tables below are both its fallback and the source of truth for what
each (stage, open field) pair asks. Confirmation summaries are never delegated
to the model.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional, Sequence, Tuple

from .context import STAGE_FIELDS, missing_field, summarize
from .llm import CapabilityUnavailable, ChatCapability
from .state import ConversationContext

log = logging.getLogger("assistant.respond")

CONFIRM_CLARIFY = "Does this look correct? Just say yes or no."
READY_ACK = "Great. I'm ready to move forward."
ASK_CHANGE = "No problem. What would you like to change?"
# "clarify" is accepted as shorthand for "clarification"
CLARIFY_TYPES = ("clarification", "clarify")

_OUTREACH_Q = (
    "I'd be happy to help you set up your outreach! Are you looking to respond to inbound leads "
    "that come to you, or proactively reach out to prospects?"
)

FALLBACK_TEMPLATES: Dict[Tuple[str, Optional[str]], str] = {
    ("init", "outreach_type"): _OUTREACH_Q,
    ("outreach_type", "outreach_type"): _OUTREACH_Q,
    ("inbound_flow", "inbound_source"): (
        "Great! Where are these inbound leads coming from? For example, your website form, "
        "WhatsApp, ads, or a CRM system."
    ),
    ("inbound_flow", "inbound_data_ready"): (
        "Do you already have prospect data captured, or do we need to set up data collection?"
    ),
    ("inbound_flow", "capture_rules"): (
        "No problem. What minimum details should we capture from each lead? For example, name, "
        "email and company."
    ),
    ("outbound_target_knowledge", "target_knowledge"): (
        "Perfect! Do you already have specific people or companies in mind, or would you like me "
        "to help you discover ideal prospects?"
    ),
    ("outbound_known_target", "targets"): (
        "Got it! Which people or companies do you have in mind? LinkedIn profile links or company "
        "names both work."
    ),
    ("outbound_known_target", "roles"): "Which roles or job titles should we reach at those companies?",
    ("outbound_known_target", "locations"): "Which locations or regions should we focus on?",
    ("outbound_icp_discovery", "problem_statement"): (
        "Perfect! Let's discover your ideal prospects together. To get started, what problem does "
        "your solution solve?"
    ),
    ("outbound_icp_discovery", "roles"): (
        "Who typically makes the buying decision? For example, CEOs, Marketing Directors, or Founders."
    ),
    ("outbound_icp_discovery", "industries"): (
        "What industries are your ideal customers in? For example, SaaS, Healthcare, or FinTech."
    ),
    ("outbound_icp_discovery", "company_size"): (
        "What company size works best: small businesses, mid-market, or enterprise?"
    ),
    ("outbound_icp_discovery", "locations"): (
        "Which geographic regions should we focus on? For example, Dubai, London, or North America."
    ),
    ("outbound_icp_discovery", "deal_type"): (
        "What deal size are you usually targeting: SMB, mid-market, or enterprise?"
    ),
    ("confirmation", None): CONFIRM_CLARIFY,
    ("ready_for_execution", None): READY_ACK,
}

CLARIFICATION_TEMPLATES: Dict[Tuple[str, Optional[str]], str] = {
    ("init", "outreach_type"): (
        "Sorry, I didn't quite catch that. Do leads come to you (inbound), or do you want to reach "
        "out to new prospects (outbound)?"
    ),
    ("outreach_type", "outreach_type"): (
        "Sorry, I didn't quite catch that. Do leads come to you (inbound), or do you want to reach "
        "out to new prospects (outbound)?"
    ),
    ("inbound_flow", "inbound_source"): (
        "Could you tell me where your leads come in from? A website form, WhatsApp, ads, a CRM, "
        "email, or something else?"
    ),
    ("inbound_flow", "inbound_data_ready"): (
        "Just to check: is your lead data already being captured somewhere? A simple yes or no works."
    ),
    ("inbound_flow", "capture_rules"): (
        "Which details matter most for each lead? Name, email, phone, company, or something else?"
    ),
    ("outbound_target_knowledge", "target_knowledge"): (
        "Sorry, I'm not sure I follow. Do you already know who you want to contact, or should we "
        "work out your ideal prospects together?"
    ),
    ("outbound_known_target", "targets"): (
        "Could you share the LinkedIn profile links or the names of the companies you want to target?"
    ),
    ("outbound_known_target", "roles"): (
        "Which job titles should we look for? For example, CEO, Head of Sales, or Marketing Director."
    ),
    ("outbound_known_target", "locations"): (
        "Which cities or countries should we cover? For example, Dubai, the UK, or the USA."
    ),
    ("outbound_icp_discovery", "problem_statement"): (
        "Could you describe in a sentence what problem your product or service solves?"
    ),
    ("outbound_icp_discovery", "roles"): (
        "Which job titles usually sign off on a purchase? For example, CEO, CFO, or Head of Operations."
    ),
    ("outbound_icp_discovery", "industries"): (
        "Which industries should we focus on? For example, SaaS, Real Estate, or Logistics."
    ),
    ("outbound_icp_discovery", "company_size"): (
        "Roughly how big are your ideal customers? Small businesses, mid-market, enterprise, or a "
        "number of employees all work."
    ),
    ("outbound_icp_discovery", "locations"): (
        "Which cities, countries or regions should we cover?"
    ),
    ("outbound_icp_discovery", "deal_type"): (
        "Are your typical deals SMB, mid-market, or enterprise sized?"
    ),
    ("confirmation", None): CONFIRM_CLARIFY,
    ("ready_for_execution", None): READY_ACK,
}

_INSTRUCTIONS: Dict[Tuple[str, Optional[str]], str] = {
    ("init", "outreach_type"): (
        "Ask what type of outreach they want to set up: inbound (leads come to them) or outbound "
        "(they reach out to prospects)."
    ),
    ("outreach_type", "outreach_type"): (
        "Ask what type of outreach they want to set up: inbound (leads come to them) or outbound "
        "(they reach out to prospects)."
    ),
    ("inbound_flow", "inbound_source"): (
        "Ask where the inbound leads are coming from (website form, WhatsApp, ads, CRM, etc.)."
    ),
    ("inbound_flow", "inbound_data_ready"): "Ask if they already have prospect data captured.",
    ("inbound_flow", "capture_rules"): "Ask what minimum details should be captured from leads.",
    ("outbound_target_knowledge", "target_knowledge"): (
        "Ask if they already know who they want to target, or if they want help discovering ideal prospects."
    ),
    ("outbound_known_target", "targets"): (
        "Ask which people or companies they have in mind (LinkedIn profile links or company names)."
    ),
    ("outbound_known_target", "roles"): "Ask which role or job title they want to target.",
    ("outbound_known_target", "locations"): "Ask which location or geography to focus on.",
    ("outbound_icp_discovery", "problem_statement"): "Ask what problem their solution solves.",
    ("outbound_icp_discovery", "roles"): (
        "Ask who typically makes the buying decision (role or department). Give examples."
    ),
    ("outbound_icp_discovery", "industries"): (
        "Ask what industries their ideal customers are in. Give examples."
    ),
    ("outbound_icp_discovery", "company_size"): (
        "Ask what company size works best (small businesses, mid-market, enterprise)."
    ),
    ("outbound_icp_discovery", "locations"): "Ask which geographic regions to focus on. Give examples.",
    ("outbound_icp_discovery", "deal_type"): (
        "Ask what deal size they're targeting (SMB, mid-market, enterprise)."
    ),
}

_GUIDELINES = (
    "Response guidelines:\n"
    "- Be warm, friendly and professional\n"
    "- Keep it to 1-2 sentences\n"
    "- Don't use numbered options\n"
    "- Never repeat a question that is already answered in the context\n"
    "- Reply with the message text only, no JSON and no explanations"
)


def confirmation_message(context: ConversationContext) -> str:
    return f"Perfect! Here's what I understood:\n{summarize(context)}\nDoes this look correct?"


def template_for(stage: str, field: Optional[str], clarify: bool = False) -> str:
    table = CLARIFICATION_TEMPLATES if clarify else FALLBACK_TEMPLATES
    text = table.get((stage, field))
    if text:
        return text
    # stage with nothing open: fall back to the stage's first question
    fields = STAGE_FIELDS.get(stage) or (None,)
    return table.get((stage, fields[0])) or FALLBACK_TEMPLATES[("outreach_type", "outreach_type")]


def stage_instruction(stage: str, field: Optional[str], clarify: bool = False) -> str:
    base = _INSTRUCTIONS.get((stage, field)) or "Continue the conversation naturally based on the context."
    if clarify:
        return "The user's last answer was unclear. Politely ask again. " + base
    return base


_FENCE_RE = re.compile(r"```[\s\S]*?```")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(\*\*|__|\*|`)")


def sanitize(text: Optional[str]) -> str:
    """Strip fences, markdown markers and wrapping quotes from model output."""
    cleaned = _FENCE_RE.sub("", text or "")
    cleaned = _HEADING_RE.sub("", cleaned)
    cleaned = _EMPHASIS_RE.sub("", cleaned)
    cleaned = cleaned.strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1].strip()
    return cleaned


def _history_lines(history: Sequence[Dict[str, Any]], limit: int = 6) -> str:
    rows = []
    for item in list(history or [])[-limit:]:
        who = "User" if item.get("role") == "user" else "Assistant"
        content = str(item.get("content") or "").strip()
        if content:
            rows.append(f"{who}: {content}")
    return "\n".join(rows)


class ResponseGenerator:
    def __init__(self, llm: Optional[ChatCapability] = None):
        self.llm = llm or ChatCapability.disabled()

    async def generate(
        self,
        stage: str,
        context: ConversationContext,
        message: Optional[str] = None,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        question_type: Optional[str] = None,
    ) -> str:
        text, _tier = await self.generate_with_tier(stage, context, message, history, question_type)
        return text

    async def generate_with_tier(
        self,
        stage: str,
        context: ConversationContext,
        message: Optional[str] = None,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        question_type: Optional[str] = None,
    ) -> Tuple[str, str]:
        """Return ``(text, tier)``.

        ``question_type`` is ``None`` for the next open question, ``"clarification"``
        (or ``"clarify"``) to re-ask it after an unclear answer, or ``"change"``
        after a rejected confirmation.
        """
        if question_type == "change":
            return ASK_CHANGE, "template"
        if stage == "confirmation":
            if question_type in CLARIFY_TYPES:
                return CONFIRM_CLARIFY, "template"
            return confirmation_message(context), "template"
        if stage == "ready_for_execution":
            return READY_ACK, "template"

        clarify = question_type in CLARIFY_TYPES
        field = missing_field(context, stage)
        if field is None:
            # branch re-opened after a rejected summary; everything is answered
            return ASK_CHANGE, "template"
        fallback = template_for(stage, field, clarify=clarify)
        if not self.llm.available:
            return fallback, "template"
        prompt = (
            "You are having a natural conversation to understand the user's outreach needs.\n\n"
            f"Current context:\n{summarize(context)}\n\n"
            f"Recent conversation:\n{_history_lines(history or []) or 'This is the start of the conversation.'}\n\n"
            f"Current stage: {stage}\n"
            f"User's latest message: {(message or '(no message yet)')!r}\n\n"
            f"Your task: {stage_instruction(stage, field, clarify)}\n\n"
            f"{_GUIDELINES}"
        )
        try:
            text = sanitize(await self.llm.agenerate(prompt))
        except CapabilityUnavailable as exc:
            log.info("response generation fell back: %s", exc)
            return fallback, "template"
        if not text:
            return fallback, "template"
        return text, "llm"
