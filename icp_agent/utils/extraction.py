"""
Intent extraction for the ICP assistant.

``IntentExtractor.extract`` turns one user utterance into an ``ExtractedIntent``
(partial field values). The structured tier asks the chat model for a fixed JSON
object; when the model is unavailable, times out or returns something that does
not validate, the rule-based tier below takes over. Extraction never raises.

The rule-based helpers are module-level so the orchestrator can reuse them for
history backfill and confirmation handling.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .context import missing_field, summarize
from .llm import CapabilityUnavailable, ChatCapability
from .state import ConversationContext, ExtractedIntent

log = logging.getLogger("assistant.extract")


class ExtractionFailure(Exception):
    """Structured tier returned text that is not a valid intent object."""


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

_INBOUND_RE = re.compile(
    r"\b(inbound|incoming|leads? (?:that )?come|leads? coming|respond(?:ing)? to|reply(?:ing)? to|follow.?up|requests? from)\b"
)
_OUTBOUND_RE = re.compile(
    r"\b(outbound|reach(?:ing)? out|proactive(?:ly)?|cold (?:email|call|outreach)|contact(?:ing)? (?:new|people|companies|prospects)"
    r"|find new|discover|prospect(?:s|ing)?|search for|look(?:ing)? for (?:new )?(?:clients|customers|leads))\b"
)

# Negation/discovery phrases are removed from the text before affirmative phrases
# are tested, so "don't know the people" never reads as "know the".
_DISCOVERY_PHRASES = (
    "have no idea",
    "have no list",
    "don't have",
    "do not have",
    "haven't got",
    "haven't",
    "don't know",
    "do not know",
    "not sure",
    "no idea",
    "unsure",
    "help me find",
    "help me discover",
    "help finding",
    "need to find",
    "want to find",
    "find new",
    "looking for",
    "ideal prospects",
    "discover together",
    "not yet decided",
)
_KNOWN_PHRASES = (
    "i know",
    "we know",
    "i have",
    "we have",
    "i've got",
    "we've got",
    "already have",
    "have profiles",
    "have linkedin",
    "have names",
    "have a list",
    "these companies",
    "these people",
    "my target",
    "our target",
    "know my",
    "know the",
    "specific people",
    "specific companies",
)
_KNOWN_WORDS_RE = re.compile(r"\b(yes|yeah|yep|yup|specific|known)\b")
_DISCOVERY_WORDS_RE = re.compile(r"\b(no|nope|nah|discover|discovery|explore|find|search)\b")

_YES_RE = re.compile(
    r"^(yes|yep|yeah|yup|sure|correct|right|that's right|sounds good|looks good|perfect|exactly|confirm|confirmed"
    r"|i do|we do|i have|we have|already have)\b"
)
_NO_RE = re.compile(
    r"^(no|nope|nah|not yet|not really|incorrect|wrong|not quite|that's not right|change|modify|edit"
    r"|i don't|i do not|we don't|we do not|i haven't|we haven't)\b"
)
_GREETING_RE = re.compile(r"^(hi|hello|hey|hiya|greetings|good morning|good afternoon|good evening)\b")

_INBOUND_SOURCES: Tuple[Tuple[str, re.Pattern], ...] = (
    ("website", re.compile(r"\b(website|web ?form|contact form|landing page|form)\b")),
    ("whatsapp", re.compile(r"\b(whatsapp|whats app)\b")),
    ("ads", re.compile(r"\b(ads|advertising|google ads|facebook ads|meta ads|campaigns?)\b")),
    ("crm", re.compile(r"\b(crm|salesforce|hubspot|pipedrive|zoho|import)\b")),
    ("webhook", re.compile(r"\b(webhooks?|api|integration)\b")),
    ("email", re.compile(r"\b(e-?mails?|inbox|newsletter)\b")),
    ("linkedin", re.compile(r"\b(linkedin)\b")),
)

_LINKEDIN_RE = re.compile(
    r"(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/(?:in|company)/[A-Za-z0-9_%\-]+/?", re.IGNORECASE
)

_ROLE_TERMS = (
    r"chief (?:executive|technology|financial|operating|marketing|revenue|information) officer",
    r"chief (?:executive|technology|financial|operating|marketing|revenue|information)",
    r"(?:marketing|sales|operations|hr|it|finance|product|engineering|procurement) (?:director|manager|lead|head)",
    r"head of [a-z]+",
    r"vice president",
    r"co-?founder",
    r"founder",
    r"owner",
    r"president",
    r"ceo",
    r"cto",
    r"cfo",
    r"coo",
    r"cmo",
    r"cro",
    r"cio",
    r"vp",
    r"director",
    r"manager",
    r"decision maker",
)
_ROLE_RE = re.compile(r"\b(" + "|".join(_ROLE_TERMS) + r")s?\b", re.IGNORECASE)

_LOCATIONS = (
    "united arab emirates",
    "abu dhabi",
    "saudi arabia",
    "new york",
    "san francisco",
    "los angeles",
    "united states",
    "united kingdom",
    "north america",
    "middle east",
    "dubai",
    "sharjah",
    "riyadh",
    "qatar",
    "doha",
    "uae",
    "chicago",
    "boston",
    "seattle",
    "austin",
    "miami",
    "london",
    "paris",
    "berlin",
    "amsterdam",
    "singapore",
    "tokyo",
    "sydney",
    "toronto",
    "usa",
    "uk",
    "canada",
    "australia",
    "india",
    "germany",
    "france",
    "europe",
    "asia",
    "apac",
    "emea",
    "latam",
)
_LOCATION_ACRONYMS = {"uae", "usa", "uk", "apac", "emea", "latam"}
_LOCATION_RE = re.compile(r"\b(" + "|".join(re.escape(t) for t in _LOCATIONS) + r")\b", re.IGNORECASE)

_INDUSTRIES = (
    "oil and gas",
    "real estate",
    "e-commerce",
    "ecommerce",
    "technology",
    "saas",
    "software",
    "fintech",
    "healthcare",
    "construction",
    "retail",
    "manufacturing",
    "education",
    "consulting",
    "marketing",
    "advertising",
    "energy",
    "logistics",
    "insurance",
    "banking",
    "legal",
    "hospitality",
    "telecom",
    "automotive",
    "media",
    "pharma",
    "biotech",
    "cybersecurity",
)
_INDUSTRY_RE = re.compile(r"\b(" + "|".join(re.escape(t) for t in _INDUSTRIES) + r")\b", re.IGNORECASE)

_SIZE_RE = re.compile(
    r"\b(smbs?|small(?:er)? (?:businesses|business|companies|teams)|startups?|mid.?market|mid.?sized?|scale.?ups?|enterprises?|large (?:companies|enterprises|accounts|businesses))\b"
)
_EMPLOYEES_RE = re.compile(
    r"(\d[\d,]*)\s*(?:(?:-|to|–)\s*(\d[\d,]*))?\s*\+?\s*(?:employees|staff|people|headcount|fte)"
)
_DEAL_CONTEXT_RE = re.compile(r"\b(deals?|contracts?|acv|ticket|deal size|budget)\b")

_COMPANY_CUE_RE = re.compile(
    r"\b(?:compan(?:y|ies)|firms?|organi[sz]ations?|businesses|accounts?|brands?)\s+(?:named|called|like|such as|including)\s+([^.;!?\n]+)",
    re.IGNORECASE,
)
_COMPANY_SUFFIX_RE = re.compile(
    r"\b([A-Z][\w&'\-]*(?:\s+[A-Z][\w&'\-]*)*\s+(?:Inc|Corp|Corporation|LLC|Ltd|Limited|GmbH|PLC|Co)\b\.?)"
)
_COMPANY_IS_RE = re.compile(
    r"\b([A-Z][\w&'\-]*(?:\s+[A-Z][\w&'\-]*)*)\s+(?:is|are)\s+(?:a|an|the)\s+(?:company|firm|organization|business)"
)
_CAPITALIZED_RUN_RE = re.compile(r"\b[A-Z][\w&'\-]*(?:\s+(?:&\s+)?[A-Z][\w&'\-]*)*")
_NAME_STOPWORDS = {
    "i", "i'm", "we", "we're", "our", "my", "the", "a", "an", "yes", "no", "hi", "hello", "hey",
    "ok", "okay", "sure", "mostly", "mainly", "just", "only", "also", "and", "or", "but", "they",
    "these", "those", "target", "targeting", "linkedin", "please", "thanks", "maybe",
}


# ---------------------------------------------------------------------------
# Rule-based helpers
# ---------------------------------------------------------------------------


def _norm(text: Optional[str]) -> str:
    return (text or "").replace("’", "'").strip().lower()


def _title(value: str, acronyms: Iterable[str] = ()) -> str:
    raw = " ".join(value.split())
    if raw.lower() in set(acronyms):
        return raw.upper()
    return raw.title()


def _dedupe(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for v in values:
        key = v.casefold()
        if v and key not in seen:
            seen.add(key)
            out.append(v)
    return out


def is_greeting(message: Optional[str]) -> bool:
    return bool(_GREETING_RE.match(_norm(message)))


def extract_yes_no(message: Optional[str]) -> Optional[bool]:
    """Anchored yes/no at the start of the message; ``None`` when unclear."""
    lower = _norm(message)
    if not lower:
        return None
    if _YES_RE.match(lower):
        return True
    if _NO_RE.match(lower):
        return False
    return None


def extract_outreach_type(message: Optional[str]) -> Optional[str]:
    lower = _norm(message)
    if _INBOUND_RE.search(lower):
        return "inbound"
    if _OUTBOUND_RE.search(lower):
        return "outbound"
    return None


def outreach_signal(text: Optional[str]) -> Optional[str]:
    """Single-sided outreach signal; text mentioning both directions gives ``None``."""
    lower = _norm(text)
    inbound = bool(_INBOUND_RE.search(lower))
    outbound = bool(_OUTBOUND_RE.search(lower))
    if inbound == outbound:
        return None
    return "inbound" if inbound else "outbound"


def extract_target_knowledge(message: Optional[str], words: bool = True) -> Optional[str]:
    """Phrase tier first; the single-word tier only when ``words`` is set."""
    lower = _norm(message)
    if not lower:
        return None
    discovery = any(p in lower for p in _DISCOVERY_PHRASES)
    stripped = lower
    for phrase in _DISCOVERY_PHRASES:
        stripped = stripped.replace(phrase, " | ")
    known = any(p in stripped for p in _KNOWN_PHRASES)
    if known and discovery:
        return None
    if known:
        return "known"
    if discovery:
        return "discovery"
    if not words:
        return None
    known_word = bool(_KNOWN_WORDS_RE.search(stripped))
    discovery_word = bool(_DISCOVERY_WORDS_RE.search(stripped))
    if known_word == discovery_word:
        return None
    return "known" if known_word else "discovery"


def extract_inbound_source(message: Optional[str]) -> Optional[str]:
    lower = _norm(message)
    for name, pattern in _INBOUND_SOURCES:
        if pattern.search(lower):
            return name
    return None


def extract_linkedin_urls(message: Optional[str]) -> List[str]:
    urls = []
    for match in _LINKEDIN_RE.finditer(message or ""):
        url = match.group(0).rstrip("/")
        if not url.lower().startswith("http"):
            url = "https://" + url
        urls.append(url)
    return _dedupe(urls)


def extract_roles(message: Optional[str]) -> List[str]:
    return _dedupe(_title(m.group(0)) for m in _ROLE_RE.finditer(message or ""))


def extract_locations(message: Optional[str]) -> List[str]:
    return _dedupe(_title(m.group(0), _LOCATION_ACRONYMS) for m in _LOCATION_RE.finditer(message or ""))


def extract_industries(message: Optional[str]) -> List[str]:
    text = message or ""
    # "marketing director" is a role, not the marketing industry
    role_spans = [m.span() for m in _ROLE_RE.finditer(text)]
    out = []
    for m in _INDUSTRY_RE.finditer(text):
        start, end = m.span()
        if any(start < r_end and end > r_start for r_start, r_end in role_spans):
            continue
        out.append(_title(m.group(0)))
    return _dedupe(out)


def _size_from_employees(message: str) -> Optional[str]:
    m = _EMPLOYEES_RE.search(message)
    if not m:
        return None
    raw = m.group(2) or m.group(1)
    try:
        count = int(raw.replace(",", ""))
    except ValueError:
        return None
    if count < 200:
        return "smb"
    if count < 1000:
        return "mid-market"
    return "enterprise"


def extract_deal_shape(message: Optional[str]) -> Optional[str]:
    """Map size vocabulary (or an employee count) onto smb / mid-market / enterprise."""
    lower = _norm(message)
    m = _SIZE_RE.search(lower)
    if m:
        word = m.group(1)
        if word.startswith(("smb", "small", "startup")):
            return "smb"
        if word.startswith(("mid", "scale")):
            return "mid-market"
        return "enterprise"
    return _size_from_employees(lower)


def _leading_name(chunk: str) -> Optional[str]:
    tokens = chunk.strip().split()
    while tokens and tokens[0].lower() in _NAME_STOPWORDS:
        tokens.pop(0)
    name: List[str] = []
    for tok in tokens:
        if tok[:1].isupper() or tok[:1].isdigit() or tok == "&":
            name.append(tok)
        else:
            break
    text = " ".join(name).strip(" ,&")
    return text or None


def _is_vocab_term(name: str) -> bool:
    lower = name.lower()
    return bool(
        _LOCATION_RE.fullmatch(lower)
        or _INDUSTRY_RE.fullmatch(lower)
        or _ROLE_RE.fullmatch(lower)
    )


def extract_companies(message: Optional[str], open_targets: bool = False) -> List[str]:
    """Company names from cue phrases and corporate suffixes.

    With ``open_targets`` (the user was just asked for their targets) bare
    capitalized names are accepted as well.
    """
    text = message or ""
    found: List[str] = []
    for m in _COMPANY_CUE_RE.finditer(text):
        for chunk in re.split(r",|\band\b|\bor\b", m.group(1)):
            name = _leading_name(chunk)
            if name:
                found.append(name)
    found.extend(m.group(1).strip() for m in _COMPANY_SUFFIX_RE.finditer(text))
    found.extend(m.group(1).strip() for m in _COMPANY_IS_RE.finditer(text))
    if open_targets:
        for m in _CAPITALIZED_RUN_RE.finditer(_LINKEDIN_RE.sub(" ", text)):
            name = _leading_name(m.group(0))
            if name and not _is_vocab_term(name):
                found.append(name)
    return _dedupe(n for n in found if n and not _is_vocab_term(n))


def _confidence(intent: ExtractedIntent) -> int:
    score = 30
    if intent.outreach_type:
        score += 20
    if intent.target_knowledge:
        score += 20
    for name in ("roles", "industries", "locations", "companies"):
        if getattr(intent, name):
            score += 10
    if intent.problem_statement:
        score += 10
    if intent.company_size:
        score += 5
    if intent.deal_type:
        score += 5
    return min(score, 80)


def _fill_open_field(intent: ExtractedIntent, text: str, open_field: Optional[str]) -> None:
    """Interpret the reply as a direct answer to the question that is open."""
    if open_field == "problem_statement" and intent.problem_statement is None and len(text) > 10:
        intent.problem_statement = text
    elif open_field == "inbound_data_ready" and intent.inbound_data_ready is None:
        intent.inbound_data_ready = extract_yes_no(text)
    elif open_field == "capture_rules" and intent.capture_rules is None:
        if extract_yes_no(text) is None and len(text) >= 3:
            intent.capture_rules = text
    elif open_field == "deal_type" and intent.deal_type is None:
        intent.deal_type = extract_deal_shape(text)
    elif open_field == "company_size" and intent.company_size is None:
        intent.company_size = extract_deal_shape(text)


def extract_fallback(message: str, context: ConversationContext) -> ExtractedIntent:
    """Deterministic extraction over the fixed vocabulary."""
    text = (message or "").strip()
    open_field = missing_field(context)
    intent = ExtractedIntent()
    intent.outreach_type = extract_outreach_type(text)
    intent.target_knowledge = extract_target_knowledge(text)
    intent.inbound_source = extract_inbound_source(text) if context.outreach_type != "outbound" else None
    intent.roles = extract_roles(text) or None
    intent.locations = extract_locations(text) or None
    intent.industries = extract_industries(text) or None
    intent.companies = extract_companies(text, open_targets=open_field == "targets") or None
    shape = extract_deal_shape(text)
    if shape:
        if open_field == "deal_type" or _DEAL_CONTEXT_RE.search(_norm(text)):
            intent.deal_type = shape
        else:
            intent.company_size = shape
    _fill_open_field(intent, text, open_field)
    intent.confidence_score = _confidence(intent)
    return intent


# ---------------------------------------------------------------------------
# Structured tier
# ---------------------------------------------------------------------------

INTENT_SCHEMA_HINT = """{
  "outreachType": "inbound" | "outbound" | null,
  "targetKnowledge": "known" | "discovery" | null,
  "inboundSource": "website" | "whatsapp" | "ads" | "crm" | "webhook" | "email" | "linkedin" | null,
  "inboundDataReady": true | false | null,
  "captureRules": "string" | null,
  "roles": ["CEO", "CTO"] | null,
  "industries": ["Technology", "SaaS"] | null,
  "locations": ["Dubai", "San Francisco"] | null,
  "companies": ["Acme Corp", "Tech Inc"] | null,
  "linkedinUrls": ["https://linkedin.com/in/..."] | null,
  "problemStatement": "string" | null,
  "companySize": "smb" | "mid-market" | "enterprise" | null,
  "dealType": "smb" | "mid-market" | "enterprise" | null,
  "confidenceScore": 0-100
}"""

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def parse_intent_json(text: str) -> ExtractedIntent:
    """Parse a model reply into an ``ExtractedIntent`` or raise ``ExtractionFailure``."""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ExtractionFailure("no JSON object in reply")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ExtractionFailure(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ExtractionFailure("reply is not an object")
    try:
        return ExtractedIntent.model_validate(payload)
    except ValidationError as exc:
        raise ExtractionFailure(f"off-schema reply: {exc.error_count()} errors") from exc
    except (TypeError, ValueError) as exc:
        raise ExtractionFailure(f"off-schema reply: {exc}") from exc


def _history_lines(history: Sequence[Dict[str, Any]], limit: int) -> str:
    rows = []
    for item in list(history or [])[-limit:]:
        role = item.get("role") or "user"
        content = str(item.get("content") or "").strip()
        if content:
            rows.append(f"{role}: {content}")
    return "\n".join(rows)


def build_extraction_prompt(message: str, history: Sequence[Dict[str, Any]], context: ConversationContext) -> str:
    return (
        "Analyze this user message and extract outreach intent information.\n"
        f"Current context:\n{summarize(context)}\n"
        f"Currently asking about: {missing_field(context) or 'nothing specific'}\n"
        f"Recent conversation:\n{_history_lines(history, 5) or 'None'}\n"
        f"User message: {message!r}\n\n"
        "Rules:\n"
        "- Only extract NEW information (don't repeat what's already in context)\n"
        "- Extract arrays only if explicitly mentioned\n"
        "- Use null for anything not stated\n"
        "- confidenceScore: how confident you are (0-100)\n"
    )


def _normalize(intent: ExtractedIntent) -> ExtractedIntent:
    if intent.roles:
        intent.roles = _dedupe(_title(r) for r in intent.roles) or None
    if intent.industries:
        intent.industries = _dedupe(_title(i) for i in intent.industries) or None
    if intent.locations:
        intent.locations = _dedupe(_title(loc, _LOCATION_ACRONYMS) for loc in intent.locations) or None
    if intent.companies:
        intent.companies = _dedupe(c.strip() for c in intent.companies) or None
    if intent.problem_statement:
        intent.problem_statement = intent.problem_statement.strip()
    return intent


class IntentExtractor:
    """Two-tier extractor; construct with a ``ChatCapability`` (possibly disabled)."""

    def __init__(self, llm: Optional[ChatCapability] = None):
        self.llm = llm or ChatCapability.disabled()

    async def extract(
        self,
        message: str,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        context: Optional[ConversationContext] = None,
    ) -> ExtractedIntent:
        intent, _tier = await self.extract_with_tier(message, history, context)
        return intent

    async def extract_with_tier(
        self,
        message: str,
        history: Optional[Sequence[Dict[str, Any]]] = None,
        context: Optional[ConversationContext] = None,
    ) -> Tuple[ExtractedIntent, str]:
        context = context or ConversationContext()
        text = (message or "").strip()
        if not text:
            return ExtractedIntent(), "none"
        if self.llm.available:
            try:
                raw = await self.llm.agenerate(
                    build_extraction_prompt(text, history or [], context),
                    schema_hint=INTENT_SCHEMA_HINT,
                )
                intent = parse_intent_json(raw)
                return self._finalize(intent, text, context), "llm"
            except (CapabilityUnavailable, ExtractionFailure) as exc:
                log.info("structured extraction fell back: %s", exc)
        return self._finalize(extract_fallback(text, context), text, context), "fallback"

    def _finalize(self, intent: ExtractedIntent, text: str, context: ConversationContext) -> ExtractedIntent:
        intent = _normalize(intent)
        urls = extract_linkedin_urls(text)
        if urls:
            intent.linkedin_urls = _dedupe(list(intent.linkedin_urls or []) + urls)
        if intent.linkedin_urls:
            # profile links mean the user already knows the targets
            intent.target_knowledge = "known"
        _fill_open_field(intent, text, missing_field(context))
        if intent.confidence_score is None:
            intent.confidence_score = _confidence(intent)
        log.debug("extracted fields=%s confidence=%s", intent.found(), intent.confidence_score)
        return intent
