"""
Node implementations for the ICP assistant turn graph.

A turn runs ``ingest -> backfill -> self_heal`` and is then routed to exactly one
stage handler. Nodes never mutate the context they receive; each returns a
fresh copy in its state update. The generative tiers live behind the extractor
and generator, so every node here works unchanged when the model is missing.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from src import settings

from .context import (
    BRANCH_STAGES,
    branch_stage,
    fallback_stage,
    infer_strategy,
    init_context,
    is_context_ready,
    merge_fields,
    missing_field,
    status_for_stage,
)
from .extraction import (
    IntentExtractor,
    extract_linkedin_urls,
    extract_outreach_type,
    extract_target_knowledge,
    extract_yes_no,
    is_greeting,
    outreach_signal,
)
from .responses import ResponseGenerator
from .state import STAGES, ConversationContext, ExtractedIntent, TurnState, Utterance

logger = logging.getLogger("assistant.nodes")
_level = os.getenv("LOG_LEVEL", "INFO").upper()
if not logger.handlers:
    h = logging.StreamHandler()
    fmt = logging.Formatter("[%(levelname)s] %(asctime)s %(name)s :: %(message)s", "%H:%M:%S")
    h.setFormatter(fmt)
    logger.addHandler(h)
logger.setLevel(_level)


def _log_step(step: str, **info: Any) -> None:
    """Helper to emit structured info logs for LangGraph tracing."""
    if not logger.isEnabledFor(logging.INFO):
        return
    payload = " ".join(f"{k}={info[k]!r}" for k in sorted(info))
    logger.info("%s %s", step, payload)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Backfill never reads past the last confirmation summary; anything older has
# already been confirmed or deliberately edited away.
CONFIRMATION_PREFIX = "Perfect! Here's what I understood"

_ANSWER_EXCLUDE = {"stage", "status", "confidence_score", "confirmed", "inferred_strategy"}

_EDIT_INTENT_RE = re.compile(
    r"^(no|nope|actually|change|edit|update|replace|switch|wrong|instead|make it)\b|\b(instead|should be)\b"
)
_EDIT_OUTREACH_RE = re.compile(r"\b(outreach|inbound|outbound)\b")
_EDIT_FIELDS: Tuple[Tuple[Tuple[str, ...], re.Pattern], ...] = (
    (("target_knowledge",), re.compile(r"\b(target knowledge|discovery|known targets?)\b")),
    (("inbound_source",), re.compile(r"\b(lead source|source|channel)\b")),
    (("inbound_data_ready",), re.compile(r"\b(data ready|lead data)\b")),
    (("capture_rules",), re.compile(r"\b(capture|captured)\b")),
    (("linkedin_urls",), re.compile(r"\b(linkedin|profiles?)\b")),
    (("company_size",), re.compile(r"\b(company size|team size|headcount|(?<!deal )size)\b")),
    (("companies",), re.compile(r"\b(compan(?:y|ies)|accounts?)\b(?!\s+size)")),
    (("problem_statement",), re.compile(r"\b(problem|pain point)\b")),
    (("roles",), re.compile(r"\b(roles?|titles?|decision makers?|personas?)\b")),
    (("industries",), re.compile(r"\b(industry|industries|sectors?|verticals?)\b")),
    (("locations",), re.compile(r"\b(locations?|regions?|countries|country|city|cities|geograph\w*)\b")),
    (("deal_type",), re.compile(r"\b(deal type|deal size|deals?|contracts?)\b")),
)


def _answers(context: ConversationContext) -> Dict[str, Any]:
    return context.model_dump(exclude=_ANSWER_EXCLUDE)


def _trim_history(history: Optional[Sequence[Any]], window: int) -> List[Utterance]:
    rows: List[Utterance] = []
    for item in list(history or []):
        if isinstance(item, Mapping):
            role, content, ts = item.get("role"), item.get("content"), item.get("timestamp")
        else:
            role = getattr(item, "role", None)
            content = getattr(item, "content", None)
            ts = getattr(item, "timestamp", None)
        if content is None:
            continue
        rows.append({"role": str(role or "user"), "content": str(content), "timestamp": ts})
    return rows[-window:] if window > 0 else []


def _user_turns_newest_first(history: Sequence[Utterance]) -> List[str]:
    out: List[str] = []
    for item in reversed(list(history or [])):
        content = str(item.get("content") or "")
        if item.get("role") == "assistant":
            if content.startswith(CONFIRMATION_PREFIX):
                break
            continue
        if content.strip():
            out.append(content)
    return out


def _heal_step(context: ConversationContext, message: str) -> Optional[str]:
    """Stage the context should be at instead of its current one, if any."""
    stage = context.stage
    if stage == "init":
        text = message.strip()
        if context.outreach_type or (text and (extract_outreach_type(text) or not is_greeting(text))):
            return "outreach_type"
        return None
    if stage == "outreach_type":
        return fallback_stage(context) if context.outreach_type else None
    if stage == "outbound_target_knowledge":
        if context.outreach_type != "outbound" or context.target_knowledge:
            return fallback_stage(context)
        return None
    if stage in BRANCH_STAGES:
        return None if branch_stage(context) == stage else fallback_stage(context)
    if stage == "confirmation":
        return None if is_context_ready(context) else fallback_stage(context)
    return None


def heal_stage(context: ConversationContext, message: str = "") -> Tuple[ConversationContext, List[str]]:
    """Walk ``stage`` forward until it agrees with the captured fields."""
    healed = context.model_copy(deep=True)
    moves: List[str] = []
    for _ in range(len(STAGES)):
        nxt = _heal_step(healed, message)
        if nxt is None or nxt == healed.stage:
            break
        moves.append(f"{healed.stage}->{nxt}")
        healed.stage = nxt
    healed.status = status_for_stage(healed.stage)
    return healed, moves


def _scope_intent(intent: ExtractedIntent, context: ConversationContext) -> ExtractedIntent:
    """Drop values that belong to the other branch."""
    scoped = intent.model_copy()
    outreach = context.outreach_type or scoped.outreach_type
    if outreach == "inbound":
        scoped.target_knowledge = None
    elif outreach == "outbound":
        scoped.inbound_source = None
        scoped.inbound_data_ready = None
        scoped.capture_rules = None
    else:
        scoped.target_knowledge = None
    return scoped


def edit_targets(message: str) -> List[str]:
    """Fields a correction message names, e.g. "no, change the industry"."""
    lower = (message or "").replace("’", "'").strip().lower()
    if _EDIT_OUTREACH_RE.search(lower):
        return ["outreach_type"]
    named: List[str] = []
    for fields, pattern in _EDIT_FIELDS:
        if pattern.search(lower):
            named.extend(fields)
    return named


def clear_fields(context: ConversationContext, fields: Sequence[str]) -> ConversationContext:
    cleared = context.model_copy(deep=True)
    for name in fields:
        if name == "outreach_type":
            cleared.outreach_type = None
            cleared.target_knowledge = None
        elif name == "target_knowledge":
            cleared.target_knowledge = None
        else:
            default = [] if isinstance(getattr(cleared, name), list) else None
            setattr(cleared, name, default)
    cleared.inferred_strategy = None
    cleared.confirmed = False
    return cleared


# ---------------------------------------------------------------------------
# Stage handlers
# ---------------------------------------------------------------------------


class StageHandlers:
    """Graph nodes bound to one extractor/generator pair.

    Holds no per-conversation state, so one instance can serve every turn.
    """

    def __init__(self, extractor: IntentExtractor, generator: ResponseGenerator):
        self.extractor = extractor
        self.generator = generator

    # -- shared nodes -------------------------------------------------------

    async def ingest(self, state: TurnState) -> TurnState:
        raw = state.get("context")
        context = ConversationContext.from_blob(raw) if raw is not None else init_context()
        history = _trim_history(state.get("history"), settings.ASSISTANT_HISTORY_WINDOW)
        message = str(state.get("message") or "")
        _log_step(
            "ingest",
            conversation_id=state.get("conversation_id"),
            stage=context.stage,
            history=len(history),
            empty=not message.strip(),
        )
        return {
            "message": message,
            "context": context,
            "history": history,
            "stage_in": context.stage,
            "tiers": {},
            "backfilled": [],
            "healed": [],
        }

    async def backfill(self, state: TurnState) -> TurnState:
        message = state.get("message") or ""
        if not message.strip():
            return {"backfilled": []}
        context = state["context"]
        turns = _user_turns_newest_first(state.get("history") or [])
        updated = context.model_copy(deep=True)
        filled: List[str] = []
        if updated.outreach_type is None and extract_outreach_type(message) is None:
            for text in turns:
                signal = outreach_signal(text)
                if signal:
                    updated.outreach_type = signal
                    filled.append("outreach_type")
                    break
        if (
            updated.outreach_type == "outbound"
            and updated.target_knowledge is None
            and extract_target_knowledge(message) is None
            and not extract_linkedin_urls(message)
        ):
            for text in turns:
                signal = "known" if extract_linkedin_urls(text) else extract_target_knowledge(text, words=False)
                if signal:
                    updated.target_knowledge = signal
                    filled.append("target_knowledge")
                    break
        if not filled:
            return {"backfilled": []}
        _log_step("backfill", fields=filled)
        return {"context": updated, "backfilled": filled}

    async def self_heal(self, state: TurnState) -> TurnState:
        context = state["context"]
        healed, moves = heal_stage(context, state.get("message") or "")
        if moves:
            _log_step("self_heal", moves=moves)
        if healed == context:
            return {"healed": []}
        return {"context": healed, "healed": moves}

    def route(self, state: TurnState) -> str:
        return state["context"].stage

    # -- helpers ------------------------------------------------------------

    async def _reply(
        self,
        state: TurnState,
        context: ConversationContext,
        question_type: Optional[str] = None,
    ) -> Tuple[str, Dict[str, str]]:
        text, tier = await self.generator.generate_with_tier(
            context.stage,
            context,
            state.get("message"),
            state.get("history") or [],
            question_type,
        )
        tiers = dict(state.get("tiers") or {})
        tiers["response"] = tier
        return text, tiers

    async def _extract(
        self, state: TurnState, context: ConversationContext
    ) -> Tuple[ExtractedIntent, Dict[str, str]]:
        intent, tier = await self.extractor.extract_with_tier(
            state.get("message") or "", state.get("history") or [], context
        )
        tiers = dict(state.get("tiers") or {})
        tiers["extraction"] = tier
        return _scope_intent(intent, context), tiers

    def _advance(self, context: ConversationContext, message: str) -> ConversationContext:
        advanced, _moves = heal_stage(context, message)
        if advanced.stage in BRANCH_STAGES and missing_field(advanced) is None:
            advanced.stage = "confirmation"
            advanced.status = status_for_stage("confirmation")
            advanced.inferred_strategy = infer_strategy(advanced)
        return advanced

    # -- per-stage nodes ----------------------------------------------------

    async def handle_init(self, state: TurnState) -> TurnState:
        context = state["context"].model_copy(deep=True)
        context.stage = "outreach_type"
        context.status = status_for_stage(context.stage)
        response, tiers = await self._reply(state, context)
        _log_step("handle_init", next_stage=context.stage)
        return {"context": context, "response": response, "tiers": tiers}

    async def collect(self, state: TurnState) -> TurnState:
        """Shared handler for every stage that is waiting on a field."""
        context = state["context"]
        message = state.get("message") or ""
        stage = context.stage
        if not message.strip():
            response, tiers = await self._reply(state, context)
            return {"response": response, "tiers": tiers}

        working = context
        edited: List[str] = []
        # after a rejected summary, "industry should be healthcare" replaces the old value
        if context.confirmed is False and _EDIT_INTENT_RE.search(message.strip().lower()):
            edited = [f for f in edit_targets(message) if f != "outreach_type"]
            if edited:
                working = clear_fields(context, edited)

        open_field = missing_field(working)
        intent, tiers = await self._extract(state, working)
        merged = merge_fields(working, intent)
        unanswered = bool(open_field) and missing_field(merged) == open_field
        # question stages keep nothing from an unrecognised reply; branch stages keep side answers
        unchanged = stage not in BRANCH_STAGES or _answers(merged) == _answers(context)
        if not edited and unanswered and unchanged:
            response, tiers = await self._reply({**state, "tiers": tiers}, context, "clarification")
            _log_step("collect", stage=stage, open_field=open_field, outcome="clarify")
            return {"response": response, "tiers": tiers}

        advanced = self._advance(merged, message)
        response, tiers = await self._reply({**state, "tiers": tiers}, advanced)
        _log_step(
            "collect",
            stage=stage,
            next_stage=advanced.stage,
            found=intent.found(),
            edited=edited,
            next_field=missing_field(advanced),
        )
        return {"context": advanced, "response": response, "tiers": tiers}

    async def handle_confirmation(self, state: TurnState) -> TurnState:
        context = state["context"]
        message = state.get("message") or ""
        if not message.strip():
            response, tiers = await self._reply(state, context, "clarification")
            return {"response": response, "tiers": tiers}

        answer = extract_yes_no(message)
        # only a rejection or an explicit correction ("switch to inbound") may name fields
        rejecting = answer is False or (answer is None and bool(_EDIT_INTENT_RE.search(message.strip().lower())))
        named = edit_targets(message) if rejecting else []
        if answer is True:
            confirmed = context.model_copy(deep=True)
            confirmed.stage = "ready_for_execution"
            confirmed.status = status_for_stage(confirmed.stage)
            confirmed.confirmed = True
            confirmed.inferred_strategy = confirmed.inferred_strategy or infer_strategy(confirmed)
            response, tiers = await self._reply(state, confirmed)
            _log_step("confirmation", outcome="confirmed", strategy=confirmed.inferred_strategy)
            return {"context": confirmed, "response": response, "tiers": tiers}

        if answer is None and not named:
            response, tiers = await self._reply(state, context, "clarification")
            _log_step("confirmation", outcome="clarify")
            return {"response": response, "tiers": tiers}

        if not named:
            rejected = context.model_copy(deep=True)
            rejected.confirmed = False
            rejected.stage = fallback_stage(rejected)
            rejected.status = status_for_stage(rejected.stage)
            response, tiers = await self._reply(state, rejected, "change")
            _log_step("confirmation", outcome="rejected", next_stage=rejected.stage)
            return {"context": rejected, "response": response, "tiers": tiers}

        # edit transition: clear what was named, keep whatever replacement came along
        cleared = clear_fields(context, named)
        if "outreach_type" in named:
            cleared.stage = "outreach_type"
        else:
            cleared.stage = fallback_stage(cleared)
        cleared.status = status_for_stage(cleared.stage)
        intent, tiers = await self._extract(state, cleared)
        merged = merge_fields(cleared, intent)
        advanced = self._advance(merged, message)
        response, tiers = await self._reply({**state, "tiers": tiers}, advanced)
        _log_step("confirmation", outcome="edit", cleared=named, next_stage=advanced.stage)
        return {"context": advanced, "response": response, "tiers": tiers}

    async def handle_ready(self, state: TurnState) -> TurnState:
        response, tiers = await self._reply(state, state["context"])
        return {"response": response, "tiers": tiers}
