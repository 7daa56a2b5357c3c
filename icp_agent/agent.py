"""
Graph construction and the turn API for the ICP assistant.

The graph is compiled without a checkpointer: the only state that survives a
turn is the context blob the caller passes in and gets back.
"""

from __future__ import annotations

import time
from typing import Any, Mapping, Optional, Sequence, Union

from langgraph.graph import END, StateGraph

from src.troubleshoot_log import log_turn

from .utils.extraction import IntentExtractor
from .utils.llm import ChatCapability
from .utils.nodes import StageHandlers
from .utils.responses import ResponseGenerator
from .utils.state import ConversationContext, TurnResult, TurnState

COLLECT_STAGES = (
    "outreach_type",
    "inbound_flow",
    "outbound_target_knowledge",
    "outbound_known_target",
    "outbound_icp_discovery",
)


def build_turn_graph(handlers: StageHandlers):
    graph = StateGraph(TurnState)

    graph.add_node("ingest", handlers.ingest)
    graph.add_node("backfill", handlers.backfill)
    graph.add_node("self_heal", handlers.self_heal)
    graph.add_node("handle_init", handlers.handle_init)
    graph.add_node("collect", handlers.collect)
    graph.add_node("handle_confirmation", handlers.handle_confirmation)
    graph.add_node("handle_ready", handlers.handle_ready)

    graph.set_entry_point("ingest")
    graph.add_edge("ingest", "backfill")
    graph.add_edge("backfill", "self_heal")
    routes = {stage: "collect" for stage in COLLECT_STAGES}
    routes["init"] = "handle_init"
    routes["confirmation"] = "handle_confirmation"
    routes["ready_for_execution"] = "handle_ready"
    graph.add_conditional_edges("self_heal", handlers.route, routes)
    for node in ("handle_init", "collect", "handle_confirmation", "handle_ready"):
        graph.add_edge(node, END)

    return graph.compile()


ContextInput = Union[ConversationContext, Mapping[str, Any], str, bytes, None]


class ICPAssistant:
    """Stateless turn processor; safe to share across conversations."""

    def __init__(
        self,
        llm: Optional[ChatCapability] = None,
        *,
        extractor: Optional[IntentExtractor] = None,
        generator: Optional[ResponseGenerator] = None,
    ):
        if llm is None and (extractor is None or generator is None):
            llm = ChatCapability.from_settings()
        self.handlers = StageHandlers(
            extractor or IntentExtractor(llm),
            generator or ResponseGenerator(llm),
        )
        self.graph = build_turn_graph(self.handlers)

    async def process_turn(
        self,
        message: Optional[str],
        conversation_id: Optional[str] = None,
        history: Optional[Sequence[Any]] = None,
        context: ContextInput = None,
    ) -> TurnResult:
        started = time.perf_counter()
        state: TurnState = {
            "message": message or "",
            "conversation_id": conversation_id,
            "history": list(history or []),
            "context": ConversationContext.from_blob(context),
        }
        out = await self.graph.ainvoke(state)
        updated: ConversationContext = out["context"]
        result = TurnResult(
            response=out.get("response") or "",
            context=updated,
            status=updated.status,
            ready_for_execution=updated.stage == "ready_for_execution",
        )
        log_turn(
            conversation_id,
            out.get("stage_in") or "init",
            updated.stage,
            updated.status,
            tiers=out.get("tiers"),
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
        )
        return result


_default_assistant: Optional[ICPAssistant] = None


def get_assistant() -> ICPAssistant:
    global _default_assistant
    if _default_assistant is None:
        _default_assistant = ICPAssistant()
    return _default_assistant


async def process_turn(
    message: Optional[str],
    conversation_id: Optional[str] = None,
    history: Optional[Sequence[Any]] = None,
    context: ContextInput = None,
) -> TurnResult:
    """Module-level convenience wrapper around the shared ``ICPAssistant``."""
    return await get_assistant().process_turn(message, conversation_id, history, context)
