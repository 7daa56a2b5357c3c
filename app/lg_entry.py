# Entry wrapper that routes one raw assistant turn through the ICP turn graph.

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from icp_agent.agent import ICPAssistant, get_assistant
from schemas.assistant import TurnRequest, TurnResponse

Content = Union[str, List[dict], dict, None]

# Turns of the same conversation must not interleave; each active id gets its own
# lock, dropped again once no turn holds or waits on it.
_LOCKS: Dict[str, asyncio.Lock] = {}
_HOLDERS: Dict[str, int] = {}


def _flatten_content(content: Content) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and isinstance(content.get("text"), str):
        return content["text"]
    if isinstance(content, list):
        texts = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                texts.append(item["text"])
        return "\n".join(texts)
    return str(content)


@asynccontextmanager
async def _conversation_lock(conversation_id: Optional[str]):
    if not conversation_id:
        yield
        return
    lock = _LOCKS.get(conversation_id)
    if lock is None:
        lock = _LOCKS[conversation_id] = asyncio.Lock()
    _HOLDERS[conversation_id] = _HOLDERS.get(conversation_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _HOLDERS[conversation_id] -= 1
        if not _HOLDERS[conversation_id]:
            del _HOLDERS[conversation_id]
            del _LOCKS[conversation_id]


def parse_payload(payload: Union[Dict[str, Any], str, bytes]) -> TurnRequest:
    """Validate a raw turn payload; raises ``pydantic.ValidationError`` on bad input."""
    if isinstance(payload, (str, bytes)):
        return TurnRequest.model_validate_json(payload)
    data = dict(payload or {})
    # chat SDKs send the new message as "input", sometimes as content blocks
    if "message" not in data and "input" in data:
        data["message"] = _flatten_content(data.pop("input"))
    elif not isinstance(data.get("message"), (str, type(None))):
        data["message"] = _flatten_content(data["message"])
    if data.get("message") is None:
        data["message"] = ""
    return TurnRequest.model_validate(data)


async def handle_turn(
    payload: Union[Dict[str, Any], str, bytes],
    assistant: Optional[ICPAssistant] = None,
) -> Dict[str, Any]:
    """Run one turn and return the camelCase result for the host to persist."""
    request = parse_payload(payload)
    context = request.context
    if isinstance(context, str):
        context = json.loads(context) if context.strip() else None
    history = [u.model_dump() for u in request.history]
    runner = assistant or get_assistant()
    async with _conversation_lock(request.conversation_id):
        result = await runner.process_turn(request.message, request.conversation_id, history, context)
    return TurnResponse(
        response=result.response,
        context=result.context.to_blob(),
        status=result.status,
        ready_for_execution=result.ready_for_execution,
        conversation_id=request.conversation_id,
    ).model_dump(by_alias=True)
