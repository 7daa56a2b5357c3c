"""
Play a conversation through the ICP assistant offline.

Usage:
    python scripts/sim_assistant_flow.py                 # scripted discovery walkthrough
    python scripts/sim_assistant_flow.py --interactive   # type the user side yourself
    python scripts/sim_assistant_flow.py --script turns.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import uuid
from typing import Any, Dict, List

# Ensure repo root on path
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.append(ROOT)

# Environment guards to avoid network paths
os.environ.setdefault("ENABLE_ASSISTANT_LLM", "false")

from icp_agent.agent import ICPAssistant
from icp_agent.utils.llm import ChatCapability

DEFAULT_SCRIPT = [
    "hi",
    "I want to reach out to new prospects",
    "I don't know who yet, help me find them",
    "We solve late invoice payments for SMBs",
    "CEOs and founders",
    "SaaS and fintech",
    "Dubai and London",
    "Mostly SMB deals",
    "yes",
]


async def _run(turns: List[str], interactive: bool, live: bool) -> Dict[str, Any]:
    llm = ChatCapability.from_settings() if live else ChatCapability.disabled()
    assistant = ICPAssistant(llm)
    conversation_id = str(uuid.uuid4())
    history: List[Dict[str, str]] = []
    context: Dict[str, Any] | None = None

    async def _turn(text: str) -> bool:
        nonlocal context
        result = await assistant.process_turn(text, conversation_id, history, context)
        context = result.context.to_blob()
        history.append({"role": "user", "content": text})
        history.append({"role": "assistant", "content": result.response})
        print(f"USER      > {text}")
        print(f"ASSISTANT > {result.response}")
        print(f"            stage={result.context.stage} status={result.status}\n")
        return result.ready_for_execution

    if interactive:
        await _turn("")
        while True:
            try:
                text = input("you> ")
            except EOFError:
                break
            if text.strip().lower() in {"quit", "exit"}:
                break
            if await _turn(text):
                break
    else:
        for text in turns:
            if await _turn(text):
                break
    return context or {}


def main():
    parser = argparse.ArgumentParser(description="Simulate an ICP assistant conversation.")
    parser.add_argument("--script", type=str, help="JSON file with a list of user messages", default=None)
    parser.add_argument("--interactive", action="store_true", help="Read user messages from stdin")
    parser.add_argument("--live", action="store_true", help="Use the configured chat model when available")
    args = parser.parse_args()

    turns = DEFAULT_SCRIPT
    if args.script:
        with open(args.script, "r", encoding="utf-8") as fh:
            turns = [str(t) for t in json.load(fh)]

    final = asyncio.run(_run(turns, args.interactive, args.live))
    print(json.dumps(final, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
