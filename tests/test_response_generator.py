import pytest

from icp_agent.utils.context import STAGE_FIELDS
from icp_agent.utils.llm import CapabilityUnavailable
from icp_agent.utils.responses import (
    ASK_CHANGE,
    CLARIFICATION_TEMPLATES,
    CONFIRM_CLARIFY,
    FALLBACK_TEMPLATES,
    READY_ACK,
    ResponseGenerator,
    confirmation_message,
    sanitize,
)
from icp_agent.utils.state import ConversationContext


class _FakeLLM:
    def __init__(self, replies=None, error=None, available=True):
        self.replies = list(replies or [])
        self.error = error
        self._available = available
        self.prompts = []

    @property
    def available(self):
        return self._available

    async def agenerate(self, prompt, schema_hint=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if self.replies else ""


def _reachable_pairs():
    pairs = []
    for stage, fields in STAGE_FIELDS.items():
        for field in fields or (None,):
            pairs.append((stage, field))
    return pairs


@pytest.mark.parametrize("pair", _reachable_pairs())
def test_every_pair_has_templates(pair):
    assert FALLBACK_TEMPLATES[pair].strip()
    assert CLARIFICATION_TEMPLATES[pair].strip()


def test_confirmation_message_embeds_summary():
    ctx = ConversationContext(outreach_type="inbound", inbound_source="crm", inbound_data_ready=True)
    assert confirmation_message(ctx) == (
        "Perfect! Here's what I understood:\n"
        "Outreach: inbound\nLead source: CRM import\nLead data ready: yes\n"
        "Does this look correct?"
    )


def test_sanitize_strips_markdown_and_quotes():
    assert sanitize('"**Great!** Which industries?"') == "Great! Which industries?"
    assert sanitize("```json\n{}\n```\n## Which roles?") == "Which roles?"
    assert sanitize("   ") == ""


@pytest.mark.asyncio
async def test_fallback_asks_open_field():
    gen = ResponseGenerator()
    ctx = ConversationContext(
        stage="outbound_icp_discovery", outreach_type="outbound", target_knowledge="discovery", problem_statement="x"
    )
    text, tier = await gen.generate_with_tier("outbound_icp_discovery", ctx)
    assert tier == "template"
    assert text == FALLBACK_TEMPLATES[("outbound_icp_discovery", "roles")]
    for question_type in ("clarification", "clarify"):
        clarify = await gen.generate("outbound_icp_discovery", ctx, "hmm", [], question_type)
        assert clarify == CLARIFICATION_TEMPLATES[("outbound_icp_discovery", "roles")]


@pytest.mark.asyncio
async def test_llm_phrasing_is_sanitized():
    llm = _FakeLLM(['"Which *industries* do your customers work in?"'])
    gen = ResponseGenerator(llm)
    ctx = ConversationContext(stage="outbound_icp_discovery", outreach_type="outbound", target_knowledge="discovery")
    history = [{"role": "user", "content": "I want outbound"}, {"role": "assistant", "content": "Great"}]
    text, tier = await gen.generate_with_tier("outbound_icp_discovery", ctx, "hello", history)
    assert tier == "llm"
    assert text == "Which industries do your customers work in?"
    assert "User: I want outbound" in llm.prompts[0]
    assert "what problem their solution solves" in llm.prompts[0]


@pytest.mark.asyncio
async def test_empty_or_failed_llm_output_uses_template():
    ctx = ConversationContext(stage="outreach_type")
    expected = FALLBACK_TEMPLATES[("outreach_type", "outreach_type")]
    assert await ResponseGenerator(_FakeLLM(["``` ```"])).generate("outreach_type", ctx) == expected
    failing = _FakeLLM(error=CapabilityUnavailable("circuit open"))
    assert await ResponseGenerator(failing).generate("outreach_type", ctx) == expected


@pytest.mark.asyncio
async def test_confirmation_and_ready_never_use_llm():
    llm = _FakeLLM(["should not be used"])
    gen = ResponseGenerator(llm)
    ctx = ConversationContext(stage="confirmation", outreach_type="outbound")
    assert (await gen.generate("confirmation", ctx)).startswith("Perfect! Here's what I understood:")
    assert await gen.generate("confirmation", ctx, "hmm", [], "clarification") == CONFIRM_CLARIFY
    assert await gen.generate("ready_for_execution", ctx) == READY_ACK
    assert await gen.generate("outbound_known_target", ctx, "no", [], "change") == ASK_CHANGE
    assert llm.prompts == []
