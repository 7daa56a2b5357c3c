import pytest

from icp_agent.agent import ICPAssistant
from icp_agent.utils.llm import ChatCapability
from icp_agent.utils.responses import (
    ASK_CHANGE,
    CLARIFICATION_TEMPLATES,
    CONFIRM_CLARIFY,
    FALLBACK_TEMPLATES,
    READY_ACK,
)
from icp_agent.utils.state import ConversationContext


class _FakeLLM:
    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.prompts = []

    @property
    def available(self):
        return True

    async def agenerate(self, prompt, schema_hint=None):
        self.prompts.append((prompt, schema_hint))
        return self.replies.pop(0) if self.replies else ""


@pytest.fixture
def assistant():
    return ICPAssistant(ChatCapability.disabled())


class _Conversation:
    def __init__(self, assistant, context=None):
        self.assistant = assistant
        self.context = context
        self.history = []
        self.last = None

    async def say(self, text):
        self.last = await self.assistant.process_turn(text, "conv-1", list(self.history), self.context)
        self.context = self.last.context.to_blob()
        self.history.append({"role": "user", "content": text})
        self.history.append({"role": "assistant", "content": self.last.response})
        return self.last


def _discovery_confirmation() -> ConversationContext:
    return ConversationContext(
        stage="confirmation",
        status="awaiting_confirmation",
        outreach_type="outbound",
        target_knowledge="discovery",
        problem_statement="We solve late invoice payments for SMBs",
        roles=["Ceos", "Founders"],
        industries=["Saas", "Fintech"],
        company_size="smb",
        locations=["Dubai", "London"],
        deal_type="smb",
        inferred_strategy="people_search",
    )


@pytest.mark.asyncio
async def test_discovery_scenario_end_to_end(assistant):
    convo = _Conversation(assistant)

    r = await convo.say("hi")
    assert r.context.stage == "outreach_type"
    assert r.response == FALLBACK_TEMPLATES[("outreach_type", "outreach_type")]

    r = await convo.say("I want to reach out to new prospects")
    assert r.context.outreach_type == "outbound"
    assert r.context.stage == "outbound_target_knowledge"

    r = await convo.say("I don't know who yet, help me find them")
    assert r.context.target_knowledge == "discovery"
    assert r.context.stage == "outbound_icp_discovery"

    r = await convo.say("We solve late invoice payments for SMBs")
    assert r.context.problem_statement == "We solve late invoice payments for SMBs"
    assert r.response == FALLBACK_TEMPLATES[("outbound_icp_discovery", "roles")]

    r = await convo.say("CEOs and founders")
    assert r.context.roles == ["Ceos", "Founders"]
    assert r.response == FALLBACK_TEMPLATES[("outbound_icp_discovery", "industries")]

    await convo.say("SaaS and fintech")
    await convo.say("Dubai and London")
    r = await convo.say("Mostly SMB deals")
    assert r.context.stage == "confirmation"
    assert r.status == "awaiting_confirmation"
    assert r.context.inferred_strategy == "people_search"
    assert r.response.startswith("Perfect! Here's what I understood:\nOutreach: outbound\n")
    assert r.response.endswith("Does this look correct?")

    r = await convo.say("yes")
    assert r.context.stage == "ready_for_execution"
    assert r.status == "ready_for_execution"
    assert r.ready_for_execution is True
    assert r.context.confirmed is True
    assert r.response == READY_ACK
    assert r.to_payload()["readyForExecution"] is True


@pytest.mark.asyncio
async def test_inbound_flow_end_to_end(assistant):
    convo = _Conversation(assistant)
    await convo.say("hello")
    r = await convo.say("Leads come in through our website form")
    assert r.context.outreach_type == "inbound"
    assert r.context.inbound_source == "website"
    assert r.response == FALLBACK_TEMPLATES[("inbound_flow", "inbound_data_ready")]

    r = await convo.say("no, not yet")
    assert r.context.inbound_data_ready is False
    assert r.response == FALLBACK_TEMPLATES[("inbound_flow", "capture_rules")]

    r = await convo.say("name, email and company")
    assert r.context.capture_rules == "name, email and company"
    assert r.context.stage == "confirmation"
    assert "Lead source: Website form" in r.response
    assert r.context.target_knowledge is None

    r = await convo.say("yep")
    assert r.ready_for_execution is True
    assert r.context.inferred_strategy is None


@pytest.mark.asyncio
async def test_known_target_flow_with_linkedin(assistant):
    ctx = ConversationContext(stage="outbound_target_knowledge", outreach_type="outbound")
    convo = _Conversation(assistant, ctx.to_blob())
    r = await convo.say("Yes, here is one: https://www.linkedin.com/in/jane-doe")
    assert r.context.target_knowledge == "known"
    assert r.context.stage == "outbound_known_target"
    assert r.context.linkedin_urls == ["https://www.linkedin.com/in/jane-doe"]
    assert r.response == FALLBACK_TEMPLATES[("outbound_known_target", "roles")]

    await convo.say("CTOs")
    r = await convo.say("Only the UAE")
    assert r.context.locations == ["UAE"]
    assert r.context.stage == "confirmation"
    assert r.context.inferred_strategy == "people_enrichment"


@pytest.mark.asyncio
async def test_empty_message_does_not_change_context(assistant):
    ctx = ConversationContext(
        stage="outbound_icp_discovery",
        outreach_type="outbound",
        target_knowledge="discovery",
        problem_statement="Late invoices",
    )
    for text in ("", "   "):
        result = await assistant.process_turn(text, "conv-1", [{"role": "user", "content": "inbound"}], ctx)
        assert result.context == ctx
        assert result.context is not ctx
        assert result.response == FALLBACK_TEMPLATES[("outbound_icp_discovery", "roles")]

    confirm = _discovery_confirmation()
    result = await assistant.process_turn("", "conv-1", [], confirm)
    assert result.context == confirm
    assert result.response == CONFIRM_CLARIFY


@pytest.mark.asyncio
async def test_self_heal_moves_past_answered_question(assistant):
    stale = ConversationContext(stage="outreach_type", outreach_type="outbound")
    r = await assistant.process_turn("", "conv-1", [], stale)
    assert r.context.stage == "outbound_target_knowledge"
    assert r.response == FALLBACK_TEMPLATES[("outbound_target_knowledge", "target_knowledge")]

    r = await assistant.process_turn("hmm", "conv-1", [], r.context)
    assert r.context.stage == "outbound_target_knowledge"
    assert r.response != FALLBACK_TEMPLATES[("outreach_type", "outreach_type")]


@pytest.mark.asyncio
async def test_self_heal_repairs_contradictions(assistant):
    wrong_branch = ConversationContext(stage="inbound_flow", outreach_type="outbound", target_knowledge="known")
    r = await assistant.process_turn("", "conv-1", [], wrong_branch)
    assert r.context.stage == "outbound_known_target"

    premature = ConversationContext(stage="confirmation", outreach_type="outbound", target_knowledge="discovery")
    r = await assistant.process_turn("", "conv-1", [], premature)
    assert r.context.stage == "outbound_icp_discovery"
    assert r.status == "collecting_info"

    legacy = {"stage": "keyword_expansion", "outreachType": "inbound"}
    r = await assistant.process_turn("", "conv-1", [], legacy)
    assert r.context.stage == "inbound_flow"


@pytest.mark.asyncio
async def test_unclear_answer_gets_clarification_and_keeps_context(assistant):
    ctx = ConversationContext(stage="outreach_type")
    r = await assistant.process_turn("hmm, let me think", "conv-1", [], ctx)
    assert r.context == ctx
    assert r.response == CLARIFICATION_TEMPLATES[("outreach_type", "outreach_type")]


@pytest.mark.asyncio
async def test_backfill_reads_user_history_only(assistant):
    history = [
        {"role": "assistant", "content": "Are you looking to respond to inbound leads, or reach out to prospects?"},
        {"role": "user", "content": "hello"},
    ]
    r = await assistant.process_turn("hmm", "conv-1", history, ConversationContext(stage="outreach_type"))
    assert r.context.outreach_type is None

    history.append({"role": "user", "content": "We do outbound prospecting"})
    r = await assistant.process_turn(
        "not sure who to target yet", "conv-1", history, ConversationContext(stage="outreach_type")
    )
    assert r.context.outreach_type == "outbound"
    assert r.context.target_knowledge == "discovery"
    assert r.context.stage == "outbound_icp_discovery"


@pytest.mark.asyncio
async def test_live_message_beats_backfill(assistant):
    history = [{"role": "user", "content": "we want outbound"}]
    r = await assistant.process_turn("Actually inbound", "conv-1", history, ConversationContext(stage="outreach_type"))
    assert r.context.outreach_type == "inbound"
    assert r.context.stage == "inbound_flow"


@pytest.mark.asyncio
async def test_confirmation_rejection_returns_to_branch(assistant):
    r = await assistant.process_turn("no", "conv-1", [], _discovery_confirmation())
    assert r.context.stage == "outbound_icp_discovery"
    assert r.status == "collecting_info"
    assert r.context.confirmed is False
    assert r.response == ASK_CHANGE

    # the branch is complete but stays open for edits instead of bouncing to confirmation
    r2 = await assistant.process_turn("", "conv-1", [], r.context)
    assert r2.context.stage == "outbound_icp_discovery"
    assert r2.response == ASK_CHANGE

    r3 = await assistant.process_turn("The industry should be healthcare", "conv-1", [], r.context)
    assert r3.context.industries == ["Healthcare"]
    assert r3.context.stage == "confirmation"


@pytest.mark.asyncio
async def test_ambiguous_confirmation_reply(assistant):
    ctx = _discovery_confirmation()
    r = await assistant.process_turn("hmm", "conv-1", [], ctx)
    assert r.context == ctx
    assert r.response == CONFIRM_CLARIFY


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["What about the locations?", "hmm, the industries look long", "maybe"])
async def test_question_at_confirmation_keeps_profile(assistant, text):
    ctx = _discovery_confirmation()
    r = await assistant.process_turn(text, "conv-1", [], ctx)
    assert r.context == ctx
    assert r.context.locations == ["Dubai", "London"]
    assert r.context.stage == "confirmation"
    assert r.response == CONFIRM_CLARIFY


@pytest.mark.asyncio
async def test_malformed_model_output_does_not_break_turn():
    llm = _FakeLLM(['{"roles": true}'])
    assistant = ICPAssistant(llm)
    ctx = ConversationContext(
        stage="outbound_icp_discovery",
        outreach_type="outbound",
        target_knowledge="discovery",
        problem_statement="Late invoices",
    )
    r = await assistant.process_turn("CEOs", "conv-2", [], ctx)
    assert r.context.roles == ["Ceos"]
    assert r.response == FALLBACK_TEMPLATES[("outbound_icp_discovery", "industries")]


@pytest.mark.asyncio
async def test_rejection_naming_a_field_clears_it(assistant):
    r = await assistant.process_turn("no, change the industry", "conv-1", [], _discovery_confirmation())
    assert r.context.industries == []
    assert r.context.roles == ["Ceos", "Founders"]
    assert r.context.stage == "outbound_icp_discovery"
    assert r.context.inferred_strategy is None
    assert r.response == FALLBACK_TEMPLATES[("outbound_icp_discovery", "industries")]


@pytest.mark.asyncio
async def test_rejection_naming_outreach_type_restarts_branch(assistant):
    r = await assistant.process_turn("No, wrong outreach type", "conv-1", [], _discovery_confirmation())
    assert r.context.stage == "outreach_type"
    assert r.context.outreach_type is None
    assert r.context.target_knowledge is None
    assert r.context.roles == ["Ceos", "Founders"]

    r = await assistant.process_turn("no, switch to inbound", "conv-1", [], _discovery_confirmation())
    assert r.context.outreach_type == "inbound"
    assert r.context.stage == "inbound_flow"
    assert r.response == FALLBACK_TEMPLATES[("inbound_flow", "inbound_source")]


@pytest.mark.asyncio
async def test_ready_for_execution_only_acknowledges(assistant):
    ctx = _discovery_confirmation().model_copy(
        update={"stage": "ready_for_execution", "status": "ready_for_execution", "confirmed": True}
    )
    r = await assistant.process_turn("can we add Paris?", "conv-1", [], ctx)
    assert r.context == ctx
    assert r.response == READY_ACK
    assert r.ready_for_execution is True


@pytest.mark.asyncio
async def test_llm_tiers_drive_a_turn():
    llm = _FakeLLM(['{"outreachType": "outbound", "confidenceScore": 90}', '**"Great, do you know who to target?"**'])
    assistant = ICPAssistant(llm)
    r = await assistant.process_turn("we do the reaching", "conv-2", [], ConversationContext(stage="outreach_type"))
    assert r.context.outreach_type == "outbound"
    assert r.context.confidence_score == 90
    assert r.context.stage == "outbound_target_knowledge"
    assert r.response == "Great, do you know who to target?"
    assert len(llm.prompts) == 2
