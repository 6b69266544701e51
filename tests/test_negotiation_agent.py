"""Tests for the negotiation delegate: rule-based strategy, clamping and the Gemini path."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bagsy_platform.agents.base import AgentResult
from bagsy_platform.agents.negotiation_agent import (
    NegotiationAgent,
    NegotiationContext,
    clamp_decision,
    owner_counter_price,
    renter_counter_price,
    rule_based_decision,
)
from bagsy_platform.domain.enums import BookingActor, DelegateAction, DemandLevel, NegotiationStrategy
from bagsy_platform.domain.schemas import DelegateDecision, MarketSnapshot

A = DelegateAction


def _ctx(
    role=BookingActor.OWNER,
    offer=8.0,
    listing=10.0,
    average=9.5,
    demand=DemandLevel.MEDIUM,
    strategy=NegotiationStrategy.MODERATE,
    round_number=0,
    **prefs,
):
    market = MarketSnapshot(
        average_price=average,
        median_price=average,
        price_range=(average * 0.7, average * 1.3),
        comparable_count=5,
        demand_level=demand,
    )
    return NegotiationContext(
        role=role,
        listing_price=listing,
        offer_price=offer,
        market=market,
        strategy=strategy,
        round_number=round_number,
        space_title="Sunny Driveway",
        city="Austin",
        state="TX",
        **prefs,
    )


def _fake_settings(**overrides):
    s = MagicMock()
    s.gemini_api_key = "fake-key-for-testing"
    s.negotiation_model = "gemini-test"
    for key, value in overrides.items():
        setattr(s, key, value)
    return s


# ---------------------------------------------------------------------------
# Owner rules
# ---------------------------------------------------------------------------


class TestOwnerRules:
    def test_accepts_near_listing_price(self):
        decision = rule_based_decision(_ctx(offer=9.6))
        assert decision.action == A.ACCEPT
        assert decision.reasoning == "Offer of $9.60/hr is 96% of listing price. Excellent deal!"
        assert decision.confidence == 0.95

    def test_accepts_above_market_average(self):
        decision = rule_based_decision(_ctx(offer=9.0, average=8.5))
        assert decision.action == A.ACCEPT
        assert decision.reasoning == "Offer exceeds market average of $8.50/hr. Good market value."
        assert decision.confidence == 0.85

    def test_rejects_below_minimum(self):
        decision = rule_based_decision(_ctx(offer=5.0))
        assert decision.action == A.REJECT
        assert decision.reasoning == (
            "Offer of $5.00/hr is below minimum acceptable price of $7.00/hr."
        )

    def test_custom_threshold(self):
        assert rule_based_decision(_ctx(offer=8.0, auto_accept_threshold=0.8)).action == A.ACCEPT
        assert rule_based_decision(_ctx(offer=8.0, min_acceptable_price=8.5)).action == A.REJECT

    def test_counters_in_between(self):
        decision = rule_based_decision(_ctx(offer=8.0))
        assert decision.action == A.COUNTER
        assert decision.counter_price == 9.0
        assert decision.reasoning.startswith(
            "Based on market analysis, comparable spaces average $9.50/hr."
        )
        assert "This represents fair market value for the space." in decision.reasoning
        assert decision.confidence == 0.75

    @pytest.mark.parametrize(
        "strategy,demand,round_number,expected",
        [
            (NegotiationStrategy.MODERATE, DemandLevel.MEDIUM, 0, 9.0),
            (NegotiationStrategy.AGGRESSIVE, DemandLevel.HIGH, 0, 9.87),
            (NegotiationStrategy.CONSERVATIVE, DemandLevel.MEDIUM, 0, 8.8),
            # Convergence caps at 30% of the gap
            (NegotiationStrategy.MODERATE, DemandLevel.MEDIUM, 10, 8.7),
        ],
    )
    def test_counter_price(self, strategy, demand, round_number, expected):
        ctx = _ctx(offer=8.0, strategy=strategy, demand=demand, round_number=round_number)
        assert owner_counter_price(ctx) == expected


# ---------------------------------------------------------------------------
# Renter rules
# ---------------------------------------------------------------------------


class TestRenterRules:
    def test_accepts_at_or_below_market(self):
        decision = rule_based_decision(_ctx(role=BookingActor.RENTER, offer=9.0))
        assert decision.action == A.ACCEPT
        assert decision.reasoning == "Price of $9.00/hr is within budget and at or below market average."

    def test_accepts_close_to_market(self):
        decision = rule_based_decision(_ctx(role=BookingActor.RENTER, offer=10.2))
        assert decision.action == A.ACCEPT
        assert "close to market average" in decision.reasoning

    def test_rejects_far_over_budget(self):
        decision = rule_based_decision(_ctx(role=BookingActor.RENTER, offer=13.0))
        assert decision.action == A.REJECT
        assert decision.reasoning == "Price of $13.00/hr exceeds maximum budget of $11.00/hr."

    def test_counters_towards_market(self):
        decision = rule_based_decision(_ctx(role=BookingActor.RENTER, offer=12.0, average=10.0))
        assert decision.action == A.COUNTER
        assert decision.counter_price == 9.5
        assert "This is a competitive offer for similar spaces." in decision.reasoning

    @pytest.mark.parametrize(
        "strategy,round_number,expected",
        [
            (NegotiationStrategy.MODERATE, 0, 9.5),
            (NegotiationStrategy.CONSERVATIVE, 0, 11.0),
            # 8.5 pulled 40% of the way towards 12
            (NegotiationStrategy.AGGRESSIVE, 5, 9.9),
        ],
    )
    def test_counter_price(self, strategy, round_number, expected):
        ctx = _ctx(
            role=BookingActor.RENTER, offer=12.0, average=10.0, strategy=strategy, round_number=round_number
        )
        assert renter_counter_price(ctx) == expected


# ---------------------------------------------------------------------------
# Clamping
# ---------------------------------------------------------------------------


class TestClamp:
    def test_owner_counter_floored_at_minimum(self):
        decision = DelegateDecision(action=A.COUNTER, counter_price=5.0)
        assert clamp_decision(decision, _ctx()).counter_price == 7.0

    def test_renter_counter_capped_at_maximum(self):
        decision = DelegateDecision(action=A.COUNTER, counter_price=15.0)
        assert clamp_decision(decision, _ctx(role=BookingActor.RENTER)).counter_price == 11.0

    @pytest.mark.parametrize("price", [None, 0.0, -1.0])
    def test_unusable_counter(self, price):
        assert clamp_decision(DelegateDecision(action=A.COUNTER, counter_price=price), _ctx()) is None

    def test_non_counter_passes_through(self):
        decision = DelegateDecision(action=A.ACCEPT, reasoning="ok")
        assert clamp_decision(decision, _ctx()) is decision


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class TestNegotiationAgent:
    def test_llm_disabled_without_key(self):
        with patch(
            "bagsy_platform.infra.gemini_client.get_settings",
            return_value=SimpleNamespace(llm_delegate_enabled=False),
        ):
            agent = NegotiationAgent()
        assert agent.use_llm is False

    async def test_rules_only(self):
        agent = NegotiationAgent(use_llm=False)
        with patch.object(agent, "generate_json", new_callable=AsyncMock) as mock_gen:
            decision = await agent.decide(_ctx(offer=9.6))
        mock_gen.assert_not_called()
        assert decision.action == A.ACCEPT

    async def test_model_decision_is_clamped(self):
        agent = NegotiationAgent(use_llm=True)
        model_answer = {"action": "counter", "counter_price": 5.0, "reasoning": "How about $5?", "confidence": 0.6}
        with patch.object(
            agent, "generate_json", new_callable=AsyncMock, return_value=AgentResult.success(model_answer)
        ) as mock_gen:
            decision = await agent.decide(_ctx(offer=8.0))

        assert decision.action == A.COUNTER
        assert decision.counter_price == 7.0
        assert decision.reasoning == "How about $5?"
        kwargs = mock_gen.call_args.kwargs
        assert kwargs["response_schema"]["required"] == ["action", "reasoning"]
        assert "Latest offer to your principal: $8.00/hr" in kwargs["prompt"]

    @pytest.mark.parametrize(
        "result",
        [
            AgentResult.failure("timeout"),
            AgentResult.success({"action": "maybe", "reasoning": "?"}),
            AgentResult.success({"action": "counter", "reasoning": "no price"}),
        ],
    )
    async def test_falls_back_to_rules(self, result):
        agent = NegotiationAgent(use_llm=True)
        with patch.object(agent, "generate_json", new_callable=AsyncMock, return_value=result):
            decision = await agent.decide(_ctx(offer=8.0))
        assert decision.action == A.COUNTER
        assert decision.counter_price == 9.0

    def test_prompt_lists_history(self):
        ctx = _ctx(history=[("renter", 7.0, False), ("owner", 8.5, True)])
        prompt = NegotiationAgent._build_prompt(ctx)
        assert "- renter: $7.00/hr" in prompt
        assert "- owner: $8.50/hr (AI)" in prompt
        assert "Minimum acceptable price: $7.00/hr" in prompt


class TestGeminiClient:
    @patch("bagsy_platform.infra.gemini_client.get_settings", return_value=_fake_settings())
    @patch("bagsy_platform.infra.gemini_client.genai")
    def test_json_mode_with_schema(self, mock_genai, _mock_settings):
        from bagsy_platform.infra.gemini_client import get_model

        get_model(json_mode=True, response_schema={"type": "object", "title": "Decision"})

        kwargs = mock_genai.GenerativeModel.call_args.kwargs
        assert kwargs["model_name"] == "gemini-test"
        assert kwargs["generation_config"]["response_mime_type"] == "application/json"
        assert kwargs["generation_config"]["response_schema"] == {"type": "object"}
        mock_genai.configure.assert_called_once_with(api_key="fake-key-for-testing")

    @patch("bagsy_platform.infra.gemini_client.get_settings", return_value=_fake_settings())
    @patch("bagsy_platform.infra.gemini_client.genai")
    def test_no_json_mode(self, mock_genai, _mock_settings):
        from bagsy_platform.infra.gemini_client import get_model

        get_model(json_mode=False)

        gen_config = mock_genai.GenerativeModel.call_args.kwargs["generation_config"]
        assert "response_mime_type" not in gen_config
        assert "response_schema" not in gen_config

    def test_clean_schema_inlines_definitions(self):
        from bagsy_platform.infra.gemini_client import clean_schema

        schema = DelegateDecision.model_json_schema()
        cleaned = clean_schema(schema)
        assert "$defs" not in cleaned
        assert "title" not in cleaned
        assert cleaned["properties"]["action"]["enum"] == ["accept", "reject", "counter", "none"]
        assert "maximum" not in cleaned["properties"]["confidence"]
