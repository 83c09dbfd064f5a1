# =============================================================================
# Unit Tests — Planner Agent
# =============================================================================
#
# Uses a mock LLM provider; no API keys needed.
# =============================================================================

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from app.agents.planner import (
    FALLBACK_FOCUS,
    Planner,
    ResearchPlan,
    fallback_plan,
    parse_research_plan,
    validate_financial_question,
)
from app.errors import PlanningError, ValidationError
from app.services.llm import LLMResponse


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


PLAN_JSON = json.dumps({
    "originalQuestion": "What is Apple's P/E ratio?",
    "subQuestions": [
        "What is Apple's current stock price?",
        "What are Apple's trailing twelve month earnings per share?",
        "How does Apple's P/E compare to peers?",
    ],
    "researchFocus": "Valuation metrics and peer comparison",
})


def _llm(content: str) -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = LLMResponse(
        content=content, model="gemini-2.0-flash", input_tokens=100, output_tokens=50,
    )
    return llm


# ---------------------------------------------------------------------------
# Test: Question Validation
# ---------------------------------------------------------------------------


class TestValidateFinancialQuestion:
    def test_financial_question(self):
        result = validate_financial_question("What is Apple's stock price?")
        assert result.is_valid
        assert result.error is None
        assert result.warning is None

    def test_non_financial_question_warns(self):
        result = validate_financial_question("What is the weather in Paris?")
        assert result.is_valid
        assert "financial-related" in result.warning

    def test_empty(self):
        result = validate_financial_question("")
        assert not result.is_valid
        assert result.error == "Question must be a non-empty string"

    def test_not_a_string(self):
        assert not validate_financial_question(42).is_valid

    def test_too_short_after_strip(self):
        result = validate_financial_question("   abc   ")
        assert not result.is_valid
        assert "too short" in result.error

    def test_too_long(self):
        result = validate_financial_question("stock " * 100)
        assert not result.is_valid
        assert "too long" in result.error


# ---------------------------------------------------------------------------
# Test: Plan Parsing
# ---------------------------------------------------------------------------


class TestParseResearchPlan:
    def test_plain_json(self):
        plan = parse_research_plan(PLAN_JSON)
        assert len(plan["subQuestions"]) == 3

    def test_code_fenced_json(self):
        plan = parse_research_plan(f"```json\n{PLAN_JSON}\n```")
        assert plan["researchFocus"] == "Valuation metrics and peer comparison"

    def test_not_json(self):
        with pytest.raises(PlanningError, match="Failed to parse research plan"):
            parse_research_plan("Here is my plan: ask about prices")

    def test_missing_fields(self):
        with pytest.raises(PlanningError, match="researchFocus"):
            parse_research_plan(json.dumps({
                "originalQuestion": "q", "subQuestions": ["a", "b"],
            }))

    def test_too_few_sub_questions(self):
        with pytest.raises(PlanningError, match="2-4 sub-questions"):
            parse_research_plan(json.dumps({
                "originalQuestion": "q",
                "subQuestions": ["only one"],
                "researchFocus": "f",
            }))

    def test_too_many_sub_questions(self):
        with pytest.raises(PlanningError, match="2-4 sub-questions"):
            parse_research_plan(json.dumps({
                "originalQuestion": "q",
                "subQuestions": ["a", "b", "c", "d", "e"],
                "researchFocus": "f",
            }))

    def test_blank_sub_question(self):
        with pytest.raises(PlanningError, match="non-empty strings"):
            parse_research_plan(json.dumps({
                "originalQuestion": "q",
                "subQuestions": ["a", "  "],
                "researchFocus": "f",
            }))

    def test_array_is_rejected(self):
        with pytest.raises(PlanningError, match="JSON object"):
            parse_research_plan("[1, 2]")


# ---------------------------------------------------------------------------
# Test: Planner
# ---------------------------------------------------------------------------


class TestPlanner:
    def test_generate_plan(self):
        llm = _llm(PLAN_JSON)
        plan = _run(Planner(llm).generate_plan("What is Apple's P/E ratio?"))

        assert isinstance(plan, ResearchPlan)
        assert plan.status == "completed"
        assert not plan.is_fallback
        assert plan.plan_id.startswith("plan_")
        assert plan.model == "gemini-2.0-flash"
        assert len(plan.sub_questions) == 3

        prompt = llm.complete.call_args.kwargs["messages"][0]["content"]
        assert "**User Question:** What is Apple's P/E ratio?" in prompt

    def test_unparseable_reply_falls_back(self):
        plan = _run(Planner(_llm("not json")).generate_plan("Tesla outlook?"))

        assert plan.is_fallback
        assert plan.research_focus == FALLBACK_FOCUS
        assert plan.plan_id.startswith("fallback_plan_")
        assert plan.error.startswith("Failed to parse research plan")

    def test_llm_error_falls_back(self):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("quota exceeded")

        plan = _run(Planner(llm).generate_plan("Tesla outlook?"))

        assert plan.is_fallback
        assert plan.error == "quota exceeded"
        assert len(plan.sub_questions) == 3

    def test_plan_rejects_invalid_question(self):
        planner = Planner(_llm(PLAN_JSON))
        with pytest.raises(ValidationError, match="Invalid question"):
            _run(planner.plan("hi"))

    def test_plan_warning_still_plans(self):
        plan = _run(Planner(_llm(PLAN_JSON)).plan("Tell me about the weather"))
        assert plan.status == "completed"


class TestResearchPlan:
    def test_fallback_plan_questions(self):
        plan = fallback_plan("Is gold a good hedge?")
        assert plan.sub_questions == [
            "Research the basic information about: Is gold a good hedge?",
            "Find recent data and metrics related to: Is gold a good hedge?",
            "Analyze the context and implications of: Is gold a good hedge?",
        ]

    def test_to_dict(self):
        data = fallback_plan("Is gold a good hedge?", error="boom").to_dict()
        assert data["subQuestionCount"] == 3
        assert data["status"] == "fallback"
        assert data["error"] == "boom"
        assert "model" not in data
