# =============================================================================
# Planner Agent — Research Sub-Question Generation
# =============================================================================
#
# Breaks a user's financial question into 2-4 focused sub-questions that
# the search orchestrator can research independently.
#
# FLOW:
#   validate_financial_question() → prompt the planning LLM → strip code
#   fences → json.loads → parse_research_plan() → ResearchPlan
#
# DESIGN DECISION: The planner never fails because of the LLM.
# A failed call or an unparseable reply produces a three-question fallback
# plan (status "fallback") built from the original question. Only invalid
# user input raises, as ValidationError.
#
# DESIGN DECISION: Few-shot prompt with a fixed JSON schema.
# Two worked examples in the prompt keep Gemini's output on the
# {originalQuestion, subQuestions, researchFocus} shape far more reliably
# than a schema description alone.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.errors import PlanningError, ValidationError
from app.services.llm import LLMProvider

logger = logging.getLogger(__name__)

MIN_QUESTION_LENGTH = 5
MAX_QUESTION_LENGTH = 500
MIN_SUB_QUESTIONS = 2
MAX_SUB_QUESTIONS = 4

FINANCIAL_KEYWORDS = [
    "stock", "price", "ratio", "earnings", "revenue", "profit", "investment",
    "market", "company", "financial", "valuation", "dividend", "growth",
    "analysis", "performance", "cash flow", "debt", "equity", "asset",
    "return", "risk", "portfolio", "sector", "industry", "economy",
]

PLANNING_PROMPT = """\
You are a financial research assistant helping to break down complex \
financial questions into targeted sub-questions for comprehensive research.

Your task is to analyze the user's financial question and generate \
approximately 3 focused sub-questions that will help gather all necessary \
information to provide a complete answer.

**Context:**
- Focus on factual, data-driven questions that can be researched
- Prioritize current/recent financial data and metrics
- Consider multiple perspectives (company fundamentals, market context, \
industry comparisons)
- Ensure questions are specific enough to yield actionable research results

**Guidelines:**
1. Generate 2-4 sub-questions (aim for 3 when possible)
2. Each sub-question should address a different aspect of the original question
3. Questions should be specific, measurable, and researchable
4. Include relevant timeframes when appropriate (e.g., "current", "recent quarter")
5. Consider both quantitative metrics and qualitative factors when relevant

**Output Format:**
Respond with a JSON object containing:
- originalQuestion: The user's original question
- subQuestions: Array of 2-4 focused sub-questions
- researchFocus: Brief description of the research strategy

**Examples:**

User Question: "What is Apple's P/E ratio?"
{{
  "originalQuestion": "What is Apple's P/E ratio?",
  "subQuestions": [
    "What is Apple's current stock price and market capitalization?",
    "What are Apple's earnings per share (EPS) for the most recent quarter \
and trailing twelve months?",
    "How does Apple's P/E ratio compare to other major technology companies?"
  ],
  "researchFocus": "Focus on current valuation metrics and peer comparison"
}}

User Question: "Should I invest in Tesla stock?"
{{
  "originalQuestion": "Should I invest in Tesla stock?",
  "subQuestions": [
    "What are Tesla's current financial performance metrics and recent \
quarterly results?",
    "What are the major risks and growth opportunities facing Tesla?",
    "How do analysts rate Tesla stock and what are the price targets?"
  ],
  "researchFocus": "Focus on comprehensive investment analysis including \
financials, risks, and market sentiment"
}}

**User Question:** {question}

Please analyze this question and generate a structured research plan \
following the format above."""

FALLBACK_FOCUS = "General research approach due to planning system error"

_CODE_FENCE = re.compile(r"```(?:json)?\s*")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class QuestionValidation:
    is_valid: bool
    error: str | None = None
    warning: str | None = None


@dataclass
class ResearchPlan:
    """A question decomposed into researchable sub-questions."""

    original_question: str
    sub_questions: list[str]
    research_focus: str
    plan_id: str
    status: str = "completed"  # "completed" or "fallback"
    model: str | None = None
    error: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def is_fallback(self) -> bool:
        return self.status == "fallback"

    def to_dict(self) -> dict:
        data = {
            "originalQuestion": self.original_question,
            "subQuestions": list(self.sub_questions),
            "researchFocus": self.research_focus,
            "planId": self.plan_id,
            "timestamp": self.timestamp,
            "status": self.status,
            "subQuestionCount": len(self.sub_questions),
        }
        if self.model:
            data["model"] = self.model
        if self.error:
            data["error"] = self.error
        return data


# ---------------------------------------------------------------------------
# Validation & Parsing
# ---------------------------------------------------------------------------


def validate_financial_question(question: object) -> QuestionValidation:
    """Length check plus a soft warning when nothing looks financial."""
    if not question or not isinstance(question, str):
        return QuestionValidation(False, error="Question must be a non-empty string")

    clean = question.strip()
    if len(clean) < MIN_QUESTION_LENGTH:
        return QuestionValidation(
            False,
            error=f"Question is too short (minimum {MIN_QUESTION_LENGTH} characters)",
        )
    if len(clean) > MAX_QUESTION_LENGTH:
        return QuestionValidation(
            False,
            error=f"Question is too long (maximum {MAX_QUESTION_LENGTH} characters)",
        )

    lowered = clean.lower()
    if not any(keyword in lowered for keyword in FINANCIAL_KEYWORDS):
        return QuestionValidation(
            True,
            warning=(
                "Question may not be financial-related. "
                "Consider rephrasing for better results."
            ),
        )
    return QuestionValidation(True)


def parse_research_plan(raw: str) -> dict:
    """
    Parse and validate the planning LLM's JSON reply.

    Raises:
        PlanningError: Not JSON, missing fields, or the wrong number of
            sub-questions.
    """
    cleaned = _CODE_FENCE.sub("", raw.strip()).strip()
    try:
        plan = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PlanningError(f"Failed to parse research plan: {e}") from e

    if not isinstance(plan, dict):
        raise PlanningError("Failed to parse research plan: expected a JSON object")

    missing = [
        name for name in ("originalQuestion", "subQuestions", "researchFocus")
        if not plan.get(name)
    ]
    if missing:
        raise PlanningError(
            f"Failed to parse research plan: missing required fields: "
            f"{', '.join(missing)}"
        )

    sub_questions = plan["subQuestions"]
    if not isinstance(sub_questions, list):
        raise PlanningError("Failed to parse research plan: subQuestions must be an array")
    if not MIN_SUB_QUESTIONS <= len(sub_questions) <= MAX_SUB_QUESTIONS:
        raise PlanningError(
            f"Failed to parse research plan: must have "
            f"{MIN_SUB_QUESTIONS}-{MAX_SUB_QUESTIONS} sub-questions"
        )
    if any(not isinstance(q, str) or not q.strip() for q in sub_questions):
        raise PlanningError(
            "Failed to parse research plan: all sub-questions must be non-empty strings"
        )

    return plan


def fallback_plan(question: str, error: str | None = None) -> ResearchPlan:
    return ResearchPlan(
        original_question=question,
        sub_questions=[
            f"Research the basic information about: {question}",
            f"Find recent data and metrics related to: {question}",
            f"Analyze the context and implications of: {question}",
        ],
        research_focus=FALLBACK_FOCUS,
        plan_id=f"fallback_plan_{int(time.time() * 1000)}",
        status="fallback",
        error=error,
    )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class Planner:
    """Planning adapter around an LLMProvider."""

    def __init__(self, llm: LLMProvider) -> None:
        self._llm = llm

    async def generate_plan(self, question: str) -> ResearchPlan:
        """Ask the LLM for a plan; fall back to a generic plan on any failure."""
        logger.info("Generating research plan for '%s'", question[:80])
        try:
            response = await self._llm.complete(
                messages=[{
                    "role": "user",
                    "content": PLANNING_PROMPT.format(question=question.strip()),
                }],
            )
            parsed = parse_research_plan(response.content)
        except Exception as e:
            logger.warning("Planning failed, using fallback plan: %s", e)
            return fallback_plan(question, error=str(e))

        plan = ResearchPlan(
            original_question=parsed["originalQuestion"],
            sub_questions=[q.strip() for q in parsed["subQuestions"]],
            research_focus=parsed["researchFocus"],
            plan_id=f"plan_{int(time.time() * 1000)}",
            model=response.model,
        )
        logger.info(
            "Research plan %s: %d sub-questions",
            plan.plan_id, len(plan.sub_questions),
        )
        return plan

    async def plan(self, question: str) -> ResearchPlan:
        """
        Validate the question, then generate a plan.

        Raises:
            ValidationError: Question is empty, too short or too long.
        """
        validation = validate_financial_question(question)
        if not validation.is_valid:
            raise ValidationError(f"Invalid question: {validation.error}")
        if validation.warning:
            logger.info("Planning warning: %s", validation.warning)
        return await self.generate_plan(question)
