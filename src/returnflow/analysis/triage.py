"""OpenAI-backed triage capability."""

import json
import logging
import re
from typing import Optional

import openai

from returnflow.analysis.openai_retry import chat_completions_with_retry
from returnflow.analysis.schemas import TriageInput, TriageResult
from returnflow.common.constants import DecisionConstants
from returnflow.core.types import TriageVerdict
from returnflow.governance.schemas import PolicyRules

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_triage_response(content: Optional[str]) -> TriageResult:
    """Pull the JSON verdict out of a model reply.

    No JSON at all gives human_review at confidence 0.5; JSON that does not
    parse gives human_review at confidence 0.0.
    """
    match = _JSON_OBJECT.search(content or "")
    if not match:
        return TriageResult.fallback(
            "Could not parse structured response, defaulting to human review",
            DecisionConstants.DEFAULT_CONFIDENCE,
            "response_parsing_error",
        )
    try:
        result = TriageResult.model_validate(json.loads(match.group(0)))
    except ValueError as e:
        logger.warning("Failed to parse triage response: %s", e)
        return TriageResult.fallback(
            "Error parsing AI response, defaulting to human review", 0.0, "parsing_error"
        )

    updates = {}
    if not result.decision:
        updates["decision"] = TriageVerdict.HUMAN_REVIEW.value
    if result.confidence is None:
        updates["confidence"] = DecisionConstants.DEFAULT_CONFIDENCE
    if not result.reasoning:
        updates["reasoning"] = "No reasoning provided"
    return result.model_copy(update=updates) if updates else result


def build_system_prompt(rules: PolicyRules) -> str:
    return f"""You are a Triage Agent for an e-commerce return management system. Evaluate return requests against business policy and decide.

**Business Policy Rules:**
- Return Window: {rules.return_window_days} days
- Auto-approval Threshold: ${rules.auto_approve_threshold}
- Required Evidence: {', '.join(rules.required_evidence) or 'None'}
- Acceptable Reasons: {', '.join(rules.acceptable_reasons) or 'None'}
- High Risk Categories: {', '.join(rules.high_risk_categories) or 'None'}

**Decision Criteria:**
1. AUTO_APPROVE: within window, below threshold, valid reason, evidence present if required, customer risk < 0.3.
2. AUTO_DENY: outside window, unacceptable reason, clear policy violation or strong fraud indicators.
3. HUMAN_REVIEW: high order value, complex case, unclear evidence, customer risk 0.3-0.7.

Respond in JSON only:
{{
  "decision": "auto_approve|auto_deny|human_review",
  "confidence": 0.0-1.0,
  "reasoning": "explanation",
  "riskFactors": [],
  "policyViolations": [],
  "nextSteps": []
}}"""


def build_user_prompt(request: TriageInput) -> str:
    evidence = ", ".join(request.evidence_urls) or "None"
    return f"""Please evaluate this return request:

**Order Details:**
- Order ID: {request.order_id}
- Customer Email: {request.customer_email or 'unknown'}
- Order Value: ${request.order_value}
- Days Since Purchase: {request.days_since_purchase}
- Product Category: {request.product_category}

**Return Request:**
- Reason: {request.reason}
- Evidence Provided: {'Yes' if request.evidence_urls else 'No'}
- Evidence URLs: {evidence}

**Customer Profile:**
- Risk Score: {request.customer_risk_score}
- Return History: {request.return_history} previous returns"""


class OpenAITriageAnalyzer:
    """Triage capability that asks an OpenAI chat model for a verdict.

    Any provider failure, including a missing API key, yields a
    human_review verdict with confidence 0.0.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or (openai.AsyncOpenAI(api_key=api_key) if api_key else None)

    async def evaluate(
        self, request: TriageInput, rules: PolicyRules, business_id: str
    ) -> TriageResult:
        if self._client is None:
            logger.warning("OPENAI_API_KEY not configured, routing %s to human review", request.order_id)
            return self._system_error()

        try:
            response = await chat_completions_with_retry(
                self._client,
                model=self.model,
                messages=[
                    {"role": "system", "content": build_system_prompt(rules)},
                    {"role": "user", "content": build_user_prompt(request)},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as e:
            logger.error("Triage call failed for business %s: %s", business_id, e)
            return self._system_error()

        if not response.choices:
            return self._system_error()
        return parse_triage_response(response.choices[0].message.content)

    @staticmethod
    def _system_error() -> TriageResult:
        return TriageResult.fallback(
            "Error occurred during automated evaluation, defaulting to human review",
            0.0,
            "system_error",
        )
