"""
OpenAI narration of compiled decisions.

Turns a decision object into a short executive summary without changing it.
"""

import json
import logging
from typing import Any, Optional

from openai import OpenAI, OpenAIError

from ..core.compiler import DecisionObject

logger = logging.getLogger(__name__)

PLACEHOLDER_NARRATIVE = "Narrative unavailable."

SYSTEM_PROMPT = (
    "You are an AI FinOps controller analysis engine. You receive a compiled "
    "cost decision as JSON. Restate only its root cause and its numeric proof "
    "(variance decomposition, counterfactual cost comparison, expected impact) "
    "in at most three short bullets. Do not recommend anything the decision does "
    "not already contain and do not alter any value."
)


class DecisionNarrator:
    """Narration collaborator backed by the OpenAI chat completions API.

    The narrator only reads the decision. Any API failure or malformed
    response degrades to a placeholder string so narration can never block
    or corrupt a decision.
    """

    def __init__(self, model: str = "gpt-4o-mini", client: Optional[Any] = None):
        """Initialize the narrator.

        Args:
            model: OpenAI model name (required)
            client: Preconfigured OpenAI client; created lazily when omitted

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def narrate(self, decision: DecisionObject) -> str:
        """Describe a decision in prose.

        Args:
            decision: Decision to narrate

        Returns:
            Narrative text, or the placeholder if narration failed
        """
        payload = json.dumps(decision.to_dict(), indent=2)
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": payload},
                ],
            )
        except OpenAIError as e:
            logger.warning("Decision narration failed: %s", e)
            return PLACEHOLDER_NARRATIVE
        except Exception as e:
            # Injected clients may raise outside the OpenAI hierarchy
            logger.warning("Decision narration failed: %s: %s", type(e).__name__, e)
            return PLACEHOLDER_NARRATIVE

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            logger.warning("Decision narration returned a malformed response")
            return PLACEHOLDER_NARRATIVE
        if not isinstance(content, str) or not content.strip():
            return PLACEHOLDER_NARRATIVE
        return content.strip()
