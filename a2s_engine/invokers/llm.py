from __future__ import annotations

"""pydantic_ai-based decision invoker for ``agent_decision`` / ``sampling`` tasks.

The engine treats a decision as an opaque structured value: the invoker
asks the model for a JSON object shaped like the task's declared outputs
and the dispatcher validates the result against those declarations. The
correctness of the engine never depends on what the model decides.
"""

import json
import logging
from typing import Any, Dict, Optional

from pydantic_ai import Agent as PydanticAIAgent

from ..capability.errors import A2SError, InvocationError

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a decision step inside an automated workflow. "
    "Answer only with a JSON object that matches the requested output schema."
)


def render_message(prompt: str, schema: Dict[str, Any], context: Dict[str, Any]) -> str:
    """Build the user message: instructions, resolved inputs and output schema."""
    parts = [prompt.strip()]
    if context:
        parts.append("Inputs:\n" + json.dumps(context, indent=2, ensure_ascii=False, default=str))
    if schema:
        parts.append("Output schema:\n" + json.dumps(schema, indent=2, ensure_ascii=False, default=str))
    return "\n\n".join(parts)


class PydanticAIDecisionInvoker:
    """Decision invoker running a pydantic_ai ``Agent`` per call.

    Args:
        model: A pydantic_ai model instance or model name (``"openai:gpt-4o"``).
        system_prompt: System prompt used when the task declares none.
    """

    def __init__(self, model: Any, *, system_prompt: Optional[str] = None) -> None:
        self._model = model
        self._system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT

    async def __call__(
        self,
        prompt: str,
        schema: Dict[str, Any],
        *,
        context: Dict[str, Any],
        system: Optional[str] = None,
        timeout: float,
    ) -> Any:
        agent = PydanticAIAgent(self._model, output_type=dict, system_prompt=system or self._system_prompt)
        message = render_message(prompt, schema, context)
        logger.debug("PydanticAIDecisionInvoker: prompt of %d chars, timeout %.1fs", len(message), timeout)
        try:
            res = await agent.run(message)
        except A2SError:
            raise
        except Exception as exc:
            raise InvocationError(f"decision model call failed: {exc}") from exc
        if isinstance(res.output, dict):
            return dict(res.output)
        return {"result": res.output}
