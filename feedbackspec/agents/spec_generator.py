# feedbackspec/agents/spec_generator.py
from typing import List, Dict, Optional, Any
import logging

from feedbackspec.agents.errors import ErrorKind, GatewayError
from feedbackspec.agents.gateway import RequestGateway
from feedbackspec.agents.parsing import MalformedOutputError, extract_json_object
from feedbackspec.models.schemas import Cluster

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert software architect and technical writer. Create development specifications for AI coding assistants based on user feedback.
Format every answer as markdown with: problem description, technical requirements, implementation steps, acceptance criteria, testing strategy, and edge cases."""


def _numbered(texts: List[str]) -> str:
    return "\n".join(f'{i + 1}. "{text}"' for i, text in enumerate(texts))


class SpecGenerator:
    """Markdown specification writer built on top of the request gateway."""

    def __init__(self, gateway: RequestGateway):
        self.gateway = gateway

    async def _generate(self, prompt: str, max_tokens: int, temperature: float,
                        caller_id: Optional[str], context: str) -> Optional[str]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            response = await self.gateway.make_request(
                messages,
                max_tokens=max_tokens,
                temperature=temperature,
                caller_id=caller_id,
                context=context,
            )
        except GatewayError as e:
            if e.kind == ErrorKind.MALFORMED_RESPONSE:
                logger.warning(f"{context} returned no usable text: {e}")
                return None
            raise
        return response.strip()

    async def generate_spec(self, theme: str, feedback_texts: List[str],
                            caller_id: Optional[str] = None) -> Optional[str]:
        """Detailed development spec for a feedback theme."""
        if not self.gateway.is_configured():
            return None
        if not theme or not theme.strip():
            raise ValueError("Theme is required for spec generation")
        if not feedback_texts:
            raise ValueError("Feedback list is required and cannot be empty")

        prompt = f"""Create a detailed specification based on the following:

            **Theme/Issue**: {theme}

            **User Feedback**:
            {_numbered(feedback_texts)}"""

        return await self._generate(prompt, 2000, 0.7, caller_id, "Spec generation")

    async def generate_implementation_spec(self, issue_type: str, description: str, priority: str,
                                           caller_id: Optional[str] = None) -> Optional[str]:
        """Focused implementation spec for a single issue or request."""
        if not self.gateway.is_configured():
            return None
        if not issue_type or not issue_type.strip():
            raise ValueError("Issue type is required")
        if not description or not description.strip():
            raise ValueError("Description is required")

        prompt = f"""Create a focused implementation specification.

            **Issue Type**: {issue_type}
            **Priority**: {priority or "medium"}
            **Description**: {description}"""

        return await self._generate(prompt, 1200, 0.5, caller_id, "Implementation spec generation")

    async def generate_cluster_spec(self, cluster: Cluster, feedback_texts: List[str],
                                    caller_id: Optional[str] = None) -> Optional[str]:
        """Spec for a persisted cluster, using its member feedback as evidence."""
        if not self.gateway.is_configured():
            return None
        if not feedback_texts:
            raise ValueError("Feedback list is required and cannot be empty")

        prompt = f"""Create a specification that resolves this cluster of related feedback.

            **Theme**: {cluster.theme}
            **Severity**: {cluster.severity}
            **Description**: {cluster.description or "n/a"}
            **Suggested action**: {cluster.suggested_action or "n/a"}

            **Member feedback ({len(feedback_texts)} items)**:
            {_numbered(feedback_texts)}"""

        return await self._generate(prompt, 1500, 0.6, caller_id, "Cluster spec generation")

    async def generate_action_items(self, feedback_texts: List[str],
                                    caller_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Prioritised action items; an unreadable reply yields an empty list."""
        if not self.gateway.is_configured():
            return []
        if not feedback_texts:
            raise ValueError("Feedback list is required and cannot be empty")

        prompt = f"""Turn this feedback into prioritised action items.

            {_numbered(feedback_texts)}

            Return ONLY a JSON object:
            {{"action_items": [{{"title": "...", "priority": "low|medium|high", "estimated_effort": "hours|days|weeks"}}]}}"""

        messages = [
            {"role": "system", "content": "You are a product manager. Always respond with valid JSON."},
            {"role": "user", "content": prompt},
        ]
        try:
            response = await self.gateway.make_request(
                messages,
                max_tokens=1000,
                temperature=0.4,
                caller_id=caller_id,
                context="Action item generation",
            )
            data = extract_json_object(response)
        except GatewayError as e:
            if e.kind != ErrorKind.MALFORMED_RESPONSE:
                raise
            logger.warning(f"Action item generation returned no usable text: {e}")
            return []
        except MalformedOutputError as e:
            logger.warning(f"Failed to parse action items: {e}")
            return []

        items = data.get("action_items")
        if not isinstance(items, list):
            return []
        return [
            {
                "title": str(item.get("title", "")).strip(),
                "priority": str(item.get("priority", "medium")).lower(),
                "estimated_effort": str(item.get("estimated_effort", "days")),
            }
            for item in items
            if isinstance(item, dict) and str(item.get("title", "")).strip()
        ]
