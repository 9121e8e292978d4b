# feedbackspec/agents/duplicates.py
from typing import List, Optional, Sequence, Tuple, Union
import logging

from feedbackspec.config.settings import Settings
from feedbackspec.agents.gateway import RequestGateway
from feedbackspec.agents.parsing import extract_json_object
from feedbackspec.models.schemas import DuplicateVerdict, FeedbackItem

logger = logging.getLogger(__name__)


def not_duplicate(explanation: str, is_fallback: bool = False) -> DuplicateVerdict:
    return DuplicateVerdict(
        is_duplicate=False,
        similarity_score=0.0,
        most_similar_id=None,
        suggested_action="keep_separate",
        explanation=explanation,
        is_fallback=is_fallback,
    )


class DuplicateDetector:
    """
    Advisory duplicate check for incoming feedback.

    Never blocks a write: every failure is reported as "not a duplicate".
    """

    def __init__(self, config: Settings, gateway: RequestGateway):
        self.config = config
        self.gateway = gateway
        self.window = config.duplicate_window

    def _candidates(self, recent_items: Sequence[Union[FeedbackItem, str]]) -> List[Tuple[str, str]]:
        candidates = []
        for index, item in enumerate(recent_items[:self.window]):
            if isinstance(item, FeedbackItem):
                candidates.append((item.id, item.content))
            else:
                candidates.append((str(index + 1), str(item)))
        return candidates

    async def check(self, new_text: str, recent_items: Sequence[Union[FeedbackItem, str]],
                    caller_id: Optional[str] = None) -> DuplicateVerdict:
        """
        Compare new feedback against the most recent existing items.

        Args:
            new_text: Incoming feedback text
            recent_items: Existing items (or raw texts), most recent first; only the first
                duplicate_window entries are considered
            caller_id: Identity charged for rate limiting

        Returns:
            DuplicateVerdict (fail-open on any error)
        """
        if not self.gateway.is_configured():
            return not_duplicate("AI duplicate detection is not configured")
        if not new_text or not new_text.strip() or not recent_items:
            return not_duplicate("No existing feedback to compare against")

        candidates = self._candidates(recent_items)
        existing_text = "\n".join(f'{item_id}. "{content}"' for item_id, content in candidates)

        prompt = f"""Decide whether the new feedback describes the same problem or request as any existing feedback, even if worded differently.

            New feedback: "{new_text}"

            Existing feedback (ID. "text"):
            {existing_text}

            Return ONLY a JSON object:
            {{
            "is_duplicate": true or false,
            "similarity_score": number between 0 and 1,
            "most_similar_id": "ID of the most similar existing feedback",
            "explanation": "why they are or aren't similar",
            "suggested_action": "merge|keep_separate|flag_for_review"
            }}"""

        messages = [
            {"role": "system", "content": "You are an expert at detecting duplicate or very similar feedback. Always respond with valid JSON."},
            {"role": "user", "content": prompt},
        ]

        try:
            # Context-specific, so never cached
            response = await self.gateway.make_request(
                messages,
                max_tokens=500,
                temperature=0.2,
                caller_id=caller_id,
                timeout=self.config.duplicate_timeout_seconds,
                cache_enabled=False,
                context="Duplicate detection",
            )
            data = extract_json_object(response)
            data.pop("is_fallback", None)
            verdict = DuplicateVerdict.model_validate(data)
        except Exception as e:
            logger.error(f"Duplicate detection failed, treating as not duplicate: {e}")
            return not_duplicate("Could not analyze for duplicates", is_fallback=True)

        known_ids = {item_id for item_id, _ in candidates}
        if verdict.most_similar_id is not None and verdict.most_similar_id not in known_ids:
            logger.warning(f"Duplicate check referenced unknown id {verdict.most_similar_id!r}; dropping it")
            verdict = verdict.model_copy(update={"most_similar_id": None})

        return verdict
