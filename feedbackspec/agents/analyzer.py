# feedbackspec/agents/analyzer.py
from typing import List, Dict, Optional, Union, Any
from pydantic import ValidationError
import pandas as pd
import logging

from feedbackspec.config.settings import Settings
from feedbackspec.agents.errors import ErrorKind, GatewayError
from feedbackspec.agents.gateway import RequestGateway
from feedbackspec.agents.parsing import MalformedOutputError, extract_json_object
from feedbackspec.models.schemas import AnalysisResult, BatchAnalysis, FeedbackItem

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert feedback analyst. Always respond with valid JSON that matches the requested schema exactly."


def default_analysis() -> AnalysisResult:
    """Safe result used whenever the upstream reply cannot be trusted."""
    return AnalysisResult(
        sentiment="neutral",
        sentiment_score=0.0,
        priority="medium",
        categories=["general"],
        confidence=0.5,
        summary="Analysis unavailable - manual review needed",
        suggested_action="Manual review required",
        is_fallback=True,
    )


def default_batch_analysis(total: int) -> BatchAnalysis:
    return BatchAnalysis(
        total_feedback=total,
        overall_sentiment="neutral",
        average_sentiment_score=0.0,
        sentiment_distribution={"positive": 0, "negative": 0, "neutral": total},
        priority_distribution={"low": 0, "medium": total, "high": 0, "urgent": 0},
        category_distribution={"general": total},
        summary="Batch analysis unavailable",
        is_fallback=True,
    )


def build_platform_context(platform: str, metadata: Optional[Dict[str, Any]] = None) -> str:
    """Render platform and metadata hints for the prompt."""
    lines = [f"Platform: {platform}"]
    metadata = metadata or {}
    if metadata.get("author"):
        lines.append(f"Author: {metadata['author']}")
    if metadata.get("followers"):
        lines.append(f"Followers: {metadata['followers']}")
    if metadata.get("retweets") or metadata.get("likes"):
        lines.append(f"Engagement: {metadata.get('retweets', 0)} retweets, {metadata.get('likes', 0)} likes")
    if metadata.get("subject"):
        lines.append(f"Subject: {metadata['subject']}")
    if metadata.get("from"):
        lines.append(f"From: {metadata['from']}")
    return "\n".join(lines)


def _content(item: Union[FeedbackItem, str]) -> str:
    return item.content if isinstance(item, FeedbackItem) else str(item)


class AnalysisEngine:
    """Turns feedback text into structured sentiment / priority / category results."""

    def __init__(self, config: Settings, gateway: RequestGateway):
        self.config = config
        self.gateway = gateway

    async def analyze(self, text: str, platform: str = "manual", metadata: Optional[Dict[str, Any]] = None,
                      caller_id: Optional[str] = None) -> Optional[AnalysisResult]:
        """
        Analyze a single piece of feedback.

        Args:
            text: Feedback content
            platform: Source platform tag (gmail, twitter, ...)
            metadata: Optional platform metadata (author, subject, engagement...)
            caller_id: Identity charged for rate limiting

        Returns:
            AnalysisResult, a fallback result if the reply is malformed, or None when AI is not configured.
        """
        if not self.gateway.is_configured():
            return None
        if not text or not text.strip():
            raise ValueError("Feedback content is required")

        prompt = f"""Analyze the following user feedback.

            {build_platform_context(platform, metadata)}

            Feedback Content:
            "{text}"

            Marketing emails, automated notifications and spam are NOT feedback: use the "general" category with confidence below 0.5 for them.

            Return ONLY a JSON object with this structure:
            {{
            "sentiment": "positive|negative|neutral",
            "sentiment_score": number between -1 and 1,
            "priority": "low|medium|high|urgent",
            "categories": ["bug|feature|improvement|complaint|praise|question|suggestion|general"],
            "confidence": number between 0 and 1,
            "themes": ["key themes mentioned"],
            "keywords": ["keyword1", "keyword2"],
            "summary": "brief summary",
            "user_intent": "what the user wants",
            "business_impact": "low|medium|high",
            "suggested_action": "recommended next step"
            }}"""

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        try:
            response = await self.gateway.make_request(
                messages,
                max_tokens=500,
                temperature=0.3,
                caller_id=caller_id,
                timeout=self.config.analysis_timeout_seconds,
                context="Feedback analysis",
            )
        except GatewayError as e:
            if e.kind == ErrorKind.MALFORMED_RESPONSE:
                logger.warning(f"Malformed analysis response, using default: {e}")
                return default_analysis()
            raise

        return self.parse_analysis(response)

    @staticmethod
    def parse_analysis(response: str) -> AnalysisResult:
        """Validate a model reply against the AnalysisResult schema; any failure yields the default."""
        try:
            data = extract_json_object(response)
            data.pop("is_fallback", None)
            return AnalysisResult.model_validate(data)
        except (MalformedOutputError, ValidationError) as e:
            logger.warning(f"Failed to parse analysis response, using default: {e}")
            return default_analysis()

    async def analyze_batch(self, items: List[Union[FeedbackItem, str]],
                            caller_id: Optional[str] = None) -> Optional[BatchAnalysis]:
        """
        Analyze a batch of feedback in a single request.

        Args:
            items: Feedback items or raw texts (at most max_batch_size)
            caller_id: Identity charged for rate limiting

        Returns:
            Aggregated BatchAnalysis, or None when AI is not configured.
        """
        if not self.gateway.is_configured():
            return None
        if not items:
            raise ValueError("Feedback list is required and cannot be empty")
        if len(items) > self.config.max_batch_size:
            raise ValueError(f"Batch of {len(items)} exceeds the maximum of {self.config.max_batch_size} items")

        feedback_list = "\n".join(f'{i + 1}. "{_content(item)}"' for i, item in enumerate(items))

        prompt = f"""Analyze this batch of {len(items)} feedback entries and return aggregated insights.

            Feedback entries:
            {feedback_list}

            Return ONLY a JSON object with this structure:
            {{
            "overall_sentiment": "positive|negative|neutral",
            "average_sentiment_score": number between -1 and 1,
            "sentiment_distribution": {{"positive": n, "negative": n, "neutral": n}},
            "priority_distribution": {{"low": n, "medium": n, "high": n, "urgent": n}},
            "category_distribution": {{"<category>": n}},
            "top_themes": ["most frequent themes"],
            "key_insights": ["insights across all feedback"],
            "recommended_actions": ["actions based on all feedback"],
            "summary": "summary of all feedback analyzed"
            }}"""

        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]

        try:
            response = await self.gateway.make_request(
                messages,
                max_tokens=800,
                temperature=0.3,
                caller_id=caller_id,
                timeout=self.config.analysis_timeout_seconds,
                context="Batch feedback analysis",
            )
        except GatewayError as e:
            if e.kind == ErrorKind.MALFORMED_RESPONSE:
                logger.warning(f"Malformed batch response, using default: {e}")
                return default_batch_analysis(len(items))
            raise

        try:
            data = extract_json_object(response)
            data.pop("is_fallback", None)
            data["total_feedback"] = len(items)
            return BatchAnalysis.model_validate(data)
        except (MalformedOutputError, ValidationError) as e:
            logger.warning(f"Failed to parse batch analysis response, using default: {e}")
            return default_batch_analysis(len(items))


def summarize_analyzed(items: List[FeedbackItem]) -> Dict[str, Any]:
    """
    Compute distributions and headline insights over already-analyzed feedback.
    No upstream call is made.
    """
    if not items:
        return {"metrics": {"total_feedback": 0}, "insights": [], "recommendations": [],
                "summary": "No feedback available for analysis"}

    df = pd.DataFrame([
        {
            "sentiment": item.analysis.sentiment if item.analysis else "neutral",
            "priority": item.analysis.priority if item.analysis else "medium",
            "platform": item.platform or "unknown",
        }
        for item in items
    ])

    sentiment = {str(k): int(v) for k, v in df["sentiment"].value_counts().items()}
    priority = {str(k): int(v) for k, v in df["priority"].value_counts().items()}
    platform = {str(k): int(v) for k, v in df["platform"].value_counts().items()}
    total = len(df)

    positive_pct = round(sentiment.get("positive", 0) / total * 100)
    negative_pct = round(sentiment.get("negative", 0) / total * 100)

    insights = [
        f"Analyzed {total} feedback items across {len(platform)} platforms",
        f"Sentiment breakdown: {positive_pct}% positive, {negative_pct}% negative",
        f"Priority breakdown: {priority.get('high', 0)} high priority, {priority.get('urgent', 0)} urgent items",
    ]

    recommendations = []
    if priority.get("urgent", 0) > 0:
        recommendations.append("Address urgent items immediately")
    if priority.get("high", 0) > 5:
        recommendations.append("High priority backlog needs attention")
    if sentiment.get("negative", 0) > sentiment.get("positive", 0):
        recommendations.append("Focus on addressing negative feedback")

    return {
        "metrics": {
            "total_feedback": total,
            "sentiment_distribution": sentiment,
            "priority_distribution": priority,
            "platform_distribution": platform,
        },
        "insights": insights,
        "recommendations": recommendations,
    }
