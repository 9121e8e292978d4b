"""
Persistence collaborator interface for feedback and cluster rows.
"""

from typing import Dict, List, Protocol
import uuid

from feedbackspec.models.schemas import AnalysisResult, Cluster, FeedbackItem


class FeedbackStore(Protocol):
    """Tenant-scoped get/upsert/delete operations consumed by the pipelines."""

    def list_feedback(self, tenant_id: str) -> List[FeedbackItem]: ...

    def insert_feedback(self, tenant_id: str, item: FeedbackItem) -> FeedbackItem: ...

    def save_analysis(self, tenant_id: str, feedback_id: str, analysis: AnalysisResult) -> None: ...

    def list_clusters(self, tenant_id: str) -> List[Cluster]: ...

    def upsert_clusters(self, tenant_id: str, clusters: List[Cluster]) -> List[Cluster]: ...

    def delete_cluster(self, tenant_id: str, cluster_id: str) -> None: ...


class InMemoryStore:
    """Dict-backed store. Returns copies so callers never mutate stored rows."""

    def __init__(self):
        self.feedback: Dict[str, Dict[str, FeedbackItem]] = {}
        self.clusters: Dict[str, Dict[str, Cluster]] = {}

    def list_feedback(self, tenant_id: str) -> List[FeedbackItem]:
        """Feedback for a tenant, most recent first."""
        items = self.feedback.get(tenant_id, {}).values()
        return [item.model_copy(deep=True) for item in sorted(items, key=lambda i: i.created_at, reverse=True)]

    def insert_feedback(self, tenant_id: str, item: FeedbackItem) -> FeedbackItem:
        stored = item.model_copy(deep=True)
        if not stored.id:
            stored.id = str(uuid.uuid4())
        self.feedback.setdefault(tenant_id, {})[stored.id] = stored
        return stored.model_copy(deep=True)

    def save_analysis(self, tenant_id: str, feedback_id: str, analysis: AnalysisResult) -> None:
        rows = self.feedback.get(tenant_id, {})
        if feedback_id not in rows:
            raise KeyError(f"Unknown feedback id {feedback_id!r} for tenant {tenant_id!r}")
        rows[feedback_id] = rows[feedback_id].model_copy(update={"analysis": analysis.model_copy(deep=True)})

    def delete_feedback(self, tenant_id: str, feedback_id: str) -> None:
        self.feedback.get(tenant_id, {}).pop(feedback_id, None)

    def list_clusters(self, tenant_id: str) -> List[Cluster]:
        """Clusters in position order (the order positional reconciliation relies on)."""
        rows = sorted(self.clusters.get(tenant_id, {}).values(), key=lambda c: c.position)
        return [cluster.model_copy(deep=True) for cluster in rows]

    def upsert_clusters(self, tenant_id: str, clusters: List[Cluster]) -> List[Cluster]:
        rows = self.clusters.setdefault(tenant_id, {})
        saved = []
        for cluster in clusters:
            stored = cluster.model_copy(deep=True)
            if stored.id is None:
                stored.id = str(uuid.uuid4())
            # Updating an existing key keeps its insertion slot
            rows[stored.id] = stored
            saved.append(stored.model_copy(deep=True))
        return saved

    def delete_cluster(self, tenant_id: str, cluster_id: str) -> None:
        self.clusters.get(tenant_id, {}).pop(cluster_id, None)
