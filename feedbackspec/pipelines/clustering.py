"""
Incremental clustering of a tenant's feedback corpus.

Clusters are recomputed over the whole corpus only when the persisted set is
stale, then reconciled with the persisted rows through a matching strategy.
Clustering is best-effort: any failure falls back to the last persisted set.
"""

from typing import Optional, List, Dict, Callable, Tuple
from datetime import datetime, timedelta, timezone
from enum import Enum
import asyncio
import logging
import argparse

from feedbackspec.config.settings import Settings
from feedbackspec.agents.gateway import RequestGateway
from feedbackspec.agents.parsing import MalformedOutputError, extract_json_object
from feedbackspec.data_access.store import FeedbackStore
from feedbackspec.models.schemas import Cluster, FeedbackItem, Severity, utcnow
from feedbackspec.pipelines.reconcile import MATCHERS, apply_plan, get_matcher

logger = logging.getLogger(__name__)

MIN_ITEMS_FOR_CLUSTERING = 2
SEVERITIES = {s.value for s in Severity}


class ClusteringState(str, Enum):
    NO_CLUSTERS = "no_clusters"
    FRESH = "fresh"
    STALE = "stale"
    RECOMPUTING = "recomputing"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ClusteringEngine:
    """
    Owns the staleness policy and reconciliation for persisted clusters.
    """

    def __init__(self, config: Settings, gateway: RequestGateway, store: FeedbackStore,
                 matcher=None, clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.gateway = gateway
        self.store = store
        self.matcher = matcher or get_matcher(config.cluster_match_strategy, config.cluster_match_threshold)
        self.clock = clock or utcnow
        self.stale_after = timedelta(hours=config.clustering_stale_after_hours)
        self.retry_backoff = timedelta(seconds=config.clustering_retry_backoff_seconds)
        self._recomputing: Dict[str, int] = {}
        # tenant -> (item count, time) of the last recompute that produced nothing
        self._failed_runs: Dict[str, Tuple[int, datetime]] = {}

    def is_stale(self, item_count: int, clusters: List[Cluster], now: Optional[datetime] = None) -> bool:
        """
        Stale when at least one item was added since the last run, or when the
        last run is older than the staleness window and the count changed at all.
        """
        if not clusters:
            return True

        now = _aware(now or self.clock())
        last_run = max(clusters, key=lambda c: _aware(c.computed_at))
        recorded = last_run.source_item_count

        if item_count - recorded >= 1:
            return True
        elapsed = now - _aware(last_run.computed_at)
        return elapsed > self.stale_after and item_count != recorded

    def state(self, tenant_id: str, item_count: int, clusters: List[Cluster],
              now: Optional[datetime] = None) -> ClusteringState:
        if self._recomputing.get(tenant_id):
            return ClusteringState.RECOMPUTING
        if not clusters:
            return ClusteringState.NO_CLUSTERS
        if self.is_stale(item_count, clusters, now):
            return ClusteringState.STALE
        return ClusteringState.FRESH

    async def reconcile(self, tenant_id: str, items: Optional[List[FeedbackItem]] = None) -> Optional[List[Cluster]]:
        """
        Return the tenant's clusters, recomputing them first if they are stale.

        Args:
            tenant_id: Tenant whose corpus is clustered (also the rate-limit caller)
            items: Current feedback corpus; loaded from the store when omitted

        Returns:
            None when AI is not configured or fewer than 2 items exist; otherwise the
            persisted clusters after reconciliation (or the last known good set on failure).
        """
        if not self.gateway.is_configured():
            logger.info("OpenAI API key not configured - skipping clustering")
            return None

        try:
            if items is None:
                items = await asyncio.to_thread(self.store.list_feedback, tenant_id)
            if len(items) < MIN_ITEMS_FOR_CLUSTERING:
                logger.info(f"Not enough feedback for clustering ({len(items)} items)")
                return None
            persisted = await asyncio.to_thread(self.store.list_clusters, tenant_id)
        except Exception as e:
            logger.error(f"Failed to load clustering inputs for tenant {tenant_id}: {e}")
            return []

        now = _aware(self.clock())
        if not self.is_stale(len(items), persisted, now):
            logger.info(f"Serving {len(persisted)} cached clusters for tenant {tenant_id}")
            return persisted

        failed = self._failed_runs.get(tenant_id)
        if failed and failed[0] == len(items) and now - failed[1] < self.retry_backoff:
            logger.info(f"Last recompute for tenant {tenant_id} failed at {failed[1].isoformat()}; "
                        f"serving {len(persisted)} persisted clusters until the backoff expires")
            return persisted

        logger.info(f"Reclustering {len(items)} feedback items for tenant {tenant_id} "
                    f"({len(persisted)} persisted clusters)")
        self._recomputing[tenant_id] = self._recomputing.get(tenant_id, 0) + 1
        try:
            computed = await self.group_feedback(items, caller_id=tenant_id, now=now)
            if not computed:
                logger.info("No clusters generated by AI; keeping persisted clusters")
                self._failed_runs[tenant_id] = (len(items), now)
                return persisted

            plan = self.matcher.match(persisted, computed)
            logger.info(
                f"Reconciliation plan ({self.matcher.name}): {len(plan.updates)} updates, "
                f"{len(plan.creates)} creates, {len(plan.orphans)} orphans"
            )
            rows = apply_plan(plan, persisted)
            await asyncio.to_thread(self.store.upsert_clusters, tenant_id, rows)
            self._failed_runs.pop(tenant_id, None)
            return await asyncio.to_thread(self.store.list_clusters, tenant_id)
        except Exception as e:
            # Clustering never fails the caller's read/write path
            logger.error(f"Feedback clustering failed for tenant {tenant_id}, using last known clusters: {e}")
            self._failed_runs[tenant_id] = (len(items), now)
            return persisted
        finally:
            self._recomputing[tenant_id] -= 1
            if not self._recomputing[tenant_id]:
                del self._recomputing[tenant_id]

    async def group_feedback(self, items: List[FeedbackItem], caller_id: Optional[str] = None,
                             now: Optional[datetime] = None) -> List[Cluster]:
        """
        Partition the whole corpus into themed clusters with one upstream request.

        Raises:
            GatewayError: on any upstream failure, including the clustering timeout
            MalformedOutputError: when the reply has no readable groups
        """
        now = now or self.clock()

        feedback_lines = []
        for item in items:
            analysis = item.analysis
            priority = analysis.priority if analysis else "N/A"
            sentiment = analysis.sentiment if analysis else "N/A"
            feedback_lines.append(
                f'- ID: {item.id} [{str(item.platform).upper()}] "{item.content}" '
                f"(Priority: {priority}, Sentiment: {sentiment})"
            )

        prompt = f"""Group the following feedback items into clusters that address the same underlying issue or request, even if worded differently.

            Feedback items:
            {chr(10).join(feedback_lines)}

            Return ONLY a JSON object with this structure:
            {{
            "groups": [
                {{
                "theme": "short theme",
                "description": "what this cluster represents",
                "severity": "low|medium|high|critical",
                "category": "bug|feature_request|ui|performance|general",
                "feedback_ids": ["IDs exactly as listed above"],
                "suggested_action": "what should be done"
                }}
            ]
            }}"""

        messages = [
            {"role": "system", "content": "You are an expert product manager and data analyst. Always respond with valid JSON."},
            {"role": "user", "content": prompt},
        ]

        response = await self.gateway.make_request(
            messages,
            max_tokens=3000,
            temperature=0.4,
            caller_id=caller_id,
            timeout=self.config.clustering_timeout_seconds,
            context="Feedback clustering",
        )
        return self.parse_groups(response, items, now)

    @staticmethod
    def parse_groups(response: str, items: List[FeedbackItem], now: datetime) -> List[Cluster]:
        data = extract_json_object(response)
        groups = data.get("groups")
        if not isinstance(groups, list):
            raise MalformedOutputError("clustering response has no 'groups' list")

        known = [item.id for item in items]
        known_set = set(known)
        clusters = []
        for index, group in enumerate(groups):
            if not isinstance(group, dict):
                continue

            members = []
            for member in group.get("feedback_ids") or []:
                if str(member) in known_set:
                    members.append(str(member))
                elif isinstance(member, int) and not isinstance(member, bool) and 1 <= member <= len(known):
                    # Positional reference into the listed items
                    members.append(known[member - 1])
            if not members:
                continue

            severity = str(group.get("severity") or "medium").lower()
            clusters.append(Cluster(
                theme=str(group.get("theme") or "").strip() or f"Theme {index + 1}",
                description=str(group.get("description") or ""),
                severity=severity if severity in SEVERITIES else "medium",
                category=str(group.get("category") or "general").lower(),
                member_ids=members,
                source_item_count=len(items),
                suggested_action=str(group.get("suggested_action") or ""),
                created_at=now,
                computed_at=now,
            ))
        return clusters


async def _run_cli(tenant_id: str, strategy: str) -> Optional[List[Cluster]]:
    from feedbackspec.data_access.postgres_client import PostgresStore

    config = Settings()
    store = PostgresStore(config)
    gateway = RequestGateway(config)
    engine = ClusteringEngine(config, gateway, store,
                              matcher=get_matcher(strategy, config.cluster_match_threshold))
    try:
        return await engine.reconcile(tenant_id)
    finally:
        await gateway.aclose()
        store.close()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description="Reconcile persisted feedback clusters for one tenant.")
    parser.add_argument("--tenant", type=str, required=True, help="Tenant (user) id whose feedback is clustered.")
    parser.add_argument("--strategy", type=str, default="theme", choices=MATCHERS.keys(),
                        help="How recomputed clusters are matched to persisted rows.")
    args = parser.parse_args()

    clusters = asyncio.run(_run_cli(args.tenant, args.strategy))
    if clusters is None:
        print("Clustering skipped (AI not configured or fewer than 2 feedback items)")
        return

    print(f"{len(clusters)} clusters")
    for cluster in clusters:
        print(f"- [{cluster.severity}] {cluster.theme} ({len(cluster.member_ids)} items)")


if __name__ == "__main__":
    main()
