"""
Feedback processing pipeline: duplicate check on write, per-item analysis with
write-back, then cluster reconciliation.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone
import asyncio
import logging
import argparse

from pydantic import BaseModel

from feedbackspec.config.settings import Settings
from feedbackspec.agents.errors import USER_MESSAGES, ErrorKind, GatewayError
from feedbackspec.agents.gateway import RequestGateway
from feedbackspec.agents.analyzer import AnalysisEngine
from feedbackspec.agents.duplicates import DuplicateDetector
from feedbackspec.data_access.store import FeedbackStore
from feedbackspec.models.schemas import DuplicateVerdict, FeedbackItem
from feedbackspec.pipelines.clustering import ClusteringEngine


logger = logging.getLogger(__name__)

# Errors that will fail every remaining item the same way
STOPPING_ERRORS = {ErrorKind.UNCONFIGURED, ErrorKind.RATE_LIMITED, ErrorKind.UPSTREAM_AUTH_FAILED}


class IngestResult(BaseModel):
    item: FeedbackItem
    duplicate: DuplicateVerdict
    analysis_error: Optional[str] = None


class FeedbackProcessingPipeline:
    """Pipeline for analyzing a tenant's feedback and keeping its clusters current."""

    def __init__(self, config: Settings, store: FeedbackStore, gateway: Optional[RequestGateway] = None):
        """
        Initialize the processing pipeline.

        Args:
            config: Application settings
            store: Persistence collaborator for feedback and cluster rows
            gateway: Shared request gateway (one is built from config if None)
        """
        self.config = config
        self.store = store
        self.gateway = gateway or RequestGateway(config)
        self.analyzer = AnalysisEngine(config, self.gateway)
        self.duplicates = DuplicateDetector(config, self.gateway)
        self.clustering = ClusteringEngine(config, self.gateway, store)

    async def __aenter__(self) -> "FeedbackProcessingPipeline":
        if self.config.maintenance_interval_seconds > 0:
            self.gateway.start_maintenance()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.gateway.aclose()

    async def ingest(self, tenant_id: str, content: str, platform: str = "manual",
                     metadata: Optional[Dict[str, Any]] = None) -> IngestResult:
        """
        Store one new feedback item.

        The duplicate verdict is advisory and analysis failures never fail the insert.
        """
        if not content or not content.strip():
            raise ValueError("Feedback content is required")

        recent = await asyncio.to_thread(self.store.list_feedback, tenant_id)
        verdict = await self.duplicates.check(content, recent[:self.config.duplicate_window], caller_id=tenant_id)
        if verdict.is_duplicate:
            logger.info(f"Possible duplicate of {verdict.most_similar_id} (score {verdict.similarity_score:.2f})")

        item = FeedbackItem(
            id="",
            content=content,
            platform=platform,
            metadata=metadata or {},
            created_at=datetime.now(timezone.utc),
        )
        item = await asyncio.to_thread(self.store.insert_feedback, tenant_id, item)

        analysis_error = None
        try:
            analysis = await self.analyzer.analyze(content, platform, metadata, caller_id=tenant_id)
            if analysis is not None:
                await asyncio.to_thread(self.store.save_analysis, tenant_id, item.id, analysis)
                item = item.model_copy(update={"analysis": analysis})
        except GatewayError as e:
            logger.error(f"Analysis failed for feedback {item.id}: {e}")
            analysis_error = e.user_message

        return IngestResult(item=item, duplicate=verdict, analysis_error=analysis_error)

    async def run(self, tenant_id: str, reanalyze: bool = False) -> Dict[str, Any]:
        """
        Analyze pending feedback and reconcile clusters.

        Args:
            tenant_id: Tenant whose feedback is processed
            reanalyze: Re-run analysis for items that already have one

        Returns:
            Dictionary with processing statistics
        """
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

        items = await asyncio.to_thread(self.store.list_feedback, tenant_id)
        pending = [item for item in items if reanalyze or item.analysis is None]
        logger.info(f"Found {len(pending)} of {len(items)} feedback records to analyze for tenant {tenant_id}")

        analyzed = 0
        errors = 0
        stopped_reason = None

        if not self.gateway.is_configured():
            logger.info("OpenAI API key not configured - skipping analysis and clustering")
            return {
                "total_records": len(items),
                "analyzed": 0,
                "errors": 0,
                "clusters": None,
                "stopped_reason": USER_MESSAGES[ErrorKind.UNCONFIGURED],
            }

        for index, item in enumerate(pending, start=1):
            logger.info(f"Analyzing feedback {index}/{len(pending)} ({item.id})")
            try:
                analysis = await self.analyzer.analyze(item.content, item.platform, item.metadata,
                                                       caller_id=tenant_id)
            except GatewayError as e:
                errors += 1
                logger.error(f"Error analyzing feedback {item.id}: {e}")
                if e.kind in STOPPING_ERRORS:
                    stopped_reason = e.user_message
                    break
                continue
            except ValueError as e:
                errors += 1
                logger.error(f"Skipping feedback {item.id}: {e}")
                continue

            if analysis is None:
                continue
            await asyncio.to_thread(self.store.save_analysis, tenant_id, item.id, analysis)
            item.analysis = analysis
            analyzed += 1

        clusters = await self.clustering.reconcile(tenant_id, items)

        logger.info(
            f"Processing complete: {analyzed} analyzed, {errors} errors, "
            f"{len(clusters) if clusters is not None else 0} clusters"
        )

        return {
            "total_records": len(items),
            "analyzed": analyzed,
            "errors": errors,
            "clusters": clusters,
            "stopped_reason": stopped_reason,
        }


async def _run_cli(tenant_id: str, reanalyze: bool) -> Dict[str, Any]:
    from feedbackspec.data_access.postgres_client import PostgresStore

    config = Settings()
    store = PostgresStore(config)
    try:
        async with FeedbackProcessingPipeline(config, store) as pipeline:
            return await pipeline.run(tenant_id, reanalyze=reanalyze)
    finally:
        store.close()


def main():
    """Main entry point for running the processing pipeline with CLI arguments."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description='Analyze pending feedback for a tenant and refresh its clusters.'
    )
    parser.add_argument('--tenant', type=str, required=True, help='Tenant (user) id to process')
    parser.add_argument('--reanalyze', action='store_true', help='Re-run analysis for already analyzed feedback')
    args = parser.parse_args()

    stats = asyncio.run(_run_cli(args.tenant, args.reanalyze))

    print("\n" + "="*60)
    print("FEEDBACK PROCESSING RESULTS")
    print("="*60)
    print(f"Total records: {stats['total_records']}")
    print(f"Analyzed: {stats['analyzed']}")
    print(f"Errors: {stats['errors']}")
    clusters = stats['clusters']
    print(f"Clusters: {len(clusters) if clusters is not None else 'skipped'}")
    if stats['stopped_reason']:
        print(f"Stopped early: {stats['stopped_reason']}")
    print("="*60)


if __name__ == "__main__":
    main()
