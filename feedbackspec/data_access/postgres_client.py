# feedbackspec/data_access/postgres_client.py
"""
PostgreSQL store for feedback rows and their persisted clusters.
"""

import psycopg2
from psycopg2.extras import Json, execute_values
from typing import List, Optional
from feedbackspec.config.settings import Settings
from feedbackspec.models.schemas import AnalysisResult, Cluster, FeedbackItem


FEEDBACK_COLUMNS = "id, content, platform, created_at, metadata, ai_analysis"
CLUSTER_COLUMNS = (
    "id, theme, description, severity, category, feedback_ids, "
    "total_feedback_count, suggested_action, created_at, computed_at, position"
)


class PostgresStore:
    """PostgreSQL implementation of the FeedbackStore protocol."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None

    def connect(self) -> None:
        """Establish database connection."""
        self.conn = psycopg2.connect(
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            database=self.config.postgres_database,
            user=self.config.postgres_username,
            password=self.config.postgres_password,
            sslmode=self.config.postgres_sslmode
        )

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        if not self.conn:
            self.connect()

        schema_sql = """
        CREATE EXTENSION IF NOT EXISTS pgcrypto;

        CREATE TABLE IF NOT EXISTS raw_feedback (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id VARCHAR(255) NOT NULL,
            content TEXT NOT NULL,
            platform VARCHAR(50) NOT NULL DEFAULT 'manual',
            metadata JSONB NOT NULL DEFAULT '{}',
            ai_analysis JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        );

        CREATE TABLE IF NOT EXISTS feedback_clusters (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id VARCHAR(255) NOT NULL,
            theme TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            severity VARCHAR(20) NOT NULL DEFAULT 'medium',
            category VARCHAR(50) NOT NULL DEFAULT 'general',
            feedback_ids TEXT[] NOT NULL DEFAULT '{}',
            total_feedback_count INTEGER NOT NULL DEFAULT 0,
            suggested_action TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            computed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            position INTEGER NOT NULL DEFAULT 0
        );

        ALTER TABLE feedback_clusters ADD COLUMN IF NOT EXISTS position INTEGER NOT NULL DEFAULT 0;

        CREATE INDEX IF NOT EXISTS idx_raw_feedback_user_id ON raw_feedback(user_id);
        CREATE INDEX IF NOT EXISTS idx_feedback_clusters_user_id ON feedback_clusters(user_id);
        """

        with self.conn.cursor() as cursor:
            cursor.execute(schema_sql)
            self.conn.commit()

    @staticmethod
    def _feedback_from_row(row) -> FeedbackItem:
        feedback_id, content, platform, created_at, metadata, analysis = row
        return FeedbackItem(
            id=str(feedback_id),
            content=content,
            platform=platform,
            created_at=created_at,
            metadata=metadata or {},
            analysis=AnalysisResult.model_validate(analysis) if analysis else None,
        )

    @staticmethod
    def _cluster_from_row(row) -> Cluster:
        (cluster_id, theme, description, severity, category, feedback_ids,
         total_feedback_count, suggested_action, created_at, computed_at, position) = row
        return Cluster(
            id=str(cluster_id),
            theme=theme,
            description=description,
            severity=severity,
            category=category,
            member_ids=list(feedback_ids or []),
            source_item_count=total_feedback_count,
            suggested_action=suggested_action,
            created_at=created_at,
            computed_at=computed_at,
            position=position or 0,
        )

    def list_feedback(self, tenant_id: str, limit: Optional[int] = None) -> List[FeedbackItem]:
        """Feedback for a tenant, most recent first."""
        if not self.conn:
            self.connect()

        query = f"""
            SELECT {FEEDBACK_COLUMNS}
            FROM raw_feedback
            WHERE user_id = %s
            ORDER BY created_at DESC
        """
        params = [tenant_id]
        if limit:
            query += " LIMIT %s"
            params.append(limit)

        with self.conn.cursor() as cursor:
            cursor.execute(query, tuple(params))
            return [self._feedback_from_row(row) for row in cursor.fetchall()]

    def insert_feedback(self, tenant_id: str, item: FeedbackItem) -> FeedbackItem:
        if not self.conn:
            self.connect()

        query = f"""
            INSERT INTO raw_feedback (id, user_id, content, platform, metadata, created_at)
            VALUES (COALESCE(%s::uuid, gen_random_uuid()), %s, %s, %s, %s, %s)
            RETURNING {FEEDBACK_COLUMNS}
        """

        with self.conn.cursor() as cursor:
            cursor.execute(
                query,
                (item.id or None, tenant_id, item.content, item.platform, Json(item.metadata), item.created_at)
            )
            row = cursor.fetchone()
            self.conn.commit()
        return self._feedback_from_row(row)

    def save_analysis(self, tenant_id: str, feedback_id: str, analysis: AnalysisResult) -> None:
        """Write an analysis back onto its feedback row."""
        if not self.conn:
            self.connect()

        query = """
            UPDATE raw_feedback
            SET ai_analysis = %s, updated_at = NOW()
            WHERE id = %s AND user_id = %s
        """

        with self.conn.cursor() as cursor:
            cursor.execute(query, (Json(analysis.model_dump(mode="json")), feedback_id, tenant_id))
            self.conn.commit()

    def list_clusters(self, tenant_id: str) -> List[Cluster]:
        if not self.conn:
            self.connect()

        query = f"""
            SELECT {CLUSTER_COLUMNS}
            FROM feedback_clusters
            WHERE user_id = %s
            ORDER BY position, created_at, id
        """

        with self.conn.cursor() as cursor:
            cursor.execute(query, (tenant_id,))
            return [self._cluster_from_row(row) for row in cursor.fetchall()]

    def upsert_clusters(self, tenant_id: str, clusters: List[Cluster]) -> List[Cluster]:
        """
        Update clusters that carry an id and insert the rest.

        Args:
            tenant_id: Owner of the rows
            clusters: Cluster objects; id=None means insert

        Returns:
            The written rows as stored
        """
        if not self.conn:
            self.connect()

        if not clusters:
            return []

        values = [
            (c.id, tenant_id, c.theme, c.description, c.severity, c.category, c.member_ids,
             c.source_item_count, c.suggested_action, c.created_at, c.computed_at, c.position)
            for c in clusters
        ]

        query = f"""
            INSERT INTO feedback_clusters
                (id, user_id, theme, description, severity, category, feedback_ids,
                 total_feedback_count, suggested_action, created_at, computed_at, position)
            VALUES %s
            ON CONFLICT (id) DO UPDATE
            SET theme = EXCLUDED.theme,
                description = EXCLUDED.description,
                severity = EXCLUDED.severity,
                category = EXCLUDED.category,
                feedback_ids = EXCLUDED.feedback_ids,
                total_feedback_count = EXCLUDED.total_feedback_count,
                suggested_action = EXCLUDED.suggested_action,
                computed_at = EXCLUDED.computed_at,
                position = EXCLUDED.position
            RETURNING {CLUSTER_COLUMNS}
        """
        template = "(COALESCE(%s::uuid, gen_random_uuid()), %s, %s, %s, %s, %s, %s::text[], %s, %s, %s, %s, %s)"

        with self.conn.cursor() as cursor:
            rows = execute_values(cursor, query, values, template=template, fetch=True)
            self.conn.commit()
        return [self._cluster_from_row(row) for row in rows]

    def delete_cluster(self, tenant_id: str, cluster_id: str) -> None:
        if not self.conn:
            self.connect()

        with self.conn.cursor() as cursor:
            cursor.execute(
                "DELETE FROM feedback_clusters WHERE id = %s AND user_id = %s",
                (cluster_id, tenant_id)
            )
            self.conn.commit()
