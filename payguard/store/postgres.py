"""
PostgreSQL Audit Store

Durable audit trail and review queue:
- fraud_logs: append-only validation failures, fraud attempts, security events
- flagged_transactions: manual review queue
- admin_alerts: moderator alerts

Rows are only ever inserted by the service; status changes come from
moderator actions through the admin API.
"""

import json
import logging
import time
from datetime import datetime, UTC
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from ..config import settings
from ..metrics import metrics
from ..schemas import (
    AdminAlert,
    FlaggedTransaction,
    FraudEventType,
    FraudLogEntry,
    ReviewStatus,
)
from .base import AuditLog, ReviewQueue

logger = logging.getLogger("payguard.store.postgres")


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS fraud_logs (
        id TEXT PRIMARY KEY,
        account_id TEXT,
        event_type TEXT NOT NULL,
        fraud_type TEXT,
        status_code INTEGER,
        reason TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        severity TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_fraud_logs_account_event ON fraud_logs (account_id, event_type)",
    """
    CREATE TABLE IF NOT EXISTS flagged_transactions (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        transaction_id TEXT NOT NULL,
        product_id TEXT,
        fraud_score INTEGER NOT NULL,
        reasons JSONB NOT NULL DEFAULT '[]'::jsonb,
        priority TEXT NOT NULL,
        status TEXT NOT NULL,
        resolution TEXT,
        resolved_by TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        resolved_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_alerts (
        id TEXT PRIMARY KEY,
        alert_type TEXT NOT NULL,
        account_id TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        priority TEXT NOT NULL,
        acknowledged BOOLEAN NOT NULL DEFAULT FALSE,
        acknowledged_by TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
]


class PostgresAuditStore(AuditLog, ReviewQueue):
    """
    Audit log and review queue backed by PostgreSQL.

    Uses raw SQL through SQLAlchemy's async engine.
    """

    def __init__(self, database_url: str):
        """
        Initialize audit store.

        Args:
            database_url: PostgreSQL connection URL (asyncpg driver)
        """
        self.database_url = database_url
        self.engine = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self, create_schema: bool = True) -> None:
        """Create the engine and, optionally, the tables."""
        self.engine = create_async_engine(
            self.database_url,
            echo=settings.app_debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        if create_schema:
            async with self.engine.begin() as conn:
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(text(statement))

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()

    async def health_check(self) -> bool:
        """Check database connectivity."""
        async with self._session() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    def _session(self) -> AsyncSession:
        if not self.session_factory:
            raise RuntimeError("Audit store not initialized")
        return self.session_factory()

    async def _execute(self, statement: str, params: dict[str, Any]) -> Any:
        async with self._session() as session:
            started_at = time.perf_counter()
            result = await session.execute(text(statement), params)
            await session.commit()
            metrics.postgres_latency.observe((time.perf_counter() - started_at) * 1000)
            return result

    # =========================================================================
    # Audit log
    # =========================================================================

    async def append(self, entry: FraudLogEntry) -> None:
        await self._execute(
            """
            INSERT INTO fraud_logs (
                id, account_id, event_type, fraud_type, status_code,
                reason, details, severity, created_at
            ) VALUES (
                :id, :account_id, :event_type, :fraud_type, :status_code,
                :reason, CAST(:details AS jsonb), :severity, :created_at
            )
            """,
            {
                "id": entry.id,
                "account_id": entry.account_id,
                "event_type": entry.event_type.value,
                "fraud_type": entry.fraud_type,
                "status_code": entry.status_code,
                "reason": entry.reason,
                "details": json.dumps(entry.details, default=str),
                "severity": entry.severity,
                "created_at": entry.timestamp,
            },
        )

    async def count(self, account_id: str, event_type: FraudEventType) -> int:
        result = await self._execute(
            """
            SELECT COUNT(*) FROM fraud_logs
            WHERE account_id = :account_id AND event_type = :event_type
            """,
            {"account_id": account_id, "event_type": event_type.value},
        )
        return int(result.scalar() or 0)

    # =========================================================================
    # Review queue
    # =========================================================================

    async def add_flagged(self, flagged: FlaggedTransaction) -> None:
        await self._execute(
            """
            INSERT INTO flagged_transactions (
                id, account_id, transaction_id, product_id, fraud_score,
                reasons, priority, status, created_at
            ) VALUES (
                :id, :account_id, :transaction_id, :product_id, :fraud_score,
                CAST(:reasons AS jsonb), :priority, :status, :created_at
            )
            """,
            {
                "id": flagged.id,
                "account_id": flagged.account_id,
                "transaction_id": flagged.transaction_id,
                "product_id": flagged.product_id,
                "fraud_score": flagged.fraud_score,
                "reasons": json.dumps(flagged.reasons),
                "priority": flagged.priority.value,
                "status": flagged.status.value,
                "created_at": flagged.created_at,
            },
        )

    async def add_alert(self, alert: AdminAlert) -> None:
        await self._execute(
            """
            INSERT INTO admin_alerts (
                id, alert_type, account_id, details, priority, acknowledged, created_at
            ) VALUES (
                :id, :alert_type, :account_id, CAST(:details AS jsonb),
                :priority, :acknowledged, :created_at
            )
            """,
            {
                "id": alert.id,
                "alert_type": alert.alert_type,
                "account_id": alert.account_id,
                "details": json.dumps(alert.details, default=str),
                "priority": alert.priority.value,
                "acknowledged": alert.acknowledged,
                "created_at": alert.created_at,
            },
        )

    async def list_flagged(
        self,
        status: Optional[ReviewStatus] = None,
        limit: int = 100,
    ) -> list[FlaggedTransaction]:
        result = await self._execute(
            """
            SELECT * FROM flagged_transactions
            WHERE (CAST(:status AS TEXT) IS NULL OR status = :status)
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"status": status.value if status else None, "limit": limit},
        )
        return [self._flagged_from_row(row) for row in result.mappings().all()]

    async def resolve(
        self,
        flagged_id: str,
        resolution: str,
        resolved_by: str,
    ) -> Optional[FlaggedTransaction]:
        result = await self._execute(
            """
            UPDATE flagged_transactions
            SET status = :status, resolution = :resolution,
                resolved_by = :resolved_by, resolved_at = :resolved_at
            WHERE id = :id
            RETURNING *
            """,
            {
                "id": flagged_id,
                "status": ReviewStatus.RESOLVED.value,
                "resolution": resolution,
                "resolved_by": resolved_by,
                "resolved_at": datetime.now(UTC),
            },
        )
        row = result.mappings().first()
        return self._flagged_from_row(row) if row else None

    async def list_alerts(
        self,
        acknowledged: Optional[bool] = None,
        limit: int = 100,
    ) -> list[AdminAlert]:
        result = await self._execute(
            """
            SELECT * FROM admin_alerts
            WHERE (CAST(:acknowledged AS BOOLEAN) IS NULL OR acknowledged = :acknowledged)
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"acknowledged": acknowledged, "limit": limit},
        )
        return [self._alert_from_row(row) for row in result.mappings().all()]

    async def acknowledge_alert(
        self,
        alert_id: str,
        acknowledged_by: str,
    ) -> Optional[AdminAlert]:
        result = await self._execute(
            """
            UPDATE admin_alerts
            SET acknowledged = TRUE, acknowledged_by = :acknowledged_by
            WHERE id = :id
            RETURNING *
            """,
            {"id": alert_id, "acknowledged_by": acknowledged_by},
        )
        row = result.mappings().first()
        return self._alert_from_row(row) if row else None

    @staticmethod
    def _flagged_from_row(row: Any) -> FlaggedTransaction:
        data = dict(row)
        if isinstance(data.get("reasons"), str):
            data["reasons"] = json.loads(data["reasons"])
        return FlaggedTransaction.model_validate(data)

    @staticmethod
    def _alert_from_row(row: Any) -> AdminAlert:
        data = dict(row)
        if isinstance(data.get("details"), str):
            data["details"] = json.loads(data["details"])
        return AdminAlert.model_validate(data)
