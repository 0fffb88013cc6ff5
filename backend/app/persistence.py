from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import WebhookErrorLogRecord, WebhookErrorType


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    SQLAlchemy-backed durable state. Works with SQLite paths and any SQLAlchemy URL.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.webhook_error_logs = Table(
            "webhook_error_logs",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("campaign_id", String(255), nullable=True),
            Column("raw_body", Text, nullable=False),
            Column("error_type", String(50), nullable=False),
            Column("error_message", Text, nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = datetime.utcnow()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def insert_webhook_error(self, record: WebhookErrorLogRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.webhook_error_logs.insert().values(
                        id=record.id,
                        campaign_id=record.campaign_id,
                        raw_body=record.raw_body,
                        error_type=record.error_type.value,
                        error_message=record.error_message,
                        created_at_utc=record.created_at_utc,
                    )
                )

    def list_webhook_errors(self, limit: int = 100) -> list[WebhookErrorLogRecord]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        self.webhook_error_logs.c.id,
                        self.webhook_error_logs.c.campaign_id,
                        self.webhook_error_logs.c.raw_body,
                        self.webhook_error_logs.c.error_type,
                        self.webhook_error_logs.c.error_message,
                        self.webhook_error_logs.c.created_at_utc,
                    )
                    .order_by(self.webhook_error_logs.c.created_at_utc.desc())
                    .limit(safe_limit)
                ).all()
        return [
            WebhookErrorLogRecord(
                id=row.id,
                campaign_id=row.campaign_id,
                raw_body=row.raw_body,
                error_type=WebhookErrorType(row.error_type),
                error_message=row.error_message,
                created_at_utc=row.created_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]
