from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storesync.core.errors import LedgerUnavailableError
from storesync.models import SyncDetail, SyncRun
from storesync.schemas.worker import ItemOutcome


logger = logging.getLogger(__name__)


class SyncStats:
    """Append-only audit trail of runs and per-item outcomes."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def start_run(self, kind: str) -> str:
        try:
            with self.session_factory() as db:
                run = SyncRun(kind=kind, status="running")
                db.add(run)
                db.commit()
                return run.id
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Could not start {kind} run: {exc}") from exc

    def log_outcomes(self, run_id: str, item_type: str, outcomes: list[ItemOutcome]) -> None:
        if not outcomes:
            return
        try:
            with self.session_factory() as db:
                db.add_all(
                    [
                        SyncDetail(
                            run_id=run_id,
                            item_id=outcome.item_id,
                            item_type=item_type,
                            operation=outcome.operation,
                            status=outcome.status,
                            reason=outcome.reason,
                            message=outcome.message,
                        )
                        for outcome in outcomes
                    ]
                )
                db.commit()
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Could not record outcomes for run {run_id}: {exc}") from exc

    def end_run(
        self,
        run_id: str,
        status: str,
        processed: int,
        succeeded: int,
        failed: int,
        error_summary: str | None = None,
    ) -> None:
        try:
            with self.session_factory() as db:
                run = db.get(SyncRun, run_id)
                if run is None:
                    logger.warning("Sync run %s vanished before it could be closed", run_id)
                    return
                run.status = status
                run.items_processed = processed
                run.items_succeeded = succeeded
                run.items_failed = failed
                run.error_summary = error_summary
                run.finished_at = datetime.now(timezone.utc)
                db.commit()
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Could not close run {run_id}: {exc}") from exc

    def recent_runs(self, limit: int = 20, kind: str | None = None) -> list[SyncRun]:
        stmt = select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
        if kind:
            stmt = stmt.where(SyncRun.kind == kind)
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars())

    def get_run(self, run_id: str) -> SyncRun | None:
        with self.session_factory() as db:
            return db.get(SyncRun, run_id)

    def run_details(self, run_id: str, status: str | None = None) -> list[SyncDetail]:
        stmt = select(SyncDetail).where(SyncDetail.run_id == run_id).order_by(SyncDetail.id)
        if status:
            stmt = stmt.where(SyncDetail.status == status)
        with self.session_factory() as db:
            return list(db.execute(stmt).scalars())

    def daily_summary(self, kind: str | None = None, start: date | None = None, end: date | None = None) -> list[dict[str, Any]]:
        end = end or datetime.now(timezone.utc).date()
        start = start or end - timedelta(days=7)
        day = func.date(SyncRun.started_at)
        stmt = (
            select(
                day.label("day"),
                SyncRun.kind,
                func.count(SyncRun.id).label("runs"),
                func.sum(SyncRun.items_processed).label("processed"),
                func.sum(SyncRun.items_succeeded).label("succeeded"),
                func.sum(SyncRun.items_failed).label("failed"),
                func.sum(case((SyncRun.status == "success", 1), else_=0)).label("successful_runs"),
            )
            .where(
                SyncRun.started_at >= datetime.combine(start, time.min, tzinfo=timezone.utc),
                SyncRun.started_at < datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc),
            )
            .group_by(day, SyncRun.kind)
            .order_by(day.desc(), SyncRun.kind)
        )
        if kind:
            stmt = stmt.where(SyncRun.kind == kind)
        with self.session_factory() as db:
            rows = db.execute(stmt).all()
        return [
            {
                "day": str(row.day),
                "kind": row.kind,
                "runs": row.runs,
                "processed": row.processed or 0,
                "succeeded": row.succeeded or 0,
                "failed": row.failed or 0,
                "successful_runs": row.successful_runs or 0,
            }
            for row in rows
        ]
