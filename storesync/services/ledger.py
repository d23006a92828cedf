from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from storesync.core.errors import LedgerUnavailableError
from storesync.models import Mapping, SyncState


PRODUCT = "product"
ORDER = "order"
SYNC_KINDS = (PRODUCT, ORDER)
SAVE_ATTEMPTS = 3

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Ledger:
    """Durable id pairing between the two systems plus per-kind sync watermarks.

    For products ``local_id`` is the supplier product id and ``remote_id`` the
    storefront product id. For orders ``local_id`` is the storefront order id and
    ``remote_id`` the supplier order id.
    """

    def __init__(self, session_factory: sessionmaker[Session], cache_ttl_seconds: float = 7 * 24 * 3600) -> None:
        self.session_factory = session_factory
        self.cache_ttl_seconds = cache_ttl_seconds

    def get_remote_id(self, kind: str, local_id: str | int) -> str | None:
        mapping = self._active_one(kind, Mapping.local_id == str(local_id))
        return mapping.remote_id if mapping else None

    def get_local_id(self, kind: str, remote_id: str | int) -> str | None:
        mapping = self._active_one(kind, Mapping.remote_id == str(remote_id))
        return mapping.local_id if mapping else None

    def get_by_sku(self, kind: str, sku: str) -> Mapping | None:
        if not sku:
            return None
        return self._active_one(kind, Mapping.sku == sku)

    def save_mapping(self, kind: str, local_id: str | int, remote_id: str | int, sku: str | None = None) -> Mapping:
        local_key = str(local_id)
        remote_key = str(remote_id)
        for attempt in range(SAVE_ATTEMPTS):
            try:
                with self.session_factory() as db:
                    mapping = self._save(db, kind, local_key, remote_key, sku)
                    db.commit()
                    return mapping
            except IntegrityError:
                # Another process saved a conflicting row between our read and write.
                if attempt >= SAVE_ATTEMPTS - 1:
                    raise LedgerUnavailableError(f"Could not save {kind} mapping {local_key} -> {remote_key}")
                logger.debug("Retrying %s mapping save for %s after a concurrent write", kind, local_key)
            except SQLAlchemyError as exc:
                raise LedgerUnavailableError(f"Ledger write failed: {exc}") from exc
        raise LedgerUnavailableError(f"Unreachable ledger state for {kind} {local_key}")

    def _save(self, db: Session, kind: str, local_id: str, remote_id: str, sku: str | None) -> Mapping:
        now = datetime.now(timezone.utc)
        active = db.execute(
            select(Mapping).where(
                Mapping.kind == kind,
                Mapping.superseded_at.is_(None),
                or_(Mapping.local_id == local_id, Mapping.remote_id == remote_id),
            )
        ).scalars().all()

        for row in active:
            if row.local_id == local_id and row.remote_id == remote_id:
                if sku:
                    row.sku = sku
                row.last_synced_at = now
                for other in active:
                    if other is not row:
                        other.superseded_at = now
                return row

        for row in active:
            logger.info(
                "Superseding %s mapping %s -> %s with %s -> %s",
                kind,
                row.local_id,
                row.remote_id,
                local_id,
                remote_id,
            )
            row.superseded_at = now
        db.flush()

        mapping = Mapping(kind=kind, local_id=local_id, remote_id=remote_id, sku=sku or None, last_synced_at=now)
        db.add(mapping)
        db.flush()
        return mapping

    def history(self, kind: str, local_id: str | int) -> list[Mapping]:
        try:
            with self.session_factory() as db:
                return list(
                    db.execute(
                        select(Mapping)
                        .where(Mapping.kind == kind, Mapping.local_id == str(local_id))
                        .order_by(Mapping.id)
                    ).scalars()
                )
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Ledger read failed: {exc}") from exc

    def get_cache_expiry(self) -> float:
        return self.cache_ttl_seconds

    def update_sync_state(self, kind: str, when: datetime | None = None) -> None:
        stamp = when or datetime.now(timezone.utc)
        try:
            with self.session_factory() as db:
                state = db.get(SyncState, kind)
                if state is None:
                    db.add(SyncState(kind=kind, last_sync_at=stamp))
                else:
                    state.last_sync_at = stamp
                db.commit()
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Could not update sync state for {kind}: {exc}") from exc

    def get_last_sync_time(self, kind: str) -> datetime:
        try:
            with self.session_factory() as db:
                state = db.get(SyncState, kind)
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Could not read sync state for {kind}: {exc}") from exc
        if state is None:
            # Never synced: look back one day.
            return datetime.now(timezone.utc) - timedelta(days=1)
        return _aware(state.last_sync_at)

    def _active_one(self, kind: str, condition) -> Mapping | None:
        try:
            with self.session_factory() as db:
                return db.execute(
                    select(Mapping)
                    .where(Mapping.kind == kind, Mapping.superseded_at.is_(None), condition)
                    .order_by(Mapping.id.desc())
                    .limit(1)
                ).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"Ledger read failed: {exc}") from exc
