from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from storesync.clients.base import StorefrontClient, SupplierClient
from storesync.clients.storefront import RestStorefrontClient
from storesync.clients.supplier import SoapSupplierClient
from storesync.core.cache import ResponseCache
from storesync.core.config import Settings
from storesync.db.base import Base
from storesync.db.session import build_engine, build_session_factory
from storesync.services.dead_letters import DeadLetterStore
from storesync.services.ledger import Ledger
from storesync.services.stats import SyncStats


@dataclass
class SyncServices:
    """Handles a worker or engine needs, built once per process and passed in."""

    settings: Settings
    ledger: Ledger
    cache: ResponseCache
    dead_letters: DeadLetterStore
    stats: SyncStats
    supplier: SupplierClient
    storefront: StorefrontClient

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker[Session] | None = None) -> SyncServices:
        if session_factory is None:
            engine = build_engine(settings.database_url)
            Base.metadata.create_all(bind=engine)
            session_factory = build_session_factory(engine)
        ttl_seconds = settings.cache_ttl_hours * 3600
        return cls(
            settings=settings,
            ledger=Ledger(session_factory, cache_ttl_seconds=ttl_seconds),
            cache=ResponseCache(settings.cache_dir, ttl_seconds=ttl_seconds),
            dead_letters=DeadLetterStore(settings.dead_letter_dir),
            stats=SyncStats(session_factory),
            supplier=SoapSupplierClient.from_settings(settings),
            storefront=RestStorefrontClient.from_settings(settings),
        )

    def close(self) -> None:
        self.supplier.close()
        self.storefront.close()
