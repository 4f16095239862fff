"""Application context assembly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from b2b_bulk.audit.logger import AuditLogger
from b2b_bulk.config import Settings, load_settings
from b2b_bulk.fulfillment.capabilities import (
    AvailabilityChecker,
    CartMutator,
    OrderCanceller,
    ProductCatalog,
)
from b2b_bulk.fulfillment.engine import BatchFulfillmentEngine, EngineConfig
from b2b_bulk.fulfillment.suggester import (
    AlternativeSuggester,
    CatalogAlternativeFinder,
    SuggesterConfig,
)
from b2b_bulk.history.service import OperationHistory
from b2b_bulk.ingestion.file_scanner import FileScanner, VirusScanner
from b2b_bulk.ingestion.parser import SecureBulkParser, SkuValidator
from b2b_bulk.policy.engine import AuthorizationPolicy
from b2b_bulk.policy.loader import load_role_policy
from b2b_bulk.service import BulkOrderService

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Owns the long-lived services of one process.

    Built by ``build_app_context`` and passed explicitly to whoever needs it;
    there are no module-level singletons. The audit logger is the only
    component with an open/close lifecycle.
    """

    settings: Settings
    audit: AuditLogger
    policy: AuthorizationPolicy
    history: OperationHistory
    file_scanner: FileScanner
    suggester: AlternativeSuggester

    def open(self) -> AppContext:
        self.audit.open()
        return self

    async def aclose(self) -> None:
        self.audit.close()

    async def __aenter__(self) -> AppContext:
        return self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def create_service(
        self,
        *,
        availability: AvailabilityChecker,
        cart: CartMutator,
        canceller: OrderCanceller,
        catalog: ProductCatalog | None = None,
        sku_validator: SkuValidator | None = None,
        virus_scanner: VirusScanner | None = None,
    ) -> BulkOrderService:
        """Wire a BulkOrderService to one commerce backend's capabilities."""
        ingestion = self.settings.ingestion
        parser = SecureBulkParser(
            max_rows=ingestion.max_rows,
            max_bytes=ingestion.max_upload_bytes,
            sku_validator=sku_validator,
        )
        finder = (
            CatalogAlternativeFinder(catalog, self.suggester) if catalog is not None else None
        )
        engine = BatchFulfillmentEngine(
            availability=availability,
            cart=cart,
            alternatives=finder,
            config=EngineConfig.from_settings(self.settings.fulfillment),
        )
        return BulkOrderService(
            parser=parser,
            policy=self.policy,
            engine=engine,
            history=self.history,
            audit=self.audit,
            canceller=canceller,
            file_scanner=self.file_scanner,
            virus_scanner=virus_scanner,
        )


def build_app_context(settings: Settings | None = None) -> AppContext:
    """Construct (but do not open) the application context."""
    settings = settings or load_settings()
    audit = AuditLogger.from_settings(settings.audit)
    policy = AuthorizationPolicy(
        load_role_policy(settings.policy.path),
        audit=audit,
        sku_pattern=settings.policy.sku_pattern,
    )
    history = OperationHistory.from_settings(settings.history, audit)
    file_scanner = FileScanner(
        max_bytes=settings.ingestion.max_upload_bytes,
        allowed_extensions=settings.ingestion.allowed_extensions,
    )
    alternatives = settings.alternatives
    suggester = AlternativeSuggester(
        SuggesterConfig(
            max_suggestions=alternatives.max_suggestions,
            min_similarity=alternatives.min_similarity,
            price_tolerance_percent=alternatives.price_tolerance_percent,
            allow_cross_brand=alternatives.cross_brand,
        )
    )
    logger.info(
        "Application context built audit_store=%s history_dir=%s",
        settings.audit.store,
        settings.history.storage_dir,
    )
    return AppContext(
        settings=settings,
        audit=audit,
        policy=policy,
        history=history,
        file_scanner=file_scanner,
        suggester=suggester,
    )
