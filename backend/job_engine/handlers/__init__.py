"""Task handlers shipped with the engine."""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from job_engine.core.config import Settings
from job_engine.handlers.bulk_import import BulkImportHandler
from job_engine.handlers.cache import RefreshingCache
from job_engine.handlers.generate import GenerateHandler, NamePools, load_name_pools
from job_engine.handlers.registry import HandlerRegistry
from job_engine.handlers.scrape import ScrapeHandler
from job_engine.handlers.verify import VerifyHandler

NAME_POOL_TTL_SECONDS = 300.0


def build_registry(settings: Settings, session_factory: sessionmaker[Session]) -> HandlerRegistry:
    name_pools: RefreshingCache[NamePools] = RefreshingCache(
        lambda: load_name_pools(session_factory), NAME_POOL_TTL_SECONDS
    )
    registry = HandlerRegistry()
    registry.register("generate", GenerateHandler(name_pools))
    registry.register("verify", VerifyHandler())
    registry.register("scrape", ScrapeHandler())
    registry.register("import", BulkImportHandler(session_factory, invalidates=[name_pools]))
    return registry
