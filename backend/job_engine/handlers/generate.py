"""Pattern-based name/email synthesis in fixed-size batches."""

from __future__ import annotations

import logging
import random
import zlib
from collections import Counter
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from job_engine.db.models.import_record import ImportRecord
from job_engine.handlers.base import HandlerFatalError, JobContext, TaskHandler, UnitResult
from job_engine.handlers.cache import RefreshingCache

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_PROVIDERS = ["gmail.com", "yahoo.com", "outlook.com", "hotmail.com"]

PATTERNS = {
    "first.last": "{first}.{last}",
    "firstlast": "{first}{last}",
    "f.last": "{f}.{last}",
    "first_last": "{first}_{last}",
    "flast": "{f}{last}",
    "last.first": "{last}.{first}",
}

FALLBACK_FIRST_NAMES = [
    "james", "mary", "john", "patricia", "robert", "jennifer", "michael", "linda",
    "william", "elizabeth", "david", "barbara", "richard", "susan", "joseph", "jessica",
    "thomas", "sarah", "charles", "karen", "daniel", "nancy", "matthew", "lisa",
]
FALLBACK_LAST_NAMES = [
    "smith", "johnson", "williams", "brown", "jones", "garcia", "miller", "davis",
    "rodriguez", "martinez", "hernandez", "lopez", "gonzalez", "wilson", "anderson",
    "thomas", "taylor", "moore", "jackson", "martin", "lee", "perez", "thompson", "white",
]


@dataclass(frozen=True)
class NamePools:
    first_names: tuple[str, ...]
    last_names: tuple[str, ...]


def fallback_name_pools() -> NamePools:
    return NamePools(tuple(FALLBACK_FIRST_NAMES), tuple(FALLBACK_LAST_NAMES))


def load_name_pools(session_factory: sessionmaker[Session]) -> NamePools:
    """Read name datasets loaded by import jobs, falling back to built-in names."""
    with session_factory() as session:
        rows = session.execute(
            select(ImportRecord.dataset, ImportRecord.key).where(
                ImportRecord.dataset.in_(["first_names", "last_names"])
            )
        ).all()
    first = sorted({key.strip().lower() for dataset, key in rows if dataset == "first_names" and key.strip()})
    last = sorted({key.strip().lower() for dataset, key in rows if dataset == "last_names" and key.strip()})
    fallback = fallback_name_pools()
    if not first or not last:
        logger.info("Name datasets not imported yet, using built-in name pools")
    return NamePools(
        first_names=tuple(first) or fallback.first_names,
        last_names=tuple(last) or fallback.last_names,
    )


class GenerateHandler(TaskHandler):
    """Generates ``params.count`` addresses, ``params.batch_size`` per unit.

    Address ``i`` depends only on the job seed, the pinned name pools and
    ``i``, so re-running a unit from its checkpoint yields exactly the same
    items. The count may also come from ``metadata.total_items`` or its
    camelCase form ``totalItems``. The index suffix keeps every address in
    a job unique.
    """

    def __init__(self, name_pools: RefreshingCache[NamePools]):
        self._name_pools = name_pools

    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        params = job.params
        total = int(
            params.get("count")
            or job.metadata.get("total_items")
            or job.metadata.get("totalItems")
            or 0
        )
        if total <= 0:
            raise HandlerFatalError("generate job requires a positive count")
        batch_size = int(params.get("batch_size") or DEFAULT_BATCH_SIZE)
        if batch_size <= 0:
            raise HandlerFatalError("batch_size must be positive")

        providers = params.get("providers") or DEFAULT_PROVIDERS
        pattern_name = params.get("pattern") or "first.last"
        if pattern_name not in PATTERNS:
            raise HandlerFatalError(f"Unknown pattern '{pattern_name}'")
        seed = params.get("seed")
        if seed is None:
            seed = zlib.crc32(job.id.encode("utf-8"))

        start = int((checkpoint or {}).get("next_index", 0))
        end = min(start + batch_size, total)
        pools, pinned = self._pools_for(job)

        items = [
            self._address(index, seed, pools, PATTERNS[pattern_name], providers)
            for index in range(start, end)
        ]
        return UnitResult(
            checkpoint={"next_index": end},
            progress_delta=(end - start) * 100.0 / total,
            items=items,
            done=end >= total,
            metadata={
                **pinned,
                "total_items": total,
                "processed_items": end,
                "success_count": end,
            },
        )

    def _pools_for(self, job: JobContext) -> tuple[NamePools, dict[str, Any]]:
        """Name pools for this job, pinned in its metadata by the first unit.

        Later units and resumed runs read the pinned copy, so a reload or an
        import in between cannot change the addresses a job generates.
        """
        stored = job.metadata.get("name_pools")
        if stored:
            return NamePools(tuple(stored["first_names"]), tuple(stored["last_names"])), {}
        pools = self._name_pools.get()
        pinned = {
            "name_pools": {
                "first_names": list(pools.first_names),
                "last_names": list(pools.last_names),
            }
        }
        return pools, pinned

    @staticmethod
    def _address(
        index: int,
        seed: int,
        pools: NamePools,
        pattern: str,
        providers: list[str],
    ) -> str:
        rng = random.Random(f"{seed}:{index}")
        first = rng.choice(pools.first_names)
        last = rng.choice(pools.last_names)
        local = pattern.format(first=first, last=last, f=first[0])
        domain = providers[index % len(providers)]
        return f"{local}{index}@{domain}"

    def finalize(self, job: JobContext, items: list[Any]) -> dict[str, Any]:
        provider_counts = Counter(address.split("@", 1)[1] for address in items)
        return {
            "items": items,
            "count": len(items),
            "provider_counts": dict(provider_counts),
        }
