from functools import lru_cache
from typing import Optional

import redis
from fastapi import Depends
from sqlalchemy.orm import Session

from cashflow_bridge.config import settings
from cashflow_bridge.database import get_db
from cashflow_bridge.services.advance_cache import AdvanceCache
from cashflow_bridge.services.advance_service import AdvanceContractService
from cashflow_bridge.services.collaborator_http import HttpCreditScoringClient, HttpLiquidityPoolClient
from cashflow_bridge.services.collaborators import CreditScoringClient, LiquidityPoolClient

_DB_DEP = Depends(get_db)


@lru_cache(maxsize=1)
def _redis_client() -> Optional[redis.Redis]:
    if not settings.redis_url:
        return None
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )


def get_advance_cache() -> AdvanceCache:
    return AdvanceCache(_redis_client(), ttl_seconds=settings.advance_cache_ttl_seconds)


@lru_cache(maxsize=1)
def get_credit_client() -> CreditScoringClient:
    return HttpCreditScoringClient()


@lru_cache(maxsize=1)
def get_pool_client() -> LiquidityPoolClient:
    return HttpLiquidityPoolClient()


_CACHE_DEP = Depends(get_advance_cache)
_CREDIT_DEP = Depends(get_credit_client)
_POOL_DEP = Depends(get_pool_client)


def get_advance_service(
    db: Session = _DB_DEP,
    credit: CreditScoringClient = _CREDIT_DEP,
    pools: LiquidityPoolClient = _POOL_DEP,
    cache: AdvanceCache = _CACHE_DEP,
) -> AdvanceContractService:
    return AdvanceContractService(db, credit=credit, pools=pools, cache=cache)
