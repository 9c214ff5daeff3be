from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import redis
from pydantic import TypeAdapter, ValidationError

from cashflow_bridge.schemas.advances import AdvanceContractDetails

logger = logging.getLogger("cashflow.cache")

KEY_PREFIX = "cfb"

_DETAILS_LIST = TypeAdapter(List[AdvanceContractDetails])


def advance_key(contract_id: str) -> str:
    return f"{KEY_PREFIX}:advance:{contract_id}"


def farmer_key(farmer_id: str) -> str:
    return f"{KEY_PREFIX}:farmer:{farmer_id}:advances"


def order_key(order_id: str) -> str:
    return f"{KEY_PREFIX}:order:{order_id}:advance"


class AdvanceCache:
    """Read-through cache of advance details.

    The database is the source of truth: with no client every call is a miss,
    and Redis errors are logged and degrade to a miss.
    """

    def __init__(self, client: Optional[redis.Redis], ttl_seconds: int = 60):
        self.client = client
        self.ttl_seconds = int(ttl_seconds)

    def _get(self, key: str) -> Optional[str]:
        if self.client is None:
            return None
        try:
            return self.client.get(key)
        except redis.RedisError as exc:
            logger.warning("advance_cache_error", extra={"op": "get", "key": key, "error": str(exc)})
            return None

    def _set(self, key: str, payload: str) -> None:
        if self.client is None:
            return
        try:
            self.client.set(key, payload, ex=self.ttl_seconds)
        except redis.RedisError as exc:
            logger.warning("advance_cache_error", extra={"op": "set", "key": key, "error": str(exc)})

    def _get_details(self, key: str) -> Optional[AdvanceContractDetails]:
        raw = self._get(key)
        if not raw:
            return None
        try:
            return AdvanceContractDetails.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("advance_cache_error", extra={"op": "decode", "key": key, "error": str(exc)})
            return None

    def get_details(self, contract_id: str) -> Optional[AdvanceContractDetails]:
        return self._get_details(advance_key(contract_id))

    def get_order_advance(self, order_id: str) -> Optional[AdvanceContractDetails]:
        return self._get_details(order_key(order_id))

    def set_details(self, details: AdvanceContractDetails) -> None:
        payload = details.model_dump_json()
        self._set(advance_key(details.id), payload)
        self._set(order_key(details.order_id), payload)

    def get_farmer_advances(self, farmer_id: str) -> Optional[list[AdvanceContractDetails]]:
        raw = self._get(farmer_key(farmer_id))
        if not raw:
            return None
        try:
            return _DETAILS_LIST.validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "advance_cache_error",
                extra={"op": "decode", "key": farmer_key(farmer_id), "error": str(exc)},
            )
            return None

    def set_farmer_advances(self, farmer_id: str, items: Iterable[AdvanceContractDetails]) -> None:
        self._set(farmer_key(farmer_id), _DETAILS_LIST.dump_json(list(items)).decode("utf-8"))

    def invalidate(self, *, contract_id: str, farmer_id: str, order_id: str) -> None:
        if self.client is None:
            return
        keys = [advance_key(contract_id), farmer_key(farmer_id), order_key(order_id)]
        try:
            self.client.delete(*keys)
        except redis.RedisError as exc:
            logger.warning("advance_cache_error", extra={"op": "delete", "keys": keys, "error": str(exc)})
