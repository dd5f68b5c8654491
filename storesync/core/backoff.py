"""
Retry backoff and duplicate suppression policy
Pure functions: retry delays, idempotency keys, entity priority tiers
"""

import hashlib
import json
import random
from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable

# Dependency order: identity-bearing entities first, derived state last
ENTITY_ORDER = (
    "customer",
    "product",
    "inventory",
    "order",
    "invoice",
    "payment",
)

UNKNOWN_ENTITY_PRIORITY = 99


def get_entity_priority(entity_type: str) -> int:
    """Processing tier for an entity type (lower runs first)"""
    try:
        return ENTITY_ORDER.index(entity_type)
    except ValueError:
        return UNKNOWN_ENTITY_PRIORITY


@dataclass
class BackoffPolicy:
    """Exponential backoff with symmetric jitter"""
    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    max_retries: int = 10
    jitter_factor: float = 0.1

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'BackoffPolicy':
        return cls(
            base_delay=float(config.get('base_delay_seconds', 1.0)),
            max_delay=float(config.get('max_delay_seconds', 300.0)),
            multiplier=float(config.get('multiplier', 2.0)),
            max_retries=int(config.get('max_retries', 10)),
            jitter_factor=float(config.get('jitter_factor', 0.1))
        )

    def base_delay_for(self, retry_count: int) -> float:
        """Capped delay without jitter; monotonic in retry_count"""
        if retry_count < 0:
            retry_count = 0
        try:
            delay = self.base_delay * (self.multiplier ** retry_count)
        except OverflowError:
            delay = self.max_delay
        return min(self.max_delay, delay)

    def calculate_delay(self, retry_count: int,
                        rand: Callable[[], float] = random.random) -> Optional[float]:
        """
        Delay in seconds before the next attempt.

        Lies within jitter_factor of base_delay_for(retry_count) and never above
        max_delay. Only base_delay_for is non-decreasing in retry_count; two
        jittered delays at the cap can come out in either order. Returns None
        once the retry budget is spent.
        """
        if not self.should_retry(retry_count):
            return None

        capped = self.base_delay_for(retry_count)
        jitter = (rand() - 0.5) * 2.0 * self.jitter_factor
        return min(self.max_delay, max(0.0, capped * (1.0 + jitter)))

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


def _canonical(payload: Optional[Dict[str, Any]]) -> str:
    return json.dumps(payload or {}, sort_keys=True, separators=(',', ':'), default=str)


def change_signature(payload: Optional[Dict[str, Any]]) -> str:
    """Stable digest of a change payload"""
    return hashlib.sha256(_canonical(payload).encode('utf-8')).hexdigest()


def generate_idempotency_key(entity_type: str, entity_id: str, operation: str,
                             payload: Optional[Dict[str, Any]] = None,
                             platform: str = "") -> str:
    """
    Deterministic key for one logical change.

    SHA-256 over platform, entity, operation and the change signature, so the
    same change enqueued twice maps to the same key while a different change
    to the same entity does not.
    """
    material = f"{platform}:{entity_type}:{entity_id}:{operation}:{change_signature(payload)}"
    return hashlib.sha256(material.encode('utf-8')).hexdigest()
