"""
Circuit breaker per (tenant, remote platform)
Closed / Open / Half-Open failure tracking with durable snapshots
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Callable, Optional, Tuple, List

from sqlalchemy import select

from storesync.core.models import CircuitStateDB, utc_now

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerPolicy:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 3
    half_open_max_probes: int = 1
    # False: a half-open failure must re-accumulate the full threshold
    reopen_on_half_open_failure: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'CircuitBreakerPolicy':
        return cls(
            failure_threshold=int(config.get('failure_threshold', 5)),
            reset_timeout=float(config.get('reset_timeout_seconds', 60.0)),
            success_threshold=int(config.get('success_threshold', 3)),
            half_open_max_probes=int(config.get('half_open_max_probes', 1)),
            reopen_on_half_open_failure=bool(config.get('reopen_on_half_open_failure', True))
        )


class CircuitBreaker:
    """
    Failure tracker for one remote platform of one tenant.

    States:
    - CLOSED: dispatches allowed, consecutive failures counted
    - OPEN: no dispatch until reset_timeout elapses
    - HALF_OPEN: a small probe quota is allowed; success_threshold consecutive
      successes close the circuit, a failure reopens it

    State changes are guarded by a lock so the breaker can be shared by
    every worker task (and thread) serving the pair.
    """

    def __init__(self, name: str, policy: Optional[CircuitBreakerPolicy] = None,
                 clock: Callable[[], float] = time.time, cautious: bool = False):
        self.name = name
        self.policy = policy or CircuitBreakerPolicy()
        self._clock = clock
        self._lock = threading.Lock()

        self.state = CircuitState.CLOSED
        self.opened_at: Optional[float] = None
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self._probes_in_flight = 0
        # Without a snapshot we do not know how the remote behaved before the
        # restart: trip on half the usual threshold until the first success.
        self.cautious = cautious

    @property
    def effective_failure_threshold(self) -> int:
        if self.cautious:
            return max(1, self.policy.failure_threshold // 2)
        return self.policy.failure_threshold

    def _open(self, now: float):
        self.state = CircuitState.OPEN
        self.opened_at = now
        self.consecutive_successes = 0
        self._probes_in_flight = 0

    def should_allow(self) -> bool:
        """Check whether a dispatch may proceed (may move OPEN -> HALF_OPEN)"""
        with self._lock:
            now = self._clock()
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if self.opened_at is not None and now - self.opened_at >= self.policy.reset_timeout:
                    logger.info(f"Circuit breaker for {self.name} transitioning to half-open "
                                f"after {now - self.opened_at:.1f}s")
                    self.state = CircuitState.HALF_OPEN
                    self.consecutive_failures = 0
                    self.consecutive_successes = 0
                    self._probes_in_flight = 0
                else:
                    return False

            if self._probes_in_flight >= self.policy.half_open_max_probes:
                return False
            self._probes_in_flight += 1
            return True

    def record_success(self):
        with self._lock:
            self.consecutive_failures = 0
            self.consecutive_successes += 1
            self.cautious = False

            if self.state == CircuitState.HALF_OPEN:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
                if self.consecutive_successes >= self.policy.success_threshold:
                    logger.info(f"Circuit breaker for {self.name} closing after "
                                f"{self.consecutive_successes} successful requests")
                    self.state = CircuitState.CLOSED
                    self.opened_at = None
            elif self.state == CircuitState.OPEN:
                self.state = CircuitState.CLOSED
                self.opened_at = None

    def record_failure(self) -> bool:
        """Record a failed dispatch; returns True if this call opened the circuit"""
        with self._lock:
            now = self._clock()
            self.consecutive_failures += 1
            self.consecutive_successes = 0

            if self.state == CircuitState.HALF_OPEN:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
                if (self.policy.reopen_on_half_open_failure
                        or self.consecutive_failures >= self.effective_failure_threshold):
                    logger.warning(f"Circuit breaker for {self.name} reopening from half-open state")
                    self._open(now)
                    return True
                return False

            if self.state == CircuitState.CLOSED and \
                    self.consecutive_failures >= self.effective_failure_threshold:
                logger.warning(f"Circuit breaker for {self.name} opening after "
                               f"{self.consecutive_failures} consecutive failures")
                self._open(now)
                return True
            return False

    def release_probe(self):
        """Return an unused half-open probe slot (dispatch abandoned before the call)"""
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)

    def retry_after(self) -> float:
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.policy.reset_timeout - (self._clock() - self.opened_at))

    def current_state(self) -> CircuitState:
        """State as a dispatcher would see it now, without consuming a probe"""
        with self._lock:
            if self.state == CircuitState.OPEN and self.opened_at is not None and \
                    self._clock() - self.opened_at >= self.policy.reset_timeout:
                return CircuitState.HALF_OPEN
            return self.state

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'state': self.state.value,
                'opened_at': self.opened_at,
                'consecutive_failures': self.consecutive_failures,
                'consecutive_successes': self.consecutive_successes
            }

    def restore(self, snapshot: Dict[str, Any]):
        with self._lock:
            self.state = CircuitState(snapshot.get('state', CircuitState.CLOSED.value))
            self.opened_at = snapshot.get('opened_at')
            self.consecutive_failures = int(snapshot.get('consecutive_failures', 0))
            self.consecutive_successes = int(snapshot.get('consecutive_successes', 0))
            self._probes_in_flight = 0
            self.cautious = False
            if self.state == CircuitState.OPEN and self.opened_at is None:
                self.opened_at = self._clock()


class CircuitBreakerRegistry:
    """Breakers per (tenant, platform) with snapshot persistence"""

    def __init__(self, policy: Optional[CircuitBreakerPolicy] = None,
                 db_session_factory=None, clock: Callable[[], float] = time.time):
        self.policy = policy or CircuitBreakerPolicy()
        self.db_session_factory = db_session_factory
        self._clock = clock
        self._breakers: Dict[Tuple[str, str], CircuitBreaker] = {}
        self._lock = threading.Lock()
        self._restored = False

    def get(self, tenant: str, platform: str) -> CircuitBreaker:
        key = (tenant, platform)
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                # Created after restore without a snapshot: assume closed but cautious
                breaker = CircuitBreaker(f"{tenant}/{platform}", self.policy, self._clock,
                                         cautious=self._restored)
                self._breakers[key] = breaker
            return breaker

    def states(self, tenant: Optional[str] = None) -> List[Dict[str, Any]]:
        result = []
        for (breaker_tenant, platform), breaker in list(self._breakers.items()):
            if tenant and breaker_tenant != tenant:
                continue
            result.append({
                'tenant': breaker_tenant,
                'platform': platform,
                'state': breaker.current_state().value,
                'consecutive_failures': breaker.consecutive_failures,
                'retry_after_seconds': round(breaker.retry_after(), 1)
            })
        return result

    async def save_snapshots(self):
        """Persist every breaker's state"""
        if not self.db_session_factory:
            return
        async with self.db_session_factory() as session:
            for (tenant, platform), breaker in list(self._breakers.items()):
                snap = breaker.snapshot()
                opened_at = None
                if snap['opened_at'] is not None:
                    opened_at = datetime.fromtimestamp(snap['opened_at'], tz=timezone.utc).replace(tzinfo=None)
                row = await session.get(CircuitStateDB, (tenant, platform))
                if row is None:
                    row = CircuitStateDB(tenant=tenant, platform=platform)
                    session.add(row)
                row.state = snap['state']
                row.opened_at = opened_at
                row.consecutive_failures = snap['consecutive_failures']
                row.consecutive_successes = snap['consecutive_successes']
                row.updated_at = utc_now()
        logger.debug(f"Saved {len(self._breakers)} circuit breaker snapshots")

    async def load_snapshots(self) -> int:
        """Rebuild breakers from the last durable snapshot"""
        restored = 0
        if self.db_session_factory:
            async with self.db_session_factory() as session:
                result = await session.execute(select(CircuitStateDB))
                rows = result.scalars().all()

            for row in rows:
                opened_at = None
                if row.opened_at is not None:
                    opened_at = row.opened_at.replace(tzinfo=timezone.utc).timestamp()
                breaker = CircuitBreaker(f"{row.tenant}/{row.platform}", self.policy, self._clock)
                breaker.restore({
                    'state': row.state,
                    'opened_at': opened_at,
                    'consecutive_failures': row.consecutive_failures,
                    'consecutive_successes': row.consecutive_successes
                })
                with self._lock:
                    self._breakers[(row.tenant, row.platform)] = breaker
                restored += 1

        self._restored = True
        logger.info(f"Restored {restored} circuit breakers from snapshots")
        return restored
