"""
Capability probe: does this Redis connection support native vector search?

The verdict is resolved at most once per probe instance (one instance per
backend connection) and then read lock-free. Concurrent first callers are
collapsed into a single ``FT._LIST`` round-trip by double-checked locking.

Degradation policy
------------------
If the probe fails, the outcome depends on the deployment mode passed in at
construction time:

- production: raise ``CapabilityRequired``. Nothing is cached, so the next
  call probes again; the service must not start on a degraded backend.
- otherwise: log a warning with remediation guidance, cache ``unsupported``
  and let callers use the in-process scan.
"""
from __future__ import annotations

import logging
import threading
from typing import Any

from redis.exceptions import ResponseError

from memory.errors import CapabilityRequired
from memory.models import CapabilityVerdict

log = logging.getLogger(__name__)

PROBE_COMMAND = ("FT._LIST",)

# Error text meaning the search module is absent.
_UNSUPPORTED_MARKERS = ("unknown command", "ft.search", "ft._list", "vector_range", "vector")
# Error text meaning the command was understood but an index is missing.
_MISSING_INDEX_MARKERS = ("index not found", "unknown index name", "no such index")

_REMEDIATION = (
    "Use Redis Stack or Redis 8+ (which bundle the search module), e.g. "
    "`docker run -p 6379:6379 redis/redis-stack-server:latest`. "
    "Plain Redis builds, including the Windows port, lack vector search."
)


class CapabilityProbe:
    """Thread-safe, memoized check for RediSearch vector support."""

    def __init__(self, client: Any, production: bool = False):
        self._client = client
        self._production = production
        self._verdict = CapabilityVerdict.UNKNOWN
        self._lock = threading.Lock()

    @property
    def verdict(self) -> CapabilityVerdict:
        return self._verdict

    @property
    def production(self) -> bool:
        return self._production

    def resolve(self) -> bool:
        """Return True if native vector search is available.

        Raises ``CapabilityRequired`` in production when it is not.
        """
        verdict = self._verdict
        if verdict is not CapabilityVerdict.UNKNOWN:
            return verdict is CapabilityVerdict.SUPPORTED

        with self._lock:
            if self._verdict is not CapabilityVerdict.UNKNOWN:
                return self._verdict is CapabilityVerdict.SUPPORTED

            supported = self._probe()
            self._verdict = (
                CapabilityVerdict.SUPPORTED if supported else CapabilityVerdict.UNSUPPORTED
            )
            log.info("Redis vector search capability resolved: %s", self._verdict.value)
            return supported

    def _probe(self) -> bool:
        try:
            self._client.execute_command(*PROBE_COMMAND)
            return True
        except ResponseError as exc:
            message = str(exc).lower()
            if any(marker in message for marker in _UNSUPPORTED_MARKERS):
                return self._degrade(exc, unexpected=False)
            if any(marker in message for marker in _MISSING_INDEX_MARKERS):
                return True
            return self._degrade(exc, unexpected=True)
        except Exception as exc:
            return self._degrade(exc, unexpected=True)

    def _degrade(self, exc: Exception, unexpected: bool) -> bool:
        if unexpected:
            problem = "Checking Redis for vector search support failed"
        else:
            problem = "This Redis server does not support vector search"

        if self._production:
            log.critical("%s; refusing to degrade in production. %s", problem, _REMEDIATION)
            raise CapabilityRequired(
                f"{problem} ({exc}). Production requires native vector search. {_REMEDIATION}"
            ) from exc

        message = (
            "%s (%s). Falling back to an in-process O(N) scan for search and list; "
            "this mode is for development only. %s"
        )
        if unexpected:
            log.error(message, problem, exc, _REMEDIATION, exc_info=True)
        else:
            log.warning(message, problem, exc, _REMEDIATION)
        return False
