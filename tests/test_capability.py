from __future__ import annotations

import logging
import threading

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from conftest import FakeRedis
from memory.capability import CapabilityProbe
from memory.errors import CapabilityRequired
from memory.models import CapabilityVerdict


def test_supported_server_resolves_native() -> None:
    redis = FakeRedis()
    probe = CapabilityProbe(redis)

    assert probe.verdict is CapabilityVerdict.UNKNOWN
    assert probe.resolve() is True
    assert probe.verdict is CapabilityVerdict.SUPPORTED


def test_verdict_is_memoized() -> None:
    redis = FakeRedis()
    probe = CapabilityProbe(redis)

    for _ in range(5):
        probe.resolve()

    assert redis.probe_calls == 1


def test_concurrent_first_callers_share_one_probe() -> None:
    redis = FakeRedis(probe_delay=0.05)
    probe = CapabilityProbe(redis)
    barrier = threading.Barrier(8)
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        outcome = probe.resolve()
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert results == [True] * 8
    assert redis.probe_calls == 1


def test_missing_module_degrades_outside_production(caplog) -> None:
    redis = FakeRedis(search_supported=False)
    probe = CapabilityProbe(redis, production=False)

    with caplog.at_level(logging.WARNING, logger="memory.capability"):
        assert probe.resolve() is False

    assert probe.verdict is CapabilityVerdict.UNSUPPORTED
    assert "redis-stack" in caplog.text
    assert probe.resolve() is False
    assert redis.probe_calls == 1


def test_missing_module_raises_in_production_without_caching() -> None:
    redis = FakeRedis(search_supported=False)
    probe = CapabilityProbe(redis, production=True)

    with pytest.raises(CapabilityRequired):
        probe.resolve()
    assert probe.verdict is CapabilityVerdict.UNKNOWN

    with pytest.raises(CapabilityRequired):
        probe.resolve()
    assert redis.probe_calls == 2


@pytest.mark.parametrize("message", ["Unknown index name", "idx:memories: no such index", "Index not found"])
def test_missing_index_errors_still_mean_supported(message: str) -> None:
    probe = CapabilityProbe(FakeRedis(probe_error=ResponseError(message)))
    assert probe.resolve() is True


def test_vector_related_error_means_unsupported() -> None:
    probe = CapabilityProbe(FakeRedis(probe_error=ResponseError("Unknown argument VECTOR_RANGE")))
    assert probe.resolve() is False


def test_unexpected_response_error_degrades_with_error_log(caplog) -> None:
    probe = CapabilityProbe(FakeRedis(probe_error=ResponseError("NOPERM this user has no permissions")))

    with caplog.at_level(logging.ERROR, logger="memory.capability"):
        assert probe.resolve() is False

    assert any(r.levelno == logging.ERROR for r in caplog.records)


def test_transport_failure_in_production_raises() -> None:
    probe = CapabilityProbe(FakeRedis(probe_error=RedisConnectionError("refused")), production=True)

    with pytest.raises(CapabilityRequired) as excinfo:
        probe.resolve()

    assert isinstance(excinfo.value.__cause__, RedisConnectionError)
