from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

import pytest  # type: ignore[import]

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from gateway.app import dependencies  # noqa: E402
from gateway.app.auth.errors import RateLimited, StoreUnavailable  # noqa: E402
from gateway.app.cache import InMemoryCacheAdapter  # noqa: E402
from gateway.app.identity import IdentityCache  # noqa: E402
from gateway.app.ratelimit import (  # noqa: E402
    Axis,
    CounterKey,
    CounterStore,
    InMemoryCounterStore,
    RateLimitConfig,
    RateLimiter,
    RateLimitSweeper,
    Target,
    build_targets,
)
from gateway.app.utils.audit import AuditSink  # noqa: E402


class _Clock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _RecordingAudit(AuditSink):
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def emit(
        self,
        category: str,
        *,
        actor_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.events.append({"category": category, "client_ip": client_ip, "metadata": dict(metadata or {})})


class _UnavailableStore(CounterStore):
    def __init__(self) -> None:
        self.calls = 0

    async def get_live(self, key, *, now):
        self.calls += 1
        raise StoreUnavailable("connection refused")

    async def increment(self, key, *, now, window_seconds):
        self.calls += 1
        raise StoreUnavailable("connection refused")

    async def block(self, key, *, now, until, reason):
        raise StoreUnavailable("connection refused")

    async def purge_expired(self, *, now):
        raise StoreUnavailable("connection refused")


LOGIN = RateLimitConfig(
    scope="login",
    window_seconds=60,
    max_requests=3,
    block_seconds=60,
    skip_successful=True,
)

API = RateLimitConfig(
    scope="api",
    window_seconds=900,
    max_requests=4,
    max_per_device=3,
    max_per_user=10,
    block_seconds=600,
)


async def _hit(limiter: RateLimiter, targets: list[Target], config: RateLimitConfig, status_code: int = 200) -> bool:
    decision = await limiter.admit(targets, config)
    if decision.allowed:
        await limiter.increment(targets, config, status_code)
    return decision.allowed


def test_build_targets_skips_unknown_device_and_anonymous_user() -> None:
    targets = build_targets(API, ip="10.0.0.1", fingerprint="unknown", user_key=None)
    assert targets == [Target(Axis.IP, "10.0.0.1")]


def test_build_targets_orders_ip_device_user() -> None:
    targets = build_targets(API, ip="10.0.0.1", fingerprint="abc", user_key="session-1")
    assert [target.axis for target in targets] == [Axis.IP, Axis.DEVICE, Axis.USER]


def test_build_targets_omits_axes_without_limits() -> None:
    targets = build_targets(LOGIN, ip="10.0.0.1", fingerprint="abc", user_key="session-1")
    assert targets == [Target(Axis.IP, "10.0.0.1")]


@pytest.mark.parametrize(
    ("config", "status_code", "expected"),
    [
        (RateLimitConfig("s", 60, 1), 200, True),
        (RateLimitConfig("s", 60, 1), 500, True),
        (RateLimitConfig("s", 60, 1, skip_successful=True), 204, False),
        (RateLimitConfig("s", 60, 1, skip_successful=True), 401, True),
        (RateLimitConfig("s", 60, 1, skip_failed=True), 404, False),
        (RateLimitConfig("s", 60, 1, skip_failed=True), 302, True),
    ],
)
def test_counts_honours_skip_rules(config: RateLimitConfig, status_code: int, expected: bool) -> None:
    assert config.counts(status_code) is expected


@pytest.mark.asyncio
async def test_block_after_threshold_with_decreasing_retry_after() -> None:
    clock = _Clock()
    audit = _RecordingAudit()
    store = InMemoryCounterStore()
    limiter = RateLimiter(store, audit=audit, clock=clock)
    targets = [Target(Axis.IP, "10.0.0.1")]

    for _ in range(3):
        assert await _hit(limiter, targets, LOGIN, status_code=401)
        clock.advance(1)

    first = await limiter.admit(targets, LOGIN)
    assert not first.allowed
    assert first.axis is Axis.IP
    assert first.retry_after == pytest.approx(60)
    assert [event["category"] for event in audit.events] == ["rate_limit_exceeded"]
    assert audit.events[0]["metadata"]["request_count"] == 3

    previous = first.retry_after
    for _ in range(5):
        clock.advance(7)
        decision = await limiter.admit(targets, LOGIN)
        assert not decision.allowed
        assert decision.retry_after < previous
        previous = decision.retry_after

    # The transition to blocked happens once; later rejections do not re-audit.
    assert len(audit.events) == 1

    row = await store.get_live(CounterKey("10.0.0.1", Axis.IP, "login"), now=clock())
    assert row is not None and row.is_blocked


@pytest.mark.asyncio
async def test_fresh_window_after_block_expires() -> None:
    clock = _Clock()
    limiter = RateLimiter(InMemoryCounterStore(), clock=clock)
    targets = [Target(Axis.IP, "10.0.0.9")]

    for _ in range(3):
        await _hit(limiter, targets, LOGIN, status_code=401)
    assert not (await limiter.admit(targets, LOGIN)).allowed

    clock.advance(61)
    assert (await limiter.admit(targets, LOGIN)).allowed


@pytest.mark.asyncio
async def test_skip_successful_never_counts_success() -> None:
    clock = _Clock()
    limiter = RateLimiter(InMemoryCounterStore(), clock=clock)
    targets = [Target(Axis.IP, "10.0.0.2")]

    for _ in range(10):
        assert await _hit(limiter, targets, LOGIN, status_code=200)


@pytest.mark.asyncio
async def test_ip_axis_blocks_while_device_axes_stay_open() -> None:
    clock = _Clock()
    store = InMemoryCounterStore()
    limiter = RateLimiter(store, clock=clock)
    device_a = build_targets(API, ip="10.0.0.1", fingerprint="device-a")
    device_b = build_targets(API, ip="10.0.0.1", fingerprint="device-b")

    # Two requests each: 4 on the shared IP, 2 per device (device cap is 3).
    for targets in (device_a, device_b, device_a, device_b):
        assert await _hit(limiter, targets, API)

    rejected_a = await limiter.admit(device_a, API)
    rejected_b = await limiter.admit(device_b, API)

    assert not rejected_a.allowed and rejected_a.axis is Axis.IP
    assert not rejected_b.allowed and rejected_b.axis is Axis.IP

    for fingerprint in ("device-a", "device-b"):
        row = await store.get_live(CounterKey(fingerprint, Axis.DEVICE, "api"), now=clock())
        assert row is not None
        assert row.request_count == 2
        assert not row.is_blocked
        assert (await limiter.check(fingerprint, Axis.DEVICE, API)).allowed


@pytest.mark.asyncio
async def test_device_axis_blocks_independently_of_ip() -> None:
    clock = _Clock()
    limiter = RateLimiter(InMemoryCounterStore(), clock=clock)
    roaming = [
        build_targets(API, ip=f"10.0.1.{index}", fingerprint="device-roaming") for index in range(4)
    ]

    for targets in roaming[:3]:
        assert await _hit(limiter, targets, API)

    decision = await limiter.admit(roaming[3], API)
    assert not decision.allowed
    assert decision.axis is Axis.DEVICE
    assert (await limiter.check("10.0.1.3", Axis.IP, API)).allowed


@pytest.mark.asyncio
async def test_check_fails_open_when_store_unavailable() -> None:
    store = _UnavailableStore()
    limiter = RateLimiter(store)

    decision = await limiter.admit(build_targets(API, ip="10.0.0.1", fingerprint="abc", user_key="s"), API)

    assert decision.allowed
    assert store.calls == 3


@pytest.mark.asyncio
async def test_increment_dropped_silently_when_store_unavailable() -> None:
    limiter = RateLimiter(_UnavailableStore())
    await limiter.increment([Target(Axis.IP, "10.0.0.1")], API, 200)


@pytest.mark.asyncio
async def test_cleanup_returns_zero_when_store_unavailable() -> None:
    assert await RateLimiter(_UnavailableStore()).cleanup() == 0


@pytest.mark.asyncio
async def test_concurrent_increments_through_limiter_are_exact() -> None:
    clock = _Clock()
    store = InMemoryCounterStore()
    limiter = RateLimiter(store, clock=clock)
    targets = [Target(Axis.IP, "10.0.0.3")]

    await asyncio.gather(*(limiter.increment(targets, API, 200) for _ in range(40)))

    row = await store.get_live(CounterKey("10.0.0.3", Axis.IP, "api"), now=clock())
    assert row is not None
    assert row.request_count == 40


@pytest.mark.asyncio
async def test_sweeper_runs_every_job() -> None:
    clock = _Clock()
    store = InMemoryCounterStore()
    limiter = RateLimiter(store, clock=clock)
    await limiter.increment([Target(Axis.IP, "10.0.0.4")], API, 200)
    clock.advance(901)

    async def _sessions() -> int:
        return 2

    sweeper = RateLimitSweeper([limiter.cleanup, _sessions], interval_seconds=3600)
    assert await sweeper.run_once() == 3


@pytest.mark.asyncio
async def test_sweeper_start_runs_immediately_and_stops() -> None:
    calls: list[int] = []
    ran = asyncio.Event()

    async def _job() -> int:
        calls.append(1)
        ran.set()
        return 0

    sweeper = RateLimitSweeper([_job], interval_seconds=3600)
    sweeper.start()
    await asyncio.wait_for(ran.wait(), timeout=1)
    await sweeper.stop()

    assert calls == [1]


@pytest.mark.asyncio
async def test_sweeper_survives_a_failing_job() -> None:
    calls = {"bad": 0, "good": 0}
    second_sweep = asyncio.Event()

    async def _bad() -> int:
        calls["bad"] += 1
        raise ValueError("corrupt window_end")

    async def _good() -> int:
        calls["good"] += 1
        if calls["good"] >= 2:
            second_sweep.set()
        return 1

    sweeper = RateLimitSweeper([_bad, _good], interval_seconds=0.01)
    assert await sweeper.run_once() == 1

    sweeper.start()
    await asyncio.wait_for(second_sweep.wait(), timeout=1)
    await sweeper.stop()

    assert calls["bad"] >= 2
    assert calls["good"] >= 2

@pytest.mark.asyncio
async def test_shutdown_closes_counter_store_and_cache() -> None:
    closed: list[str] = []

    class _Store(InMemoryCounterStore):
        async def close(self) -> None:
            closed.append("counters")

    class _Adapter(InMemoryCacheAdapter):
        async def close(self) -> None:
            closed.append("cache")

    dependencies.reset_dependencies()
    dependencies.configure_dependencies(
        rate_limiter=RateLimiter(_Store()),
        identity_cache=IdentityCache(_Adapter()),
    )
    try:
        await dependencies.shutdown_dependencies()
    finally:
        dependencies.reset_dependencies()

    assert closed == ["counters", "cache"]

def test_rate_limited_body_and_headers() -> None:
    exc = RateLimited("Too many login attempts.", retry_after=12.2, endpoint="login")
    body = exc.body()

    assert exc.status_code == 429
    assert body["retryAfter"] == 13
    assert body["blocked"] is True
    assert body["endpoint"] == "login"
    assert body["message"] == "Too many login attempts."
    assert body["timestamp"].endswith("Z")
    assert exc.headers() == {"Retry-After": "13"}


def test_rate_limited_retry_after_is_at_least_one_second() -> None:
    assert RateLimited(retry_after=0.01, endpoint="api").retry_after == 1
