"""
Tests for the sliding-window rate limiter.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from dual_faucet.rate_limiter import DEFAULT_WINDOW_SECONDS, RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


ADDRESS = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
OTHER = "0x" + "33" * 20


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(window_seconds=DEFAULT_WINDOW_SECONDS, address_quota=1, ip_quota=2, clock=clock)


class TestConstruction:
    """Constructor validation."""

    def test_default_window_is_twelve_hours(self):
        assert RateLimiter().window_seconds == 12 * 60 * 60

    @pytest.mark.parametrize("kwargs", [
        {'window_seconds': 0},
        {'window_seconds': -5},
        {'address_quota': 0},
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            RateLimiter(**kwargs)


class TestAddressWindow:
    """Per-address admission."""

    def test_first_request_is_admitted(self, limiter):
        assert limiter.check_admission(ADDRESS).allowed

    def test_recorded_request_blocks_until_window_passes(self, limiter, clock):
        limiter.record_request(ADDRESS)

        decision = limiter.check_admission(ADDRESS)
        assert not decision.allowed
        assert decision.retry_after_seconds == pytest.approx(DEFAULT_WINDOW_SECONDS)
        assert "limit" in decision.reason

        clock.advance(DEFAULT_WINDOW_SECONDS - 1)
        decision = limiter.check_admission(ADDRESS)
        assert not decision.allowed
        assert decision.retry_after_seconds == pytest.approx(1)

        clock.advance(1)
        assert limiter.check_admission(ADDRESS).allowed

    def test_old_entries_are_pruned(self, limiter, clock):
        limiter.record_request(ADDRESS)
        assert limiter.recorded_count(ADDRESS) == 1

        clock.advance(DEFAULT_WINDOW_SECONDS + 1)
        assert limiter.recorded_count(ADDRESS) == 0

    def test_addresses_are_independent(self, limiter):
        limiter.record_request(ADDRESS)
        assert limiter.check_admission(OTHER).allowed

    def test_quota_above_one(self, clock):
        limiter = RateLimiter(window_seconds=60, address_quota=3, clock=clock)
        for _ in range(3):
            assert limiter.check_admission(ADDRESS).allowed
            limiter.record_request(ADDRESS)
        assert not limiter.check_admission(ADDRESS).allowed


class TestReservations:
    """try_acquire / commit / release."""

    def test_reservation_blocks_second_acquire(self, limiter):
        assert limiter.try_acquire(ADDRESS).allowed
        decision = limiter.try_acquire(ADDRESS)
        assert not decision.allowed
        # Nothing recorded yet, so no retry hint
        assert decision.retry_after_seconds is None

    def test_release_does_not_consume_quota(self, limiter):
        assert limiter.try_acquire(ADDRESS)
        limiter.release(ADDRESS)

        assert limiter.recorded_count(ADDRESS) == 0
        assert limiter.try_acquire(ADDRESS).allowed

    def test_commit_records_request(self, limiter):
        assert limiter.try_acquire(ADDRESS)
        limiter.commit(ADDRESS)

        assert limiter.recorded_count(ADDRESS) == 1
        assert not limiter.check_admission(ADDRESS).allowed

    def test_concurrent_acquire_admits_exactly_one(self, clock):
        limiter = RateLimiter(window_seconds=60, address_quota=1, clock=clock)
        barrier = threading.Barrier(16)

        def attempt():
            barrier.wait()
            return limiter.try_acquire(ADDRESS).allowed

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: attempt(), range(16)))

        assert results.count(True) == 1


class TestIpLimit:
    """Secondary per-IP quota."""

    def test_ip_quota_applies_across_addresses(self, limiter):
        for i in range(2):
            address = "0x" + f"{i:02x}" * 20
            assert limiter.try_acquire(address, "10.0.0.1")
            limiter.commit(address, "10.0.0.1")

        decision = limiter.check_admission("0x" + "99" * 20, "10.0.0.1")
        assert not decision.allowed
        assert decision.reason.startswith("IP")

    def test_other_ip_unaffected(self, limiter):
        limiter.record_request(ADDRESS, "10.0.0.1")
        limiter.record_request(OTHER, "10.0.0.1")
        assert limiter.check_admission("0x" + "99" * 20, "10.0.0.2").allowed

    def test_ip_limit_disabled(self, clock):
        limiter = RateLimiter(window_seconds=60, address_quota=5, ip_quota=None, clock=clock)
        for _ in range(5):
            limiter.record_request(ADDRESS, "10.0.0.1")
        assert not limiter.check_admission(ADDRESS, "10.0.0.1").allowed
        assert limiter.check_admission(OTHER, "10.0.0.1").allowed

    def test_address_checked_before_ip(self, limiter):
        limiter.record_request(ADDRESS)
        decision = limiter.check_admission(ADDRESS, "10.0.0.9")
        assert decision.reason.startswith("Address")


class TestRestore:
    """Re-seeding windows from earlier deliveries."""

    def test_restored_delivery_blocks_address_and_ip(self, limiter, clock):
        restored = limiter.restore([
            (ADDRESS, "10.0.0.1", clock.now - 60),
            (OTHER, "10.0.0.1", clock.now - 30),
        ])

        assert restored == 2
        decision = limiter.try_acquire(ADDRESS)
        assert not decision
        assert decision.retry_after_seconds == pytest.approx(DEFAULT_WINDOW_SECONDS - 60)
        assert not limiter.try_acquire("0x" + "44" * 20, "10.0.0.1")

    def test_expired_deliveries_are_skipped(self, limiter, clock):
        restored = limiter.restore([(ADDRESS, None, clock.now - DEFAULT_WINDOW_SECONDS - 1)])

        assert restored == 0
        assert limiter.recorded_count(ADDRESS) == 0
        assert limiter.try_acquire(ADDRESS)
