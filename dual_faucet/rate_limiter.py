"""
Rate Limiter

Sliding-window admission control per normalized address (and optionally per
client IP). Windows live in process memory; restore() re-seeds them from the
distribution history so a restart (or a one-shot CLI run) keeps earlier
deliveries inside their window.

Admission and recording are split around the chain write. try_acquire()
checks the window and reserves an in-flight slot in one step, commit()
records the request once the distribution succeeded, release() gives the
slot back when it failed. In-flight slots count against the quota, so two
concurrent requests for the same address can never both be admitted.
"""

import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger


DEFAULT_WINDOW_SECONDS = 12 * 60 * 60


@dataclass
class AdmissionDecision:
    """Outcome of an admission check"""
    allowed: bool
    reason: Optional[str] = None
    retry_after_seconds: Optional[float] = None

    def __bool__(self):
        return self.allowed


class SlidingWindow:
    """Timestamps and in-flight reservations for one family of keys"""

    def __init__(self, name: str, window_seconds: float, quota: int):
        self.name = name
        self.window_seconds = window_seconds
        self.quota = quota
        self.history: Dict[str, List[float]] = defaultdict(list)
        self.in_flight: Dict[str, int] = defaultdict(int)

    def prune(self, key: str, now: float) -> List[float]:
        cutoff = now - self.window_seconds
        recent = [ts for ts in self.history.get(key, []) if ts > cutoff]
        if recent:
            self.history[key] = recent
        else:
            self.history.pop(key, None)
        return recent

    def check(self, key: str, now: float) -> AdmissionDecision:
        recent = self.prune(key, now)
        used = len(recent) + self.in_flight.get(key, 0)

        if used >= self.quota:
            retry_after = None
            if recent:
                retry_after = max(0.0, recent[0] + self.window_seconds - now)
            hours = self.window_seconds / 3600
            return AdmissionDecision(
                allowed=False,
                reason=f"{self.name} {key} has reached the limit ({self.quota} request(s) per {hours:g}h)",
                retry_after_seconds=retry_after
            )

        return AdmissionDecision(allowed=True)

    def reserve(self, key: str):
        self.in_flight[key] += 1

    def unreserve(self, key: str):
        if self.in_flight.get(key, 0) <= 1:
            self.in_flight.pop(key, None)
        else:
            self.in_flight[key] -= 1

    def record(self, key: str, now: float):
        self.history[key].append(now)


class RateLimiter:
    """
    Per-address sliding window limiter

    Features:
    - Fixed window duration and quota per address
    - Optional secondary per-IP quota
    - Lazy pruning on every check
    - Atomic check-and-reserve for concurrent requests
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        address_quota: int = 1,
        ip_quota: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize rate limiter

        Args:
            window_seconds: Trailing window length
            address_quota: Requests allowed per address per window
            ip_quota: Requests allowed per client IP per window (None disables)
            clock: Time source, seconds
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if address_quota < 1:
            raise ValueError("address_quota must be at least 1")

        self.clock = clock
        self._lock = threading.Lock()
        self._addresses = SlidingWindow("Address", window_seconds, address_quota)
        self._ips = SlidingWindow("IP", window_seconds, ip_quota) if ip_quota else None

        logger.info(
            f"Rate limiter initialized: {address_quota}/address"
            f"{f', {ip_quota}/ip' if ip_quota else ''} per {window_seconds / 3600:g}h"
        )

    @property
    def window_seconds(self) -> float:
        return self._addresses.window_seconds

    def check_admission(self, normalized_address: str, client_ip: Optional[str] = None) -> AdmissionDecision:
        """
        Check whether a request would be admitted (no reservation)

        Args:
            normalized_address: Canonical address key
            client_ip: Optional client IP

        Returns:
            AdmissionDecision
        """
        with self._lock:
            return self._check(normalized_address, client_ip, self.clock())

    def record_request(self, normalized_address: str, client_ip: Optional[str] = None):
        """Record a completed request at the current time"""
        with self._lock:
            now = self.clock()
            self._addresses.record(normalized_address, now)
            if self._ips and client_ip:
                self._ips.record(client_ip, now)

    def try_acquire(self, normalized_address: str, client_ip: Optional[str] = None) -> AdmissionDecision:
        """
        Check admission and reserve an in-flight slot atomically

        Every allowed decision must be followed by exactly one commit() or
        release() with the same arguments.
        """
        with self._lock:
            decision = self._check(normalized_address, client_ip, self.clock())
            if decision.allowed:
                self._addresses.reserve(normalized_address)
                if self._ips and client_ip:
                    self._ips.reserve(client_ip)
            return decision

    def commit(self, normalized_address: str, client_ip: Optional[str] = None):
        """Turn a reservation into a recorded request"""
        with self._lock:
            now = self.clock()
            self._addresses.unreserve(normalized_address)
            self._addresses.record(normalized_address, now)
            if self._ips and client_ip:
                self._ips.unreserve(client_ip)
                self._ips.record(client_ip, now)

        logger.debug(f"Rate limiter recorded request for {normalized_address}")

    def release(self, normalized_address: str, client_ip: Optional[str] = None):
        """Drop a reservation without recording it"""
        with self._lock:
            self._addresses.unreserve(normalized_address)
            if self._ips and client_ip:
                self._ips.unreserve(client_ip)

    def restore(self, deliveries: Iterable[Tuple[str, Optional[str], float]]) -> int:
        """
        Re-record earlier deliveries, e.g. from the distribution history

        Args:
            deliveries: (normalized address, client IP or None, unix timestamp)

        Returns:
            Number of deliveries still inside the window
        """
        restored = 0
        with self._lock:
            cutoff = self.clock() - self.window_seconds
            for normalized_address, client_ip, timestamp in deliveries:
                if timestamp <= cutoff:
                    continue
                self._addresses.record(normalized_address, timestamp)
                if self._ips and client_ip:
                    self._ips.record(client_ip, timestamp)
                restored += 1

        if restored:
            logger.info(f"Rate limiter restored {restored} delivery(ies) inside the window")
        return restored

    def recorded_count(self, normalized_address: str) -> int:
        """Requests recorded for an address inside the current window"""
        with self._lock:
            return len(self._addresses.prune(normalized_address, self.clock()))

    def _check(self, normalized_address: str, client_ip: Optional[str], now: float) -> AdmissionDecision:
        decision = self._addresses.check(normalized_address, now)
        if not decision.allowed:
            return decision

        if self._ips and client_ip:
            return self._ips.check(client_ip, now)

        return decision
