"""Per-client-IP token buckets with idle eviction.

One ``TokenBucket`` per client IP, created lazily under the map lock and
evicted by a background sweeper once the IP has been idle for longer than
the sweep interval.
"""

from __future__ import annotations

import ipaddress
import threading
import time
from typing import Callable, Dict, Mapping, Optional

from authgate.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class TokenBucket:
    """Continuously refilled bucket: ``rate`` tokens per second up to ``burst``."""

    def __init__(self, rate: float, burst: int, clock: Clock = time.monotonic) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    def allow(self, cost: int = 1) -> bool:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= cost:
                self._tokens -= cost
                return True
            return False


class _Entry:
    __slots__ = ("bucket", "last_seen")

    def __init__(self, bucket: TokenBucket, last_seen: float) -> None:
        self.bucket = bucket
        self.last_seen = last_seen


class IPRateLimiter:
    def __init__(
        self,
        rps: float,
        burst: int,
        *,
        idle_seconds: float = 3600.0,
        clock: Clock = time.monotonic,
    ) -> None:
        if idle_seconds <= 0:
            raise ValueError("idle_seconds must be positive")
        self.rps = float(rps)
        self.burst = int(burst)
        self.idle_seconds = float(idle_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_limiter(self, ip: str) -> TokenBucket:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(ip)
            if entry is None:
                entry = _Entry(TokenBucket(self.rps, self.burst, self._clock), now)
                self._entries[ip] = entry
            else:
                entry.last_seen = now
            return entry.bucket

    def allow(self, ip: str) -> bool:
        # Bucket math runs outside the map lock
        return self.get_limiter(ip).allow()

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries idle for longer than ``idle_seconds``; returns how many."""
        cutoff = (self._clock() if now is None else now) - self.idle_seconds
        with self._lock:
            stale = [ip for ip, entry in self._entries.items() if entry.last_seen < cutoff]
            for ip in stale:
                del self._entries[ip]
        if stale:
            logger.debug("rate_limit_entries_evicted", count=len(stale))
        return len(stale)

    def _run(self) -> None:
        while not self._stop_event.wait(self.idle_seconds):
            self.sweep()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="rate-limit-sweeper", daemon=True
        )
        self._thread.start()
        logger.info(
            "rate_limit_sweeper_started",
            interval_seconds=self.idle_seconds,
            rps=self.rps,
            burst=self.burst,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
            logger.info("rate_limit_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def _parse_ip(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def strip_port(addr: str) -> str:
    """Remove a trailing port from ``host:port`` or ``[v6]:port``."""
    addr = (addr or "").strip()
    if addr.startswith("["):
        end = addr.find("]")
        if end != -1:
            return addr[1:end]
        return addr
    # Bare IPv6 literals contain several colons and no port
    if addr.count(":") == 1:
        return addr.rsplit(":", 1)[0]
    return addr


def resolve_client_ip(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """Client IP from X-Forwarded-For, then X-Real-IP, then the peer address.

    Header values that are not IP literals are skipped.
    """
    lowered: Dict[str, str] = {}
    for key, value in headers.items():
        # First line wins when a header is repeated
        lowered.setdefault(key.lower(), value)
    headers = lowered
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        ip = _parse_ip(forwarded.split(",")[0])
        if ip:
            return ip
    ip = _parse_ip(headers.get("x-real-ip"))
    if ip:
        return ip
    return strip_port(remote_addr or "")


__all__ = ["IPRateLimiter", "TokenBucket", "resolve_client_ip", "strip_port"]
