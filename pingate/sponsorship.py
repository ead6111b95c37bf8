"""
Sponsorship auction scheduler.

Paid bids for a location form a queue of non-overlapping windows. A bid that
settles while a window is still open is deferred to the end of the last
scheduled window; otherwise it activates immediately. The read of the
schedule and the write of ``activation_at`` run under a per-location lock so
two concurrent settlements cannot book the same slot.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from redis.exceptions import LockError, RedisError
from sqlalchemy.orm import Session

from pingate.errors import ServiceUnavailable, ValidationError
from pingate.models import Location, LocationSponsorship, utc_now

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 50
SCHEDULED_STATUSES = ("paid",)


class LocationLocks:
    """
    Per-location mutex: a Redis lock when a client is given, else a process-local lock.

    Local locks are created on first use and never evicted, so the table holds
    at most one ``threading.Lock`` per location.
    """

    def __init__(self, redis_client=None, timeout_s: int = 10):
        self._redis = redis_client
        self.timeout_s = timeout_s
        self._local: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _local_lock(self, location_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._local.setdefault(location_id, threading.Lock())

    @contextmanager
    def hold(self, location_id: str) -> Iterator[None]:
        if self._redis is None:
            with self._local_lock(location_id):
                yield
            return

        lock = self._redis.lock(
            f"pingate:sponsor-lock:{location_id}", timeout=self.timeout_s, blocking_timeout=self.timeout_s
        )
        try:
            acquired = lock.acquire()
        except RedisError as e:
            raise ServiceUnavailable("Sponsorship scheduler unavailable") from e
        if not acquired:
            raise ServiceUnavailable("Sponsorship scheduler busy, please retry")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning(f"Sponsor lock for {location_id} expired before release")


def _ms(delta: timedelta) -> int:
    return max(0, int(delta.total_seconds() * 1000))


def _ceil_hours(ms: int) -> int:
    return -(-ms // 3_600_000)


class SponsorshipScheduler:
    def __init__(self, base_price_sats: int = 1000, window_hours: int = 24, locks: Optional[LocationLocks] = None):
        self.base_price_sats = base_price_sats
        self.window = timedelta(hours=window_hours)
        self.locks = locks or LocationLocks()

    def _scheduled(self, session: Session, location_id: str):
        return session.query(LocationSponsorship).filter(
            LocationSponsorship.location_id == location_id,
            LocationSponsorship.status.in_(SCHEDULED_STATUSES),
            LocationSponsorship.activation_at.isnot(None),
        )

    def current_sponsor(self, session: Session, location_id: str, now: Optional[datetime] = None):
        """Most recently activated sponsorship with ``activation_at <= now``."""
        now = now or utc_now()
        return (
            self._scheduled(session, location_id)
            .filter(LocationSponsorship.activation_at <= now)
            .order_by(LocationSponsorship.activation_at.desc(), LocationSponsorship.id.desc())
            .first()
        )

    def active_sponsor(self, session: Session, location_id: str, now: Optional[datetime] = None):
        """The current sponsor, provided its guaranteed window is still open."""
        now = now or utc_now()
        current = self.current_sponsor(session, location_id, now)
        if current is not None and current.activation_at + self.window > now:
            return current
        return None

    def minimum_bid(self, session: Session, location_id: str, now: Optional[datetime] = None) -> int:
        active = self.active_sponsor(session, location_id, now)
        return active.amount_sats + 1 if active is not None else self.base_price_sats

    def validate_bid(
        self, session: Session, location_id: str, label, amount_sats, now: Optional[datetime] = None
    ) -> str:
        """
        Check a bid before an invoice is created for it.

        Returns:
            The stripped sponsor label

        Raises:
            ValidationError: label empty or too long, or amount below the minimum bid
        """
        if not isinstance(label, str) or not label.strip():
            raise ValidationError("Sponsor label is required")
        label = label.strip()
        if len(label) > MAX_LABEL_LENGTH:
            raise ValidationError(f"Sponsor label must be {MAX_LABEL_LENGTH} characters or less")

        minimum = self.minimum_bid(session, location_id, now)
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats < minimum:
            raise ValidationError(f"Bid must be at least {minimum} sats", details={"minimum_bid_sats": minimum})
        return label

    def compute_activation(self, session: Session, location_id: str, now: datetime) -> datetime:
        """
        Start of the next free window. Caller must hold the location lock.

        Immediate if nothing is scheduled or the last scheduled window has
        elapsed; otherwise the end of the last scheduled window.
        """
        latest = (
            self._scheduled(session, location_id)
            .order_by(LocationSponsorship.activation_at.desc(), LocationSponsorship.id.desc())
            .first()
        )
        if latest is None or latest.activation_at + self.window <= now:
            return now
        return latest.activation_at + self.window

    @contextmanager
    def serialized(self, session: Session, location_id: str) -> Iterator[None]:
        """Hold the location lock and, where supported, a row lock on the location."""
        with self.locks.hold(location_id):
            session.query(Location).filter(Location.id == location_id).with_for_update().first()
            yield

    def list_queue(self, session: Session, location_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current and upcoming sponsorships for a location, soonest first."""
        now = now or utc_now()
        entries = (
            self._scheduled(session, location_id)
            .filter(LocationSponsorship.activation_at > now - self.window)
            .order_by(LocationSponsorship.activation_at.asc(), LocationSponsorship.id.asc())
            .all()
        )

        queue: List[Dict[str, Any]] = []
        for position, entry in enumerate(entries, start=1):
            expires_at = entry.activation_at + self.window
            is_active = entry.activation_at <= now
            remaining_ms = _ms(expires_at - now) if is_active else 0
            starts_in_ms = 0 if is_active else _ms(entry.activation_at - now)
            queue.append(
                {
                    "id": entry.id,
                    "sponsor_label": entry.sponsor_label,
                    "amount_sats": entry.amount_sats,
                    "status": entry.status,
                    "is_active": is_active,
                    "activation_at": entry.activation_at.isoformat(),
                    "expires_at": expires_at.isoformat(),
                    "remaining_ms": remaining_ms,
                    "remaining_hours": _ceil_hours(remaining_ms),
                    "starts_in_ms": starts_in_ms,
                    "starts_in_hours": _ceil_hours(starts_in_ms),
                    "position": position,
                }
            )

        current = next((e for e in queue if e["is_active"]), None)
        return {
            "current": current,
            "pending": [e for e in queue if not e["is_active"]],
            "total_in_queue": len(queue),
            "minimum_bid_sats": current["amount_sats"] + 1 if current else self.base_price_sats,
        }
