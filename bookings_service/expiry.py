import logging
import threading
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from common.cache import delete_prefix

from .lifecycle import BookingLifecycleEngine

logger = logging.getLogger(__name__)

AVAILABILITY_CACHE_PREFIX = "rooms:availability:"


def invalidate_availability_cache() -> int:
    """
    Drop every cached availability answer.

    Expiry frees periods on rooms the sweep does not report individually,
    so the whole prefix goes.
    """
    return delete_prefix(AVAILABILITY_CACHE_PREFIX)


class ExpirySweeper:
    """
    Background thread that periodically expires stale pending bookings.

    Each tick calls :meth:`BookingLifecycleEngine.expire_old_bookings`.
    A failed sweep is logged and retried on the next tick.
    """

    def __init__(self, engine: BookingLifecycleEngine, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.engine = engine
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        try:
            count = self.engine.expire_old_bookings()
        except SQLAlchemyError:
            logger.exception("Booking expiry sweep failed")
            return 0
        if count:
            invalidate_availability_cache()
        logger.debug("Expiry sweep finished, %d bookings expired", count)
        return count

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                # keep the thread alive; the next tick tries again
                logger.exception("Unexpected error in booking expiry sweeper")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="booking-expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("Booking expiry sweeper started (every %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Booking expiry sweeper stopped")
