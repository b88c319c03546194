import logging
import threading

from ..errors import LendingError
from .lending import LendingService

logger = logging.getLogger(__name__)


class ReservationSweeper:
    """Background thread expiring reservations and reconciling availability."""

    def __init__(self, service: LendingService, interval: float):
        self._service = service
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> tuple[int, list[str]]:
        expired = self._service.expire_sweep()
        healed = self._service.availability.reconcile_all()
        return expired, healed

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except LendingError as exc:
                logger.error("Sweep failed (%s): %s", exc.kind, exc.reason)
            except Exception:
                logger.exception("Sweep crashed; retrying in %ss", self.interval)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reservation-sweeper", daemon=True)
        self._thread.start()
        logger.info("Reservation sweeper started (every %ss)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
