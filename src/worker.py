import threading
from typing import Callable, Optional

from logger import get_logger
from services import SlotWalker
from sync_status import SyncStatus

logger = get_logger(__name__)


class IngestionWorker:
    def __init__(self, walker_factory: Callable[[threading.Event], SlotWalker], status: SyncStatus):
        """
        walker_factory receives the stop event the walker must honour.
        """
        self._walker_factory = walker_factory
        self.status = status
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.walker: Optional[SlotWalker] = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop.clear()
        self.walker = self._walker_factory(self._stop)
        self._thread = threading.Thread(target=self._run, name="slot-walker", daemon=True)
        self._thread.start()
        logger.info("ingestion_worker_started")

    def _run(self) -> None:
        try:
            self.walker.run()
        except Exception as e:
            # Last resort for the thread; the API keeps serving reads.
            logger.exception("ingestion_worker_crashed")
            self.status.record_fatal(self.walker.cursor, e)
            self.status.mark_stopped()

    def stop(self, timeout: Optional[float] = 30.0) -> bool:
        """
        Signal the walker and wait for it. Returns False if it is still running.
        The in-flight slot either commits fully or not at all.
        """
        self._stop.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        stopped = not self._thread.is_alive()
        if stopped:
            logger.info("ingestion_worker_stopped")
        else:
            logger.warning("ingestion_worker_stop_timeout", timeout=timeout)
        return stopped
