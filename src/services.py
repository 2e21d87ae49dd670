import threading
from enum import Enum
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from db import commit_slot, get_last_sync_state, initialize_sync_state
from decoder import decode_block
from logger import get_logger
from retry import RetryAborted, RetryExhausted, RetryPolicy
from rpc import EpochSchedule, PermanentRpcError, SlotSkipped, SolanaRpcClient
from sync_status import SyncStatus

logger = get_logger(__name__)


class StepOutcome(str, Enum):
    COMMITTED = "committed"
    SKIPPED = "skipped"
    STALLED = "stalled"
    IDLE = "idle"


class SlotWalker:
    """
    Walks slots one at a time, committing each before moving to the next.

    The cursor only advances after a slot (or a network-reported skip) has
    been committed. A fetch that exhausts its retries, or a failed commit,
    leaves the cursor where it is and the same slot is tried again after
    `cooldown` seconds.
    """

    def __init__(
        self,
        engine: Engine,
        rpc,
        retry_policy: RetryPolicy,
        status: SyncStatus,
        cooldown: float = 5.0,
        poll_interval: float = 1.0,
        stop_event: Optional[threading.Event] = None,
    ):
        self._engine = engine
        self._rpc = rpc
        self._retry = retry_policy
        self.status = status
        self._cooldown = cooldown
        self._poll_interval = poll_interval
        self._stop = stop_event or threading.Event()
        self._schedule: Optional[EpochSchedule] = None
        self._tip: Optional[int] = None
        self.cursor: Optional[int] = None

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def stop(self) -> None:
        self._stop.set()

    def resume_point(self) -> int:
        """
        Next slot to ingest. On first run the sync state is created at the
        start of the current epoch.
        """
        with Session(self._engine) as session:
            state = get_last_sync_state(session)
            if state is None:
                start_slot = self._retry.call(self._rpc.get_current_epoch_start_slot)
                state = initialize_sync_state(session, start_slot, self._epoch_for(start_slot))
                logger.info("walker_cold_start", start_slot=start_slot, epoch=state.epoch)
                self.status.mark_running(epoch=state.epoch)
            else:
                logger.info("walker_resume", last_synced_slot=state.last_synced_slot, epoch=state.epoch)
                self.status.mark_running(state.last_synced_slot, state.epoch)
            return state.last_synced_slot + 1

    def _epoch_for(self, slot: int) -> int:
        if self._schedule is None:
            self._schedule = self._retry.call(self._rpc.get_epoch_schedule)
        return self._schedule.epoch_for_slot(slot)

    def _beyond_tip(self, slot: int) -> bool:
        if self._tip is not None and slot <= self._tip:
            return False
        self._tip = self._retry.call(self._rpc.get_slot)
        return slot > self._tip

    def step(self) -> StepOutcome:
        """
        Process the slot under the cursor. PermanentRpcError and RetryAborted propagate.
        """
        slot = self.cursor
        try:
            if self.cursor is None:
                self.cursor = slot = self.resume_point()
            if self._beyond_tip(slot):
                return StepOutcome.IDLE
            result = self._retry.call(self._rpc.get_block, slot)
            epoch = self._epoch_for(slot)
        except RetryExhausted as e:
            logger.error("block_fetch_failed", slot=slot, attempts=e.attempts, error=str(e.last_error))
            self.status.record_error(slot, e.last_error)
            return StepOutcome.STALLED
        except SQLAlchemyError as e:
            logger.exception("sync_state_read_failed", slot=slot)
            self.status.record_error(slot, e)
            return StepOutcome.STALLED

        if isinstance(result, SlotSkipped):
            transactions, links = [], []
        else:
            decoded = decode_block(result)
            transactions, links = decoded.transactions, decoded.links

        try:
            with Session(self._engine) as session:
                commit_slot(session, slot, transactions, links, epoch)
        except SQLAlchemyError as e:
            logger.exception("slot_commit_failed", slot=slot)
            self.status.record_error(slot, e)
            return StepOutcome.STALLED

        self.cursor = slot + 1
        self.status.record_commit(slot, epoch)
        if isinstance(result, SlotSkipped):
            logger.info("slot_skipped", slot=slot, epoch=epoch)
            return StepOutcome.SKIPPED
        logger.info("slot_committed", slot=slot, epoch=epoch, transactions=len(transactions), links=len(links))
        return StepOutcome.COMMITTED

    def run(self) -> None:
        """
        Loop until the stop event is set or a permanent RPC error occurs.
        """
        logger.info("walker_started")
        try:
            while not self._stop.is_set():
                try:
                    outcome = self.step()
                except PermanentRpcError as e:
                    logger.error("walker_fatal_error", slot=self.cursor, error=str(e))
                    self.status.record_fatal(self.cursor, e)
                    return
                except RetryAborted:
                    break

                if outcome is StepOutcome.STALLED:
                    self._stop.wait(self._cooldown)
                elif outcome is StepOutcome.IDLE:
                    self._stop.wait(self._poll_interval)
        finally:
            self._rpc.close()
            self.status.mark_stopped()
            logger.info("walker_stopped", cursor=self.cursor)


def build_walker(settings, engine: Engine, status: SyncStatus, stop_event: threading.Event) -> SlotWalker:
    rpc = SolanaRpcClient(settings.rpc_url, timeout=settings.rpc_timeout)
    return SlotWalker(
        engine,
        rpc,
        RetryPolicy.from_settings(settings, stop_event=stop_event),
        status,
        cooldown=settings.cooldown_seconds,
        poll_interval=settings.poll_interval,
        stop_event=stop_event,
    )
