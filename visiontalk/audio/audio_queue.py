import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from core.errors import AudioLaneClosed
from core.events import EventRecorder
from core.state import SessionRegistry

T = TypeVar("T")

AudioOperation = Callable[[], Awaitable[T]]


class AudioLane:
    """FIFO of pending audio operations for one user, drained by one worker task."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker: Optional[asyncio.Task] = None
        self.running = False  # True while an operation is executing

    @property
    def pending(self) -> int:
        return self.queue.qsize() + (1 if self.running else 0)


class AudioQueue:
    """Serializes every audio operation of a user: prompts, chimes, results, apologies.

    Each user gets an `AudioLane` (stored on their SessionState) whose worker
    runs operations one at a time in submission order. After every operation,
    successful or not, the worker waits `settle_delay` seconds so the device
    does not clip the start of the next sound. A failing operation only fails
    its own caller; the lane moves on to the next entry.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        settle_delay: float = 0.1,
        operation_timeout: Optional[float] = 30.0,
        recorder: Optional[EventRecorder] = None,
    ):
        self.registry = registry
        self.settle_delay = settle_delay
        self.operation_timeout = operation_timeout
        self.recorder = recorder

    def _lane(self, user_id: str) -> AudioLane:
        state = self.registry.ensure(user_id)
        lane = state.audio_lane
        if lane is None:
            lane = AudioLane(user_id)
            state.audio_lane = lane
        if lane.worker is None or lane.worker.done():
            lane.worker = asyncio.create_task(self._drain(lane), name=f"audio-lane-{user_id}")
        return lane

    def submit(self, user_id: str, operation: AudioOperation) -> asyncio.Future:
        """Queue an operation without waiting for it.

        The operation is placed in the lane before this returns, so call order
        is execution order. Must be called from within the event loop.
        """
        lane = self._lane(user_id)
        future = asyncio.get_running_loop().create_future()
        lane.queue.put_nowait((operation, future))
        return future

    async def enqueue(self, user_id: str, operation: AudioOperation):
        """Queue an operation and return its result (or raise its error)."""
        return await self.submit(user_id, operation)

    async def _drain(self, lane: AudioLane) -> None:
        while True:
            operation, future = await lane.queue.get()
            try:
                if future.cancelled():
                    continue
                lane.running = True
                try:
                    if self.operation_timeout:
                        result = await asyncio.wait_for(operation(), timeout=self.operation_timeout)
                    else:
                        result = await operation()
                except asyncio.CancelledError:
                    # Lane closed mid-operation: the caller gets a failure, not our cancellation
                    if not future.done():
                        future.set_exception(AudioLaneClosed(f"audio lane for {lane.user_id} closed"))
                    raise
                except Exception as e:
                    if isinstance(e, asyncio.TimeoutError):
                        logger.error("[AUDIO] Operation for {} timed out after {}s",
                                     lane.user_id, self.operation_timeout)
                        if self.recorder:
                            self.recorder.record(
                                "audio_queue_timeout",
                                {"user_id": lane.user_id, "timeout_s": self.operation_timeout},
                                error="audio operation timed out",
                            )
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    lane.running = False

                await asyncio.sleep(self.settle_delay)
            finally:
                lane.queue.task_done()

    def pending(self, user_id: str) -> int:
        state = self.registry.get(user_id)
        if state is None or state.audio_lane is None:
            return 0
        return state.audio_lane.pending

    async def close_lane(self, user_id: str) -> None:
        """Stop the user's worker and fail whatever is still queued with AudioLaneClosed."""
        state = self.registry.get(user_id)
        if state is None or state.audio_lane is None:
            return
        lane: AudioLane = state.audio_lane
        state.audio_lane = None

        while not lane.queue.empty():
            _, future = lane.queue.get_nowait()
            lane.queue.task_done()
            if not future.done():
                future.set_exception(AudioLaneClosed(f"audio lane for {user_id} closed"))

        if lane.worker is not None and not lane.worker.done():
            lane.worker.cancel()
            try:
                await lane.worker
            except asyncio.CancelledError:
                pass
        logger.debug("[AUDIO] Lane closed for {}", user_id)

    async def close(self) -> None:
        for user_id in self.registry.user_ids():
            await self.close_lane(user_id)
