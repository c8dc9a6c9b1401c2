"""Serialized access to the shared, non-thread-safe engine instances.

A single bounded FIFO queue feeds one worker task per loaded ModelHandle.
Each worker owns a one-thread executor, so inference runs off the event loop
and a handle never sees two concurrent ``infer`` calls. With one handle this
is plain single-instance serialization; with N handles an idle instance
always picks up the oldest waiting request.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from whisper_api.engine import ModelHandle
from whisper_api.engine.protocol import InferenceParams, RawSegment
from whisper_api.errors import InferenceFailure, Overloaded

logger = logging.getLogger("whisper_api.gate")


@dataclass
class InferenceRequest:
    """A single transcription request waiting for an engine instance."""

    samples: np.ndarray
    params: InferenceParams
    future: asyncio.Future[list[RawSegment]]
    enqueued_at: float = field(default_factory=time.perf_counter)


class InferenceGate:
    """FIFO work queue in front of a fixed pool of engine instances.

    The queue and the admission counter are the only shared mutable state in
    the request path. Callers claim a slot with ``reserve`` before decoding,
    so excess requests are refused before any work is spent on them. The
    queue itself is bounded too: when ``max_queue`` requests are already
    waiting, ``transcribe`` raises Overloaded at once instead of blocking.
    """

    def __init__(self, handles: list[ModelHandle], max_queue: int = 8):
        """Initialize the gate.

        Args:
            handles: Loaded engine instances, one worker per handle.
            max_queue: Maximum number of requests waiting for a free instance.
        """
        if not handles:
            raise ValueError("InferenceGate needs at least one model handle")
        if max_queue < 1:
            raise ValueError("max_queue must be >= 1")
        self._handles = list(handles)
        self._max_queue = max_queue
        self._queue: asyncio.Queue[InferenceRequest] | None = None
        self._workers: list[asyncio.Task] = []
        self._executors: list[ThreadPoolExecutor] = []
        self._busy = 0
        self._admitted = 0
        self._running = False

    async def start(self) -> None:
        """Start one worker per engine instance."""
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self._max_queue)
        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"inference-{handle.index}")
            for handle in self._handles
        ]
        self._workers = [
            asyncio.create_task(self._worker(handle, executor), name=f"inference-worker-{handle.index}")
            for handle, executor in zip(self._handles, self._executors)
        ]
        self._running = True
        logger.info(
            "Inference gate started with %d instance(s), queue limit %d",
            len(self._handles),
            self._max_queue,
        )

    async def stop(self) -> None:
        """Stop workers and fail any request still waiting in the queue."""
        if not self._running:
            return
        self._running = False
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

        while self._queue is not None and not self._queue.empty():
            request = self._queue.get_nowait()
            if not request.future.done():
                request.future.set_exception(Overloaded("Inference gate stopped"))

        # An in-flight infer call cannot be interrupted; let it finish in the background
        for executor in self._executors:
            executor.shutdown(wait=False)
        self._executors = []
        logger.info("Inference gate stopped")

    async def transcribe(self, samples: np.ndarray, params: InferenceParams) -> list[RawSegment]:
        """Run inference on one sample buffer once an instance is free.

        Args:
            samples: Mono float32 audio at the engine sample rate.
            params: Decoding parameters.

        Returns:
            Raw engine segments for exactly this input.

        Raises:
            Overloaded: The queue is full or the gate is not running.
            InferenceFailure: The engine raised.
        """
        if not self._running or self._queue is None:
            raise Overloaded("Inference gate is not running")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[list[RawSegment]] = loop.create_future()
        try:
            self._queue.put_nowait(InferenceRequest(samples, params, future))
        except asyncio.QueueFull:
            logger.warning("Rejecting request: %d requests already queued", self._queue.qsize())
            raise Overloaded(f"Inference queue full ({self._max_queue} waiting)") from None
        return await future

    def reserve(self) -> None:
        """Claim an admission slot before any per-request work is done.

        At most ``pool_size + max_queue`` requests hold a slot. Every successful
        call must be paired with one ``release``.

        Raises:
            Overloaded: The gate is not running or every slot is taken.
        """
        if not self._running:
            raise Overloaded("Inference gate is not running")
        if self._admitted >= self.capacity:
            logger.warning("Rejecting request: %d requests already admitted", self._admitted)
            raise Overloaded(f"Server at capacity ({self.capacity} requests admitted)")
        self._admitted += 1

    def release(self) -> None:
        """Return a slot claimed by ``reserve``."""
        if self._admitted > 0:
            self._admitted -= 1

    async def _worker(self, handle: ModelHandle, executor: ThreadPoolExecutor) -> None:
        """Take requests in arrival order and run them on ``handle``."""
        assert self._queue is not None
        loop = asyncio.get_running_loop()

        while True:
            request = await self._queue.get()
            try:
                if request.future.done():
                    # Caller went away before its turn came
                    logger.debug("Skipping cancelled request on instance %d", handle.index)
                    continue
                await self._run(handle, executor, request, loop)
            finally:
                self._queue.task_done()

    async def _run(
        self,
        handle: ModelHandle,
        executor: ThreadPoolExecutor,
        request: InferenceRequest,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        waited_ms = (time.perf_counter() - request.enqueued_at) * 1000
        self._busy += 1
        try:
            segments = await loop.run_in_executor(
                executor, handle.infer, request.samples, request.params
            )
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.set_exception(Overloaded("Inference gate stopped"))
            raise
        except Exception as e:
            logger.exception("Inference failed on instance %d", handle.index)
            failure = InferenceFailure(f"Engine error on instance {handle.index}: {e!r}")
            failure.__cause__ = e
            if not request.future.done():
                request.future.set_exception(failure)
            return
        finally:
            self._busy -= 1

        if request.future.done():
            # Started inference is not interruptible; the result is dropped
            logger.info("Discarding result for abandoned request (instance %d)", handle.index)
            return
        logger.debug(
            "Instance %d finished request after %.0fms in queue", handle.index, waited_ms
        )
        request.future.set_result(segments)

    @property
    def queue_size(self) -> int:
        """Current number of requests waiting for an instance."""
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def busy(self) -> int:
        """Number of instances currently running inference."""
        return self._busy

    @property
    def pool_size(self) -> int:
        return len(self._handles)

    @property
    def max_queue(self) -> int:
        return self._max_queue

    @property
    def capacity(self) -> int:
        """Requests that may be admitted at once: running plus waiting."""
        return len(self._handles) + self._max_queue

    @property
    def admitted(self) -> int:
        """Requests currently holding an admission slot."""
        return self._admitted

    @property
    def is_saturated(self) -> bool:
        """Whether a new request would be rejected right now."""
        if self._admitted >= self.capacity:
            return True
        return self._queue is not None and self._queue.full()

    @property
    def is_running(self) -> bool:
        """Whether the workers are running."""
        return self._running
