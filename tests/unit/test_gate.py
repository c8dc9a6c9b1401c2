"""Unit tests for the fake engine and the inference gate."""

import asyncio
import threading
import time
from pathlib import Path

import numpy as np
import pytest

from whisper_api.engine import ModelHandle
from whisper_api.engine.fake import FakeEngine
from whisper_api.engine.protocol import InferenceParams, RawSegment
from whisper_api.errors import InferenceFailure, Overloaded
from whisper_api.gate import InferenceGate

PARAMS = InferenceParams()


def handle_for(engine, index: int = 0) -> ModelHandle:
    return ModelHandle(engine=engine, model_path=Path("models/fake"), index=index)


def tone(seed: int, seconds: float = 1.0) -> np.ndarray:
    """Distinguishable synthetic audio: seeded noise."""
    rng = np.random.default_rng(seed)
    return rng.uniform(-0.5, 0.5, int(16000 * seconds)).astype(np.float32)


class RecordingEngine:
    """Records the first sample of each input in call order."""

    def __init__(self, latency_ms: float = 5.0):
        self.order: list[float] = []
        self._latency_ms = latency_ms

    def infer(self, samples, params):
        time.sleep(self._latency_ms / 1000)
        self.order.append(float(samples[0]))
        return [RawSegment(0, 10, f"{samples[0]:.0f}")]

    def warmup(self):
        pass

    def close(self):
        pass


class ConcurrencyProbe:
    """Tracks how many infer calls overlap, per instance and across the pool."""

    shared_lock = threading.Lock()
    active_total = 0
    max_total = 0

    def __init__(self, latency_ms: float = 50.0):
        self._latency_ms = latency_ms
        self.active = 0
        self.max_active = 0
        self.calls = 0

    def infer(self, samples, params):
        cls = ConcurrencyProbe
        with cls.shared_lock:
            self.active += 1
            self.calls += 1
            self.max_active = max(self.max_active, self.active)
            cls.active_total += 1
            cls.max_total = max(cls.max_total, cls.active_total)
        time.sleep(self._latency_ms / 1000)
        with cls.shared_lock:
            self.active -= 1
            cls.active_total -= 1
        return []

    def warmup(self):
        pass

    def close(self):
        pass


class BlockingEngine:
    """Blocks inside infer until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def infer(self, samples, params):
        self.calls += 1
        self.started.set()
        self.release.wait(timeout=5)
        return [RawSegment(0, 1, "done")]

    def warmup(self):
        pass

    def close(self):
        pass


class BrokenEngine:
    def infer(self, samples, params):
        raise RuntimeError("ggml_graph_compute failed at /opt/models/secret.bin")

    def warmup(self):
        pass

    def close(self):
        pass


class TestFakeEngine:
    """Tests for the FakeEngine implementation."""

    def test_silence_yields_no_segments(self):
        engine = FakeEngine()
        assert engine.infer(np.zeros(32000, dtype=np.float32), PARAMS) == []

    def test_one_segment_per_second(self):
        engine = FakeEngine()
        segments = engine.infer(tone(1, seconds=2.5), PARAMS)
        assert [(s.start_ms, s.end_ms) for s in segments] == [(0, 1000), (1000, 2000), (2000, 2500)]
        assert all("[fake:" in s.text for s in segments)

    def test_deterministic_output(self):
        """Same input should produce same output."""
        engine = FakeEngine()
        audio = tone(3)
        assert engine.infer(audio, PARAMS) == engine.infer(audio, PARAMS)

    def test_distinct_inputs_distinct_text(self):
        engine = FakeEngine()
        assert engine.infer(tone(1), PARAMS)[0].text != engine.infer(tone(2), PARAMS)[0].text

    def test_call_count(self):
        engine = FakeEngine()
        assert engine.call_count == 0
        engine.infer(np.zeros(100, dtype=np.float32), PARAMS)
        engine.infer(np.zeros(100, dtype=np.float32), PARAMS)
        assert engine.call_count == 2

    def test_latency_simulation(self):
        engine = FakeEngine(latency_ms=50)
        start = time.time()
        engine.infer(np.zeros(100, dtype=np.float32), PARAMS)
        assert time.time() - start >= 0.05

    def test_closed_engine_raises(self):
        engine = FakeEngine()
        engine.close()
        with pytest.raises(RuntimeError):
            engine.infer(np.zeros(100, dtype=np.float32), PARAMS)


class TestInferenceGate:
    """Tests for the InferenceGate."""

    @pytest.mark.asyncio
    async def test_single_request(self):
        gate = InferenceGate([handle_for(FakeEngine())])
        await gate.start()
        try:
            segments = await gate.transcribe(tone(1), PARAMS)
            assert len(segments) == 1
            assert "[fake:" in segments[0].text
        finally:
            await gate.stop()

    @pytest.mark.asyncio
    async def test_concurrent_results_pair_with_inputs(self):
        """N simultaneous distinct inputs each get their own result back."""
        gate = InferenceGate([handle_for(FakeEngine(latency_ms=5))], max_queue=16)
        reference = FakeEngine()
        audios = [tone(seed, seconds=1 + seed % 3) for seed in range(10)]
        await gate.start()
        try:
            results = await asyncio.gather(*(gate.transcribe(a, PARAMS) for a in audios))
        finally:
            await gate.stop()

        assert len(results) == 10
        for audio, segments in zip(audios, results):
            assert segments == reference.infer(audio, PARAMS)

    @pytest.mark.asyncio
    async def test_pool_results_pair_with_inputs(self):
        handles = [handle_for(FakeEngine(latency_ms=5), i) for i in range(3)]
        gate = InferenceGate(handles, max_queue=16)
        reference = FakeEngine()
        audios = [tone(seed) for seed in range(12)]
        await gate.start()
        try:
            results = await asyncio.gather(*(gate.transcribe(a, PARAMS) for a in audios))
        finally:
            await gate.stop()

        for audio, segments in zip(audios, results):
            assert segments == reference.infer(audio, PARAMS)

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        engine = RecordingEngine()
        gate = InferenceGate([handle_for(engine)], max_queue=16)
        await gate.start()
        try:
            tasks = [
                asyncio.create_task(gate.transcribe(np.full(10, float(i), dtype=np.float32), PARAMS))
                for i in range(8)
            ]
            await asyncio.gather(*tasks)
        finally:
            await gate.stop()

        assert engine.order == [float(i) for i in range(8)]

    @pytest.mark.asyncio
    async def test_single_instance_never_concurrent(self):
        probe = ConcurrencyProbe(latency_ms=20)
        gate = InferenceGate([handle_for(probe)], max_queue=8)
        await gate.start()
        try:
            await asyncio.gather(*(gate.transcribe(tone(i), PARAMS) for i in range(5)))
        finally:
            await gate.stop()

        assert probe.calls == 5
        assert probe.max_active == 1

    @pytest.mark.asyncio
    async def test_pool_bounds_concurrency(self):
        ConcurrencyProbe.active_total = 0
        ConcurrencyProbe.max_total = 0
        probes = [ConcurrencyProbe(latency_ms=50), ConcurrencyProbe(latency_ms=50)]
        gate = InferenceGate([handle_for(p, i) for i, p in enumerate(probes)], max_queue=8)
        await gate.start()
        try:
            await asyncio.gather(*(gate.transcribe(tone(i), PARAMS) for i in range(6)))
        finally:
            await gate.stop()

        assert all(p.max_active == 1 for p in probes)
        assert ConcurrencyProbe.max_total <= 2
        assert sum(p.calls for p in probes) == 6
        assert all(p.calls > 0 for p in probes)

    @pytest.mark.asyncio
    async def test_overload_rejects_excess_immediately(self):
        gate = InferenceGate([handle_for(FakeEngine(latency_ms=200))], max_queue=2)
        await gate.start()
        finished_at: dict[int, float] = {}
        start = time.perf_counter()

        async def submit(i: int):
            try:
                return await gate.transcribe(tone(i), PARAMS)
            finally:
                finished_at[i] = time.perf_counter() - start

        try:
            outcomes = await asyncio.wait_for(
                asyncio.gather(*(submit(i) for i in range(6)), return_exceptions=True),
                timeout=5.0,
            )
        finally:
            await gate.stop()

        rejected = [i for i, o in enumerate(outcomes) if isinstance(o, Overloaded)]
        accepted = [i for i, o in enumerate(outcomes) if isinstance(o, list)]
        assert len(rejected) >= 6 - (1 + 2)
        assert len(accepted) >= 2
        assert len(rejected) + len(accepted) == 6
        assert all(finished_at[i] < 0.15 for i in rejected)

    @pytest.mark.asyncio
    async def test_saturation_flag(self):
        engine = BlockingEngine()
        gate = InferenceGate([handle_for(engine)], max_queue=1)
        await gate.start()
        try:
            first = asyncio.create_task(gate.transcribe(tone(1), PARAMS))
            await asyncio.get_running_loop().run_in_executor(None, engine.started.wait, 5)
            assert not gate.is_saturated
            second = asyncio.create_task(gate.transcribe(tone(2), PARAMS))
            await asyncio.sleep(0)
            assert gate.is_saturated
            assert gate.queue_size == 1
            assert gate.busy == 1
            with pytest.raises(Overloaded):
                await gate.transcribe(tone(3), PARAMS)
            engine.release.set()
            await asyncio.gather(first, second)
        finally:
            engine.release.set()
            await gate.stop()

    @pytest.mark.asyncio
    async def test_engine_error_becomes_inference_failure(self):
        gate = InferenceGate([handle_for(BrokenEngine())])
        await gate.start()
        try:
            with pytest.raises(InferenceFailure) as exc_info:
                await gate.transcribe(tone(1), PARAMS)
        finally:
            await gate.stop()

        err = exc_info.value
        assert isinstance(err.__cause__, RuntimeError)
        assert "/opt/models" not in err.public_message

    @pytest.mark.asyncio
    async def test_gate_keeps_serving_after_engine_error(self):
        class FlakyEngine(FakeEngine):
            def infer(self, samples, params):
                if samples[0] > 0.4:
                    raise RuntimeError("boom")
                return super().infer(samples, params)

        gate = InferenceGate([handle_for(FlakyEngine())])
        await gate.start()
        try:
            with pytest.raises(InferenceFailure):
                await gate.transcribe(np.full(100, 0.5, dtype=np.float32), PARAMS)
            assert await gate.transcribe(np.zeros(100, dtype=np.float32), PARAMS) == []
        finally:
            await gate.stop()

    @pytest.mark.asyncio
    async def test_cancelled_before_start_is_skipped(self):
        engine = BlockingEngine()
        gate = InferenceGate([handle_for(engine)], max_queue=4)
        await gate.start()
        try:
            first = asyncio.create_task(gate.transcribe(tone(1), PARAMS))
            await asyncio.get_running_loop().run_in_executor(None, engine.started.wait, 5)
            abandoned = asyncio.create_task(gate.transcribe(tone(2), PARAMS))
            await asyncio.sleep(0)
            abandoned.cancel()
            third = asyncio.create_task(gate.transcribe(tone(3), PARAMS))
            await asyncio.sleep(0)
            engine.release.set()
            await asyncio.gather(first, third)
            with pytest.raises(asyncio.CancelledError):
                await abandoned
        finally:
            engine.release.set()
            await gate.stop()

        assert engine.calls == 2

    @pytest.mark.asyncio
    async def test_started_inference_runs_to_completion(self):
        """Cancelling a caller mid-inference does not interrupt the engine."""
        engine = BlockingEngine()
        gate = InferenceGate([handle_for(engine)], max_queue=4)
        await gate.start()
        try:
            caller = asyncio.create_task(gate.transcribe(tone(1), PARAMS))
            await asyncio.get_running_loop().run_in_executor(None, engine.started.wait, 5)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            engine.release.set()
            segments = await asyncio.wait_for(gate.transcribe(tone(2), PARAMS), timeout=5)
            assert segments == [RawSegment(0, 1, "done")]
        finally:
            engine.release.set()
            await gate.stop()

        assert engine.calls == 2

    @pytest.mark.asyncio
    async def test_stop_fails_queued_requests(self):
        engine = BlockingEngine()
        gate = InferenceGate([handle_for(engine)], max_queue=4)
        await gate.start()
        first = asyncio.create_task(gate.transcribe(tone(1), PARAMS))
        await asyncio.get_running_loop().run_in_executor(None, engine.started.wait, 5)
        queued = asyncio.create_task(gate.transcribe(tone(2), PARAMS))
        await asyncio.sleep(0)

        await gate.stop()
        engine.release.set()

        with pytest.raises(Overloaded):
            await queued
        with pytest.raises(Overloaded):
            await first

    @pytest.mark.asyncio
    async def test_not_running_rejects(self):
        gate = InferenceGate([handle_for(FakeEngine())])
        with pytest.raises(Overloaded):
            await gate.transcribe(tone(1), PARAMS)

    @pytest.mark.asyncio
    async def test_start_stop_idempotent(self):
        gate = InferenceGate([handle_for(FakeEngine())])
        await gate.start()
        await gate.start()  # Should not raise
        assert gate.is_running
        await gate.stop()
        await gate.stop()
        assert not gate.is_running

    @pytest.mark.asyncio
    async def test_reserve_counts_against_capacity(self):
        gate = InferenceGate([handle_for(FakeEngine()), handle_for(FakeEngine(), 1)], max_queue=2)
        await gate.start()
        try:
            assert gate.capacity == 4
            for _ in range(4):
                gate.reserve()
            assert gate.admitted == 4
            assert gate.is_saturated
            with pytest.raises(Overloaded):
                gate.reserve()
            assert gate.admitted == 4

            gate.release()
            assert not gate.is_saturated
            gate.reserve()
            for _ in range(4):
                gate.release()
            assert gate.admitted == 0
        finally:
            await gate.stop()

    def test_reserve_requires_running_gate(self):
        gate = InferenceGate([handle_for(FakeEngine())])
        with pytest.raises(Overloaded):
            gate.reserve()
        assert gate.admitted == 0

    def test_release_never_goes_negative(self):
        gate = InferenceGate([handle_for(FakeEngine())])
        gate.release()
        assert gate.admitted == 0

    def test_requires_handles(self):
        with pytest.raises(ValueError):
            InferenceGate([])

    def test_requires_positive_queue(self):
        with pytest.raises(ValueError):
            InferenceGate([handle_for(FakeEngine())], max_queue=0)
