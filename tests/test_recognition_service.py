import asyncio
import threading

import pytest

from frs.config import MATCHED_COLOR, UNKNOWN_COLOR
from frs.exceptions import CameraError, ModelLoadError, RecognitionUnavailable
from frs.recognition_service import LoopState, RecognitionLoop

from conftest import CameraFactory, FakeCamera, FakeEngine, make_detection, make_face, vec


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def make_loop(registry, engine, cameras=None, interval=0.01):
    cameras = cameras or CameraFactory()
    return RecognitionLoop(registry, engine, threshold=0.6, interval=interval, camera_factory=cameras), cameras


def test_start_refused_when_nothing_registered(registry):
    loop, cameras = make_loop(registry, FakeEngine())

    with pytest.raises(RecognitionUnavailable):
        asyncio.run(loop.start())

    assert loop.state is LoopState.IDLE
    assert cameras.cameras == []
    assert not loop.can_start


def test_start_refused_without_models(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    loop, _ = make_loop(registry, FakeEngine(ready=False))

    with pytest.raises(ModelLoadError):
        asyncio.run(loop.start())
    assert loop.state is LoopState.IDLE


def test_camera_failure_keeps_loop_idle(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    loop, _ = make_loop(registry, FakeEngine(), cameras=CameraFactory(fail_open=True))

    with pytest.raises(CameraError):
        asyncio.run(loop.start())

    assert loop.state is LoopState.IDLE
    assert loop.camera is None


def test_ticks_publish_names_and_draw_overlay(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.3)), make_detection(vec(0.9), box=(200, 50, 300, 160))])
    loop, cameras = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: loop.tick_count >= 2)
        snapshot = (loop.state, list(loop.recognized_names), list(loop.overlay.annotations), loop.overlay.width, loop.overlay.height)
        loop.stop()
        return snapshot

    state, names, annotations, width, height = asyncio.run(scenario())

    assert state is LoopState.ACTIVE
    assert names == ["Alice"]
    assert (width, height) == (640, 480)
    assert [(a.label, a.matched) for a in annotations] == [("Alice", True), ("Unknown", False)]
    assert annotations[0].color == MATCHED_COLOR
    assert annotations[1].color == UNKNOWN_COLOR
    assert annotations[1].box == (200, 50, 300, 160)
    assert loop.last_results == []


def test_stop_releases_camera_and_cancels_ticks(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.1))])
    loop, cameras = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: loop.tick_count >= 1)
        task = loop._task
        loop.stop()
        calls_at_stop = engine.calls
        await asyncio.sleep(0.1)
        return task, calls_at_stop

    task, calls_at_stop = asyncio.run(scenario())

    assert loop.state is LoopState.IDLE
    assert task.cancelled() or task.done()
    assert cameras.cameras[0].stopped
    assert engine.calls == calls_at_stop
    assert loop.recognized_names == []
    assert loop.overlay.annotations == []


def test_start_stop_sequences_end_in_expected_state(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    loop, cameras = make_loop(registry, FakeEngine())

    async def scenario():
        await loop.start()
        await loop.start()
        loop.stop()
        loop.stop()
        await loop.start()
        return loop.state

    assert asyncio.run(scenario()) is LoopState.ACTIVE
    loop.stop()
    assert loop.state is LoopState.IDLE
    assert len(cameras.cameras) == 2
    assert all(camera.stopped for camera in cameras.cameras)


def test_registry_becoming_empty_stops_loop(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    loop, cameras = make_loop(registry, FakeEngine())

    async def scenario():
        await loop.start()
        registry.replace([])
        return loop.state

    assert asyncio.run(scenario()) is LoopState.IDLE
    assert cameras.cameras[0].stopped


def test_teardown_stops_and_unsubscribes(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    loop, cameras = make_loop(registry, FakeEngine())

    async def scenario():
        await loop.start()
        loop.close()

    asyncio.run(scenario())

    assert loop.state is LoopState.IDLE
    assert cameras.cameras[0].stopped
    assert registry._listeners == []


def test_engine_failure_does_not_stop_loop(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.0))])
    engine.errors = [RuntimeError("model crashed")]
    loop, _ = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: engine.calls >= 3 and loop.recognized_names == ["Alice"])
        state = loop.state
        loop.stop()
        return state

    assert asyncio.run(scenario()) is LoopState.ACTIVE


def test_engine_failure_counts_as_zero_detections(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine()
    engine.errors = [RuntimeError("boom")] * 50
    loop, _ = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: loop.tick_count >= 2)
        names = list(loop.recognized_names)
        loop.stop()
        return names

    assert asyncio.run(scenario()) == []


def test_ticks_never_overlap(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.0))])
    engine.delay = 0.03
    loop, _ = make_loop(registry, engine, interval=0.001)

    async def scenario():
        await loop.start()
        await wait_until(lambda: engine.calls >= 4)
        loop.stop()

    asyncio.run(scenario())

    assert engine.max_active_calls == 1


def test_result_arriving_after_stop_is_discarded(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.0))])
    engine.gate = threading.Event()
    loop, _ = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: engine.active_calls == 1)
        loop.stop()
        engine.gate.set()
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert loop.recognized_names == []
    assert loop.overlay.annotations == []
    assert loop.tick_count == 0


def test_next_tick_uses_updated_registered_set(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.0, 1.0))])
    loop, _ = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: loop.tick_count >= 1)
        before = list(loop.recognized_names)
        registry.replace([make_face("Alice", vec(0.0)), make_face("Bob", vec(0.0, 1.0))])
        ticks = loop.tick_count
        await wait_until(lambda: loop.tick_count >= ticks + 2)
        after = list(loop.recognized_names)
        loop.stop()
        return before, after

    before, after = asyncio.run(scenario())

    assert before == []
    assert after == ["Bob"]


class SlowCamera(FakeCamera):
    """Camera whose open() blocks until the test releases it."""

    def __init__(self, camera_index: int = 0):
        super().__init__(camera_index)
        self.release = threading.Event()
        self.entered = threading.Event()

    def open(self) -> None:
        self.entered.set()
        self.release.wait(timeout=5)
        super().open()


@pytest.mark.parametrize("halt", ["stop", "close"])
def test_stop_while_camera_is_opening_wins(registry, halt):
    registry.replace([make_face("Alice", vec(0.0))])
    cameras = []

    def factory(camera_index):
        camera = SlowCamera(camera_index)
        cameras.append(camera)
        return camera

    loop = RecognitionLoop(registry, FakeEngine(), interval=0.01, camera_factory=factory)

    async def scenario():
        starting = asyncio.create_task(loop.start())
        await wait_until(lambda: bool(cameras) and cameras[0].entered.is_set())
        getattr(loop, halt)()
        cameras[0].release.set()
        await starting
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert loop.state is LoopState.IDLE
    assert loop._task is None
    assert loop.camera is None
    assert cameras[0].stopped
    assert loop.tick_count == 0


def test_start_after_abandoned_open_works(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    cameras = []

    def factory(camera_index):
        camera = SlowCamera(camera_index)
        cameras.append(camera)
        return camera

    loop = RecognitionLoop(registry, FakeEngine(), interval=0.01, camera_factory=factory)

    async def scenario():
        starting = asyncio.create_task(loop.start())
        await wait_until(lambda: bool(cameras) and cameras[0].entered.is_set())
        loop.stop()
        cameras[0].release.set()
        await starting

        second = asyncio.create_task(loop.start())
        await wait_until(lambda: len(cameras) == 2 and cameras[1].entered.is_set())
        cameras[1].release.set()
        await second
        state = loop.state
        loop.stop()
        return state

    assert asyncio.run(scenario()) is LoopState.ACTIVE
    assert all(camera.stopped for camera in cameras)


def test_composed_frame_pairs_frame_with_its_own_drawing(registry):
    registry.replace([make_face("Alice", vec(0.0))])
    engine = FakeEngine([make_detection(vec(0.1))])
    loop, _ = make_loop(registry, engine)

    async def scenario():
        await loop.start()
        await wait_until(lambda: loop.tick_count >= 1)
        frame, layer = loop._published
        composed = loop.composed_frame()
        loop.stop()
        return frame, layer, composed

    frame, layer, composed = asyncio.run(scenario())

    assert layer.canvas.shape[:2] == frame.shape[:2]
    assert [a.label for a in layer.annotations] == ["Alice"]
    assert composed.shape == frame.shape
    assert composed.any()
    assert loop.composed_frame() is None
