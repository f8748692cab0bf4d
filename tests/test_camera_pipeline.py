import threading
import time
import uuid

import numpy as np

from reidwatch.core.engines import DetectionConfig
from reidwatch.core.features import FeatureVector
from reidwatch.core.identity.resolver import IdentityResolver
from reidwatch.core.persistence import InMemoryPersistence, PersistenceConfig
from reidwatch.core.streaming.camera import CameraPipeline, ConfirmationBuffer, StreamConfig, StreamState
from reidwatch.core.streaming.manager import CameraManager
from reidwatch.core.types import BoundingBox, Detection
from reidwatch.core.video_sources.base import VideoSource


class FakeStreamSource(VideoSource):
    def __init__(self, fail_reads: bool = False):
        self.fail_reads = fail_reads
        self.close_calls = 0

    def read(self):
        if self.fail_reads:
            return None
        return np.zeros((480, 640, 3), dtype=np.uint8)

    def close(self):
        self.close_calls += 1


class MovingDetector:
    """One person drifting right by a few pixels per call."""

    def __init__(self):
        self.calls = 0

    def detect(self, frame, config=None):
        self.calls += 1
        return [Detection(BoundingBox(300 + 3 * self.calls, 180, 60, 140), 0.9)]


class CountingReId:
    def __init__(self):
        rng = np.random.default_rng(3)
        self.features = FeatureVector(rng.normal(size=512)).normalize()
        self.calls = 0

    def extract_features(self, frame, box, config=None):
        self.calls += 1
        return self.features

    def extract_features_batch(self, frame, boxes, config=None):
        return [self.extract_features(frame, b, config) for b in boxes]


class StateRecorder:
    def __init__(self):
        self.states = []
        self.updates = []

    def detection_update(self, update):
        self.updates.append(update)

    def stream_state_changed(self, camera_id, state, message=""):
        self.states.append(state)

    def video_progress(self, job_id, progress):
        pass

    def video_completed(self, job_id, summary):
        pass


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _pipeline(clock=time.time, **kwargs) -> CameraPipeline:
    config = kwargs.pop("config", StreamConfig(reconnect_delay_ms=10, max_reconnect_attempts=2))
    return CameraPipeline(
        1,
        detector=kwargs.pop("detector", MovingDetector()),
        reid=kwargs.pop("reid", CountingReId()),
        resolver=kwargs.pop("resolver", IdentityResolver(clock=clock)),
        config=config,
        clock=clock,
        **kwargs,
    )


def _new_frame(pipeline: CameraPipeline) -> None:
    pipeline._publish_frame(np.zeros((480, 640, 3), dtype=np.uint8))


# ---------------------------------------------------------------- confirmation buffer


def test_single_high_confidence_with_features_confirms_instantly():
    buf = ConfirmationBuffer(StreamConfig())
    pid = uuid.uuid4()
    assert buf.observe(pid, 0.8, True, 0.0) is True
    assert buf.is_seen(pid)
    assert buf.observe(pid, 0.8, True, 1.0) is False
    assert buf.seen_count == 1


def test_two_frames_with_features_confirm():
    buf = ConfirmationBuffer(StreamConfig())
    pid = uuid.uuid4()
    assert buf.observe(pid, 0.3, True, 0.0) is False
    assert buf.observe(pid, 0.3, False, 0.1) is True


def test_two_frames_elevated_confidence_without_features_confirm():
    buf = ConfirmationBuffer(StreamConfig())
    pid = uuid.uuid4()
    assert buf.observe(pid, 0.6, False, 0.0) is False
    assert buf.observe(pid, 0.4, False, 0.1) is True


def test_low_confidence_without_features_stays_pending():
    buf = ConfirmationBuffer(StreamConfig())
    pid = uuid.uuid4()
    for i in range(5):
        assert buf.observe(pid, 0.4, False, float(i)) is False
    assert buf.pending_count == 1
    assert buf.seen_count == 0


def test_prune_drops_absent_old_and_idle_entries():
    buf = ConfirmationBuffer(StreamConfig(max_pending_age=3, pending_idle_seconds=3.0))
    present, absent, old, idle = (uuid.uuid4() for _ in range(4))
    buf.observe(present, 0.1, False, 10.0)
    buf.observe(absent, 0.1, False, 10.0)
    for i in range(4):
        buf.observe(old, 0.1, False, 10.0)
    buf.observe(idle, 0.1, False, 5.0)

    buf.prune({present, old, idle}, now=10.0)

    assert buf.pending_count == 1


# ---------------------------------------------------------------- detect stage


def test_detect_cycle_publishes_persons_and_counts(clock):
    recorder = StateRecorder()
    pipeline = _pipeline(clock, event_sink=recorder)
    _new_frame(pipeline)
    pipeline._detect_cycle()

    persons = pipeline.current_persons()
    assert len(persons) == 1
    assert persons[0].has_reid_match
    assert persons[0].is_new
    assert pipeline.status()["unique_count"] == 1
    assert recorder.updates[-1].count == 1
    assert recorder.updates[-1].unique_count == 1


def test_same_frame_is_not_detected_twice(clock):
    detector = MovingDetector()
    pipeline = _pipeline(clock, detector=detector)
    _new_frame(pipeline)
    pipeline._detect_cycle()
    pipeline._detect_cycle()
    assert detector.calls == 1


def test_stable_track_bridges_cycles_without_reid(clock):
    reid = CountingReId()
    config = StreamConfig(reid_every_n_frames=2)
    pipeline = _pipeline(clock, reid=reid, config=config)

    _new_frame(pipeline)
    pipeline._detect_cycle()  # no re-id yet: fresh per-frame identity
    assert reid.calls == 0
    fallback_id = pipeline.current_persons()[0].identity_id

    clock.advance(0.05)
    _new_frame(pipeline)
    pipeline._detect_cycle()  # re-id runs and binds the track to a global identity
    assert reid.calls == 1
    resolved = pipeline.current_persons()[0]
    assert resolved.has_reid_match
    assert resolved.track_id == 1

    clock.advance(0.05)
    _new_frame(pipeline)
    pipeline._detect_cycle()  # throttled: the stable track carries the identity
    assert reid.calls == 1
    bridged = pipeline.current_persons()[0]
    assert bridged.identity_id == resolved.identity_id
    assert bridged.track_id == resolved.track_id
    assert not bridged.has_reid_match
    assert fallback_id != resolved.identity_id


def test_reid_failure_falls_back_to_fresh_identity(clock):
    class BrokenReId(CountingReId):
        def extract_features(self, frame, box, config=None):
            raise RuntimeError("gpu gone")

    pipeline = _pipeline(clock, reid=BrokenReId())
    _new_frame(pipeline)
    pipeline._detect_cycle()
    persons = pipeline.current_persons()
    assert len(persons) == 1
    assert not persons[0].has_reid_match
    assert persons[0].features is None


def test_small_detections_are_filtered(clock):
    class TinyDetector:
        def detect(self, frame, config=None):
            return [Detection(BoundingBox(10, 10, 5, 8), 0.9)]

    pipeline = _pipeline(clock, detector=TinyDetector())
    _new_frame(pipeline)
    pipeline._detect_cycle()
    assert pipeline.current_persons() == []


def test_minimum_size_comes_from_detection_config(clock):
    pipeline = _pipeline(clock, detection_config=DetectionConfig(min_width=80))
    _new_frame(pipeline)
    pipeline._detect_cycle()
    assert pipeline.current_persons() == []


def test_lock_timeout_skips_cycle_without_failing(clock):
    detector = MovingDetector()
    pipeline = _pipeline(clock, detector=detector, config=StreamConfig(lock_timeout_ms=10))
    _new_frame(pipeline)

    pipeline._frame_lock.acquire()
    try:
        pipeline._detect_cycle()
        pipeline._annotate_cycle()
    finally:
        pipeline._frame_lock.release()
    assert detector.calls == 0
    assert pipeline.get_frame(0.01) is None

    pipeline._detect_cycle()
    assert detector.calls == 1
    pipeline._persons_lock.acquire()
    try:
        assert pipeline.current_persons() == []
    finally:
        pipeline._persons_lock.release()
    assert len(pipeline.current_persons()) == 1


# ---------------------------------------------------------------- annotate / persist


def test_output_queue_drops_oldest():
    pipeline = _pipeline(config=StreamConfig(frame_buffer_size=3))
    for i in range(5):
        pipeline._push_output(str(i).encode())
    assert [pipeline.get_frame(0.01) for _ in range(3)] == [b"2", b"3", b"4"]
    assert pipeline.get_frame(0.01) is None


def test_annotate_cycle_emits_jpeg(clock):
    pipeline = _pipeline(clock)
    _new_frame(pipeline)
    pipeline._detect_cycle()
    pipeline._annotate_cycle()
    frame = pipeline.get_frame(0.1)
    assert frame is not None and frame[:2] == b"\xff\xd8"


def test_persist_cycle_saves_and_marks_identities(clock):
    store = InMemoryPersistence()
    resolver = IdentityResolver(clock=clock)
    pipeline = _pipeline(clock, resolver=resolver, persistence=store)
    _new_frame(pipeline)
    pipeline._detect_cycle()
    person = pipeline.current_persons()[0]

    pipeline._persist_cycle()

    assert len(store.batches("1")) == 1
    assert resolver.storage_id(person.identity_id) == 1
    # Same count inside the interval: throttled.
    pipeline._persist_cycle()
    assert len(store.batches("1")) == 1


def test_persist_failure_is_retried(clock):
    class FlakyStore(InMemoryPersistence):
        def __init__(self):
            super().__init__()
            self.fail = True

        def save_detection_batch(self, source_id, persons):
            if self.fail:
                raise RuntimeError("db down")
            super().save_detection_batch(source_id, persons)

    store = FlakyStore()
    pipeline = _pipeline(clock, persistence=store, persistence_config=PersistenceConfig(save_interval_seconds=10))
    _new_frame(pipeline)
    pipeline._detect_cycle()
    pipeline._persist_cycle()
    assert store.batches() == []
    store.fail = False
    pipeline._persist_cycle()
    assert len(store.batches()) == 1


# ---------------------------------------------------------------- lifecycle


def test_connect_runs_stages_and_disconnect_releases_once():
    source = FakeStreamSource()
    recorder = StateRecorder()
    config = StreamConfig(target_fps=50, detection_interval_ms=10)
    pipeline = _pipeline(config=config, source_factory=lambda url: source, event_sink=recorder)

    assert pipeline.connect("0") is True
    assert pipeline.state is StreamState.CONNECTED
    try:
        assert wait_for(lambda: pipeline.status()["current_count"] == 1)
        assert wait_for(lambda: pipeline.get_frame(0.1) is not None)
        assert pipeline.latest_frame()[:2] == b"\xff\xd8"
    finally:
        pipeline.disconnect()

    assert pipeline.state is StreamState.DISCONNECTED
    assert source.close_calls == 1
    pipeline.disconnect()
    assert source.close_calls == 1
    assert recorder.states[:2] == ["connecting", "connected"]
    assert recorder.states[-1] == "disconnected"
    assert not any(t.name.startswith("cam1-") and t.is_alive() for t in threading.enumerate())


def test_capture_lock_is_released_during_blocking_read():
    class LockWatchingSource(FakeStreamSource):
        def __init__(self):
            super().__init__()
            self.pipeline = None
            self.lock_held = []

        def read(self):
            self.lock_held.append(self.pipeline._capture_lock.locked())
            time.sleep(0.01)
            return super().read()

    source = LockWatchingSource()
    pipeline = _pipeline(source_factory=lambda url: source)
    source.pipeline = pipeline
    assert pipeline.connect("0") is True
    try:
        assert wait_for(lambda: len(source.lock_held) >= 3)
    finally:
        pipeline.disconnect()
    assert not any(source.lock_held)


def test_connect_gives_up_after_retries():
    attempts = []

    def factory(url):
        attempts.append(url)
        raise RuntimeError("unreachable")

    recorder = StateRecorder()
    pipeline = _pipeline(source_factory=factory, event_sink=recorder)
    assert pipeline.connect("rtsp://nowhere") is False
    assert len(attempts) == 2
    assert pipeline.state is StreamState.DISCONNECTED
    assert "error" in recorder.states


def test_read_failures_trigger_reconnect_then_stop():
    sources = [FakeStreamSource(fail_reads=True)]

    def factory(url):
        if sources:
            return sources.pop()
        raise RuntimeError("gone")

    recorder = StateRecorder()
    config = StreamConfig(max_consecutive_errors=2, reconnect_delay_ms=10, max_reconnect_attempts=2)
    pipeline = _pipeline(config=config, source_factory=factory, event_sink=recorder)
    assert pipeline.connect("cam") is True
    try:
        assert wait_for(lambda: pipeline.state is StreamState.DISCONNECTED)
    finally:
        pipeline.disconnect()
    assert "reconnecting" in recorder.states
    assert "error" in recorder.states
    assert list(pipeline.frames(0.01)) == []


# ---------------------------------------------------------------- manager


def test_manager_start_stop_and_reset(clock, make_features):
    class EmptyDetector:
        def detect(self, frame, config=None):
            return []

    resolver = IdentityResolver(clock=clock)
    created = {}

    def factory(camera_id):
        created[camera_id] = _pipeline(
            clock,
            detector=EmptyDetector(),
            reid=None,
            resolver=resolver,
            source_factory=lambda url: FakeStreamSource(),
        )
        return created[camera_id]

    manager = CameraManager(resolver, factory)
    assert manager.start(1, "0") is True
    try:
        assert [c["camera_id"] for c in manager.list_cameras()] == [1]
        assert manager.get_stream(1) is not None
        assert manager.get_stream(2) is None

        resolver.resolve(make_features(1), 1, BoundingBox(300, 200, 60, 140), confidence=0.9)
        resolver.resolve(make_features(2), 1, BoundingBox(100, 200, 60, 140), confidence=0.9)
        created[1].confirmations.observe(uuid.uuid4(), 0.9, True, 0.0)
        assert manager.active_identity_count() == 2

        manager.reset_all_identities()
        assert manager.active_identity_count() == 0
        assert created[1].confirmations.seen_count == 0
    finally:
        assert manager.stop(1) is True
    assert manager.stop(1) is False
    assert manager.get(1) is None


def _slow_manager(created: list) -> CameraManager:
    class EmptyDetector:
        def detect(self, frame, config=None):
            return []

    resolver = IdentityResolver()

    def slow_source(url):
        time.sleep(0.3)
        return FakeStreamSource()

    def factory(camera_id):
        pipeline = _pipeline(detector=EmptyDetector(), reid=None, resolver=resolver, source_factory=slow_source)
        created.append(pipeline)
        return pipeline

    return CameraManager(resolver, factory)


def _cam1_threads() -> list[str]:
    return [t.name for t in threading.enumerate() if t.name.startswith("cam1-") and t.is_alive()]


def test_concurrent_starts_share_one_pipeline():
    created = []
    manager = _slow_manager(created)
    results = []
    starters = [threading.Thread(target=lambda: results.append(manager.start(1, "0"))) for _ in range(2)]
    for t in starters:
        t.start()
    for t in starters:
        t.join(timeout=5.0)

    assert results == [True, True]
    assert len(created) == 1
    assert manager.stop(1) is True
    assert wait_for(lambda: not _cam1_threads())
    assert created[0]._source is None


def test_stop_waits_for_start_in_progress():
    created = []
    manager = _slow_manager(created)
    starter = threading.Thread(target=manager.start, args=(1, "0"))
    starter.start()
    assert wait_for(lambda: created)

    assert manager.stop(1) is True
    starter.join(timeout=5.0)
    assert manager.get(1) is None
    assert created[0].state is StreamState.DISCONNECTED
    assert wait_for(lambda: not _cam1_threads())


def test_manager_start_failure_is_not_registered():
    resolver = IdentityResolver()

    def factory(camera_id):
        def broken(url):
            raise RuntimeError("nope")

        return _pipeline(resolver=resolver, source_factory=broken)

    manager = CameraManager(resolver, factory)
    assert manager.start(3, "rtsp://x") is False
    assert manager.list_cameras() == []


def test_status_of_idle_pipeline():
    status = _pipeline().status()
    assert status["state"] == "disconnected"
    assert status["connected"] is False
    assert status["current_count"] == 0
