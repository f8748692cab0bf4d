import threading
import time

import numpy as np
import pytest

from reidwatch.core.engines import DetectionConfig
from reidwatch.core.features import FeatureVector
from reidwatch.core.persistence import InMemoryPersistence
from reidwatch.core.types import BoundingBox, Detection
from reidwatch.core.video.jobs import JobState
from reidwatch.core.video.service import VideoConfig, VideoProcessingService, make_thumbnail
from reidwatch.core.video_sources.base import VideoSource

PERSON_BOX = BoundingBox(100, 60, 50, 120)


class FakeSource(VideoSource):
    def __init__(self, n_frames: int, fps: float = 30.0):
        self.n_frames = n_frames
        self._fps = fps
        self.read_count = 0
        self.closed = False

    def read(self):
        if self.read_count >= self.n_frames:
            return None
        self.read_count += 1
        return np.zeros((240, 320, 3), dtype=np.uint8)

    def close(self):
        self.closed = True

    @property
    def fps(self):
        return self._fps

    @property
    def frame_count(self):
        return self.n_frames


class OnePersonDetector:
    def __init__(self, delay: float = 0.0, confidence: float = 0.8):
        self.delay = delay
        self.confidence = confidence

    def detect(self, frame, config=None):
        if self.delay:
            time.sleep(self.delay)
        return [Detection(PERSON_BOX, self.confidence)]


class ConstantReId:
    def __init__(self):
        rng = np.random.default_rng(7)
        self.features = FeatureVector(rng.normal(size=512)).normalize()

    def extract_features(self, frame, box, config=None):
        return self.features

    def extract_features_batch(self, frame, boxes, config=None):
        return [self.features for _ in boxes]


class RecordingSink:
    def __init__(self):
        self.progress = []
        self.completed = []

    def detection_update(self, update):
        pass

    def stream_state_changed(self, camera_id, state, message=""):
        pass

    def video_progress(self, job_id, progress):
        self.progress.append((job_id, progress))

    def video_completed(self, job_id, summary):
        self.completed.append((job_id, summary))


def wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _service(n_frames=150, detector=None, **kwargs) -> VideoProcessingService:
    return VideoProcessingService(
        detector or OnePersonDetector(),
        kwargs.pop("reid", ConstantReId()),
        source_factory=kwargs.pop("source_factory", lambda path: FakeSource(n_frames)),
        **kwargs,
    )


def test_single_person_video_yields_one_tracking_entry():
    sink = RecordingSink()
    store = InMemoryPersistence()
    service = _service(persistence=store, event_sink=sink)
    job = service.create_job("clip.mp4", frame_skip=5)

    service.process_job(job)

    assert job.state is JobState.COMPLETED
    assert job.processed_frames == 30
    assert len(job.persons) == 1
    info = next(iter(job.persons.values()))
    assert info.total_appearances == 30
    assert info.average_confidence == pytest.approx(0.8)
    assert info.first_appearance == pytest.approx(5 / 30)
    assert info.last_appearance == pytest.approx(150 / 30)
    assert info.thumbnail is not None and info.thumbnail[:2] == b"\xff\xd8"
    assert job.progress == 100

    summary = job.to_summary()
    assert summary["unique_persons"] == 1
    assert summary["peak_persons_in_frame"] == 1
    assert summary["average_persons_per_frame"] == pytest.approx(1.0)
    assert summary["video_duration"] == pytest.approx(5.0)

    assert len(sink.progress) == 6
    assert [s["status"] for _, s in sink.completed] == ["completed"]
    assert store.video_results(job.job_id)["unique_persons"] == 1


def test_without_features_every_detection_is_new():
    service = _service(n_frames=20, reid=None)
    job = service.create_job("clip.mp4", frame_skip=5)
    service.process_job(job)
    assert job.state is JobState.COMPLETED
    assert len(job.persons) == 4


def test_invalid_frame_skip_rejected():
    service = _service()
    with pytest.raises(ValueError):
        service.submit("clip.mp4", frame_skip=0)


def test_jobs_run_in_submission_order():
    service = _service(n_frames=20, detector=OnePersonDetector(delay=0.01))
    a = service.submit("a.mp4", frame_skip=1)
    b = service.submit("b.mp4", frame_skip=1)
    service.start()
    try:
        assert wait_for(lambda: service.get_job(b).is_terminal)
    finally:
        service.stop()
    job_a, job_b = service.get_job(a), service.get_job(b)
    assert job_a.state is JobState.COMPLETED
    assert job_b.state is JobState.COMPLETED
    assert job_a.started_at <= job_a.completed_at <= job_b.started_at


def test_full_queue_blocks_submitter_until_slot_frees():
    service = _service(n_frames=5, config=VideoConfig(queue_capacity=1))
    first = service.submit("a.mp4", frame_skip=1)
    submitted = []
    t = threading.Thread(target=lambda: submitted.append(service.submit("b.mp4", frame_skip=1)), daemon=True)
    t.start()
    time.sleep(0.2)
    assert t.is_alive()
    assert submitted == []
    assert service.queue_size == 1

    service.start()
    try:
        t.join(timeout=5.0)
        assert not t.is_alive()
        second = submitted[0]
        assert wait_for(lambda: service.get_job(second).is_terminal)
    finally:
        service.stop()
    assert service.get_job(first).completed_at <= service.get_job(second).started_at


def test_cancel_queued_job_never_opens_file():
    opened = []

    def factory(path):
        opened.append(path)
        return FakeSource(10)

    sink = RecordingSink()
    service = _service(source_factory=factory, event_sink=sink)
    job_id = service.submit("queued.mp4")
    assert service.cancel(job_id) is True
    assert service.get_status(job_id)["state"] == "cancelled"
    assert service.cancel(job_id) is False

    service.process_job(service.get_job(job_id))
    assert opened == []
    assert service.get_summary(job_id) is None
    assert [s["status"] for _, s in sink.completed] == ["cancelled"]


def test_cancel_running_job():
    service = _service(n_frames=100_000, detector=OnePersonDetector(delay=0.002))
    job_id = service.submit("long.mp4", frame_skip=1)
    service.start()
    try:
        assert wait_for(lambda: service.get_job(job_id).processed_frames > 0)
        assert service.cancel(job_id)
        assert wait_for(lambda: service.get_job(job_id).is_terminal)
    finally:
        service.stop()
    job = service.get_job(job_id)
    assert job.state is JobState.CANCELLED
    assert job.processed_frames < 100_000
    assert service.get_summary(job_id) is None


def test_open_failure_marks_job_failed():
    def factory(path):
        raise RuntimeError(f"Failed to open video source: {path}")

    service = _service(source_factory=factory)
    job = service.create_job("missing.mp4")
    service.process_job(job)
    assert job.state is JobState.FAILED
    assert "missing.mp4" in job.error


def test_detector_failure_degrades_to_empty_frames():
    class BrokenDetector:
        def detect(self, frame, config=None):
            raise RuntimeError("boom")

    service = _service(n_frames=10, detector=BrokenDetector())
    job = service.create_job("clip.mp4", frame_skip=5)
    service.process_job(job)
    assert job.state is JobState.COMPLETED
    assert job.processed_frames == 2
    assert job.persons == {}


def test_detections_below_minimum_size_are_ignored():
    config = VideoConfig(detection=DetectionConfig(confidence_threshold=0.4, min_height=150))
    service = _service(n_frames=10, config=config)
    job = service.create_job("clip.mp4", frame_skip=5)
    service.process_job(job)
    assert job.state is JobState.COMPLETED
    assert job.processed_frames == 2
    assert job.persons == {}


def test_status_summary_and_cleanup():
    service = _service(n_frames=10)
    job_id = service.submit("clip.mp4", frame_skip=5)
    assert service.get_summary(job_id) is None

    service.process_job(service.get_job(job_id))
    status = service.get_status(job_id)
    assert status["state"] == "completed"
    assert status["progress"] == 100
    assert len(status["recent_detections"]) == 2
    assert service.get_summary(job_id)["unique_persons"] == 1
    assert [j["job_id"] for j in service.list_jobs()] == [str(job_id)]

    assert service.cleanup_job(job_id) is True
    assert service.get_status(job_id) is None
    assert service.cleanup_job(job_id) is False


def test_unknown_fps_falls_back_to_default():
    service = _service(source_factory=lambda path: FakeSource(30, fps=0.0))
    job = service.create_job("clip.mp4", frame_skip=5)
    service.process_job(job)
    assert job.fps == 30.0
    assert job.duration == pytest.approx(1.0)


def test_make_thumbnail_size():
    import cv2

    frame = np.full((240, 320, 3), 127, dtype=np.uint8)
    data = make_thumbnail(frame, PERSON_BOX, VideoConfig())
    img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    assert img.shape == (256, 128, 3)
