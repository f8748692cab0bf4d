import uuid

from reidwatch.core.trackers.stable_tracker import StableTrackManager, size_ratio
from reidwatch.core.types import BoundingBox


def test_near_identical_boxes_bridge_to_same_identity(clock):
    tracks = StableTrackManager(clock=clock)
    identity_id = uuid.uuid4()
    first = BoundingBox(100, 100, 50, 120)
    tid = tracks.next_track_id()
    tracks.update_track(tid, identity_id, first, 0.8)

    clock.advance(0.1)
    second = BoundingBox(104, 102, 51, 119)
    track = tracks.find_existing_track(second)
    assert track is not None
    assert track.identity_id == identity_id
    assert track.track_id == tid


def test_far_box_starts_no_track(clock):
    tracks = StableTrackManager(max_movement_px=120, clock=clock)
    tracks.update_track(tracks.next_track_id(), uuid.uuid4(), BoundingBox(0, 0, 50, 100), 0.8)
    assert tracks.find_existing_track(BoundingBox(400, 300, 50, 100)) is None


def test_prefers_similar_size_and_honors_exclusions(clock):
    tracks = StableTrackManager(clock=clock)
    small = tracks.next_track_id()
    large = tracks.next_track_id()
    tracks.update_track(small, uuid.uuid4(), BoundingBox(100, 100, 20, 40), 0.8)
    tracks.update_track(large, uuid.uuid4(), BoundingBox(110, 100, 60, 120), 0.8)

    query = BoundingBox(108, 98, 60, 120)
    assert tracks.find_existing_track(query).track_id == large
    assert tracks.find_existing_track(query, exclude={large}).track_id == small


def test_update_keeps_features_when_missing(clock, make_features):
    tracks = StableTrackManager(clock=clock)
    fv = make_features(1)
    tracks.update_track(1, uuid.uuid4(), BoundingBox(0, 0, 10, 20), 0.5, features=fv)
    track = tracks.update_track(1, uuid.uuid4(), BoundingBox(1, 1, 10, 20), 0.6)
    assert track.features is fv
    assert track.consecutive_frames == 2
    assert track.last_confidence == 0.6


def test_cleanup_drops_idle_tracks(clock):
    tracks = StableTrackManager(timeout_seconds=2.0, clock=clock)
    tracks.update_track(1, uuid.uuid4(), BoundingBox(0, 0, 10, 20), 0.5)
    clock.advance(1.0)
    tracks.update_track(2, uuid.uuid4(), BoundingBox(50, 50, 10, 20), 0.5)
    clock.advance(1.5)
    assert tracks.cleanup() == 1
    assert len(tracks) == 1


def test_size_ratio():
    a = BoundingBox(0, 0, 10, 20)
    assert size_ratio(a, a) == 1.0
    assert size_ratio(a, BoundingBox(0, 0, 20, 40)) == 0.25
