import numpy as np

from reidwatch.core.features import FeatureVector
from reidwatch.core.identity.video_matcher import VideoIdentityMatcher, has_usable_features
from reidwatch.core.types import BoundingBox

BOX = BoundingBox(100, 100, 50, 120)


def test_same_features_across_frames_keep_identity(make_features):
    matcher = VideoIdentityMatcher()
    fv = make_features(1)
    first, _ = matcher.match(fv, BOX, 5)
    second, _ = matcher.match(fv, BoundingBox(110, 100, 50, 120), 10)
    assert first == second
    assert matcher.unique_count == 1


def test_identity_used_once_per_frame(make_features):
    matcher = VideoIdentityMatcher()
    fv = make_features(2)
    a, _ = matcher.match(fv, BOX, 5)
    b, _ = matcher.match(fv, BoundingBox(400, 100, 50, 120), 5)
    assert a != b
    assert matcher.unique_count == 2


def test_spatial_veto_rejects_teleporting_match(make_features):
    matcher = VideoIdentityMatcher()
    fv = make_features(3)
    a, _ = matcher.match(fv, BoundingBox(0, 0, 50, 100), 5)
    # One frame later, 800px away: budget is max(250, 1 * 60).
    b, _ = matcher.match(fv, BoundingBox(800, 0, 50, 100), 6)
    assert a != b


def test_spatial_veto_off_after_long_gap(make_features):
    matcher = VideoIdentityMatcher()
    fv = make_features(4)
    a, _ = matcher.match(fv, BoundingBox(0, 0, 50, 100), 5)
    b, _ = matcher.match(fv, BoundingBox(800, 0, 50, 100), 50)
    assert a == b


def test_low_similarity_mints_new(make_features):
    matcher = VideoIdentityMatcher(similarity_threshold=0.7)
    a, _ = matcher.match(make_features(5), BOX, 5)
    b, _ = matcher.match(make_features(6), BOX, 10)
    assert a != b


def test_match_blends_features(make_features):
    matcher = VideoIdentityMatcher(feature_alpha=0.3)
    base = make_features(7)
    near = FeatureVector(base.values + 0.01 * make_features(8).values)
    matcher.match(base, BOX, 5)
    _, updated = matcher.match(near, BOX, 10)
    assert np.allclose(updated.values, base.values * 0.7 + near.values * 0.3, atol=1e-6)


def test_unusable_features_mint_unstored_identity():
    matcher = VideoIdentityMatcher()
    flat = FeatureVector(np.zeros(512))
    identity_id, features = matcher.match(flat, BOX, 5)
    assert features is None
    assert identity_id is not None
    assert matcher.unique_count == 0
    assert not has_usable_features(None)
    assert not has_usable_features(flat)
