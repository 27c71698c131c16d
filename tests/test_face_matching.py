import asyncio

import numpy as np
import pytest

from attendance_service.detection import BoundingBox
from attendance_service.errors import (
    CorruptTemplate,
    MultipleFacesDetected,
    NoFaceDetected,
    PoorImageQuality,
)
from attendance_service.face_matching import FaceMatcher, majority
from tests.helpers import BASE_DESCRIPTOR, FRAME, ScriptedFaceDetector, face, frames, match_at


def matcher_for(script, **kwargs):
    kwargs.setdefault("threshold", 0.45)
    kwargs.setdefault("frame_count", 3)
    kwargs.setdefault("frame_interval", 0)
    return FaceMatcher(ScriptedFaceDetector(script), **kwargs)


def verify(matcher, source=None, **kwargs):
    return asyncio.run(matcher.verify_multi_frame(source or frames(10), BASE_DESCRIPTOR, **kwargs))


@pytest.mark.parametrize("count, required", [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3)])
def test_majority(count, required):
    assert majority(count) == required


def test_compare_identical():
    result = FaceMatcher.compare(BASE_DESCRIPTOR, BASE_DESCRIPTOR, 0.45)
    assert result.match
    assert result.distance == 0
    assert result.confidence == 100


def test_compare_threshold_is_strict():
    result = FaceMatcher.compare([0.0, 0.0], [0.45, 0.0], 0.45)
    assert not result.match
    assert result.confidence == 55


def test_compare_far_descriptor_has_zero_confidence():
    result = FaceMatcher.compare([0.0, 0.0], [1.2, 0.0], 0.45)
    assert not result.match
    assert result.confidence == 0


def test_compare_missing_descriptor():
    result = FaceMatcher.compare(None, BASE_DESCRIPTOR, 0.45)
    assert not result.match
    assert result.distance == 1.0
    assert result.confidence == 0


def test_compare_shape_mismatch():
    with pytest.raises(CorruptTemplate):
        FaceMatcher.compare(np.zeros(128), np.zeros(64), 0.45)


def test_majority_of_frames_matches():
    result = verify(matcher_for([match_at(0.3), match_at(0.35), match_at(0.9)]))

    assert result.success
    assert result.matched_frames == 2
    assert result.required_matches == 2
    assert result.success_rate == 67
    assert result.avg_confidence == 48
    assert [a.matched for a in result.per_frame_results] == [True, True, False]


def test_minority_of_frames_fails():
    result = verify(matcher_for([match_at(0.9), match_at(0.8), match_at(0.1)]))

    assert not result.success
    assert result.matched_frames == 1


def test_missing_faces_count_against_the_verdict():
    result = verify(matcher_for([[], [], match_at(0.1)]))

    assert not result.success
    assert result.detected_frames == 1
    assert result.success_rate == 100
    assert [a.error for a in result.per_frame_results] == ["NoFaceDetected", "NoFaceDetected", None]


def test_one_missing_face_can_still_pass():
    result = verify(matcher_for([[], match_at(0.1), match_at(0.2)]))

    assert result.success
    assert result.detected_frames == 2


def test_second_person_in_frame_is_not_a_match():
    result = verify(matcher_for([[face(), face()], match_at(0.1), match_at(0.9)]))

    assert not result.success
    assert result.per_frame_results[0].error == "MultipleFacesDetected"


def test_detector_errors_are_recorded():
    result = verify(matcher_for([RuntimeError("model crashed"), match_at(0.1), match_at(0.1)]))

    assert result.success
    assert result.per_frame_results[0].error == "DetectorError"


def test_exhausted_source_fills_remaining_frames():
    result = verify(matcher_for([match_at(0.1)]), source=frames(1))

    assert not result.success
    assert [a.error for a in result.per_frame_results] == [None, "FrameUnavailable", "FrameUnavailable"]


def test_corrupt_stored_template_propagates():
    matcher = matcher_for([match_at(0.1)])
    with pytest.raises(CorruptTemplate):
        asyncio.run(matcher.verify_multi_frame(frames(3), np.zeros(64)))


def test_explicit_quorum():
    result = verify(matcher_for([match_at(0.1), match_at(0.9), match_at(0.9)], required_matches=1))
    assert result.success
    assert result.required_matches == 1


def test_quorum_out_of_range():
    with pytest.raises(ValueError):
        matcher_for([], required_matches=4).quorum(3)


def test_quality_gate_accepts_centered_face():
    assert matcher_for([[face()]]).check_quality(FRAME).descriptor is not None


@pytest.mark.parametrize("box", [
    BoundingBox(x=300, y=200, width=40, height=40),
    BoundingBox(x=2, y=140, width=200, height=200),
    BoundingBox(x=220, y=140, width=200, height=335),
])
def test_quality_gate_rejects(box):
    with pytest.raises(PoorImageQuality):
        matcher_for([[face(box=box)]]).check_quality(FRAME)


def test_quality_gate_requires_exactly_one_face():
    with pytest.raises(NoFaceDetected):
        matcher_for([[]]).check_quality(FRAME)
    with pytest.raises(MultipleFacesDetected):
        matcher_for([[face(), face()]]).check_quality(FRAME)


def test_encoding_quality_range():
    assert FaceMatcher.encoding_quality(np.zeros(128)) == 0
    assert 0 < FaceMatcher.encoding_quality(BASE_DESCRIPTOR) <= 100
