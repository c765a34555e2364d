import pytest

from core.constants import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from generation.errors import InvalidRequest, InvalidTransition
from generation.models import Generation, Track, can_transition, transition


def _generation(**kwargs) -> Generation:
    return Generation(user_id="u1", service="suno", kind="track", prompt="idea", **kwargs)


def test_happy_path_transitions_and_progress() -> None:
    generation = _generation()
    assert generation.status == STATUS_PENDING
    assert generation.progress == 25
    before = generation.updated_at
    transition(generation, STATUS_PROCESSING, external_id="t-1", metadata={"model": "V4"})
    assert generation.progress == 50
    assert generation.external_id == "t-1"
    assert generation.updated_at >= before
    transition(generation, STATUS_COMPLETED, result_url="https://a/1.mp3", metadata={"takes": 2})
    assert generation.progress == 100
    assert generation.metadata == {"model": "V4", "takes": 2}


def test_terminal_states() -> None:
    assert can_transition(STATUS_COMPLETED, STATUS_COMPLETED)
    assert not can_transition(STATUS_COMPLETED, STATUS_FAILED)
    assert not can_transition(STATUS_FAILED, STATUS_PROCESSING)
    generation = _generation(status=STATUS_FAILED)
    with pytest.raises(InvalidTransition) as excinfo:
        transition(generation, STATUS_PROCESSING)
    assert excinfo.value.current == STATUS_FAILED
    assert generation.status == STATUS_FAILED


def test_unknown_values_are_rejected() -> None:
    with pytest.raises(InvalidRequest):
        Generation(user_id="u1", service="udio", kind="track")
    with pytest.raises(InvalidRequest):
        Generation(user_id="u1", service="suno", kind="remix")
    with pytest.raises(InvalidTransition):
        transition(_generation(), "archived")


def test_track_invariants() -> None:
    with pytest.raises(InvalidRequest):
        Track(project_id="p", title="t", track_number=0)
    with pytest.raises(InvalidRequest):
        Track(project_id="p", title="t", track_number=1, duration=0)
    track = Track(project_id="p", title="t", track_number=1, duration=12.5)
    assert track.to_dict()["duration"] == 12.5


def test_to_dict_serialises_timestamps() -> None:
    data = _generation().to_dict()
    assert isinstance(data["created_at"], str)
    assert data["progress"] == 25
