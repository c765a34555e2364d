from core.constants import STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, STATUS_PROCESSING
from mureka.schemas import MurekaTask, map_mureka_status, normalize_duration
from suno.schemas import ApiEnvelope, CallbackEnvelope, RecordInfo, SunoTask, credits_status, map_suno_status


def test_map_suno_status() -> None:
    assert map_suno_status("SUCCESS") == STATUS_COMPLETED
    assert map_suno_status("CREATE_TASK_FAILED") == STATUS_FAILED
    assert map_suno_status("SENSITIVE_WORD_ERROR") == STATUS_FAILED
    assert map_suno_status("callback_exception") == STATUS_FAILED
    assert map_suno_status("TEXT_SUCCESS") == STATUS_PROCESSING
    assert map_suno_status(None) == STATUS_PROCESSING


def test_record_info_reads_nested_tracks() -> None:
    info = RecordInfo.from_payload(
        {
            "code": 200,
            "data": {
                "taskId": "t-1",
                "status": "SUCCESS",
                "response": {
                    "sunoData": [
                        {"id": "a1", "audioUrl": "https://a/1.mp3", "prompt": "[Verse]\nhi", "duration": 120},
                        {"id": "a2", "streamAudioUrl": "https://a/2.stream", "duration": 0},
                    ]
                },
            },
        }
    )
    assert info.task_id == "t-1"
    assert info.status == STATUS_COMPLETED
    assert [track.id for track in info.tracks] == ["a1", "a2"]
    assert info.tracks[0].lyrics == "[Verse]\nhi"
    assert info.tracks[0].duration == 120.0
    assert info.tracks[1].duration is None
    assert info.tracks[1].stream_audio_url == "https://a/2.stream"


def test_record_info_maps_success_flag() -> None:
    info = RecordInfo.from_payload({"data": {"taskId": "c-1", "successFlag": 1, "response": {"images": ["x"]}}})
    assert info.raw_status == "SUCCESS"
    assert info.status == STATUS_COMPLETED
    failed = RecordInfo.from_payload({"data": {"successFlag": "3", "errorMessage": "nope"}})
    assert failed.status == STATUS_FAILED
    assert failed.error_message == "nope"


def test_callback_task_from_envelope() -> None:
    envelope = CallbackEnvelope.model_validate(
        {
            "code": 200,
            "msg": "All generated successfully.",
            "data": {
                "callbackType": "COMPLETE",
                "task_id": "t-9",
                "data": [{"id": "x1", "audio_url": "https://a/x1.mp3", "tags": ["pop", "rock"]}],
            },
        }
    )
    task = SunoTask.from_envelope(envelope)
    assert task.task_id == "t-9"
    assert task.callback_type == "complete"
    assert task.succeeded
    assert task.items[0].tags == "pop, rock"


def test_callback_error_code_is_not_success() -> None:
    task = SunoTask.from_envelope(CallbackEnvelope(code=501, msg="failed", data={"task_id": "t", "callbackType": "error"}))
    assert not task.succeeded


def test_credits_status() -> None:
    assert credits_status(None) == "offline"
    assert credits_status(3, threshold=5) == "limited"
    assert credits_status(50, threshold=5) == "online"


def test_mureka_status_and_duration() -> None:
    assert map_mureka_status("succeeded") == STATUS_COMPLETED
    assert map_mureka_status("timeouted") == STATUS_FAILED
    assert map_mureka_status("streaming") == STATUS_PROCESSING
    assert map_mureka_status("") == STATUS_PENDING
    assert normalize_duration(185000) == 185.0
    assert normalize_duration(185) == 185.0
    assert normalize_duration("bad") is None
    assert normalize_duration(0) is None


def test_mureka_task_from_payload() -> None:
    task = MurekaTask.from_payload(
        {
            "id": "song-1",
            "status": "succeeded",
            "model": "mureka-7",
            "choices": [
                {"url": "https://a/1.mp3", "duration": 200500},
                {"audio_url": "https://a/2.mp3", "index": 5},
                "junk",
            ],
        }
    )
    assert task.mapped_status == STATUS_COMPLETED
    assert [choice.audio_url for choice in task.choices] == ["https://a/1.mp3", "https://a/2.mp3"]
    assert task.choices[0].duration == 200.5
    assert task.choices[0].index == 0
    assert task.choices[1].index == 5


def test_api_envelope_coerces_code_and_msg() -> None:
    envelope = ApiEnvelope.model_validate({"code": "430", "msg": "  call frequency too high ", "extra": 1})
    assert envelope.code == 430
    assert envelope.msg == "call frequency too high"
    assert not envelope.ok

    assert ApiEnvelope.model_validate({"data": {"taskId": "t-1"}}).ok
    assert ApiEnvelope.model_validate({"code": 200, "msg": "", "data": 5}).msg is None
    odd = ApiEnvelope.model_validate({"code": "n/a", "msg": 404})
    assert odd.code is None
    assert odd.msg == "404"
    assert odd.ok
