"""Shared string constants for services, generation kinds and statuses."""

SERVICE_SUNO = "suno"
SERVICE_MUREKA = "mureka"
SERVICES = frozenset({SERVICE_SUNO, SERVICE_MUREKA})

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUSES = frozenset({STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED})
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})
ACTIVE_STATUSES = frozenset({STATUS_PENDING, STATUS_PROCESSING})

# completed -> completed is allowed so a re-delivered result can be applied again
ALLOWED_TRANSITIONS = {
    STATUS_PENDING: frozenset({STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_PROCESSING: frozenset({STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED}),
    STATUS_COMPLETED: frozenset({STATUS_COMPLETED}),
    STATUS_FAILED: frozenset(),
}

PROGRESS_BY_STATUS = {
    STATUS_PENDING: 25,
    STATUS_PROCESSING: 50,
    STATUS_COMPLETED: 100,
    STATUS_FAILED: 0,
}

KIND_TRACK = "track"
KIND_LYRICS = "lyrics"
KIND_COVER = "cover"
KIND_WAV = "wav"
KIND_VOCAL_SEPARATION = "vocal_separation"
KIND_STEMS = "stems"
KIND_EXTEND = "extend"
KIND_INSTRUMENTAL = "instrumental"
KIND_VIDEO = "video"
KIND_STYLE_BOOST = "style_boost"
KINDS = frozenset(
    {
        KIND_TRACK,
        KIND_LYRICS,
        KIND_COVER,
        KIND_WAV,
        KIND_VOCAL_SEPARATION,
        KIND_STEMS,
        KIND_EXTEND,
        KIND_INSTRUMENTAL,
        KIND_VIDEO,
        KIND_STYLE_BOOST,
    }
)

TIMEOUT_ERROR_MESSAGE = "Generation timed out"

__all__ = [
    "SERVICE_SUNO",
    "SERVICE_MUREKA",
    "SERVICES",
    "STATUS_PENDING",
    "STATUS_PROCESSING",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUSES",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "PROGRESS_BY_STATUS",
    "KIND_TRACK",
    "KIND_LYRICS",
    "KIND_COVER",
    "KIND_WAV",
    "KIND_VOCAL_SEPARATION",
    "KIND_STEMS",
    "KIND_EXTEND",
    "KIND_INSTRUMENTAL",
    "KIND_VIDEO",
    "KIND_STYLE_BOOST",
    "KINDS",
    "TIMEOUT_ERROR_MESSAGE",
]
