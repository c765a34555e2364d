"""Public surface for the Suno integration."""
from .client import SunoAPIError, SunoClient, SunoClientError, SunoServerError
from .schemas import CallbackEnvelope, RecordInfo, SunoTask, SunoTrack

__all__ = [
    "CallbackEnvelope",
    "RecordInfo",
    "SunoAPIError",
    "SunoClient",
    "SunoClientError",
    "SunoServerError",
    "SunoTask",
    "SunoTrack",
]
