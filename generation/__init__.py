"""Generation tracking: records, storage and the submit/poll/callback pipeline."""
from .errors import GenerationError, GenerationNotFound, InvalidRequest, InvalidTransition, RateLimitExceeded
from .models import Generation, Track, transition
from .store import GenerationStore, InMemoryGenerationStore

__all__ = [
    "Generation",
    "GenerationError",
    "GenerationNotFound",
    "GenerationStore",
    "InMemoryGenerationStore",
    "InvalidRequest",
    "InvalidTransition",
    "RateLimitExceeded",
    "Track",
    "transition",
]
