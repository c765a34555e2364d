import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ["APP_ENV"] = "test"
os.environ.setdefault("SUNO_API_TOKEN", "suno-test-token")
os.environ.setdefault("SUNO_CALLBACK_URL", "https://music.example/suno-callback")
os.environ.setdefault("SUNO_CALLBACK_SECRET", "expected")
os.environ.setdefault("MUREKA_API_KEY", "mureka-test-key")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)

import redis_utils


@pytest.fixture(autouse=True)
def _reset_idempotency():
    redis_utils.clear_memory_state()
    yield
    redis_utils.clear_memory_state()
