import pathlib
import sys
from typing import Callable

import httpx
import pytest
from pydantic import SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from voicestream.client import ElevenLabsClient  # noqa: E402
from voicestream.config import Settings  # noqa: E402


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> Settings:
    return Settings(
        elevenlabs_api_key=SecretStr("test-key"),
        cache_dir=tmp_path / "cache",
    )


@pytest.fixture
def make_client(settings: Settings) -> Callable[..., ElevenLabsClient]:
    """Build a client whose HTTP traffic goes to ``handler`` instead of the network."""

    def _make(handler, client_settings: Settings | None = None) -> ElevenLabsClient:
        transport = httpx.MockTransport(handler)
        return ElevenLabsClient(
            client_settings or settings,
            http_client=httpx.AsyncClient(transport=transport),
        )

    return _make
