from __future__ import annotations

import base64
import io
from collections.abc import Callable, Iterator
from pathlib import Path
from types import ModuleType

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from prompt_miner.app.llm import GenerationRequest, GenerationResponse, InlinePart, TextPart
from prompt_miner.app.settings import Settings, get_settings
from prompt_miner.app.storage import InMemoryCollectionStore

Reply = Callable[[GenerationRequest], GenerationResponse]


class StubAdapter:
    """Test-only GenerativeAdapter double; ``reply`` may return or raise."""

    def __init__(self, reply: Reply | None = None) -> None:
        self.reply = reply or (lambda _request: GenerationResponse(text="[]"))
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.requests.append(request)
        return self.reply(request)


def request_text(request: GenerationRequest) -> str:
    return "\n".join(part.text for part in request.parts if isinstance(part, TextPart))


def inline_parts(request: GenerationRequest) -> list[InlinePart]:
    return [part for part in request.parts if isinstance(part, InlinePart)]


def png_bytes(width: int = 8, height: int = 6, color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def png_data_uri(width: int = 8, height: int = 6) -> str:
    return "data:image/png;base64," + base64.b64encode(png_bytes(width, height)).decode("ascii")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        gemini_api_key="",
        library_db_path=tmp_path / "library.sqlite",
        share_db_path=tmp_path / "share.sqlite",
    )


@pytest.fixture
def adapter() -> StubAdapter:
    return StubAdapter()


@pytest.fixture
def main_module(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[ModuleType]:
    # The module-level app is built on first import; keep its files out of the repo.
    monkeypatch.setenv("PROMPT_MINER_LIBRARY_DB_PATH", str(tmp_path / "default-library.sqlite"))
    monkeypatch.setenv("PROMPT_MINER_SHARE_DB_PATH", str(tmp_path / "default-share.sqlite"))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("PROMPT_MINER_GEMINI_API_KEY", raising=False)
    get_settings.cache_clear()
    from prompt_miner import main

    yield main
    get_settings.cache_clear()


@pytest.fixture
def client(main_module: ModuleType, settings: Settings, adapter: StubAdapter) -> Iterator[TestClient]:
    app = main_module.create_app(
        settings_override=settings,
        adapter=adapter,
        library_collection=InMemoryCollectionStore("prompts"),
        share_collection=InMemoryCollectionStore("shared-content"),
    )
    with TestClient(app) as test_client:
        yield test_client
