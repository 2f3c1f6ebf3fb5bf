from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from google.genai import errors as genai_errors

from prompt_miner.app.errors import BackendError
from prompt_miner.app.extraction import UNAVAILABLE_MESSAGE, classify_failure
from prompt_miner.app.llm import (
    GeminiAdapter,
    GenerationRequest,
    InlinePart,
    TextPart,
    build_adapter_from_settings,
)
from prompt_miner.app.settings import Settings


class FakeModels:
    def __init__(self, response: Any = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def _client(models: FakeModels) -> Any:
    return SimpleNamespace(aio=SimpleNamespace(models=models))


def _response(*parts: Any) -> Any:
    return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=list(parts)))])


def _part(text: str | None = None, inline: Any = None, thought: bool = False) -> Any:
    return SimpleNamespace(text=text, inline_data=inline, thought=thought)


def test_structured_request_config() -> None:
    models = FakeModels(response=_response(_part(text='[{"content": "x"}]')))
    adapter = GeminiAdapter(client=_client(models))
    request = GenerationRequest(
        model="gemini-2.5-flash",
        parts=[
            InlinePart(mime_type="image/png", data=base64.b64encode(b"png-bytes").decode("ascii")),
            TextPart(text="Analyze"),
        ],
        system_instruction="You are a parser.",
        response_mime_type="application/json",
        response_schema={"type": "ARRAY", "items": {"type": "STRING"}},
    )

    response = asyncio.run(adapter.generate(request))

    assert response.text == '[{"content": "x"}]'
    call = models.calls[0]
    assert call["model"] == "gemini-2.5-flash"
    assert call["config"].response_mime_type == "application/json"
    assert call["config"].tools is None
    assert call["contents"].parts[0].inline_data.data == b"png-bytes"
    assert call["contents"].parts[1].text == "Analyze"


def test_search_request_drops_schema() -> None:
    models = FakeModels(response=_response(_part(text="plain answer")))
    adapter = GeminiAdapter(client=_client(models))
    request = GenerationRequest(
        model="gemini-2.5-flash",
        parts=[TextPart(text="https://example.com")],
        response_mime_type="application/json",
        response_schema={"type": "ARRAY"},
        use_search=True,
    )

    asyncio.run(adapter.generate(request))

    config = models.calls[0]["config"]
    assert config.response_schema is None
    assert config.response_mime_type is None
    assert len(config.tools) == 1


def test_response_skips_thoughts_and_collects_images() -> None:
    inline = SimpleNamespace(data=b"\x89PNG", mime_type="image/png")
    models = FakeModels(
        response=_response(
            _part(text="thinking...", thought=True),
            _part(text="Here is "),
            _part(text="your image"),
            _part(inline=inline),
        )
    )
    adapter = GeminiAdapter(client=_client(models))

    response = asyncio.run(
        adapter.generate(GenerationRequest(model="gemini-2.5-flash-image", parts=[TextPart(text="draw")]))
    )

    assert response.text == "Here is your image"
    assert len(response.images) == 1
    assert response.images[0].mime_type == "image/png"
    assert response.images[0].data == base64.b64encode(b"\x89PNG").decode("ascii")


def test_api_errors_become_backend_errors() -> None:
    error = genai_errors.APIError(503, {"error": {"message": "The model is overloaded.", "status": "UNAVAILABLE"}})
    adapter = GeminiAdapter(client=_client(FakeModels(error=error)))

    with pytest.raises(BackendError) as exc_info:
        asyncio.run(adapter.generate(GenerationRequest(model="m", parts=[TextPart(text="x")])))

    assert exc_info.value.status_code == 503
    assert classify_failure(exc_info.value) == UNAVAILABLE_MESSAGE


def test_invalid_inline_payload_is_a_bad_request() -> None:
    adapter = GeminiAdapter(client=_client(FakeModels()))
    request = GenerationRequest(model="m", parts=[InlinePart(mime_type="image/png", data="@@not-base64@@")])

    with pytest.raises(BackendError) as exc_info:
        asyncio.run(adapter.generate(request))

    assert exc_info.value.status_code == 400


def test_adapter_requires_key_or_client() -> None:
    with pytest.raises(RuntimeError, match="GEMINI_API_KEY is missing"):
        GeminiAdapter()


def test_build_adapter_from_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    settings = Settings(_env_file=None, gemini_api_key="", library_db_path=tmp_path / "l.sqlite")
    assert build_adapter_from_settings(settings) is None

    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    assert isinstance(build_adapter_from_settings(settings), GeminiAdapter)
