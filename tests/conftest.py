"""Pytest configuration: project importability plus shared upstream fakes."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT_DIR)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

PROVIDERS_TOML = """
[direct]
kind = "openai"
base_url = "https://direct.test/v1"
api_key = "sk-direct"

[direct.models.gpt-4o]
name = "gpt-4o-2024-08-06"
max_tokens = 1024

[modelhub]
kind = "modelhub"
mode = "gemini"
base_url = "https://hub.test/api"
api_key = "hub-key"

[modelhub.models.gpt-5]
max_tokens = 2048

[hub-responses]
kind = "modelhub"
base_url = "https://hub.test/api"
api_key = "hub-key"
api_key_param = "key"

[hub-responses.models.gpt-5]
alias = "resp-five"
"""

ROUTER_YAML = """
aliases:
  alias-sonnet: modelhub/gpt-5
"""


def write_config(tmp_path: Path, providers: str = PROVIDERS_TOML, router: str | None = ROUTER_YAML) -> str:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "providers.toml").write_text(providers, encoding="utf-8")
    if router is not None:
        (config_dir / "router.yaml").write_text(router, encoding="utf-8")
    return str(config_dir)


def sse_body(*payloads: dict[str, Any], done: bool = False) -> bytes:
    chunks = [f"data: {json.dumps(payload)}\n\n" for payload in payloads]
    if done:
        chunks.append("data: [DONE]\n\n")
    return "".join(chunks).encode("utf-8")


def sse_response(*payloads: dict[str, Any], done: bool = False) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        content=sse_body(*payloads, done=done),
    )


def parse_sse_payload(payload: str) -> list[tuple[str | None, dict[str, Any]]]:
    events: list[tuple[str | None, dict[str, Any]]] = []
    for chunk in filter(None, payload.split("\n\n")):
        event_name: str | None = None
        data_text = ""
        for line in chunk.split("\n"):
            if line.startswith("event: "):
                event_name = line[7:]
            elif line.startswith("data: "):
                data_text = line[6:]
        events.append((event_name, json.loads(data_text)))
    return events


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests if request.content]


@pytest.fixture
def config_dir(tmp_path: Path) -> str:
    return write_config(tmp_path)
