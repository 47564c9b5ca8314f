from __future__ import annotations

import httpx
import pytest

from canvasflow.config import Provider, Settings
from canvasflow.service.errors import ProviderError, UnsupportedTaskError
from canvasflow.service.model_backend import ProviderPlug, ProviderRegistry


class StubClient:
    def __init__(self, key):
        self.key = key


def _registry(**settings) -> ProviderRegistry:
    plugs = {
        Provider.OPENAI: ProviderPlug(Provider.OPENAI, "OpenAI", lambda key, s, http: StubClient(key)),
    }
    return ProviderRegistry(Settings(test_mode=True, **settings), httpx.AsyncClient(), plugs)


def test_task_key_preferred_over_configured_key():
    registry = _registry(openai_api_key="sk-configured")
    assert registry.client_for(Provider.OPENAI, "sk-task").key == "sk-task"
    assert registry.client_for(Provider.OPENAI).key == "sk-configured"


def test_missing_key_is_provider_error():
    with pytest.raises(ProviderError):
        _registry().client_for(Provider.OPENAI)


def test_unregistered_provider_is_unsupported():
    with pytest.raises(UnsupportedTaskError):
        _registry(anthropic_api_key="k").client_for(Provider.ANTHROPIC)
