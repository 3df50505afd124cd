"""Shared fixtures: a mocked OpenAI client, a fake clock and an in-memory router."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from ensemble.backend import GenerativeBackend
from ensemble.config import EnsembleConfig
from ensemble.costs import CostTracker
from ensemble.directory import StateDirectory
from ensemble.router import ConversationRouter


def make_response(text="OK", prompt_tokens=1000, completion_tokens=500):
    """Shape of an OpenAI chat completion as far as the backend reads it."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = text
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.usage.total_tokens = prompt_tokens + completion_tokens
    return response


class FakeClock:
    def __init__(self, start=10_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=make_response())
    client.close = AsyncMock()
    return client


@pytest.fixture
def reply_with(client):
    """Set the text (and optionally token counts) of the next completions."""
    def _reply(text, prompt_tokens=1000, completion_tokens=500):
        client.chat.completions.create.return_value = make_response(text, prompt_tokens, completion_tokens)
    return _reply


@pytest.fixture
def config():
    config = EnsembleConfig()
    config.backend.api_key = "test-key"
    return config


@pytest.fixture
def backend(config, client, clock):
    return GenerativeBackend(config, client=client, clock=clock)


@pytest.fixture
def directory():
    return StateDirectory(state_dir=None)


@pytest.fixture
def costs():
    return CostTracker()


@pytest.fixture
def router(directory, backend, costs):
    return ConversationRouter(directory, backend, costs)
