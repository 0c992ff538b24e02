import asyncio
from decimal import Decimal

import pytest
from pydantic import SecretStr

from summon.config_loader import BackendDescriptor

_ENV_VARS = [
    "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "DEEPSEEK_API_KEY", "GITHUB_TOKEN", "GITHUB_OUTPUT",
    "INPUT_OPENAI_API_KEY", "INPUT_ANTHROPIC_API_KEY", "INPUT_DEEPSEEK_API_KEY",
    "INPUT_DEFAULT_MODEL", "INPUT_COST_BUDGET_DAILY", "INPUT_MAX_EXECUTION_TIME",
    "INPUT_ALLOWED_USERS", "INPUT_ENABLE_AUTO_PR", "INPUT_CONFIG_FILE", "INPUT_GITHUB_TOKEN",
    "GITHUB_EVENT_PATH", "GITHUB_WORKSPACE", "GITHUB_REPOSITORY",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's real keys out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def make_backend(name: str, provider: str = "deepseek", cost: str = "0.0001", key: str | None = "test-key"):
    return BackendDescriptor(
        name=name,
        provider=provider,
        cost_per_unit=Decimal(cost),
        api_key=SecretStr(key) if key else None,
    )


def run(coro):
    return asyncio.run(coro)
