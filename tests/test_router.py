import pytest

from summon.router import NoBackendConfiguredError, Router, select_backend

from conftest import make_backend


def _catalog(*names):
    providers = {"claude-sonnet": "anthropic", "gpt-4": "openai"}
    return {n: make_backend(n, providers.get(n, "deepseek")) for n in names}


def test_empty_catalog_raises():
    with pytest.raises(NoBackendConfiguredError):
        select_backend("simple", {})


def test_preferences_per_tier():
    catalog = _catalog("deepseek", "claude-sonnet", "gpt-4")
    assert select_backend("simple", catalog).name == "deepseek"
    assert select_backend("medium", catalog).name == "claude-sonnet"
    assert select_backend("complex", catalog).name == "claude-sonnet"


def test_preferences_skip_missing_backends():
    catalog = _catalog("gpt-4", "deepseek")
    assert select_backend("complex", catalog).name == "gpt-4"
    assert select_backend("medium", catalog).name == "gpt-4"


def test_override_wins():
    catalog = _catalog("deepseek", "gpt-4")
    assert select_backend("simple", catalog, override="gpt-4").name == "gpt-4"


def test_unknown_override_is_ignored():
    catalog = _catalog("deepseek")
    assert select_backend("simple", catalog, override="o3-mega").name == "deepseek"


def test_fallback_to_default_then_first():
    catalog = _catalog("local-a", "local-b")
    assert select_backend("complex", catalog, default="local-b").name == "local-b"
    assert select_backend("complex", catalog).name == "local-a"


def test_selection_is_deterministic():
    catalog = _catalog("local-a", "gpt-4", "deepseek")
    picks = {select_backend("medium", catalog).name for _ in range(20)}
    assert picks == {"gpt-4"}


def test_router_describe():
    router = Router(_catalog("deepseek", "gpt-4"))
    assert router.describe() == {
        "simple": ["deepseek"],
        "medium": ["gpt-4", "deepseek"],
        "complex": ["gpt-4"],
    }
    assert router.select("simple").name == "deepseek"
