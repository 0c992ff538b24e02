"""
SUMMON Router: Complexity-Aware Backend Selection

Picks which configured backend runs a job. The choice is deterministic:
an explicit override wins, then a fixed preference list per complexity
tier, then the configured default, then the first catalog entry.
"""

from __future__ import annotations

from typing import Mapping

from loguru import logger

from summon.classifier import Complexity
from summon.config_loader import BackendDescriptor


class NoBackendConfiguredError(Exception):
    """The backend catalog is empty; nothing can run."""
    pass


MODEL_PREFERENCES: dict[str, tuple[str, ...]] = {
    "simple": ("deepseek", "claude-haiku", "gpt-3.5-turbo"),
    "medium": ("claude-sonnet", "gpt-4", "deepseek"),
    "complex": ("claude-sonnet", "gpt-4", "o1-preview"),
}


def select_backend(
    complexity: Complexity,
    catalog: Mapping[str, BackendDescriptor],
    override: str | None = None,
    default: str | None = None,
) -> BackendDescriptor:
    """Resolve a complexity tier (or an explicit override) to one backend.

    Args:
        complexity: Tier produced by the classifier.
        catalog: Available backends keyed by name. Read-only.
        override: Backend named in the instruction, if any.
        default: Configured default used when no preference matches.

    Returns:
        BackendDescriptor: The chosen backend.

    Raises:
        NoBackendConfiguredError: If the catalog is empty.
    """
    if not catalog:
        raise NoBackendConfiguredError(
            "No AI backends configured. Provide at least one provider API key."
        )

    if override:
        if override in catalog:
            logger.debug(f"[ROUTER] Override → {override}")
            return catalog[override]
        logger.warning(f"[ROUTER] Requested backend '{override}' is not configured. Known: {list(catalog)}")

    for name in MODEL_PREFERENCES.get(complexity, ()):
        if name in catalog:
            logger.debug(f"[ROUTER] {complexity} → {name}")
            return catalog[name]

    if default and default in catalog:
        logger.debug(f"[ROUTER] {complexity} → {default} (default)")
        return catalog[default]

    fallback = next(iter(catalog.values()))
    logger.debug(f"[ROUTER] {complexity} → {fallback.name} (first available)")
    return fallback


class Router:
    """
    Catalog-bound selector.

    The controller calls `router.select(complexity, override)`.
    The catalog is owned by configuration and never mutated here.
    """

    def __init__(self, catalog: Mapping[str, BackendDescriptor], default: str | None = None):
        self.catalog = dict(catalog)
        self.default = default

    def select(self, complexity: Complexity, override: str | None = None) -> BackendDescriptor:
        return select_backend(complexity, self.catalog, override=override, default=self.default)

    def describe(self) -> dict[str, list[str]]:
        """Preference lists narrowed to what is actually configured."""
        return {
            tier: [name for name in names if name in self.catalog]
            for tier, names in MODEL_PREFERENCES.items()
        }
