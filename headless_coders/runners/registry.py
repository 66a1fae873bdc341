"""Coder registry.

This provides a single place to map a provider name to its concrete coder
implementation. Callers should depend on the `HeadlessCoder` port.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from headless_coders.runners.ports import HeadlessCoder

log = logging.getLogger("registry")

CoderFactory = Callable[..., HeadlessCoder]

_registry: dict[str, CoderFactory] = {}


def _normalize(name: str) -> str:
    return (name or "").strip().lower()


def register_coder(name: str, factory: CoderFactory) -> None:
    """Register (or replace) the factory for a provider name."""
    key = _normalize(name)
    if not key:
        raise ValueError("Coder name must not be empty")
    if key in _registry and _registry[key] is not factory:
        log.info(f"Replacing coder factory for {key}")
    _registry[key] = factory


def registered_coders() -> list[str]:
    return sorted(_registry)


def clear_registry() -> None:
    _registry.clear()


def _codex(defaults: Any = None, **kwargs: Any) -> HeadlessCoder:
    from headless_coders.runners.codex.runner import CodexCoder

    return CodexCoder(defaults, **kwargs)


def _claude(defaults: Any = None, **kwargs: Any) -> HeadlessCoder:
    from headless_coders.runners.claude import ClaudeCoder

    return ClaudeCoder(defaults, **kwargs)


def _gemini(defaults: Any = None, **kwargs: Any) -> HeadlessCoder:
    from headless_coders.runners.gemini import GeminiCoder

    return GeminiCoder(defaults, **kwargs)


BUILTIN_CODERS: dict[str, CoderFactory] = {
    "codex": _codex,
    "claude": _claude,
    "gemini": _gemini,
}


def ensure_builtin_coders() -> None:
    """Register the bundled backends unless a name is already taken."""
    for name, factory in BUILTIN_CODERS.items():
        _registry.setdefault(name, factory)


def create_coder(name: str, defaults: Any = None, **kwargs: Any) -> HeadlessCoder:
    key = _normalize(name)
    factory = _registry.get(key)
    if factory is None:
        raise ValueError(f"Unknown coder: {name}")

    coder = factory(defaults, **kwargs)
    if not isinstance(coder, HeadlessCoder):
        raise TypeError(f"{key} coder does not satisfy HeadlessCoder port")
    return coder
