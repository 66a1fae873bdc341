"""Coder backends for headless coding agents."""

from headless_coders.runners.base import BaseCoder, RunStream
from headless_coders.runners.ports import HeadlessCoder
from headless_coders.runners.registry import (
    clear_registry,
    create_coder,
    ensure_builtin_coders,
    register_coder,
    registered_coders,
)
from headless_coders.runners.supervisor import InProcessRun, OutOfProcessRun, RunPhase, RunSupervisor, SupervisorConfig

__all__ = [
    "BaseCoder",
    "HeadlessCoder",
    "InProcessRun",
    "OutOfProcessRun",
    "RunPhase",
    "RunStream",
    "RunSupervisor",
    "SupervisorConfig",
    "clear_registry",
    "create_coder",
    "ensure_builtin_coders",
    "register_coder",
    "registered_coders",
]
