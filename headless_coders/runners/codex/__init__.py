from headless_coders.runners.codex.events import normalize_codex_event
from headless_coders.runners.codex.runner import CodexCoder, CodexWorkerRun

__all__ = ["CodexCoder", "CodexWorkerRun", "normalize_codex_event"]
