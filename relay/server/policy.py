from __future__ import annotations

from dataclasses import dataclass, replace

from ..agents.base import AbnormalExit, TaskError, TaskOptions, diagnostic_excerpt

DEFAULT_FALLBACK_MODEL = "claude-sonnet-4-20250514"


@dataclass
class FallbackPolicy:
    """Retry once on an abnormal CLI exit, with the fallback model and no resume.

    A broken resume typically exits with code 1, so the retry starts a fresh
    session. Aborts and timeouts are never retried.
    """

    fallback_model: str = DEFAULT_FALLBACK_MODEL
    retry_exit_codes: frozenset[int] = frozenset({1})
    max_retries: int = 1

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return isinstance(error, AbnormalExit) and error.code in self.retry_exit_codes

    def retry_options(self, options: TaskOptions) -> TaskOptions:
        return replace(options.without_resume(), model=self.fallback_model)

    def combine(self, first: TaskError, second: TaskError) -> TaskError:
        """Return the second failure unchanged except for both attempts' diagnostics."""
        parts = [diagnostic_excerpt(e.diagnostics) for e in (first, second)]
        second.diagnostics = "\n\n".join(p for p in parts if p)
        return second
