"""Post-commit side effects (audit entries, notifications)."""

from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger(__name__)

Hook = Callable[[AsyncSession], Awaitable[None]]


class PostCommitHooks:
    """
    Ordered list of side effects to run once the authoritative write commits.

    Each hook receives the session and runs in its own transaction. A hook that
    raises is rolled back and logged; it never reaches the caller and never
    stops the hooks queued after it.
    """

    def __init__(self) -> None:
        self._hooks: list[tuple[str, Hook]] = []

    def add(self, name: str, hook: Hook) -> None:
        """Queue a hook under a name used in logs."""
        self._hooks.append((name, hook))

    def __len__(self) -> int:
        return len(self._hooks)

    async def run(self, db: AsyncSession) -> int:
        """
        Run and clear all queued hooks.

        Returns:
            Number of hooks that failed
        """
        hooks, self._hooks = self._hooks, []
        failures = 0

        for name, hook in hooks:
            try:
                await hook(db)
                await db.commit()
            except Exception as e:
                failures += 1
                await db.rollback()
                logger.warning("post_commit_hook_failed", hook=name, error=str(e))

        return failures
