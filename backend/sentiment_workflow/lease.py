"""Cross-process lease guarding the single writer of a workflow history.

`single_process` mode uses a no-op implementation; the engine's per-workflow
lock already serialises writers inside one process.
`distributed` mode uses a durable lease backed by Redis.
"""

from __future__ import annotations

from typing import Protocol


class WorkflowLease(Protocol):
    async def acquire(self, key: str) -> bool:
        """Attempt to acquire the lease for `key`."""

    async def release(self, key: str) -> None:
        """Release the lease for `key` if currently owned."""

    async def close(self) -> None:
        """Release resources held by the lease provider."""


class NoopWorkflowLease:
    """Lease provider for single-process mode."""

    async def acquire(self, key: str) -> bool:  # noqa: ARG002
        return True

    async def release(self, key: str) -> None:  # noqa: ARG002
        return None

    async def close(self) -> None:
        return None
