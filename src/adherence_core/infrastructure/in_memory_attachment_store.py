"""In-memory attachment store adapter.

Implements the AttachmentStore protocol defined in domain/ports.py.
Objects are kept as bytes keyed by their public URL.
"""

from __future__ import annotations

import asyncio

from adherence_core.domain.errors import StoreError


class InMemoryAttachmentStore:

    def __init__(self, base_url: str = "memory://medicare-files") -> None:
        self._base_url = base_url.rstrip("/")
        self._objects: dict[str, bytes] = {}
        self._failures: list[StoreError] = []

    @property
    def objects(self) -> dict[str, bytes]:
        return dict(self._objects)

    def fail_next(self, error: StoreError | None = None) -> None:
        """Make the next store() call fail."""
        self._failures.append(error or StoreError("Injected attachment failure"))

    async def store(self, owner_scope: str, filename: str, content: bytes) -> str:
        await asyncio.sleep(0)
        if self._failures:
            raise self._failures.pop(0)
        url = f"{self._base_url}/{owner_scope.strip('/')}/{filename}"
        if url in self._objects:
            raise StoreError(f"Object already exists: {url}")
        self._objects[url] = bytes(content)
        return url

    async def remove(self, url: str) -> None:
        await asyncio.sleep(0)
        if self._objects.pop(url, None) is None:
            raise StoreError(f"No such object: {url}")
