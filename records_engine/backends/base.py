from __future__ import annotations

from typing import Any, Protocol

from records_engine.schemas import QuerySpecification


class ResourceBackend(Protocol):
    async def fetch(self, spec: QuerySpecification) -> tuple[list[dict[str, Any]], int]: ...

    async def aclose(self) -> None: ...
