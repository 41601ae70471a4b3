from __future__ import annotations

import logging
from typing import Any

import httpx

from records_engine.errors import QueryExecutionError
from records_engine.schemas import QuerySpecification
from records_engine.services.translator import to_query_params
from records_engine.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")


class HttpResourceBackend:
    """Runs specifications against the records REST API (``GET /query/{resource}``)."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._settings.resource_backend_token:
            headers["Authorization"] = f"Bearer {self._settings.resource_backend_token}"
        self._client = httpx.AsyncClient(
            base_url=self._settings.resource_backend_url,
            timeout=float(self._settings.backend_timeout_seconds),
            headers=headers,
            transport=transport,
        )

    async def fetch(self, spec: QuerySpecification) -> tuple[list[dict[str, Any]], int]:
        try:
            response = await self._client.get(f"/query/{spec.resource_type}", params=to_query_params(spec))
        except httpx.TimeoutException as exc:
            raise QueryExecutionError("Resource backend timed out", cause=exc, status_code=504) from exc
        except httpx.RequestError as exc:
            raise QueryExecutionError(f"Resource backend unavailable: {exc}", cause=exc) from exc

        if response.status_code >= 400:
            logger.warning(
                "backend.http_error | %s",
                {"resource_type": spec.resource_type, "status_code": response.status_code},
            )
            raise QueryExecutionError(f"Resource backend returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise QueryExecutionError("Resource backend returned invalid JSON", cause=exc) from exc

        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise QueryExecutionError("Resource backend response is missing 'data'")

        rows = [row for row in payload["data"] if isinstance(row, dict)]
        try:
            total = int(payload.get("total", len(rows)))
        except (TypeError, ValueError) as exc:
            raise QueryExecutionError("Resource backend returned an invalid total", cause=exc) from exc
        return rows, total

    async def aclose(self) -> None:
        await self._client.aclose()
