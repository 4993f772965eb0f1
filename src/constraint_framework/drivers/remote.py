"""
constraint-framework — networked driver

File: src/constraint_framework/drivers/remote.py

Purpose
- Forward module, data and query operations to an out-of-process policy engine over HTTP.

What should be included in this file
- REST mapping: ``/v1/policies/{name}``, ``/v1/data/{target}/{path}``, ``/v1/query/{target}``.
- Exception mapping from ``httpx`` failures to typed driver errors.
- Bounded retries for retryable failures and an optional in-flight request limit.

Functional requirements
- A 404 on delete is not an error.
- Identical module/data writes are skipped without a round trip.
- The base URL is required.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Final, TypeVar
from urllib.parse import quote

import httpx
import structlog

from constraint_framework.constants import DEFAULT_REMOTE_TIMEOUT_SECONDS, PYTHON_ENGINE
from constraint_framework.domain.models import canonical_json, to_json_value
from constraint_framework.domain.results import Result
from constraint_framework.drivers.base import (
    BackoffConfig,
    DataPath,
    Driver,
    QueryInput,
    QueryOptions,
    QueryResponse,
    SleepFn,
    normalize_path,
    run_with_retries,
)
from constraint_framework.errors import (
    CompileDiagnostic,
    DriverError,
    DriverServiceError,
    DriverTimeoutError,
    DriverUnavailableError,
    InvalidQueryError,
    ModuleCompileError,
)
from constraint_framework.instrumentation import StatsEntry
from constraint_framework.utils.concurrency import BoundedSemaphore

REMOTE_DRIVER_NAME: Final[str] = "remote"
_T = TypeVar("_T")


class RemoteDriver(Driver):
    """Driver backed by an HTTP policy engine."""

    name = REMOTE_DRIVER_NAME

    def __init__(
        self,
        *,
        url: str | None,
        timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
        backoff: BackoffConfig | None = None,
        max_concurrent_requests: int | None = None,
        token: str | None = None,
        language: str = PYTHON_ENGINE,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn = asyncio.sleep,
        logger: Any | None = None,
    ) -> None:
        if url is None or not str(url).strip():
            raise DriverUnavailableError(
                "remote driver URL not set", driver=REMOTE_DRIVER_NAME, retryable=False
            )
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.language = language
        self._base_url = str(url).rstrip("/")
        self._backoff = backoff or BackoffConfig()
        self._sleep = sleep
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._limiter = (
            BoundedSemaphore(max_concurrent_requests)
            if max_concurrent_requests is not None
            else None
        )
        headers = {"Authorization": f"Bearer {token}"} if token else None
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers=headers,
        )
        self._module_sources: dict[str, str] = {}
        self._data_fingerprints: dict[tuple[str, DataPath], str] = {}

    @property
    def base_url(self) -> str:
        return self._base_url

    # --- modules -------------------------------------------------------------

    async def put_module(self, name: str, source: str) -> bool:
        if self._module_sources.get(name) == source:
            return False
        response = await self._request(
            "PUT",
            f"/v1/policies/{quote(name, safe='')}",
            content=source.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
            accept=(400,),
        )
        if response.status_code == 400:
            raise _module_error(name, response)
        self._module_sources[name] = source
        return True

    async def delete_module(self, name: str) -> bool:
        response = await self._request(
            "DELETE", f"/v1/policies/{quote(name, safe='')}", accept=(404,)
        )
        self._module_sources.pop(name, None)
        return response.status_code != 404

    # --- data ----------------------------------------------------------------

    async def add_data(self, target: str, path: Sequence[str], obj: object) -> bool:
        segments = normalize_path(path)
        document = to_json_value(obj, path="data")
        fingerprint = canonical_json(document)
        if self._data_fingerprints.get((target, segments)) == fingerprint:
            return False
        await self._request("PUT", _data_url(target, segments), json=document)
        self._data_fingerprints[(target, segments)] = fingerprint
        return True

    async def remove_data(self, target: str, path: Sequence[str]) -> bool:
        segments = normalize_path(path)
        response = await self._request("DELETE", _data_url(target, segments), accept=(404,))
        prefix_len = len(segments)
        for key in [
            key
            for key in self._data_fingerprints
            if key[0] == target and key[1][:prefix_len] == segments
        ]:
            del self._data_fingerprints[key]
        return response.status_code != 404

    # --- query ---------------------------------------------------------------

    async def query(
        self,
        target: str,
        query_input: QueryInput,
        options: QueryOptions | None = None,
    ) -> QueryResponse:
        opts = options or QueryOptions()
        params: dict[str, str] = {}
        if opts.tracing:
            params["explain"] = "full"
            params["pretty"] = "true"
        if opts.stats:
            params["metrics"] = "true"
        response = await self._request(
            "POST",
            f"/v1/query/{quote(target, safe='')}",
            json={"input": query_input.to_dict()},
            params=params or None,
            accept=(400,),
        )
        if response.status_code == 400:
            raise InvalidQueryError(_error_message(response), driver=self.name)
        body = _json_body(response, driver=self.name)

        raw_results = body.get("result") or []
        if not isinstance(raw_results, list):
            raise DriverServiceError(
                "query result must be an array", driver=self.name, retryable=False
            )
        try:
            results = tuple(
                Result.from_dict(item, target=target, driver=self.name)
                for item in raw_results
                if isinstance(item, Mapping)
            )
            stats = tuple(
                StatsEntry.from_dict(item)
                for item in body.get("metrics") or []
                if isinstance(item, Mapping)
            )
        except ValueError as exc:
            raise DriverServiceError(
                f"malformed query response: {exc}", driver=self.name, retryable=False
            ) from exc
        return QueryResponse(results=results, trace=_render_explanation(body), stats_entries=stats)

    # --- debugging -----------------------------------------------------------

    async def dump(self) -> dict[str, Any]:
        policies = _json_body(await self._request("GET", "/v1/policies"), driver=self.name)
        data = _json_body(await self._request("GET", "/v1/data"), driver=self.name)
        modules: dict[str, str] = {}
        for item in policies.get("result") or []:
            if isinstance(item, Mapping) and isinstance(item.get("id"), str):
                modules[str(item["id"])] = str(item.get("raw", ""))
        return {"modules": dict(sorted(modules.items())), "data": data.get("result") or {}}

    async def close(self) -> None:
        await self._client.aclose()

    # --- transport -----------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        accept: Sequence[int] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        async def attempt() -> httpx.Response:
            response = await self._client.request(method, url, **kwargs)
            if response.status_code in accept:
                return response
            response.raise_for_status()
            return response

        return await self._limited(
            lambda: run_with_retries(
                attempt,
                map_exception=self._map_exception,
                backoff=self._backoff,
                sleep=self._sleep,
                on_retry=_retry_logger(self._logger, self.name, method, url),
            )
        )

    async def _limited(self, operation: Callable[[], Awaitable[_T]]) -> _T:
        if self._limiter is None:
            return await operation()
        async with self._limiter.permit():
            return await operation()

    def _map_exception(self, exc: Exception) -> DriverError:
        if isinstance(exc, DriverError):
            return exc
        detail = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, httpx.TimeoutException):
            return DriverTimeoutError(detail, driver=self.name)
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            message = _error_message(exc.response)
            return DriverServiceError(
                message,
                driver=self.name,
                retryable=status == 429 or status >= 500,
                http_status=status,
            )
        if isinstance(exc, httpx.TransportError):
            return DriverUnavailableError(detail, driver=self.name)
        return DriverServiceError(detail, driver=self.name, retryable=False)


def _retry_logger(
    logger: Any, driver: str, method: str, url: str
) -> Callable[[int, DriverError, float], None]:
    def on_retry(retry_number: int, error: DriverError, delay_seconds: float) -> None:
        logger.warning(
            "remote_driver_retry",
            driver=driver,
            method=method,
            url=url,
            retry_number=retry_number,
            error_code=error.code,
            delay_seconds=delay_seconds,
        )

    return on_retry


def _data_url(target: str, path: DataPath) -> str:
    encoded = "/".join(quote(segment, safe="") for segment in (target, *path))
    return f"/v1/data/{encoded}"


def _json_body(response: httpx.Response, *, driver: str) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise DriverServiceError(
            "response is not valid JSON", driver=driver, retryable=False
        ) from exc
    if not isinstance(body, dict):
        raise DriverServiceError("response must be a JSON object", driver=driver, retryable=False)
    return body


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, Mapping) and isinstance(body.get("message"), str):
        return str(body["message"])
    return f"HTTP {response.status_code}"


def _module_error(name: str, response: httpx.Response) -> ModuleCompileError:
    diagnostics: list[CompileDiagnostic] = []
    try:
        body = response.json()
    except ValueError:
        body = {}
    errors = body.get("errors") if isinstance(body, Mapping) else None
    for item in errors or []:
        if not isinstance(item, Mapping):
            continue
        location = item.get("location") if isinstance(item.get("location"), Mapping) else {}
        diagnostics.append(
            CompileDiagnostic(
                segment=str(location.get("segment", "module")),
                line=int(location.get("row", 0) or 0),
                column=int(location.get("col", 0) or 0),
                message=str(item.get("message", "")),
            )
        )
    return ModuleCompileError(
        _error_message(response),
        module=name,
        driver=REMOTE_DRIVER_NAME,
        diagnostics=diagnostics,
    )


def _render_explanation(body: Mapping[str, Any]) -> str | None:
    explanation = body.get("explanation")
    if explanation is None:
        return None
    if isinstance(explanation, str):
        return explanation
    if isinstance(explanation, list):
        return "\n".join(str(line) for line in explanation)
    return canonical_json(explanation)


__all__ = ["REMOTE_DRIVER_NAME", "RemoteDriver"]
