"""
RestActionExecutor — steps that call an HTTP API.

Usage in a step definition::

    Step(
        name="notify-release",
        type=StepType.REST_API,
        action={
            "method": "POST",
            "url": "{base_url}/api/releases",
            "json": {"version": "{version}"},
            "expected_status": [200, 201],
        },
    )

`{placeholders}` in the URL and in string values of the JSON body are
resolved from the execution variables plus `version`, `environment`
and `execution_id`.  A response outside `expected_status` is reported
as exit code 1 with the response body as the error.
"""

from __future__ import annotations

import json
from typing import Any, Mapping

import httpx

from deployflow.core.constants import APIRequestMethod
from deployflow.core.logging import get_logger
from deployflow.pipeline.context import ExecutionContext
from deployflow.pipeline.errors import StepExecutionError
from deployflow.pipeline.interfaces import ActionResult

logger = get_logger(__name__)

# Default timeout for API calls (seconds)
DEFAULT_TIMEOUT = 30
DEFAULT_EXPECTED_STATUS = (200, 201, 202, 204)


class RestActionExecutor:

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._client = client
        self._timeout = timeout

    async def execute(self, action: Mapping[str, Any], context: ExecutionContext) -> ActionResult:
        try:
            method = APIRequestMethod(str(action.get("method", "GET")).upper())
        except ValueError as exc:
            raise StepExecutionError(
                f"Unsupported HTTP method {action.get('method')!r}",
                execution_id=context.execution_id,
                step_name=context.step_name,
            ) from exc
        if not action.get("url"):
            raise StepExecutionError(
                "REST action needs a 'url'",
                execution_id=context.execution_id,
                step_name=context.step_name,
            )

        replacements = self._replacements(context)
        url = self._render(action["url"], replacements)
        headers = {"Content-Type": "application/json", **(action.get("headers") or {})}
        body = self._render(action.get("json"), replacements)
        expected = tuple(action.get("expected_status") or DEFAULT_EXPECTED_STATUS)

        logger.info(
            "Making API request",
            step=context.step_name,
            method=str(method),
            url=url,
            has_body=body is not None,
            invocation_id=context.invocation_id,
        )

        headers.setdefault("X-Invocation-Id", context.invocation_id)
        if self._client is not None:
            response = await self._client.request(str(method), url, headers=headers, json=body)
        else:
            async with httpx.AsyncClient(timeout=action.get("timeout", self._timeout)) as client:
                response = await client.request(str(method), url, headers=headers, json=body)

        if response.status_code not in expected:
            logger.warning(
                "API request returned unexpected status",
                step=context.step_name,
                status_code=response.status_code,
            )
            return ActionResult(
                exit_code=1,
                output=response.text,
                error=f"API returned {response.status_code}: {response.text[:500]}",
            )

        logger.info("API request successful", step=context.step_name, status_code=response.status_code)
        return ActionResult(exit_code=0, output=summarize(response))

    @staticmethod
    def _replacements(context: ExecutionContext) -> dict[str, str]:
        replacements = {k: str(v) for k, v in context.variables.items() if v is not None}
        replacements.update({
            "version": context.version,
            "execution_id": context.execution_id,
            "pipeline_id": context.pipeline_id,
            "environment": context.environment or "",
        })
        return replacements

    @classmethod
    def _render(cls, value: Any, replacements: dict[str, str]) -> Any:
        """Resolve {placeholders} in strings, recursively through dicts/lists."""
        if isinstance(value, str):
            try:
                return value.format(**replacements)
            except (KeyError, IndexError, ValueError) as exc:
                logger.warning("Placeholder not resolved", template=value, missing_key=str(exc))
                return value
        if isinstance(value, Mapping):
            return {k: cls._render(v, replacements) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [cls._render(v, replacements) for v in value]
        return value


def summarize(response: httpx.Response) -> str:
    """Pretty JSON if the body is JSON, else the raw text."""
    try:
        return json.dumps(response.json(), indent=2)
    except ValueError:
        return response.text
