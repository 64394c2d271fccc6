"""StaticMetricsSource — metric values set by hand (API, tests, demos)."""

from __future__ import annotations

from typing import Any, Mapping


class StaticMetricsSource:
    """
    Values are looked up by `(metric, environment)` first, then by
    `metric` alone.  Unknown metrics sample as None.
    """

    def __init__(self, values: Mapping[str, float] | None = None) -> None:
        self._values: dict[tuple[str, str | None], float] = {
            (metric, None): value for metric, value in (values or {}).items()
        }

    def set(self, metric: str, value: float, environment: str | None = None) -> None:
        self._values[(metric, environment)] = value

    def clear(self, metric: str, environment: str | None = None) -> None:
        self._values.pop((metric, environment), None)

    async def sample(self, metric: str, scope: Mapping[str, Any]) -> float | None:
        environment = scope.get("environment")
        if (metric, environment) in self._values:
            return self._values[(metric, environment)]
        return self._values.get((metric, None))
