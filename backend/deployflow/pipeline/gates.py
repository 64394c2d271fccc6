"""Quality gate evaluation — a pure comparison of a metric to thresholds."""

from __future__ import annotations

import operator

from deployflow.core.constants import GateOperator, GateStatus
from deployflow.pipeline.definitions import QualityGate
from deployflow.pipeline.records import QualityGateResult

OPERATORS = {
    GateOperator.GT: operator.gt,
    GateOperator.GTE: operator.ge,
    GateOperator.LT: operator.lt,
    GateOperator.LTE: operator.le,
    GateOperator.EQ: operator.eq,
    GateOperator.NE: operator.ne,
}

SYMBOLS = {
    GateOperator.GT: ">",
    GateOperator.GTE: ">=",
    GateOperator.LT: "<",
    GateOperator.LTE: "<=",
    GateOperator.EQ: "==",
    GateOperator.NE: "!=",
}


def compare(value: float, op: GateOperator, threshold: float) -> bool:
    """True when `value <op> threshold` holds."""
    return OPERATORS[GateOperator(op)](value, threshold)


class QualityGateEvaluator:
    """
    Yields passed / warning / failed for a measured metric value.

    The hard threshold decides pass/fail.  A gate that passes its hard
    threshold but not its warning threshold is reported as a warning.
    A missing value fails the gate.
    """

    def evaluate(self, gate: QualityGate, value: float | None) -> QualityGateResult:
        symbol = SYMBOLS[gate.operator]

        if value is None:
            return self._result(
                gate, GateStatus.FAILED, None,
                f"{gate.name}: metric '{gate.metric}' unavailable",
            )

        if not compare(value, gate.operator, gate.threshold):
            return self._result(
                gate, GateStatus.FAILED, value,
                f"{gate.name}: {gate.metric}={value} does not satisfy {symbol} {gate.threshold}",
            )

        if gate.warning_threshold is not None and not compare(
            value, gate.operator, gate.warning_threshold
        ):
            return self._result(
                gate, GateStatus.WARNING, value,
                f"{gate.name}: {gate.metric}={value} passes {symbol} {gate.threshold} "
                f"but not warning level {symbol} {gate.warning_threshold}",
            )

        return self._result(
            gate, GateStatus.PASSED, value,
            f"{gate.name}: {gate.metric}={value} satisfies {symbol} {gate.threshold}",
        )

    @staticmethod
    def _result(
        gate: QualityGate,
        status: GateStatus,
        value: float | None,
        message: str,
    ) -> QualityGateResult:
        return QualityGateResult(
            gate_id=gate.id,
            name=gate.name,
            status=status,
            actual_value=value,
            threshold=gate.threshold,
            message=message,
            fail_pipeline=gate.fail_pipeline,
            details={"metric": gate.metric, "operator": str(gate.operator),
                     "warning_threshold": gate.warning_threshold},
        )
