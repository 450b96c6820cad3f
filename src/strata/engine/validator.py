"""Post-build data quality tests.

Supported test kinds:
    unique(column)                      no non-null value repeats
    not_null(column)                    no nulls
    relationships(column, node.field)   every non-null value exists in node.field
    accepted_values(column, ['a', 'b']) every non-null value is in the list

Every declared test runs; a failing test never stops the others. A test whose
target (or referenced) node did not build successfully is reported as skipped.
The validator only reads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from strata.engine.utils import quote_identifier, validate_identifier, validate_relation

from .errors import StrataError, ValidationFailure
from .executor import BuildReport, NodeStatus
from .warehouse import Warehouse, WarehouseSession

logger = logging.getLogger("strata.validator")


class TestKind(str, Enum):
    __test__ = False

    UNIQUE = "unique"
    NOT_NULL = "not_null"
    RELATIONSHIPS = "relationships"
    ACCEPTED_VALUES = "accepted_values"


class TestStatus(str, Enum):
    __test__ = False

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    SKIP = "skip"
    ERROR = "error"


@dataclass(frozen=True)
class TestDefinition:
    """A declared data quality test."""

    __test__ = False

    node: str
    kind: TestKind
    column: str
    to: str | None = None  # relationships: referenced node
    field: str | None = None  # relationships: referenced column
    values: tuple[Any, ...] = ()  # accepted_values
    severity: str = "error"  # "error" or "warn"

    @property
    def name(self) -> str:
        base = f"{self.kind.value}_{self.node.replace('.', '_')}_{self.column}"
        if self.kind is TestKind.RELATIONSHIPS and self.to:
            base += f"__{self.to.replace('.', '_')}_{self.field}"
        return base

    @property
    def columns(self) -> list[str]:
        return [self.column]


@dataclass
class ValidationResult:
    name: str
    node: str
    columns: list[str]
    kind: TestKind
    status: TestStatus
    severity: str = "error"
    failures: int = 0
    sample: list[dict[str, Any]] = field(default_factory=list)
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status is TestStatus.PASS


@dataclass
class TestReport:
    __test__ = False

    results: list[ValidationResult] = field(default_factory=list)

    def count(self, status: TestStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def counts(self) -> dict[str, int]:
        return {s.value: self.count(s) for s in TestStatus}

    @property
    def passed(self) -> bool:
        return not any(r.status in (TestStatus.FAIL, TestStatus.ERROR) for r in self.results)

    def raise_for_failures(self) -> None:
        failed = [r.name for r in self.results if r.status in (TestStatus.FAIL, TestStatus.ERROR)]
        if failed:
            raise ValidationFailure(failed)


def _failing_rows_sql(test: TestDefinition) -> str:
    """SELECT returning every offending row of the target relation."""
    table = validate_relation(test.node)
    col = quote_identifier(validate_identifier(test.column, "test column"))

    if test.kind is TestKind.UNIQUE:
        return (
            f"SELECT * FROM {table} WHERE {col} IN ("
            f"SELECT {col} FROM {table} WHERE {col} IS NOT NULL "
            f"GROUP BY {col} HAVING COUNT(*) > 1)"
        )
    if test.kind is TestKind.NOT_NULL:
        return f"SELECT * FROM {table} WHERE {col} IS NULL"
    if test.kind is TestKind.RELATIONSHIPS:
        if not test.to or not test.field:
            raise ValueError("relationships test needs a referenced node and field")
        parent = validate_relation(test.to)
        parent_col = quote_identifier(validate_identifier(test.field, "referenced column"))
        return (
            f"SELECT child.* FROM {table} AS child "
            f"WHERE child.{col} IS NOT NULL AND NOT EXISTS ("
            f"SELECT 1 FROM {parent} AS parent WHERE parent.{parent_col} = child.{col})"
        )
    if test.kind is TestKind.ACCEPTED_VALUES:
        if not test.values:
            raise ValueError("accepted_values test needs at least one value")
        literals = ", ".join("'" + str(v).replace("'", "''") + "'" for v in test.values)
        return f"SELECT * FROM {table} WHERE {col} IS NOT NULL AND {col}::VARCHAR NOT IN ({literals})"
    raise ValueError(f"Unknown test kind: {test.kind}")


class ConstraintValidator:
    """Runs declared tests against materialized relations."""

    def __init__(self, warehouse: Warehouse, sample_size: int = 5) -> None:
        self.warehouse = warehouse
        self.sample_size = sample_size

    def run(self, tests: list[TestDefinition], build_report: BuildReport | None = None) -> TestReport:
        statuses = build_report.statuses() if build_report is not None else {}
        report = TestReport()
        for test in tests:
            skip_reason = self._skip_reason(test, statuses)
            if skip_reason:
                report.results.append(self._result(test, TestStatus.SKIP, message=skip_reason))
                continue
            report.results.append(self._run_one(test))

        logger.info(
            "Tests: %s",
            ", ".join(f"{n} {s}" for s, n in report.counts.items() if n),
        )
        return report

    @staticmethod
    def _skip_reason(test: TestDefinition, statuses: dict[str, NodeStatus]) -> str:
        for name in (test.node, test.to):
            if name is None:
                continue
            status = statuses.get(name)
            # Nodes the build never touched (e.g. sources) count as available
            if status is not None and status is not NodeStatus.SUCCEEDED:
                return f"{name} {status.value}"
        return ""

    def _result(self, test: TestDefinition, status: TestStatus, **kwargs: Any) -> ValidationResult:
        return ValidationResult(
            name=test.name,
            node=test.node,
            columns=test.columns,
            kind=test.kind,
            status=status,
            severity=test.severity,
            **kwargs,
        )

    def _run_one(self, test: TestDefinition) -> ValidationResult:
        try:
            sql = _failing_rows_sql(test)
            with self.warehouse.open_session() as session:
                failures, sample = self._evaluate(session, sql)
        except (StrataError, ValueError) as e:
            logger.warning("Test %s errored: %s", test.name, e)
            return self._result(test, TestStatus.ERROR, message=str(e))

        if failures == 0:
            return self._result(test, TestStatus.PASS)
        status = TestStatus.WARN if test.severity == "warn" else TestStatus.FAIL
        return self._result(
            test,
            status,
            failures=failures,
            sample=sample,
            message=f"{failures} failing row(s)",
        )

    def _evaluate(self, session: WarehouseSession, sql: str) -> tuple[int, list[dict[str, Any]]]:
        count = session.execute(f"SELECT COUNT(*) AS failures FROM ({sql}) AS failing").rows
        failures = int(count[0]["failures"]) if count else 0
        sample: list[dict[str, Any]] = []
        if failures and self.sample_size:
            sample = session.execute(f"{sql} LIMIT {int(self.sample_size)}").rows
        return failures, sample
