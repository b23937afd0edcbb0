"""Data models for schema deprecation plans, rollbacks and access events."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pg_deprecation_manager.exceptions import InvalidStateError, ValidationError
from pg_deprecation_manager.naming import DeprecationReason


def utcnow() -> datetime:
    return datetime.now(UTC)


class ElementType(str, Enum):
    """Kinds of schema element that can be deprecated."""
    TABLE = "table"
    COLUMN = "column"
    INDEX = "index"
    CONSTRAINT = "constraint"


class Impact(str, Enum):
    """Impact of a dependency on the element being renamed."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DependencyType(str, Enum):
    """Catalog objects that can depend on a deprecated element."""
    FOREIGN_KEY = "foreign_key"
    VIEW = "view"
    TRIGGER = "trigger"
    INDEX = "index"
    CONSTRAINT = "constraint"


class Severity(str, Enum):
    """Safety check severity, most severe first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


class RiskLevel(str, Enum):
    """Derived risk classification of a plan."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ElementState(str, Enum):
    """Lifecycle state of a deprecated element."""
    PROPOSED = "proposed"
    PLANNED = "planned"
    DEPRECATED = "deprecated"
    RESTORED = "restored"
    REMOVED = "removed"


# Removal is a separate manual phase; nothing here transitions into it.
_TRANSITIONS: dict[ElementState, set[ElementState]] = {
    ElementState.PROPOSED: {ElementState.PLANNED},
    ElementState.PLANNED: {ElementState.DEPRECATED},
    ElementState.DEPRECATED: {ElementState.RESTORED},
    ElementState.RESTORED: set(),
    ElementState.REMOVED: set(),
}


class StepSqlType(str, Enum):
    """Kinds of rollback step."""
    RENAME = "rename"
    CREATE_CONSTRAINT = "create_constraint"
    CREATE_INDEX = "create_index"


class MigrationStatus(str, Enum):
    """Status of a plan execution in the history log."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class SourceType(str, Enum):
    """Origin of an access to a deprecated element."""
    APPLICATION = "application"
    MANUAL = "manual"
    MIGRATION = "migration"


class QueryType(str, Enum):
    """Statement class of an access."""
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    DDL = "DDL"
    OTHER = "OTHER"


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class ElementDependency:
    """A catalog object that references a candidate element."""
    type: DependencyType
    name: str
    dependent_object: str
    impact: Impact
    # pg_get_constraintdef / pg_get_indexdef output, used to restore it
    definition: str | None = None
    owner_table: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "dependent_object": self.dependent_object,
            "impact": self.impact.value,
            "definition": self.definition,
            "owner_table": self.owner_table,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElementDependency":
        return cls(
            type=DependencyType(data["type"]),
            name=data["name"],
            dependent_object=data["dependent_object"],
            impact=Impact(data["impact"]),
            definition=data.get("definition"),
            owner_table=data.get("owner_table"),
        )


@dataclass
class UsageData:
    """Usage evidence for an element; mutated only by the access monitor."""
    confidence_score: float
    last_accessed: datetime | None = None
    access_count: int = 0
    analysis_date: datetime = field(default_factory=utcnow)
    access_sources: list[str] = field(default_factory=list)
    # cumulative scans reported by pg_stat_* at planning time
    scan_baseline: int | None = None

    def __post_init__(self):
        if not 0.0 <= self.confidence_score <= 1.0:
            raise ValidationError("confidence_score must be between 0 and 1")

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_score": self.confidence_score,
            "last_accessed": _iso(self.last_accessed),
            "access_count": self.access_count,
            "analysis_date": _iso(self.analysis_date),
            "access_sources": list(self.access_sources),
            "scan_baseline": self.scan_baseline,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UsageData":
        return cls(
            confidence_score=data["confidence_score"],
            last_accessed=_parse_dt(data.get("last_accessed")),
            access_count=data.get("access_count", 0),
            analysis_date=_parse_dt(data.get("analysis_date")) or utcnow(),
            access_sources=list(data.get("access_sources", [])),
            scan_baseline=data.get("scan_baseline"),
        )


@dataclass
class DeprecationCandidate:
    """Input from the external unused-element analysis."""
    type: ElementType
    name: str
    reason: DeprecationReason
    schema: str = "public"
    confidence_score: float = 0.0
    last_accessed: datetime | None = None
    access_count: int = 0
    access_sources: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeprecationCandidate":
        """Build a candidate from loosely typed input.

        Raises:
            ValidationError: If a field is missing or has an unknown value
        """
        try:
            return cls(
                type=ElementType(data["type"]),
                name=data["name"],
                reason=DeprecationReason(data.get("reason", "unused")),
                schema=data.get("schema", "public"),
                confidence_score=float(data.get("confidence_score", data.get("confidenceScore", 0.0))),
                last_accessed=_parse_dt(data.get("last_accessed")),
                access_count=int(data.get("access_count", 0)),
                access_sources=list(data.get("access_sources", [])),
            )
        except KeyError as e:
            raise ValidationError(f"Candidate is missing field {e.args[0]!r}") from e
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed candidate {data!r}: {e}") from e


@dataclass
class DeprecatedElement:
    """A schema element renamed (or about to be renamed) to its deprecated identifier."""
    type: ElementType
    original_name: str
    deprecated_name: str
    schema: str
    deprecation_date: datetime
    reason: DeprecationReason
    usage_data: UsageData
    migration_sql: str
    rollback_sql: str
    dependencies: list[ElementDependency] = field(default_factory=list)
    state: ElementState = ElementState.PROPOSED

    @property
    def qualified_name(self) -> str:
        """Schema-qualified name used as the lock key and monitoring key."""
        return f"{self.schema}.{self.original_name}"

    @property
    def table_name(self) -> str | None:
        """Owning table for columns and constraints (``table.member`` names)."""
        if self.type in (ElementType.COLUMN, ElementType.CONSTRAINT):
            return self.original_name.split(".", 1)[0]
        if self.type == ElementType.TABLE:
            return self.original_name
        return None

    @property
    def high_impact_dependencies(self) -> list[ElementDependency]:
        return [d for d in self.dependencies if d.impact == Impact.HIGH]

    def transition(self, new_state: ElementState) -> None:
        """Move to ``new_state``.

        Raises:
            InvalidStateError: If the lifecycle does not allow the move
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateError(
                f"{self.qualified_name}: cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "original_name": self.original_name,
            "deprecated_name": self.deprecated_name,
            "schema": self.schema,
            "deprecation_date": _iso(self.deprecation_date),
            "reason": self.reason.value,
            "usage_data": self.usage_data.to_dict(),
            "migration_sql": self.migration_sql,
            "rollback_sql": self.rollback_sql,
            "dependencies": [d.to_dict() for d in self.dependencies],
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeprecatedElement":
        return cls(
            type=ElementType(data["type"]),
            original_name=data["original_name"],
            deprecated_name=data["deprecated_name"],
            schema=data["schema"],
            deprecation_date=_parse_dt(data["deprecation_date"]),
            reason=DeprecationReason(data["reason"]),
            usage_data=UsageData.from_dict(data["usage_data"]),
            migration_sql=data["migration_sql"],
            rollback_sql=data["rollback_sql"],
            dependencies=[ElementDependency.from_dict(d) for d in data.get("dependencies", [])],
            state=ElementState(data.get("state", ElementState.PROPOSED.value)),
        )


@dataclass
class SafetyCheckResult:
    """Outcome of one safety check for one element."""
    check: str
    passed: bool
    severity: Severity
    message: str
    element: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.check,
            "passed": self.passed,
            "severity": self.severity.value,
            "message": self.message,
            "element": self.element,
            "details": self.details,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SafetyCheckResult":
        return cls(
            check=data["check"],
            passed=data["passed"],
            severity=Severity(data["severity"]),
            message=data["message"],
            element=data.get("element", ""),
            details=data.get("details", {}),
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
        )


@dataclass
class RollbackStep:
    """One ordered statement of a rollback plan."""
    order: int
    sql_type: StepSqlType
    sql: str
    description: str
    validation_sql: str
    element: str = ""
    estimated_seconds: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sql_type"] = self.sql_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackStep":
        return cls(**{**data, "sql_type": StepSqlType(data["sql_type"])})


@dataclass(frozen=True)
class StepDependency:
    """``step`` may only run after ``depends_on``."""
    step: int
    depends_on: int

    def __str__(self) -> str:
        return f"step_{self.step}_depends_on_step_{self.depends_on}"


@dataclass
class RollbackPlan:
    """Reverse-ordered steps that restore original identifiers."""
    id: str
    migration_id: str
    steps: list[RollbackStep]
    estimated_duration: int
    step_dependencies: list[StepDependency] = field(default_factory=list)
    validation_checks: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def elements(self) -> list[str]:
        """Qualified names of the elements this plan restores, in restore order."""
        seen: list[str] = []
        for step in self.steps:
            if step.element and step.element not in seen:
                seen.append(step.element)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "migration_id": self.migration_id,
            "steps": [s.to_dict() for s in self.steps],
            "estimated_duration": self.estimated_duration,
            "step_dependencies": [
                {"step": d.step, "depends_on": d.depends_on} for d in self.step_dependencies
            ],
            "validation_checks": list(self.validation_checks),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RollbackPlan":
        return cls(
            id=data["id"],
            migration_id=data["migration_id"],
            steps=[RollbackStep.from_dict(s) for s in data["steps"]],
            estimated_duration=data["estimated_duration"],
            step_dependencies=[StepDependency(**d) for d in data.get("step_dependencies", [])],
            validation_checks=list(data.get("validation_checks", [])),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class PlanMetadata:
    """Risk and approval metadata of a deprecation plan."""
    risk_level: RiskLevel
    approval_required: bool
    created_by: str
    environment: str
    created_at: datetime = field(default_factory=utcnow)
    estimated_duration: int = 0
    approved_by: str | None = None
    approved_at: datetime | None = None

    @property
    def is_approved(self) -> bool:
        return not self.approval_required or self.approved_by is not None


@dataclass
class DeprecationPlan:
    """Executable deprecation plan with its paired rollback plan."""
    id: str
    elements: list[DeprecatedElement]
    rollback_plan: RollbackPlan
    safety_checks: list[SafetyCheckResult]
    metadata: PlanMetadata

    def execution_order(self) -> list[DeprecatedElement]:
        """Elements without dependents first, stable otherwise."""
        indexed = list(enumerate(self.elements))
        indexed.sort(key=lambda pair: (len(pair[1].dependencies), pair[0]))
        return [element for _, element in indexed]

    @property
    def warnings(self) -> list[SafetyCheckResult]:
        """Failed checks that did not block planning."""
        return [r for r in self.safety_checks if not r.passed]

    def approve(self, approver: str) -> None:
        """Record explicit approval for a plan that requires it."""
        if not approver:
            raise ValidationError("approver is required")
        self.metadata.approved_by = approver
        self.metadata.approved_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        meta = self.metadata
        return {
            "id": self.id,
            "elements": [e.to_dict() for e in self.elements],
            "rollback_plan": self.rollback_plan.to_dict(),
            "safety_checks": [r.to_dict() for r in self.safety_checks],
            "metadata": {
                "risk_level": meta.risk_level.value,
                "approval_required": meta.approval_required,
                "created_by": meta.created_by,
                "environment": meta.environment,
                "created_at": _iso(meta.created_at),
                "estimated_duration": meta.estimated_duration,
                "approved_by": meta.approved_by,
                "approved_at": _iso(meta.approved_at),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeprecationPlan":
        meta = data["metadata"]
        return cls(
            id=data["id"],
            elements=[DeprecatedElement.from_dict(e) for e in data["elements"]],
            rollback_plan=RollbackPlan.from_dict(data["rollback_plan"]),
            safety_checks=[SafetyCheckResult.from_dict(r) for r in data.get("safety_checks", [])],
            metadata=PlanMetadata(
                risk_level=RiskLevel(meta["risk_level"]),
                approval_required=meta["approval_required"],
                created_by=meta["created_by"],
                environment=meta["environment"],
                created_at=_parse_dt(meta.get("created_at")) or utcnow(),
                estimated_duration=meta.get("estimated_duration", 0),
                approved_by=meta.get("approved_by"),
                approved_at=_parse_dt(meta.get("approved_at")),
            ),
        )


@dataclass
class ExecutionResult:
    """Outcome of a committed plan execution."""
    plan_id: str
    success: bool
    executed_steps: int
    total_steps: int
    checksum: str
    principal: str
    started_at: datetime
    finished_at: datetime
    history_recorded: bool = True

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


@dataclass
class StepFailure:
    """A rollback step that failed."""
    step: int
    sql: str
    error: str
    timestamp: datetime = field(default_factory=utcnow)
    retryable: bool = False


@dataclass
class RollbackResult:
    """Outcome of a rollback execution."""
    rollback_id: str
    success: bool
    completed_steps: int
    total_steps: int
    errors: list[StepFailure] = field(default_factory=list)
    duration_ms: int = 0
    backup_id: str | None = None
    partial: bool = False


@dataclass
class RollbackTestResult:
    """Dry assessment of whether a rollback plan can run."""
    can_execute: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    estimated_duration: int = 0


@dataclass
class AccessSource:
    """Where an access came from."""
    type: SourceType
    identifier: str = ""
    origin: str = ""

    def __str__(self) -> str:
        return f"{self.type.value}:{self.identifier}" if self.identifier else self.type.value


@dataclass
class AccessEvent:
    """One recorded access to a deprecated element."""
    element_name: str
    element_type: ElementType
    source: AccessSource
    query_type: QueryType
    timestamp: datetime = field(default_factory=utcnow)
    execution_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "element_name": self.element_name,
            "element_type": self.element_type.value,
            "source": {
                "type": self.source.type.value,
                "identifier": self.source.identifier,
                "origin": self.source.origin,
            },
            "query_type": self.query_type.value,
            "timestamp": _iso(self.timestamp),
            "execution_time_ms": self.execution_time_ms,
        }
