"""
Error taxonomy for the MCP Gateway topology composer
Resolver and composer errors are raised fail-fast; validation findings are
plain values collected by the validator and only wrapped in an exception
when a caller needs one.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


class TopologyError(Exception):
    """Base class for all composer errors"""


class InvalidMode(TopologyError, ValueError):
    """Raised when the deployment mode string is not recognised"""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(
            f"Invalid deployment mode: {value!r}. "
            "Use 'complete', 'infrastructure-only', or 'application-only'."
        )


class MissingParameter(TopologyError):
    """A parameter required for the selected mode has no value after defaulting"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"{name} is required. Set it via context or the matching environment variable."
        )


class InvalidParameterType(TopologyError, ValueError):
    """A raw parameter value could not be coerced to its declared type"""

    def __init__(self, name: str, value: Any, expected: str = ""):
        self.name = name
        self.value = value
        self.expected = expected
        detail = f" (expected {expected})" if expected else ""
        super().__init__(f"Invalid value for {name}: {value!r}{detail}")


class MissingExternalReference(TopologyError):
    """application-only mode is missing an identifier of pre-existing infrastructure"""

    def __init__(self, kind: str, parameter: str = ""):
        self.kind = kind
        self.parameter = parameter
        hint = f" Set {parameter} via context or environment." if parameter else ""
        super().__init__(
            f"An existing {kind} reference is required for application-only mode.{hint}"
        )


class EmissionFailure(TopologyError):
    """Serialisation of the resolved graph into the applier representation failed"""


# ---------------------------------------------------------------------------
# Validation findings
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Finding:
    """A single consistency problem found in a deployment graph"""

    @property
    def code(self) -> str:
        return type(self).__name__

    @property
    def message(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class DanglingDependency(Finding):
    source: str
    target: str

    @property
    def message(self) -> str:
        return f"{self.source} depends on {self.target}, which is not in the graph"


@dataclass(frozen=True)
class CyclicDependency(Finding):
    cycle: Tuple[str, ...]

    @property
    def message(self) -> str:
        return "dependency cycle " + " -> ".join(self.cycle)


@dataclass(frozen=True)
class DuplicateLogicalName(Finding):
    name: str

    @property
    def message(self) -> str:
        return f"logical name {self.name} is declared more than once"


@dataclass(frozen=True)
class UnresolvedRoutingTarget(Finding):
    entrypoint: str
    rule: Dict[str, Any] = field(hash=False, compare=True)

    @property
    def message(self) -> str:
        return (
            f"{self.entrypoint} routes {self.rule.get('path')!r} to "
            f"{self.rule.get('target')!r}, which is not a workload in the graph"
        )


@dataclass(frozen=True)
class OrphanedSecretReference(Finding):
    consumer: str
    ref: str

    @property
    def message(self) -> str:
        return f"{self.consumer} consumes secret {self.ref}, which nothing produces"


@dataclass(frozen=True)
class AmbiguousSecretProducer(Finding):
    ref: str
    producers: Tuple[str, ...]

    @property
    def message(self) -> str:
        return f"secret {self.ref} is produced by more than one intent: {', '.join(self.producers)}"


class ValidationFailed(TopologyError):
    """Raised when a graph with findings is handed to a step that requires a clean graph"""

    def __init__(self, findings):
        self.findings = tuple(findings)
        lines = "\n".join(f"  - {finding}" for finding in self.findings)
        super().__init__(f"Deployment graph failed validation with {len(self.findings)} finding(s):\n{lines}")
