"""
Consistency validator
Runs every graph check and accumulates findings instead of stopping at the
first problem.
"""
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterator, List, Set, Tuple

from .errors import (
    AmbiguousSecretProducer,
    CyclicDependency,
    DanglingDependency,
    DuplicateLogicalName,
    Finding,
    OrphanedSecretReference,
    UnresolvedRoutingTarget,
    ValidationFailed,
)
from .intents import (
    PROVIDES_SECRETS,
    ROUTING_RULES,
    SECRET_PRODUCER_KINDS,
    SECRET_REFS,
    DeploymentGraph,
    ResourceKind,
    thaw,
)


@dataclass(frozen=True)
class ValidationResult:
    findings: Tuple[Finding, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.findings

    def __bool__(self) -> bool:
        return self.ok

    def of_type(self, finding_type) -> List[Finding]:
        return [finding for finding in self.findings if isinstance(finding, finding_type)]

    def raise_for_findings(self) -> None:
        if not self.ok:
            raise ValidationFailed(self.findings)

    def to_dict(self) -> Dict:
        return {"ok": self.ok, "findings": [finding.to_dict() for finding in self.findings]}


def validate(graph: DeploymentGraph) -> ValidationResult:
    findings: List[Finding] = []
    findings.extend(check_dangling_dependencies(graph))
    findings.extend(check_cycles(graph))
    findings.extend(check_routing_targets(graph))
    findings.extend(check_secret_references(graph))
    findings.extend(check_duplicate_names(graph))
    return ValidationResult(tuple(findings))


def check_dangling_dependencies(graph: DeploymentGraph) -> List[Finding]:
    names = set(graph.names)
    findings: List[Finding] = []
    seen: Set[Tuple[str, str]] = set()
    for intent in graph:
        targets = list(intent.depends_on) + sorted({ref.target for ref in intent.references()})
        for target in targets:
            if target not in names and (intent.name, target) not in seen:
                seen.add((intent.name, target))
                findings.append(DanglingDependency(intent.name, target))
    return findings


def check_cycles(graph: DeploymentGraph) -> List[Finding]:
    """Depth-first search; a back-edge to a node still on the path closes a cycle"""
    edges: Dict[str, List[str]] = {}
    for intent in graph:
        edges.setdefault(intent.name, [])
        edges[intent.name].extend(intent.depends_on)

    visited: Set[str] = set()
    on_path: Set[str] = set()
    path: List[str] = []
    cycles: List[Tuple[str, ...]] = []
    seen_cycles: Set[frozenset] = set()

    for root in edges:
        if root in visited:
            continue
        # frames hold (node, remaining edges)
        visited.add(root)
        on_path.add(root)
        path.append(root)
        frames: List[Tuple[str, Iterator[str]]] = [(root, iter(edges[root]))]
        while frames:
            node, targets = frames[-1]
            target = next(targets, None)
            if target is None:
                frames.pop()
                path.pop()
                on_path.discard(node)
                continue
            if target not in edges:
                continue
            if target in on_path:
                cycle = tuple(path[path.index(target):]) + (target,)
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(cycle)
            elif target not in visited:
                visited.add(target)
                on_path.add(target)
                path.append(target)
                frames.append((target, iter(edges[target])))

    return [CyclicDependency(cycle) for cycle in cycles]


def check_routing_targets(graph: DeploymentGraph) -> List[Finding]:
    workloads = {intent.name for intent in graph.of_kind(ResourceKind.WORKLOAD)}
    findings: List[Finding] = []
    for entrypoint in graph.of_kind(ResourceKind.NETWORK_ENTRYPOINT):
        for rule in entrypoint.payload.get(ROUTING_RULES, ()):
            if rule.get("target") not in workloads:
                findings.append(UnresolvedRoutingTarget(entrypoint.name, thaw(rule)))
    return findings


def check_secret_references(graph: DeploymentGraph) -> List[Finding]:
    producers: Dict[str, List[str]] = {}
    for intent in graph:
        if intent.kind in SECRET_PRODUCER_KINDS:
            for ref in intent.payload.get(PROVIDES_SECRETS, ()):
                producers.setdefault(ref, []).append(intent.name)

    findings: List[Finding] = []
    reported_ambiguous: Set[str] = set()
    for workload in graph.of_kind(ResourceKind.WORKLOAD):
        for ref in workload.payload.get(SECRET_REFS, ()):
            sources = producers.get(ref, [])
            if not sources:
                findings.append(OrphanedSecretReference(workload.name, ref))
            elif len(sources) > 1 and ref not in reported_ambiguous:
                reported_ambiguous.add(ref)
                findings.append(AmbiguousSecretProducer(ref, tuple(sources)))
    return findings


def check_duplicate_names(graph: DeploymentGraph) -> List[Finding]:
    counts = Counter(graph.names)
    duplicates = [name for name in counts if counts[name] > 1]
    return [DuplicateLogicalName(name) for name in duplicates]
