"""
MCP Gateway Registry deployment topology
Composes the AWS and Kubernetes resources of an MCP Gateway deployment as an
ordered intent graph and emits CloudFormation, manifests and Helm releases.
"""
from .composer import compose
from .emission import Declaration, ExternalRepresentation, emit, render_manifests
from .errors import (
    EmissionFailure,
    InvalidMode,
    InvalidParameterType,
    MissingExternalReference,
    MissingParameter,
    TopologyError,
    ValidationFailed,
)
from .intents import DeploymentGraph, Ref, ResourceIntent, ResourceKind
from .parameters import Mode, ParameterSet, resolve, resolve_mode
from .pipeline import Deployment, DeploymentArtifact, build_deployment
from .validator import ValidationResult, validate

__version__ = "1.0.0"

__all__ = [
    "compose",
    "emit",
    "render_manifests",
    "resolve",
    "resolve_mode",
    "validate",
    "build_deployment",
    "Declaration",
    "Deployment",
    "DeploymentArtifact",
    "DeploymentGraph",
    "ExternalRepresentation",
    "Mode",
    "ParameterSet",
    "Ref",
    "ResourceIntent",
    "ResourceKind",
    "ValidationResult",
    "TopologyError",
    "InvalidMode",
    "InvalidParameterType",
    "MissingParameter",
    "MissingExternalReference",
    "ValidationFailed",
    "EmissionFailure",
]
