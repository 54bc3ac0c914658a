"""
Composition pipeline
resolve -> compose -> validate -> emit, run strictly in sequence.
"""
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .composer import compose
from .emission import ExternalRepresentation, emit
from .errors import EmissionFailure, ValidationFailed
from .intents import DeploymentGraph
from .parameters import Mode, ParameterSet, parameter_names, resolve
from .validator import validate

logger = logging.getLogger(__name__)

STACK_NAMES = {
    Mode.COMPLETE: "McpgwCompleteInfrastructureStack",
    Mode.INFRASTRUCTURE_ONLY: "McpgwInfrastructureStackFresh",
    Mode.APPLICATION_ONLY: "McpgwMicroservicesCdkStack",
}

STACK_DESCRIPTIONS = {
    Mode.COMPLETE: "Complete MCP Gateway Registry Infrastructure (VPC + EKS + EFS + Certificate + Cognito + Application)",
    Mode.INFRASTRUCTURE_ONLY: "MCP Gateway Registry Infrastructure Only (VPC + EKS + EFS + Certificate + Cognito)",
    Mode.APPLICATION_ONLY: "MCP Gateway Registry microservices on an existing cluster",
}


def stack_name_for(mode: Mode) -> str:
    return STACK_NAMES[Mode.parse(mode)]


@dataclass(frozen=True)
class Deployment:
    params: ParameterSet
    graph: DeploymentGraph
    representation: ExternalRepresentation

    @property
    def mode(self) -> Mode:
        return self.params.mode

    @property
    def stack_name(self) -> str:
        return stack_name_for(self.mode)


def build_deployment(
    mode: Any,
    raw_inputs: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    secret_generator: Optional[Callable[[], str]] = None,
) -> Deployment:
    """
    Run the full composition pipeline

    Raises:
        InvalidMode, InvalidParameterType, MissingParameter, MissingExternalReference,
        ValidationFailed, EmissionFailure
    """
    params = resolve(mode, raw_inputs, environ, secret_generator)
    logger.info(f"Deployment mode: {params.mode.value}")

    graph = compose(params.mode, params)
    result = validate(graph)
    if not result.ok:
        for finding in result.findings:
            logger.error(f"Validation finding: {finding}")
        raise ValidationFailed(result.findings)

    representation = emit(graph)
    logger.info(
        f"Composed {len(graph)} intents into {len(representation.declarations)} declarations "
        f"({len(representation.aws_declarations())} CloudFormation)"
    )
    return Deployment(params, graph, representation)


ARTIFACT_SUFFIX = ".topology.json"


def artifact_path(directory: str, stack_name: str) -> str:
    return os.path.join(directory, f"{stack_name}{ARTIFACT_SUFFIX}")


@dataclass(frozen=True)
class DeploymentArtifact:
    """Emitted representation plus what the applier needs to reach the cluster"""
    stack_name: str
    cluster_name: str
    region: str
    namespace: str
    representation: ExternalRepresentation

    @classmethod
    def from_deployment(cls, deployment: Deployment) -> "DeploymentArtifact":
        params = deployment.params
        return cls(
            stack_name=deployment.stack_name,
            cluster_name=params["clusterName"],
            region=params["region"],
            namespace=params["namespace"],
            representation=deployment.representation,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stackName": self.stack_name,
            "clusterName": self.cluster_name,
            "region": self.region,
            "namespace": self.namespace,
            "representation": self.representation.to_dict(),
        }

    def save(self, directory: str) -> str:
        path = artifact_path(directory, self.stack_name)
        os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        logger.info(f"Wrote deployment artifact {path}")
        return path

    @classmethod
    def load(cls, path: str) -> "DeploymentArtifact":
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except ValueError as e:
            raise EmissionFailure(f"Deployment artifact {path} is not valid JSON: {e}") from e
        try:
            return cls(
                stack_name=data["stackName"],
                cluster_name=data["clusterName"],
                region=data["region"],
                namespace=data["namespace"],
                representation=ExternalRepresentation.from_dict(data["representation"]),
            )
        except KeyError as e:
            raise EmissionFailure(f"Deployment artifact {path} is missing field {e}") from e


def inputs_from_context(get_context: Callable[[str], Any]) -> Dict[str, Any]:
    """Collect explicitly supplied parameter values, e.g. from CDK context"""
    inputs: Dict[str, Any] = {}
    for name in parameter_names():
        value = get_context(name)
        if value is not None:
            inputs[name] = value
    return inputs
