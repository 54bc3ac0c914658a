"""
Emission adapter
Turns a validated DeploymentGraph into provider-native declarations:
CDK construct specifications for AWS, manifests for Kubernetes and releases
for Helm. Values that Kubernetes or Helm need from the AWS stack are carried as
${output:Key} placeholders backed by stack outputs and substituted at apply time.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from .errors import EmissionFailure
from .intents import DeploymentGraph, Ref, ResourceIntent, ResourceKind, freeze, thaw
from .parameters import Mode
from .validator import validate

PROVIDER_AWS = "aws"
PROVIDER_KUBERNETES = "kubernetes"
PROVIDER_HELM = "helm"

DEPENDS_ON_ANNOTATION = "mcpgw-topology/depends-on"
MANAGED_BY = {"managed-by": "mcpgw-topology"}
EFS_VOLUME = "efs-storage"

PLACEHOLDER = re.compile(r"\$\{output:([A-Za-z0-9]+)\}")

# Lookup performed by the applier for values CloudFormation cannot expose as outputs
COGNITO_CLIENT_SECRET_LOOKUP = "cognito-client-secret"

# Stable output names for the attributes operators look up most
STANDARD_OUTPUTS: Tuple[Tuple[str, str, str, str], ...] = (
    ("network", "id", "VpcId", "VPC ID"),
    ("compute-cluster", "name", "ClusterName", "EKS Cluster Name"),
    ("compute-cluster", "endpoint", "ClusterEndpoint", "EKS Cluster Endpoint"),
    ("compute-cluster", "masters-role-arn", "MastersRoleArn", "IAM role mapped to system:masters"),
    ("shared-filesystem", "id", "EfsFileSystemId", "EFS File System ID"),
    ("tls-certificate", "arn", "CertificateArn", "SSL Certificate ARN"),
    ("tls-certificate", "domain-name", "DomainName", "Domain Name"),
    ("identity-pool", "id", "UserPoolId", "Cognito User Pool ID"),
    ("identity-client-web", "id", "UserPoolClientId", "Cognito User Pool Client ID (for user authentication)"),
    ("identity-client-machine", "id", "M2MClientId", "Cognito M2M Client ID (for agent authentication)"),
    ("identity-domain", "url", "CognitoDomain", "Cognito Hosted UI Domain"),
    ("identity-resource-server", "identifier", "ResourceServerIdentifier", "Cognito Resource Server Identifier"),
)
_OUTPUT_NAMES = {(target, attribute): (key, description) for target, attribute, key, description in STANDARD_OUTPUTS}
_APPLY_TIME_NAMES = {("identity-client-web", "secret"): "UserPoolClientSecret"}


class _ApplyTime:
    """Export marker for values only the applier can fetch"""


APPLY_TIME = _ApplyTime()


def logical_id(name: str) -> str:
    """PascalCase form of a logical name, usable as a CloudFormation logical id"""
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[^A-Za-z0-9]+", name) if part)


@dataclass(frozen=True)
class Declaration:
    logical_id: str
    provider: str
    type: str
    body: Mapping[str, Any]
    depends_on: Tuple[str, ...]
    source: str

    def __post_init__(self):
        object.__setattr__(self, "body", freeze(dict(self.body)))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    def plain_body(self) -> Dict[str, Any]:
        return thaw(self.body)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "logicalId": self.logical_id,
            "provider": self.provider,
            "type": self.type,
            "dependsOn": list(self.depends_on),
            "source": self.source,
            "body": self.plain_body(),
        }


@dataclass(frozen=True)
class ExternalRepresentation:
    mode: Mode
    declarations: Tuple[Declaration, ...]
    outputs: Mapping[str, Mapping[str, Any]]
    apply_time_values: Mapping[str, Mapping[str, Any]]

    def __post_init__(self):
        object.__setattr__(self, "declarations", tuple(self.declarations))
        object.__setattr__(self, "outputs", freeze(dict(self.outputs)))
        object.__setattr__(self, "apply_time_values", freeze(dict(self.apply_time_values)))

    def get(self, logical_id: str) -> Optional[Declaration]:
        for declaration in self.declarations:
            if declaration.logical_id == logical_id:
                return declaration
        return None

    def by_provider(self, provider: str) -> List[Declaration]:
        return [declaration for declaration in self.declarations if declaration.provider == provider]

    def aws_declarations(self) -> List[Declaration]:
        return self.by_provider(PROVIDER_AWS)

    def cluster_declarations(self) -> List[Declaration]:
        """Kubernetes manifests and Helm releases, in apply order"""
        return [d for d in self.declarations if d.provider in (PROVIDER_KUBERNETES, PROVIDER_HELM)]

    def placeholders(self) -> List[str]:
        found = set()
        for declaration in self.cluster_declarations():
            found.update(_find_placeholders(declaration.plain_body()))
        return sorted(found)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "declarations": [declaration.to_dict() for declaration in self.declarations],
            "outputs": thaw(self.outputs),
            "applyTimeValues": thaw(self.apply_time_values),
        }

    def to_json(self, indent: Optional[int] = None) -> str:
        try:
            return json.dumps(self.to_dict(), sort_keys=True, indent=indent)
        except (TypeError, ValueError) as e:
            raise EmissionFailure(f"Could not serialise representation: {e}") from e

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExternalRepresentation":
        try:
            declarations = [
                Declaration(
                    logical_id=item["logicalId"],
                    provider=item["provider"],
                    type=item["type"],
                    body=item["body"],
                    depends_on=tuple(item.get("dependsOn", ())),
                    source=item["source"],
                )
                for item in data["declarations"]
            ]
            return cls(
                mode=Mode.parse(data["mode"]),
                declarations=tuple(declarations),
                outputs=data.get("outputs", {}),
                apply_time_values=data.get("applyTimeValues", {}),
            )
        except KeyError as e:
            raise EmissionFailure(f"Representation is missing field {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "ExternalRepresentation":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise EmissionFailure(f"Representation is not valid JSON: {e}") from e
        return cls.from_dict(data)


def emit(graph: DeploymentGraph) -> ExternalRepresentation:
    """
    Emit provider-native declarations for a graph

    Raises:
        ValidationFailed: the graph has consistency findings
        EmissionFailure: an intent cannot be expressed in the target formats
    """
    validate(graph).raise_for_findings()

    emission = _Emission(graph)
    for intent in graph:
        emission.emit_intent(intent)
    return ExternalRepresentation(
        mode=graph.mode,
        declarations=tuple(emission.declarations),
        outputs=emission.outputs,
        apply_time_values=emission.apply_time_values,
    )


# ---------------------------------------------------------------------------
# Placeholder substitution
# ---------------------------------------------------------------------------

def _find_placeholders(value: Any) -> List[str]:
    if isinstance(value, str):
        return PLACEHOLDER.findall(value)
    if isinstance(value, Mapping):
        return [key for item in value.values() for key in _find_placeholders(item)]
    if isinstance(value, (list, tuple)):
        return [key for item in value for key in _find_placeholders(item)]
    return []


def substitute(value: Any, values: Mapping[str, str]) -> Any:
    """Replace ${output:Key} placeholders; unknown keys raise EmissionFailure"""
    if isinstance(value, str):
        def replace(match):
            key = match.group(1)
            if key not in values:
                raise EmissionFailure(f"No value for placeholder ${{output:{key}}}")
            return str(values[key])
        return PLACEHOLDER.sub(replace, value)
    if isinstance(value, Mapping):
        return {key: substitute(item, values) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(item, values) for item in value]
    return value


def render_manifests(representation: ExternalRepresentation, values: Mapping[str, str]) -> str:
    """Multi-document YAML of every Kubernetes manifest with placeholders substituted"""
    documents = [
        substitute(declaration.plain_body(), values)
        for declaration in representation.by_provider(PROVIDER_KUBERNETES)
    ]
    try:
        return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)
    except yaml.YAMLError as e:
        raise EmissionFailure(f"Could not render manifests: {e}") from e


def render_manifest(declaration: Declaration, values: Mapping[str, str]) -> str:
    try:
        return yaml.safe_dump(substitute(declaration.plain_body(), values), default_flow_style=False, sort_keys=False)
    except yaml.YAMLError as e:
        raise EmissionFailure(f"Could not render {declaration.logical_id}: {e}") from e


def render_helm_values(declaration: Declaration, values: Mapping[str, str]) -> str:
    release_values = declaration.plain_body().get("values", {})
    try:
        return yaml.safe_dump(substitute(release_values, values), default_flow_style=False, sort_keys=True)
    except yaml.YAMLError as e:
        raise EmissionFailure(f"Could not render values for {declaration.logical_id}: {e}") from e


# ---------------------------------------------------------------------------
# Construct references
# ---------------------------------------------------------------------------

def construct_ref(logical: str, attribute: str) -> Dict[str, str]:
    """Attribute of another AWS declaration, resolved when the CDK stack builds it"""
    return {"construct": logical, "attribute": attribute}


def is_construct_ref(value: Any) -> bool:
    return isinstance(value, Mapping) and set(value) == {"construct", "attribute"}


# Attributes each AWS declaration registers once its construct is built
CONSTRUCT_ATTRIBUTES: Dict[ResourceKind, Tuple[str, ...]] = {
    ResourceKind.NETWORK: ("id", "cidr", "public-subnets", "private-subnets"),
    ResourceKind.STORAGE: ("id", "access-point-id", "security-group"),
    ResourceKind.COMPUTE_CLUSTER: ("name", "arn", "endpoint", "pod-execution-role-arn", "masters-role-arn"),
    ResourceKind.IDENTITY: ("id", "arn", "provider-url"),
    ResourceKind.IDENTITY_CLIENT: ("id",),
    ResourceKind.RESOURCE_SERVER: ("identifier",),
    ResourceKind.IDENTITY_DOMAIN: ("prefix", "url"),
}


def _exports(intent: ResourceIntent) -> Dict[str, Any]:
    """Attributes other intents may reference, as construct references or literals"""
    base = logical_id(intent.name)
    exports: Dict[str, Any] = {
        attribute: construct_ref(base, attribute) for attribute in CONSTRUCT_ATTRIBUTES.get(intent.kind, ())
    }
    if intent.kind is ResourceKind.CERTIFICATE:
        exports["arn"] = intent.payload.get("import_arn") or construct_ref(base, "arn")
        exports["domain-name"] = intent.payload["domain_name"]
    elif intent.kind is ResourceKind.IDENTITY_CLIENT:
        exports["secret"] = APPLY_TIME
    return exports


class _Emission:
    """Accumulates declarations and outputs while walking a graph in order"""

    def __init__(self, graph: DeploymentGraph):
        self.graph = graph
        self.declarations: List[Declaration] = []
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self.apply_time_values: Dict[str, Dict[str, Any]] = {}
        self.primaries: Dict[str, str] = {}
        self._exports = {intent.name: _exports(intent) for intent in graph}
        self._current: Optional[ResourceIntent] = None
        self._emitters: Dict[ResourceKind, Callable[[ResourceIntent], None]] = {
            ResourceKind.NETWORK: self._network,
            ResourceKind.STORAGE: self._shared_filesystem,
            ResourceKind.COMPUTE_CLUSTER: self._compute_cluster,
            ResourceKind.CERTIFICATE: self._certificate,
            ResourceKind.IDENTITY: self._identity_pool,
            ResourceKind.IDENTITY_GROUP: self._identity_groups,
            ResourceKind.RESOURCE_SERVER: self._resource_server,
            ResourceKind.IDENTITY_CLIENT: self._identity_client,
            ResourceKind.IDENTITY_DOMAIN: self._identity_domain,
            ResourceKind.CLUSTER_ADDON: self._cluster_addon,
            ResourceKind.NAMESPACE: self._namespace,
            ResourceKind.COMPUTE_PROFILE: self._compute_profile,
            ResourceKind.STORAGE_CLAIM: self._storage_claim,
            ResourceKind.CONFIGURATION: self._configuration,
            ResourceKind.SECRET: self._secret,
            ResourceKind.WORKLOAD: self._workload,
            ResourceKind.NETWORK_ENTRYPOINT: self._entrypoint,
        }

    def emit_intent(self, intent: ResourceIntent) -> None:
        self._current = intent
        start = len(self.declarations)
        self._emitters[intent.kind](intent)

        emitted = [declaration.logical_id for declaration in self.declarations[start:]]
        base = logical_id(intent.name)
        if emitted and base not in emitted:
            raise EmissionFailure(f"{intent.name} produced no primary declaration {base}")
        if emitted:
            self.primaries[intent.name] = base
        self._standard_outputs(intent)

    # -- references --------------------------------------------------------

    def _export(self, ref: Ref) -> Any:
        table = self._exports.get(ref.target)
        if table is None or ref.attribute not in table:
            raise EmissionFailure(f"{ref.target} does not export attribute {ref.attribute!r}")
        return table[ref.attribute]

    def aws(self, value: Any) -> Any:
        """Resolve references into construct references or literals"""
        if isinstance(value, Ref):
            exported = self._export(value)
            if exported is APPLY_TIME:
                raise EmissionFailure(f"{value.target}.{value.attribute} is only available at apply time")
            return exported
        if isinstance(value, Mapping):
            return {key: self.aws(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.aws(item) for item in value]
        return value

    def cluster(self, value: Any) -> Any:
        """Resolve references into literals or ${output:Key} placeholders"""
        if isinstance(value, Ref):
            return self._placeholder(value)
        if isinstance(value, Mapping):
            return {key: self.cluster(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.cluster(item) for item in value]
        return value

    def _output_name(self, ref: Ref) -> Tuple[str, str]:
        named = _OUTPUT_NAMES.get((ref.target, ref.attribute))
        if named:
            return named
        return logical_id(ref.target) + logical_id(ref.attribute), f"{ref.attribute} of {ref.target}"

    def _add_output(self, ref: Ref) -> str:
        key, description = self._output_name(ref)
        exported = self._export(ref)
        self.outputs[key] = {"Value": exported, "Description": description}
        return key

    def _placeholder(self, ref: Ref) -> str:
        exported = self._export(ref)
        if isinstance(exported, (str, int, bool)):
            return str(exported)
        if exported is APPLY_TIME:
            key = self._apply_time_value(ref)
        else:
            key = self._add_output(ref)
        return f"${{output:{key}}}"

    def _apply_time_value(self, ref: Ref) -> str:
        client = self.graph[ref.target]
        key = _APPLY_TIME_NAMES.get((ref.target, ref.attribute)) or (
            logical_id(ref.target) + logical_id(ref.attribute)
        )
        self.apply_time_values[key] = {
            "lookup": COGNITO_CLIENT_SECRET_LOOKUP,
            "userPoolIdOutput": self._add_output(client.payload["user_pool"]),
            "clientIdOutput": self._add_output(Ref(ref.target, "id")),
        }
        return key

    def _standard_outputs(self, intent: ResourceIntent) -> None:
        for target, attribute, _, _ in STANDARD_OUTPUTS:
            if target != intent.name:
                continue
            exported = self._export(Ref(target, attribute))
            key, description = self._output_name(Ref(target, attribute))
            self.outputs[key] = {"Value": exported, "Description": description}

    # -- declaration builders ----------------------------------------------

    def _hints(self, intent: ResourceIntent) -> List[str]:
        return sorted(self.primaries[name] for name in intent.depends_on if name in self.primaries)

    def _add(self, provider: str, type_: str, suffix: str, body: Dict[str, Any],
             local_depends_on: Sequence[str] = ()) -> str:
        intent = self._current
        declared_id = logical_id(intent.name) + suffix
        hints = self._hints(intent) + [dep for dep in local_depends_on]
        self.declarations.append(Declaration(
            logical_id=declared_id,
            provider=provider,
            type=type_,
            body=body,
            depends_on=tuple(dict.fromkeys(hints)),
            source=intent.name,
        ))
        return declared_id

    def resource(self, type_: str, suffix: str, properties: Dict[str, Any],
                 depends_on: Sequence[str] = ()) -> str:
        return self._add(PROVIDER_AWS, type_, suffix, self.aws(properties), depends_on)

    def manifest(self, suffix: str, manifest: Dict[str, Any], depends_on: Sequence[str] = ()) -> str:
        manifest = self.cluster(manifest)
        hints = self._hints(self._current) + list(depends_on)
        metadata = manifest.setdefault("metadata", {})
        metadata["labels"] = {**metadata.get("labels", {}), **MANAGED_BY}
        if hints:
            annotations = metadata.setdefault("annotations", {})
            annotations[DEPENDS_ON_ANNOTATION] = ",".join(dict.fromkeys(hints))
        return self._add(PROVIDER_KUBERNETES, manifest["kind"], suffix, manifest, depends_on)

    def helm_release(self, suffix: str, payload: Mapping[str, Any], depends_on: Sequence[str] = ()) -> str:
        body: Dict[str, Any] = {
            "release": payload["release"],
            "chart": payload["chart"],
            "repository": payload["repository"],
            "namespace": payload["namespace"],
            "values": self.cluster(payload.get("values", {})),
        }
        if payload.get("version"):
            body["version"] = payload["version"]
        return self._add(PROVIDER_HELM, "HelmRelease", suffix, body, depends_on)

    def pod_identity(self, account: Mapping[str, Any], cluster: Any) -> List[str]:
        """IAM role plus pod identity association for a service account"""
        association = self.resource("eks.PodIdentityAssociation", "PodIdentity", {
            "cluster": cluster,
            "namespace": account["namespace"],
            "service_account": account["name"],
            "managed_policies": list(account.get("managed_policies", ())),
            "statements": thaw(account.get("statements", ())),
        })
        return [association]

    # -- infrastructure ----------------------------------------------------

    def _network(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("ec2.Vpc", "", {
            "name": "mcp-gateway-vpc",
            "cidr": p["cidr"],
            "max_azs": p["max_azs"],
            "nat_gateways": max(1, min(p["nat_gateways"], p["max_azs"])),
            "subnet_cidr_mask": p["subnet_cidr_mask"],
            "flow_logs": bool(p.get("flow_logs")),
        })

    def _shared_filesystem(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("efs.FileSystem", "", {
            "name": "mcp-gateway-efs",
            "vpc": p["vpc"],
            "vpc_cidr": p["vpc_cidr"],
            "encrypted": p["encrypted"],
            "performance_mode": p["performance_mode"],
            "throughput_mode": p["throughput_mode"],
            "lifecycle_policy": p["transition_to_ia"],
            "access_point": p["access_point"],
        })

    def _compute_cluster(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("eks.FargateCluster", "", {
            "name": p["name"],
            "version": p["version"],
            "vpc": p["vpc"],
            "endpoint_public_access": p["endpoint_public_access"],
            "endpoint_private_access": p["endpoint_private_access"],
            "log_types": p["log_types"],
            "default_profile": p["default_profile"],
        })

    def _certificate(self, intent: ResourceIntent) -> None:
        p = intent.payload
        if p.get("import_arn"):
            return

        properties: Dict[str, Any] = {
            "name": f"mcp-gateway-{p['domain_name']}",
            "domain_name": p["domain_name"],
            "subject_alternative_names": p["subject_alternative_names"],
            "validation": p["validation"],
        }
        if p.get("hosted_zone_id"):
            properties["hosted_zone_id"] = p["hosted_zone_id"]
        else:
            self.outputs["CertificateDnsValidationRecords"] = {
                "Value": f"Check AWS Console ACM for DNS validation records for {p['domain_name']}",
                "Description": "DNS validation records for SSL certificate",
            }
        self.resource("acm.Certificate", "", properties)

    def _identity_pool(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("cognito.UserPool", "", {
            "pool_name": p["pool_name"],
            "self_sign_up": p["self_sign_up"],
            "alias_attributes": p["alias_attributes"],
            "auto_verified_attributes": p["auto_verified_attributes"],
            "password_policy": p["password_policy"],
            "account_recovery": p["account_recovery"],
        })

    def _identity_groups(self, intent: ResourceIntent) -> None:
        p = intent.payload
        admin = p["admin_user"]
        if admin["group"] not in {group["name"] for group in p["groups"]}:
            raise EmissionFailure(f"{intent.name}: admin group {admin['group']} is not declared")
        self.resource("cognito.UserPoolGroups", "", {
            "user_pool": p["user_pool"],
            "groups": p["groups"],
            "admin_user": admin,
        })

    def _resource_server(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("cognito.UserPoolResourceServer", "", {
            "user_pool": p["user_pool"],
            "identifier": p["identifier"],
            "name": p["display_name"],
            "scopes": p["scopes"],
        })

    def _identity_client(self, intent: ResourceIntent) -> None:
        p = intent.payload
        properties: Dict[str, Any] = {
            "user_pool": p["user_pool"],
            "client_name": p["client_name"],
            "generate_secret": p["generate_secret"],
            "auth_flows": p["auth_flows"],
            "oauth_flows": p["oauth_flows"],
            "oauth_scopes": p.get("oauth_scopes", ()),
            "callback_urls": p.get("callback_urls", ()),
            "logout_urls": p.get("logout_urls", ()),
        }
        if "resource_server" in p:
            properties["resource_server"] = p["resource_server"]
            properties["resource_scopes"] = p["resource_scopes"]
        self.resource("cognito.UserPoolClient", "", properties)

    def _identity_domain(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("cognito.UserPoolDomain", "", {
            "user_pool": p["user_pool"],
            "prefix": p["prefix"],
        })

    def _cluster_addon(self, intent: ResourceIntent) -> None:
        p = intent.payload
        engine = p["engine"]

        if engine == "eks-addon":
            properties: Dict[str, Any] = {
                "cluster": p["cluster"],
                "addon_name": p["addon_name"],
            }
            if p.get("addon_version"):
                properties["addon_version"] = p["addon_version"]
            if p.get("configuration"):
                properties["configuration"] = p["configuration"]
            self.resource("eks.CfnAddon", "", properties)
            return

        identity: List[str] = []
        if "service_account" in p:
            identity = self.pod_identity(p["service_account"], p["cluster"])

        if engine == "helm":
            self.helm_release("", p, depends_on=identity)
        elif engine == "manifest":
            self._forwarder_manifests(p, identity)
        else:
            raise EmissionFailure(f"{intent.name}: unknown addon engine {engine!r}")

    def _forwarder_manifests(self, p: Mapping[str, Any], identity: Sequence[str]) -> None:
        account = p["service_account"]
        service_account = self.manifest("ServiceAccount", {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": account["name"], "namespace": account["namespace"]},
        }, depends_on=identity)
        labels = {"app": p["name"]}
        self.manifest("", {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": p["name"], "namespace": p["namespace"], "labels": dict(labels)},
            "spec": {
                "replicas": p["replicas"],
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "serviceAccountName": account["name"],
                        "containers": [{
                            "name": p["name"],
                            "image": p["image"],
                            "resources": thaw(p["resources"]),
                            "env": [{"name": e["name"], "value": e["value"]} for e in p["env"]],
                        }],
                    },
                },
            },
        }, depends_on=[service_account])

    # -- applications ------------------------------------------------------

    def _namespace(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.manifest("", {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": p["name"], "labels": thaw(p["labels"])},
        })

    def _compute_profile(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.resource("eks.FargateProfile", "", {
            "cluster": p["cluster"],
            "profile_name": p["profile_name"],
            "namespaces": p["namespaces"],
        })

    def _storage_claim(self, intent: ResourceIntent) -> None:
        p = intent.payload
        gid_start, gid_end = p["gid_range"]
        storage_class = self.manifest("StorageClass", {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "StorageClass",
            "metadata": {"name": p["storage_class"]},
            "provisioner": "efs.csi.aws.com",
            "parameters": {
                "provisioningMode": "efs-ap",
                "fileSystemId": p["file_system_id"],
                "directoryPerms": p["directory_perms"],
                "gidRangeStart": str(gid_start),
                "gidRangeEnd": str(gid_end),
                "basePath": p["base_path"],
            },
            "reclaimPolicy": "Retain",
            "volumeBindingMode": "Immediate",
        })
        self.manifest("", {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": p["claim"], "namespace": p["namespace"]},
            "spec": {
                "accessModes": list(p["access_modes"]),
                "storageClassName": p["storage_class"],
                "resources": {"requests": {"storage": p["size"]}},
            },
        }, depends_on=[storage_class])

    def _configuration(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.manifest("", {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": p["name"], "namespace": p["namespace"]},
            "data": {key: value for key, value in p["data"].items()},
        })

    def _secret(self, intent: ResourceIntent) -> None:
        p = intent.payload
        self.manifest("", {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": p["name"], "namespace": p["namespace"]},
            "type": "Opaque",
            "stringData": {key: value for key, value in p["string_data"].items()},
        })

    def _workload(self, intent: ResourceIntent) -> None:
        p = intent.payload
        name = p["name"]
        labels = {"app": name}
        ports = [{"name": p["port_name"], "port": p["port"]}] + [dict(port) for port in p["extra_ports"]]

        container: Dict[str, Any] = {
            "name": name,
            "image": p["image"],
            "ports": [{"name": port["name"], "containerPort": port["port"]} for port in ports],
            "env": [_env_var(entry) for entry in p["env"]],
            "resources": thaw(p["resources"]),
        }
        mount: Dict[str, Any] = {"name": EFS_VOLUME, "mountPath": p["volume"]["mount_path"]}
        if p["volume"].get("sub_path"):
            mount["subPath"] = p["volume"]["sub_path"]
        container["volumeMounts"] = [mount]
        for check in p["health_checks"]:
            container[f"{check['kind']}Probe"] = _health_check(check, p["health_path"], p["port"])

        deployment = self.manifest("", {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": name, "namespace": p["namespace"], "labels": dict(labels)},
            "spec": {
                "replicas": p["replicas"],
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "containers": [container],
                        "volumes": [{
                            "name": EFS_VOLUME,
                            "persistentVolumeClaim": {"claimName": p["volume"]["claim"]},
                        }],
                    },
                },
            },
        })
        self.manifest("Service", {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": name, "namespace": p["namespace"], "labels": dict(labels)},
            "spec": {
                "selector": dict(labels),
                "ports": [
                    {"name": port["name"], "port": port["port"], "targetPort": port["port"], "protocol": "TCP"}
                    for port in ports
                ],
                "type": "ClusterIP",
            },
        })

        scaling = p.get("autoscaling")
        if scaling:
            self.manifest("Autoscaler", {
                "apiVersion": "autoscaling/v2",
                "kind": "HorizontalPodAutoscaler",
                "metadata": {"name": f"{name}-hpa", "namespace": p["namespace"]},
                "spec": {
                    "scaleTargetRef": {"apiVersion": "apps/v1", "kind": "Deployment", "name": name},
                    "minReplicas": scaling["min_replicas"],
                    "maxReplicas": scaling["max_replicas"],
                    "metrics": [{
                        "type": "Resource",
                        "resource": {
                            "name": "cpu",
                            "target": {"type": "Utilization", "averageUtilization": scaling["cpu_utilization"]},
                        },
                    }],
                },
            }, depends_on=[deployment])

    def _entrypoint(self, intent: ResourceIntent) -> None:
        p = intent.payload
        annotations = thaw(p["annotations"])
        annotations["alb.ingress.kubernetes.io/certificate-arn"] = p["certificate_arn"]
        self.manifest("", {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": {
                "name": p["name"],
                "namespace": p["namespace"],
                "labels": {"app": "registry"},
                "annotations": annotations,
            },
            "spec": {
                "rules": [{
                    "host": p["host"],
                    "http": {
                        "paths": [
                            {
                                "path": rule["path"],
                                "pathType": "Prefix",
                                "backend": {"service": {"name": rule["service"], "port": {"number": rule["port"]}}},
                            }
                            for rule in p["rules"]
                        ],
                    },
                }],
            },
        })


def _env_var(entry: Mapping[str, Any]) -> Dict[str, Any]:
    if "config_map" in entry:
        return {"name": entry["name"], "valueFrom": {
            "configMapKeyRef": {"name": entry["config_map"], "key": entry["key"]},
        }}
    if "secret" in entry:
        ref: Dict[str, Any] = {"name": entry["secret"], "key": entry["key"]}
        if entry.get("optional"):
            ref["optional"] = True
        return {"name": entry["name"], "valueFrom": {"secretKeyRef": ref}}
    return {"name": entry["name"], "value": entry["value"]}


def _health_check(check: Mapping[str, Any], path: str, port: int) -> Dict[str, Any]:
    spec: Dict[str, Any] = {"httpGet": {"path": path, "port": port}, "periodSeconds": check["period"]}
    if check.get("initial_delay"):
        spec["initialDelaySeconds"] = check["initial_delay"]
    if check.get("failure_threshold") is not None:
        spec["failureThreshold"] = check["failure_threshold"]
    return spec
