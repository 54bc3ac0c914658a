"""
Topology composer
Builds the ordered DeploymentGraph for a deployment mode from a resolved
ParameterSet. Composition is pure: the same mode and parameters always give
a byte-identical graph.
"""
import heapq
from typing import Any, Dict, List, Optional, Sequence

from .errors import MissingExternalReference
from .intents import (
    PROVIDES_SECRETS,
    ROUTING_RULES,
    SECRET_REFS,
    DeploymentGraph,
    Ref,
    ResourceIntent,
    ResourceKind,
    secret_ref,
)
from .parameters import Mode, ParameterSet
from .workloads import (
    CLAIM_NAME,
    CONFIG_MAP_NAME,
    EFS_BASE_PATH,
    SECRET_NAME,
    STORAGE_CLASS_NAME,
    WORKLOAD_TEMPLATES,
    WorkloadTemplate,
)

NETWORK = "network"
STORAGE = "shared-filesystem"
CLUSTER = "compute-cluster"
CERTIFICATE = "tls-certificate"
IDENTITY = "identity-pool"
IDENTITY_GROUPS = "identity-groups"
RESOURCE_SERVER = "identity-resource-server"
WEB_CLIENT = "identity-client-web"
MACHINE_CLIENT = "identity-client-machine"
IDENTITY_DOMAIN = "identity-domain"

ADDON_COREDNS = "addon-coredns"
ADDON_POD_IDENTITY = "addon-pod-identity-agent"
ADDON_METRICS_SERVER = "addon-metrics-server"
ADDON_EXTERNAL_DNS = "addon-external-dns"
ADDON_LB_CONTROLLER = "addon-load-balancer-controller"
ADDON_EFS_CSI = "addon-efs-csi-driver"
ADDON_LOG_FORWARDER = "addon-log-forwarder"

NAMESPACE = "namespace"
COMPUTE_PROFILE = "compute-profile"
STORAGE_CLAIM = "storage-claim"
CONFIGURATION = "configuration"
SECRET = "secret"
ENTRYPOINT = "network-entrypoint"
MONITORING_NAMESPACE = "namespace-monitoring"
MONITORING_PROFILE = "compute-profile-monitoring"

MONITORING_NAMESPACE_NAME = "amazon-cloudwatch"
ADMIN_GROUP = "mcp-registry-admin"
USER_GROUP = "mcp-registry-user"
RESOURCE_SERVER_IDENTIFIER = "mcp-servers-unrestricted"
CLUSTER_LOG_TYPES = ("api", "audit", "authenticator", "controllerManager", "scheduler")

SECRET_KEYS = (
    "admin-password",
    "cognito-client-secret",
    "github-client-id",
    "github-client-secret",
    "polygon-api-key",
    "secret-key",
)

INGRESS_ANNOTATIONS = {
    "kubernetes.io/ingress.class": "alb",
    "alb.ingress.kubernetes.io/scheme": "internet-facing",
    "alb.ingress.kubernetes.io/target-type": "ip",
    "alb.ingress.kubernetes.io/ssl-redirect": "443",
    "alb.ingress.kubernetes.io/listen-ports": '[{"HTTP": 80}, {"HTTPS": 443}]',
    "alb.ingress.kubernetes.io/healthcheck-path": "/health",
    "alb.ingress.kubernetes.io/healthcheck-interval-seconds": "30",
    "alb.ingress.kubernetes.io/healthcheck-timeout-seconds": "5",
    "alb.ingress.kubernetes.io/healthy-threshold-count": "2",
    "alb.ingress.kubernetes.io/unhealthy-threshold-count": "3",
    "alb.ingress.kubernetes.io/load-balancer-attributes": "idle_timeout.timeout_seconds=60",
}


def compose(mode: Any, params: ParameterSet) -> DeploymentGraph:
    """
    Compose the deployment graph for a mode

    Args:
        mode: Mode or its string form
        params: resolved parameters

    Returns:
        DeploymentGraph in dependency order

    Raises:
        InvalidMode, MissingParameter, MissingExternalReference
    """
    mode = Mode.parse(mode)
    params.require(mode)

    intents: List[ResourceIntent] = []
    if mode.deploys_infrastructure:
        intents.extend(_infrastructure_intents(params))
    if mode.deploys_applications:
        intents.extend(_application_intents(mode, params))
    if mode is Mode.COMPLETE and params.get("enableMonitoring"):
        intents.extend(_monitoring_intents(params))

    return DeploymentGraph(mode, order_intents(intents))


def order_intents(intents: Sequence[ResourceIntent]) -> List[ResourceIntent]:
    """
    Topologically sort intents, breaking ties by (kind rank, logical name)

    Edges to names outside the sequence are ignored here and left for the
    validator to report. Intents caught in a cycle are appended in tie-break
    order so the result always contains every input exactly once.
    """
    positions: Dict[str, List[int]] = {}
    for index, intent in enumerate(intents):
        positions.setdefault(intent.name, []).append(index)

    pending = [0] * len(intents)
    dependents: Dict[int, List[int]] = {index: [] for index in range(len(intents))}
    for index, intent in enumerate(intents):
        for dependency in intent.depends_on:
            for source in positions.get(dependency, []):
                if source == index:
                    continue
                pending[index] += 1
                dependents[source].append(index)

    ready = [(intent.sort_key, index) for index, intent in enumerate(intents) if pending[index] == 0]
    heapq.heapify(ready)

    ordered: List[int] = []
    while ready:
        _, index = heapq.heappop(ready)
        ordered.append(index)
        for dependent in dependents[index]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, (intents[dependent].sort_key, dependent))

    if len(ordered) < len(intents):
        emitted = set(ordered)
        leftover = sorted(
            (index for index in range(len(intents)) if index not in emitted),
            key=lambda index: (intents[index].sort_key, index),
        )
        ordered.extend(leftover)

    return [intents[index] for index in ordered]


# ---------------------------------------------------------------------------
# Infrastructure phase
# ---------------------------------------------------------------------------

def _infrastructure_intents(params: ParameterSet) -> List[ResourceIntent]:
    intents = [
        ResourceIntent(ResourceKind.NETWORK, NETWORK, {
            "cidr": params["vpcCidr"],
            "max_azs": params["maxAzs"],
            "subnet_cidr_mask": 24,
            "nat_gateways": 1,
            "flow_logs": True,
        }),
        ResourceIntent(ResourceKind.STORAGE, STORAGE, {
            "vpc": Ref(NETWORK, "id"),
            "vpc_cidr": Ref(NETWORK, "cidr"),
            "encrypted": True,
            "performance_mode": "generalPurpose",
            "throughput_mode": "bursting",
            "transition_to_ia": "AFTER_30_DAYS",
            "access_point": {
                "path": EFS_BASE_PATH,
                "uid": "1000",
                "gid": "1000",
                "permissions": "755",
            },
        }, depends_on=(NETWORK,)),
        ResourceIntent(ResourceKind.COMPUTE_CLUSTER, CLUSTER, {
            "name": params["clusterName"],
            "version": params["kubernetesVersion"],
            "vpc": Ref(NETWORK, "id"),
            "endpoint_public_access": True,
            "endpoint_private_access": True,
            "log_types": list(CLUSTER_LOG_TYPES),
            "default_profile": {
                "name": "default-fargate-profile",
                "namespaces": ["default", "kube-system"],
            },
        }, depends_on=(NETWORK,)),
        _certificate_intent(params),
    ]
    intents.extend(_identity_intents(params))
    intents.extend(_addon_intents(params))
    return intents


def _certificate_intent(params: ParameterSet) -> ResourceIntent:
    domain = params["domainName"]
    payload: Dict[str, Any] = {
        "domain_name": domain,
        "subject_alternative_names": [f"*.{domain}"],
        "validation": "DNS",
    }
    if params.has("certificateArn"):
        payload["import_arn"] = params["certificateArn"]
    if params.has("hostedZoneId"):
        payload["hosted_zone_id"] = params["hostedZoneId"]
    return ResourceIntent(ResourceKind.CERTIFICATE, CERTIFICATE, payload)


def _identity_intents(params: ParameterSet) -> List[ResourceIntent]:
    pool = Ref(IDENTITY, "id")
    domain = params["domainName"]
    return [
        ResourceIntent(ResourceKind.IDENTITY, IDENTITY, {
            "pool_name": params["cognitoUserPoolName"],
            "self_sign_up": True,
            "alias_attributes": ["email"],
            "auto_verified_attributes": ["email"],
            "password_policy": {
                "minimum_length": 8,
                "require_lowercase": True,
                "require_uppercase": True,
                "require_numbers": True,
                "require_symbols": True,
            },
            "account_recovery": "verified_email",
        }),
        ResourceIntent(ResourceKind.IDENTITY_GROUP, IDENTITY_GROUPS, {
            "user_pool": pool,
            "groups": [
                {"name": ADMIN_GROUP, "description": "Admin group for MCP Registry users"},
                {"name": USER_GROUP, "description": "Regular user group for MCP Registry"},
            ],
            "admin_user": {
                "username": params["adminUser"],
                "email": f"admin@{domain}",
                "group": ADMIN_GROUP,
            },
        }, depends_on=(IDENTITY,)),
        ResourceIntent(ResourceKind.RESOURCE_SERVER, RESOURCE_SERVER, {
            "user_pool": pool,
            "identifier": RESOURCE_SERVER_IDENTIFIER,
            "display_name": "MCP Servers Unrestricted",
            "scopes": [
                {"name": "read", "description": "Read access to all MCP servers"},
                {"name": "execute", "description": "Execute access to all MCP servers"},
            ],
        }, depends_on=(IDENTITY,)),
        ResourceIntent(ResourceKind.IDENTITY_CLIENT, WEB_CLIENT, {
            "user_pool": pool,
            "client_name": "mcp-gateway-client",
            "generate_secret": True,
            "auth_flows": ["ALLOW_USER_PASSWORD_AUTH", "ALLOW_USER_SRP_AUTH",
                           "ALLOW_ADMIN_USER_PASSWORD_AUTH", "ALLOW_REFRESH_TOKEN_AUTH"],
            "oauth_flows": ["code"],
            "oauth_scopes": ["email", "openid", "profile", "aws.cognito.signin.user.admin"],
            "callback_urls": list(params["cognitoCallbackUrls"]),
            "logout_urls": list(params["cognitoLogoutUrls"]),
        }, depends_on=(IDENTITY,)),
        ResourceIntent(ResourceKind.IDENTITY_CLIENT, MACHINE_CLIENT, {
            "user_pool": pool,
            "client_name": "mcp-agent-client",
            "generate_secret": True,
            "auth_flows": ["ALLOW_REFRESH_TOKEN_AUTH"],
            "oauth_flows": ["client_credentials"],
            "resource_server": Ref(RESOURCE_SERVER, "identifier"),
            "resource_scopes": ["read", "execute"],
        }, depends_on=(IDENTITY, RESOURCE_SERVER)),
        ResourceIntent(ResourceKind.IDENTITY_DOMAIN, IDENTITY_DOMAIN, {
            "user_pool": pool,
            "prefix": params["cognitoDomainPrefix"],
        }, depends_on=(IDENTITY,)),
    ]


def _service_account(name: str, namespace: str = "kube-system",
                     managed_policies: Sequence[str] = (),
                     statements: Optional[Sequence[Dict[str, Any]]] = None) -> Dict[str, Any]:
    account: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "managed_policies": list(managed_policies),
    }
    if statements:
        account["statements"] = list(statements)
    return account


def _addon_intents(params: ParameterSet) -> List[ResourceIntent]:
    cluster_name = Ref(CLUSTER, "name")
    return [
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_COREDNS, {
            "engine": "eks-addon",
            "cluster": cluster_name,
            "addon_name": "coredns",
            "addon_version": "v1.10.1-eksbuild.4",
            "configuration": {"computeType": "Fargate"},
        }, depends_on=(CLUSTER,)),
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_POD_IDENTITY, {
            "engine": "eks-addon",
            "cluster": cluster_name,
            "addon_name": "eks-pod-identity-agent",
        }, depends_on=(CLUSTER,)),
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_METRICS_SERVER, {
            "engine": "helm",
            "chart": "metrics-server",
            "repository": "https://kubernetes-sigs.github.io/metrics-server/",
            "namespace": "kube-system",
            "release": "metrics-server",
            "version": "3.12.1",
            "values": {},
        }, depends_on=(CLUSTER,)),
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_EXTERNAL_DNS, {
            "engine": "helm",
            "cluster": cluster_name,
            "chart": "external-dns",
            "repository": "https://kubernetes-sigs.github.io/external-dns/",
            "namespace": "kube-system",
            "release": "external-dns",
            "version": "1.14.3",
            "service_account": _service_account("external-dns", statements=[{
                "actions": [
                    "route53:ChangeResourceRecordSets",
                    "route53:ListHostedZones",
                    "route53:ListResourceRecordSets",
                ],
                "resources": ["*"],
            }]),
            "values": {
                "provider": "aws",
                "serviceAccount": {"create": True, "name": "external-dns"},
            },
        }, depends_on=(CLUSTER, ADDON_POD_IDENTITY)),
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_LB_CONTROLLER, {
            "engine": "helm",
            "cluster": cluster_name,
            "chart": "aws-load-balancer-controller",
            "repository": "https://aws.github.io/eks-charts",
            "namespace": "kube-system",
            "release": "aws-load-balancer-controller",
            "service_account": _service_account(
                "aws-load-balancer-controller",
                managed_policies=["ElasticLoadBalancingFullAccess"],
                statements=[{
                    "actions": [
                        "ec2:Describe*",
                        "ec2:CreateSecurityGroup",
                        "ec2:DeleteSecurityGroup",
                        "ec2:AuthorizeSecurityGroupIngress",
                        "ec2:RevokeSecurityGroupIngress",
                        "ec2:CreateTags",
                        "ec2:DeleteTags",
                        "acm:DescribeCertificate",
                        "acm:ListCertificates",
                        "iam:CreateServiceLinkedRole",
                    ],
                    "resources": ["*"],
                }],
            ),
            "values": {
                "clusterName": cluster_name,
                "region": params["region"],
                "vpcId": Ref(NETWORK, "id"),
                "serviceAccount": {"create": True, "name": "aws-load-balancer-controller"},
            },
        }, depends_on=(CLUSTER, NETWORK, ADDON_POD_IDENTITY)),
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_EFS_CSI, {
            "engine": "helm",
            "cluster": cluster_name,
            "chart": "aws-efs-csi-driver",
            "repository": "https://kubernetes-sigs.github.io/aws-efs-csi-driver/",
            "namespace": "kube-system",
            "release": "aws-efs-csi-driver",
            "service_account": _service_account(
                "efs-csi-controller-sa",
                managed_policies=["AmazonElasticFileSystemClientFullAccess"],
            ),
            "values": {
                "controller": {"serviceAccount": {"create": True, "name": "efs-csi-controller-sa"}},
            },
        }, depends_on=(CLUSTER, STORAGE, ADDON_POD_IDENTITY)),
    ]


# ---------------------------------------------------------------------------
# Application phase
# ---------------------------------------------------------------------------

def _application_intents(mode: Mode, params: ParameterSet) -> List[ResourceIntent]:
    complete = mode is Mode.COMPLETE
    namespace = params["namespace"]

    def foreign(ref: Ref, literal_param: str) -> Any:
        # complete mode references the intent; application-only carries the id verbatim
        return ref if complete else params.get(literal_param, "")

    intents = [
        ResourceIntent(ResourceKind.NAMESPACE, NAMESPACE, {
            "name": namespace,
            "labels": {"name": namespace},
        }, depends_on=(CLUSTER,) if complete else ()),
    ]

    if complete:
        intents.append(ResourceIntent(ResourceKind.COMPUTE_PROFILE, COMPUTE_PROFILE, {
            "cluster": Ref(CLUSTER, "name"),
            "profile_name": f"{namespace}-profile",
            "namespaces": [namespace],
        }, depends_on=(CLUSTER, NETWORK, NAMESPACE)))

    intents.append(ResourceIntent(ResourceKind.STORAGE_CLAIM, STORAGE_CLAIM, {
        "storage_class": STORAGE_CLASS_NAME,
        "claim": CLAIM_NAME,
        "namespace": namespace,
        "file_system_id": foreign(Ref(STORAGE, "id"), "efsFileSystemId"),
        "base_path": EFS_BASE_PATH,
        "directory_perms": "755",
        "gid_range": [1000, 2000],
        "access_modes": ["ReadWriteMany"],
        "size": "100Gi",
    }, depends_on=(NAMESPACE, STORAGE, ADDON_EFS_CSI) if complete else (NAMESPACE,)))

    intents.append(_configuration_intent(params, complete, foreign))
    intents.append(_secret_intent(params, complete))

    workload_names = []
    for template in WORKLOAD_TEMPLATES:
        intents.append(_workload_intent(template, namespace, complete))
        workload_names.append(template.logical_name)

    rules = [
        {
            "path": template.route,
            "target": template.logical_name,
            "service": template.name,
            "port": template.port,
        }
        for template in sorted(WORKLOAD_TEMPLATES, key=lambda t: (-len(t.route), t.route))
    ]
    entry_deps = [NAMESPACE] + workload_names
    if complete:
        entry_deps += [CERTIFICATE, ADDON_LB_CONTROLLER]
        certificate_arn: Any = Ref(CERTIFICATE, "arn")
    elif params.has("certificateArn"):
        certificate_arn = params["certificateArn"]
    elif params.get("createCertificate"):
        intents.append(_certificate_intent(params))
        entry_deps.append(CERTIFICATE)
        certificate_arn = Ref(CERTIFICATE, "arn")
    else:
        raise MissingExternalReference("certificate", "certificateArn")

    intents.append(ResourceIntent(ResourceKind.NETWORK_ENTRYPOINT, ENTRYPOINT, {
        "name": "registry-ingress",
        "namespace": namespace,
        "host": params["domainName"],
        "certificate_arn": certificate_arn,
        "annotations": dict(INGRESS_ANNOTATIONS),
        ROUTING_RULES: rules,
    }, depends_on=entry_deps))

    return intents


def _configuration_intent(params: ParameterSet, complete: bool, foreign) -> ResourceIntent:
    domain = params["domainName"]
    data: Dict[str, Any] = {
        "ADMIN_USER": params["adminUser"],
        "AWS_REGION": params["region"],
        "AUTH_SERVER_EXTERNAL_URL": f"https://{domain}",
        "DOMAIN_NAME": domain,
        "CLUSTER_NAME": foreign(Ref(CLUSTER, "name"), "clusterName"),
        "EFS_FILE_SYSTEM_ID": foreign(Ref(STORAGE, "id"), "efsFileSystemId"),
        "COGNITO_USER_POOL_ID": foreign(Ref(IDENTITY, "id"), "cognitoUserPoolId"),
        "COGNITO_CLIENT_ID": foreign(Ref(WEB_CLIENT, "id"), "cognitoClientId"),
    }
    if complete:
        data["COGNITO_DOMAIN"] = Ref(IDENTITY_DOMAIN, "url")
    for template in WORKLOAD_TEMPLATES:
        data[template.url_env] = template.service_url

    depends_on = [NAMESPACE]
    if complete:
        depends_on += [CLUSTER, STORAGE, IDENTITY, WEB_CLIENT, IDENTITY_DOMAIN]
    return ResourceIntent(ResourceKind.CONFIGURATION, CONFIGURATION, {
        "name": CONFIG_MAP_NAME,
        "namespace": params["namespace"],
        "data": data,
    }, depends_on=depends_on)


def _secret_intent(params: ParameterSet, complete: bool) -> ResourceIntent:
    client_secret = Ref(WEB_CLIENT, "secret") if complete else params.get("cognitoClientSecret", "")
    string_data = {
        "admin-password": params["adminPassword"],
        "secret-key": params["secretKey"],
        "cognito-client-secret": client_secret,
        "polygon-api-key": params.get("polygonApiKey", ""),
        "github-client-id": params.get("githubClientId", ""),
        "github-client-secret": params.get("githubClientSecret", ""),
    }
    return ResourceIntent(ResourceKind.SECRET, SECRET, {
        "name": SECRET_NAME,
        "namespace": params["namespace"],
        "string_data": string_data,
        PROVIDES_SECRETS: [secret_ref(SECRET_NAME, key) for key in SECRET_KEYS],
    }, depends_on=(NAMESPACE, WEB_CLIENT) if complete else (NAMESPACE,))


def _workload_intent(template: WorkloadTemplate, namespace: str, complete: bool) -> ResourceIntent:
    env: List[Dict[str, Any]] = [{"name": name, "value": value} for name, value in template.literal_env]
    env += [{"name": name, "config_map": CONFIG_MAP_NAME, "key": key} for name, key in template.config_env]
    env += [
        {"name": binding.env, "secret": SECRET_NAME, "key": binding.key, "optional": binding.optional}
        for binding in template.secret_env
    ]

    volume: Dict[str, Any] = {"claim": CLAIM_NAME, "mount_path": template.mount_path}
    if template.sub_path:
        volume["sub_path"] = template.sub_path

    payload: Dict[str, Any] = {
        "name": template.name,
        "namespace": namespace,
        "image": template.image,
        "replicas": template.replicas,
        "port": template.port,
        "port_name": template.port_name,
        "extra_ports": [{"name": name, "port": port} for name, port in template.extra_ports],
        "resources": {
            "requests": template.requests.to_dict(),
            "limits": template.limits.to_dict(),
        },
        "env": env,
        "volume": volume,
        "health_path": template.health_path,
        "health_checks": [
            {
                "kind": check.kind,
                "period": check.period,
                "initial_delay": check.initial_delay,
                "failure_threshold": check.failure_threshold,
            }
            for check in template.health_checks
        ],
        SECRET_REFS: list(template.secret_refs()),
    }
    if template.autoscaling is not None:
        payload["autoscaling"] = {
            "min_replicas": template.autoscaling.min_replicas,
            "max_replicas": template.autoscaling.max_replicas,
            "cpu_utilization": template.autoscaling.cpu_utilization,
        }

    depends_on = [NAMESPACE, STORAGE_CLAIM]
    if template.config_env:
        depends_on.append(CONFIGURATION)
    if template.secret_env:
        depends_on.append(SECRET)
    if complete:
        depends_on += [IDENTITY, STORAGE, COMPUTE_PROFILE]
    return ResourceIntent(ResourceKind.WORKLOAD, template.logical_name, payload, depends_on=depends_on)


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------

def _monitoring_intents(params: ParameterSet) -> List[ResourceIntent]:
    return [
        ResourceIntent(ResourceKind.NAMESPACE, MONITORING_NAMESPACE, {
            "name": MONITORING_NAMESPACE_NAME,
            "labels": {"name": MONITORING_NAMESPACE_NAME},
        }, depends_on=(CLUSTER,)),
        ResourceIntent(ResourceKind.COMPUTE_PROFILE, MONITORING_PROFILE, {
            "cluster": Ref(CLUSTER, "name"),
            "profile_name": "monitoring-profile",
            "namespaces": [MONITORING_NAMESPACE_NAME],
        }, depends_on=(CLUSTER, NETWORK, MONITORING_NAMESPACE)),
        # Depends on the monitoring namespace so it always sorts after the infrastructure phase
        ResourceIntent(ResourceKind.CLUSTER_ADDON, ADDON_LOG_FORWARDER, {
            "engine": "manifest",
            "cluster": Ref(CLUSTER, "name"),
            "name": "fluent-bit",
            "namespace": MONITORING_NAMESPACE_NAME,
            "image": "public.ecr.aws/aws-observability/aws-for-fluent-bit:stable",
            "replicas": 1,
            "resources": {
                "requests": {"cpu": "100m", "memory": "100Mi"},
                "limits": {"cpu": "200m", "memory": "200Mi"},
            },
            "service_account": _service_account(
                "fluent-bit",
                namespace=MONITORING_NAMESPACE_NAME,
                managed_policies=["CloudWatchLogsFullAccess"],
            ),
            "env": [
                {"name": "AWS_REGION", "value": params["region"]},
                {"name": "CLUSTER_NAME", "value": Ref(CLUSTER, "name")},
            ],
        }, depends_on=(CLUSTER, MONITORING_NAMESPACE, MONITORING_PROFILE, ADDON_POD_IDENTITY)),
    ]
