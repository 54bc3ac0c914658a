"""
Static workload templates for the MCP Gateway microservices
The composer only parameterizes this fixed set; it never invents workloads.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

CONFIG_MAP_NAME = "mcp-gateway-config"
SECRET_NAME = "mcp-gateway-secrets"
CLAIM_NAME = "efs-pvc"
STORAGE_CLASS_NAME = "efs-sc"
EFS_BASE_PATH = "/mcp-gateway"


@dataclass(frozen=True)
class Resources:
    cpu: str
    memory: str

    def to_dict(self) -> Dict[str, str]:
        return {"cpu": self.cpu, "memory": self.memory}


@dataclass(frozen=True)
class HealthCheck:
    """HTTP health check against the workload's health path"""
    kind: str  # liveness | readiness | startup
    period: int
    initial_delay: int = 0
    failure_threshold: Optional[int] = None


@dataclass(frozen=True)
class Autoscaling:
    min_replicas: int = 1
    max_replicas: int = 2
    cpu_utilization: int = 80


@dataclass(frozen=True)
class SecretBinding:
    env: str
    key: str
    optional: bool = False


@dataclass(frozen=True)
class WorkloadTemplate:
    name: str
    port: int
    image: str
    route: str
    url_env: str
    requests: Resources
    limits: Resources
    replicas: int = 1
    port_name: str = "http"
    health_path: str = "/health"
    mount_path: str = "/efs"
    sub_path: Optional[str] = None
    extra_ports: Tuple[Tuple[str, int], ...] = ()
    literal_env: Tuple[Tuple[str, str], ...] = ()
    config_env: Tuple[Tuple[str, str], ...] = ()
    secret_env: Tuple[SecretBinding, ...] = ()
    health_checks: Tuple[HealthCheck, ...] = ()
    autoscaling: Optional[Autoscaling] = None

    @property
    def logical_name(self) -> str:
        return f"workload-{self.name}"

    @property
    def service_url(self) -> str:
        return f"http://{self.name}:{self.port}"

    def secret_refs(self) -> Tuple[str, ...]:
        return tuple(sorted(f"{SECRET_NAME}/{binding.key}" for binding in self.secret_env))


_SMALL = Resources("100m", "256Mi")
_SMALL_LIMIT = Resources("250m", "512Mi")
_MEDIUM = Resources("250m", "512Mi")
_MEDIUM_LIMIT = Resources("500m", "1Gi")

_TOOL_SERVER_HEALTH_CHECKS = (
    HealthCheck("liveness", period=30, initial_delay=60),
    HealthCheck("readiness", period=10, initial_delay=30),
)


def _tool_server_env(name: str, port: int) -> Tuple[Tuple[str, str], ...]:
    return (
        ("PORT", str(port)),
        ("PYTHONUNBUFFERED", "1"),
        ("MCP_SERVER_NAME", name),
    )


AUTH_SERVER = WorkloadTemplate(
    name="auth-server",
    port=8888,
    port_name="auth",
    image="python:3.12",
    route="/auth",
    url_env="AUTH_SERVER_URL",
    requests=_MEDIUM,
    limits=_MEDIUM_LIMIT,
    literal_env=(("HOME", "/app"), ("PYTHONUNBUFFERED", "1")),
    config_env=(
        ("REGISTRY_URL", "REGISTRY_URL"),
        ("ADMIN_USER", "ADMIN_USER"),
        ("AUTH_SERVER_EXTERNAL_URL", "AUTH_SERVER_EXTERNAL_URL"),
        ("COGNITO_CLIENT_ID", "COGNITO_CLIENT_ID"),
        ("COGNITO_USER_POOL_ID", "COGNITO_USER_POOL_ID"),
        ("AWS_REGION", "AWS_REGION"),
    ),
    secret_env=(
        SecretBinding("SECRET_KEY", "secret-key"),
        SecretBinding("ADMIN_PASSWORD", "admin-password"),
        SecretBinding("COGNITO_CLIENT_SECRET", "cognito-client-secret"),
    ),
    health_checks=(
        HealthCheck("readiness", period=30, failure_threshold=5),
        HealthCheck("startup", period=30, failure_threshold=20),
        HealthCheck("liveness", period=30, failure_threshold=3),
    ),
    autoscaling=Autoscaling(),
)

REGISTRY = WorkloadTemplate(
    name="registry",
    port=7860,
    port_name="registry",
    image="python:3.12-slim",
    route="/",
    url_env="REGISTRY_URL",
    requests=Resources("500m", "2Gi"),
    limits=Resources("1", "4Gi"),
    extra_ports=(("http", 80), ("https", 443)),
    literal_env=(
        ("HOME", "/app"),
        ("PYTHONUNBUFFERED", "1"),
        ("DEBIAN_FRONTEND", "noninteractive"),
        ("EMBEDDINGS_MODEL_NAME", "all-MiniLM-L6-v2"),
        ("EMBEDDINGS_MODEL_DIMENSIONS", "384"),
    ),
    config_env=(
        ("ADMIN_USER", "ADMIN_USER"),
        ("AUTH_SERVER_URL", "AUTH_SERVER_URL"),
        ("AUTH_SERVER_EXTERNAL_URL", "AUTH_SERVER_EXTERNAL_URL"),
        ("REGISTRY_URL", "REGISTRY_URL"),
        ("DOMAIN_NAME", "DOMAIN_NAME"),
        ("COGNITO_CLIENT_ID", "COGNITO_CLIENT_ID"),
        ("COGNITO_USER_POOL_ID", "COGNITO_USER_POOL_ID"),
        ("AWS_REGION", "AWS_REGION"),
    ),
    secret_env=(
        SecretBinding("SECRET_KEY", "secret-key"),
        SecretBinding("ADMIN_PASSWORD", "admin-password"),
        SecretBinding("COGNITO_CLIENT_SECRET", "cognito-client-secret"),
    ),
    health_checks=(
        HealthCheck("readiness", period=30, failure_threshold=5),
        HealthCheck("startup", period=40, failure_threshold=20),
        HealthCheck("liveness", period=30, failure_threshold=3),
    ),
    autoscaling=Autoscaling(),
)

MCPGW_SERVER = WorkloadTemplate(
    name="mcpgw-server",
    port=8003,
    image="python:3.12-slim",
    route="/mcp",
    url_env="MCPGW_SERVER_URL",
    requests=_MEDIUM,
    limits=_MEDIUM_LIMIT,
    replicas=2,
    mount_path="/mcp-gateway/mcpgw",
    sub_path="mcpgw",
    literal_env=_tool_server_env("mcpgw-server", 8003),
    config_env=(
        ("AUTH_SERVER_URL", "AUTH_SERVER_URL"),
        ("REGISTRY_URL", "REGISTRY_URL"),
    ),
    health_checks=_TOOL_SERVER_HEALTH_CHECKS,
)

CURRENTTIME_SERVER = WorkloadTemplate(
    name="currenttime-server",
    port=8000,
    image="python:3.12-slim",
    route="/api/time",
    url_env="CURRENTTIME_SERVER_URL",
    requests=_SMALL,
    limits=_SMALL_LIMIT,
    mount_path="/mcp-gateway/currenttime",
    sub_path="currenttime",
    literal_env=_tool_server_env("currenttime-server", 8000),
    health_checks=_TOOL_SERVER_HEALTH_CHECKS,
)

FININFO_SERVER = WorkloadTemplate(
    name="fininfo-server",
    port=8001,
    image="python:3.12-slim",
    route="/api/finance",
    url_env="FININFO_SERVER_URL",
    requests=_SMALL,
    limits=_SMALL_LIMIT,
    mount_path="/mcp-gateway/fininfo",
    sub_path="fininfo",
    literal_env=_tool_server_env("fininfo-server", 8001),
    secret_env=(SecretBinding("POLYGON_API_KEY", "polygon-api-key", optional=True),),
    health_checks=_TOOL_SERVER_HEALTH_CHECKS,
)

FAKETOOLS_SERVER = WorkloadTemplate(
    name="faketools-server",
    port=8002,
    image="python:3.12-slim",
    route="/api/tools",
    url_env="FAKETOOLS_SERVER_URL",
    requests=_SMALL,
    limits=_SMALL_LIMIT,
    mount_path="/mcp-gateway/faketools",
    sub_path="faketools",
    literal_env=_tool_server_env("faketools-server", 8002),
    health_checks=_TOOL_SERVER_HEALTH_CHECKS,
)

WORKLOAD_TEMPLATES: Tuple[WorkloadTemplate, ...] = (
    AUTH_SERVER,
    REGISTRY,
    MCPGW_SERVER,
    CURRENTTIME_SERVER,
    FININFO_SERVER,
    FAKETOOLS_SERVER,
)


def get_template(name: str) -> WorkloadTemplate:
    for template in WORKLOAD_TEMPLATES:
        if template.name == name:
            return template
    raise KeyError(f"Unknown workload: {name}")
