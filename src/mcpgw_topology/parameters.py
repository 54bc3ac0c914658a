"""
Deployment mode and parameter resolution
Merges CDK context / CLI values, environment variables and declared defaults
into an immutable ParameterSet for one deployment mode.
"""
import hashlib
import hmac
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .errors import InvalidMode, InvalidParameterType, MissingExternalReference, MissingParameter


class Mode(Enum):
    """Top-level switch selecting which part of the deployment graph is composed"""
    COMPLETE = "complete"
    INFRASTRUCTURE_ONLY = "infrastructure-only"
    APPLICATION_ONLY = "application-only"

    @classmethod
    def parse(cls, value: Any) -> "Mode":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for mode in cls:
                if mode.value == normalized:
                    return mode
        raise InvalidMode(value)

    @property
    def deploys_infrastructure(self) -> bool:
        return self is not Mode.APPLICATION_ONLY

    @property
    def deploys_applications(self) -> bool:
        return self is not Mode.INFRASTRUCTURE_ONLY


ALL_MODES: FrozenSet[Mode] = frozenset(Mode)

DEFAULT_MODE = Mode.COMPLETE
SUPPORTED_KUBERNETES_VERSIONS = ("1.27", "1.28")
DEFAULT_KUBERNETES_VERSION = "1.28"

_TRUE_STRINGS = {"true", "yes", "1", "on"}
_FALSE_STRINGS = {"false", "no", "0", "off"}


@dataclass(frozen=True)
class ParameterSpec:
    """Declaration of one named input: type, sources, default and requirement"""
    name: str
    kind: str = "string"  # string | integer | boolean | list
    env_var: Optional[str] = None
    default: Any = None
    required_for: FrozenSet[Mode] = frozenset()
    # When set, absence is reported as a missing reference to existing infrastructure
    external_kind: Optional[str] = None
    # Builds the default from already-resolved parameters named in derived_from
    template: Optional[Callable[[Mapping[str, Any]], Any]] = field(default=None, compare=False)
    derived_from: Tuple[str, ...] = ()
    description: str = ""


def _callback_urls(values: Mapping[str, Any]) -> List[str]:
    domain = values["domainName"]
    return [
        "http://localhost:9090/callback",
        "http://localhost/oauth2/callback/cognito",
        "http://localhost:8888/oauth2/callback/cognito",
        f"https://{domain}/oauth2/callback/cognito",
    ]


def _logout_urls(values: Mapping[str, Any]) -> List[str]:
    domain = values["domainName"]
    return [
        f"https://{domain}/auth/logout",
        f"https://{domain}/logout",
    ]


# Order matters: required checks fail on the first missing entry and templates
# may only read parameters declared above them.
PARAMETER_SPECS: Tuple[ParameterSpec, ...] = (
    ParameterSpec("domainName", env_var="DOMAIN_NAME", required_for=ALL_MODES,
                  description="Public domain the gateway is served on"),
    ParameterSpec("adminPassword", env_var="ADMIN_PASSWORD", required_for=ALL_MODES,
                  description="Password of the registry admin user"),
    ParameterSpec("clusterName", env_var="CLUSTER_NAME", default="mcp-gateway-registry"),
    ParameterSpec("adminUser", env_var="ADMIN_USER", default="admin"),
    ParameterSpec("hostedZoneId", env_var="HOSTED_ZONE_ID",
                  description="Route53 zone used for certificate DNS validation"),
    ParameterSpec("efsFileSystemId", env_var="EFS_FILE_SYSTEM_ID",
                  required_for=frozenset({Mode.APPLICATION_ONLY}), external_kind="storage"),
    ParameterSpec("certificateArn", env_var="CERTIFICATE_ARN",
                  description="Existing ACM certificate; one is created when absent"),
    ParameterSpec("createCertificate", kind="boolean", env_var="CREATE_CERTIFICATE", default=False),
    ParameterSpec("vpcCidr", env_var="VPC_CIDR", default="10.0.0.0/16"),
    ParameterSpec("maxAzs", kind="integer", env_var="MAX_AZS", default=3),
    ParameterSpec("kubernetesVersion", env_var="KUBERNETES_VERSION", default=DEFAULT_KUBERNETES_VERSION),
    ParameterSpec("namespace", env_var="K8S_NAMESPACE", default="mcp-registry"),
    ParameterSpec("region", env_var="CDK_DEFAULT_REGION", default="us-east-1"),
    ParameterSpec("account", env_var="CDK_DEFAULT_ACCOUNT"),
    ParameterSpec("enableMonitoring", kind="boolean", env_var="ENABLE_MONITORING", default=True),
    ParameterSpec("cognitoUserPoolId", env_var="COGNITO_USER_POOL_ID", default=""),
    ParameterSpec("cognitoClientId", env_var="COGNITO_CLIENT_ID", default=""),
    ParameterSpec("cognitoClientSecret", env_var="COGNITO_CLIENT_SECRET", default=""),
    ParameterSpec("polygonApiKey", env_var="POLYGON_API_KEY", default=""),
    ParameterSpec("githubClientId", env_var="GITHUB_CLIENT_ID", default=""),
    ParameterSpec("githubClientSecret", env_var="GITHUB_CLIENT_SECRET", default=""),
    ParameterSpec("secretKey", env_var="SECRET_KEY",
                  description="Session signing key shared by auth-server and registry"),
    ParameterSpec("cognitoUserPoolName", env_var="COGNITO_USER_POOL_NAME",
                  template=lambda values: f"mcp-gateway-users-{values['clusterName']}",
                  derived_from=("clusterName",)),
    ParameterSpec("cognitoDomainPrefix", env_var="COGNITO_DOMAIN_PREFIX",
                  template=lambda values: f"mcp-gateway-{values['clusterName']}",
                  derived_from=("clusterName",)),
    ParameterSpec("cognitoCallbackUrls", kind="list", template=_callback_urls,
                  derived_from=("domainName",)),
    ParameterSpec("cognitoLogoutUrls", kind="list", template=_logout_urls,
                  derived_from=("domainName",)),
)

SPECS_BY_NAME: Dict[str, ParameterSpec] = {spec.name: spec for spec in PARAMETER_SPECS}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _coerce(spec: ParameterSpec, raw: Any) -> Any:
    """Convert a raw input value to the declared parameter type"""
    if spec.kind == "string":
        if isinstance(raw, (list, tuple, dict)):
            raise InvalidParameterType(spec.name, raw, "string")
        return str(raw).strip()

    if spec.kind == "integer":
        if isinstance(raw, bool):
            raise InvalidParameterType(spec.name, raw, "integer")
        if isinstance(raw, int):
            return raw
        try:
            return int(str(raw).strip())
        except ValueError:
            raise InvalidParameterType(spec.name, raw, "integer")

    if spec.kind == "boolean":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise InvalidParameterType(spec.name, raw, "boolean")

    if spec.kind == "list":
        if isinstance(raw, str):
            return tuple(item.strip() for item in raw.split(",") if item.strip())
        if isinstance(raw, (list, tuple)):
            return tuple(str(item) for item in raw)
        raise InvalidParameterType(spec.name, raw, "list of strings")

    raise ValueError(f"Unknown parameter kind {spec.kind!r} for {spec.name}")


def _freeze(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


@dataclass(frozen=True)
class ParameterSet:
    """Immutable, fully-defaulted parameter values for one deployment mode"""
    mode: Mode
    values: Mapping[str, Any]

    def __post_init__(self):
        frozen = {name: _freeze(value) for name, value in dict(self.values).items()}
        object.__setattr__(self, "values", MappingProxyType(frozen))

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def __contains__(self, name: str) -> bool:
        return name in self.values

    def get(self, name: str, default: Any = None) -> Any:
        value = self.values.get(name)
        return default if value is None else value

    def has(self, name: str) -> bool:
        return not _is_empty(self.values.get(name))

    def without(self, name: str) -> "ParameterSet":
        """Return a copy with one parameter removed"""
        remaining = {key: value for key, value in self.values.items() if key != name}
        return ParameterSet(self.mode, remaining)

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: list(value) if isinstance(value, tuple) else value
            for name, value in sorted(self.values.items())
        }

    def require(self, mode: Mode) -> None:
        """
        Raise the first missing requirement of the given mode

        Raises:
            MissingParameter: a required parameter has no value
            MissingExternalReference: application-only lacks an existing resource id
        """
        for spec in PARAMETER_SPECS:
            if mode in spec.required_for and not self.has(spec.name):
                if spec.external_kind:
                    raise MissingExternalReference(spec.external_kind, spec.name)
                raise MissingParameter(spec.name)

    def is_valid_for(self, mode: Mode) -> bool:
        try:
            self.require(mode)
        except (MissingParameter, MissingExternalReference):
            return False
        return True


def derive_secret_key(values: Mapping[str, Any]) -> str:
    """Session key derived from the admin password, stable for one cluster and domain"""
    message = f"{values['clusterName']}:{values['domainName']}".encode("utf-8")
    key = str(values["adminPassword"] or "").encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def _first_present(*candidates: Any) -> Any:
    for candidate in candidates:
        if not _is_empty(candidate):
            return candidate
    return None


def resolve(
    mode: Any,
    raw_inputs: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    secret_generator: Optional[Callable[[], str]] = None,
) -> ParameterSet:
    """
    Resolve deployment parameters for a mode

    Args:
        mode: Mode or its string form
        raw_inputs: explicit values (CDK context, CLI flags) keyed by parameter name
        environ: environment variables; never read implicitly
        secret_generator: produces secretKey when it is not supplied; without
            one the key is derived from adminPassword, clusterName and domainName

    Returns:
        ParameterSet valid for the mode

    Raises:
        InvalidMode, InvalidParameterType, MissingParameter, MissingExternalReference
    """
    mode = Mode.parse(mode)
    raw_inputs = raw_inputs or {}
    environ = environ or {}

    values: Dict[str, Any] = {}
    for spec in PARAMETER_SPECS:
        env_value = environ.get(spec.env_var) if spec.env_var else None
        raw = _first_present(raw_inputs.get(spec.name), env_value)

        if raw is not None:
            value = _coerce(spec, raw)
        elif spec.template is not None and all(not _is_empty(values.get(name)) for name in spec.derived_from):
            value = _coerce(spec, spec.template(values))
        else:
            value = spec.default

        values[spec.name] = value

    _normalize(values, secret_generator)

    params = ParameterSet(mode, values)
    params.require(mode)
    return params


def _normalize(values: Dict[str, Any], secret_generator: Optional[Callable[[], str]]) -> None:
    if values["maxAzs"] < 1:
        raise InvalidParameterType("maxAzs", values["maxAzs"], "integer >= 1")

    if values["kubernetesVersion"] not in SUPPORTED_KUBERNETES_VERSIONS:
        values["kubernetesVersion"] = DEFAULT_KUBERNETES_VERSION

    values["createCertificate"] = bool(values["createCertificate"]) or _is_empty(values.get("certificateArn"))

    if _is_empty(values.get("secretKey")):
        values["secretKey"] = secret_generator() if secret_generator else derive_secret_key(values)


def resolve_mode(context: Optional[Mapping[str, Any]] = None,
                 environ: Optional[Mapping[str, str]] = None) -> Mode:
    """Pick the deployment mode: context deploymentMode > DEPLOYMENT_MODE > complete"""
    context = context or {}
    environ = environ or {}
    raw = _first_present(context.get("deploymentMode"), environ.get("DEPLOYMENT_MODE"))
    if raw is None:
        return DEFAULT_MODE
    return Mode.parse(raw)


def parameter_names() -> Iterable[str]:
    return [spec.name for spec in PARAMETER_SPECS]
