"""
Resource intent model
Typed, engine-independent declarations of desired infrastructure and
application state, plus the immutable graph that orders them.
"""
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .parameters import Mode


class ResourceKind(Enum):
    """
    Kinds of resource intents.

    Declaration order is the ordering rank used to break ties between intents
    with no mutual dependency. Every infrastructure kind ranks before every
    application kind.
    """
    NETWORK = "network"
    STORAGE = "shared-filesystem"
    COMPUTE_CLUSTER = "compute-cluster"
    CERTIFICATE = "tls-certificate"
    IDENTITY = "identity-pool"
    IDENTITY_GROUP = "identity-group"
    RESOURCE_SERVER = "resource-server"
    IDENTITY_CLIENT = "identity-client"
    IDENTITY_DOMAIN = "identity-domain"
    CLUSTER_ADDON = "cluster-addon"
    NAMESPACE = "namespace"
    COMPUTE_PROFILE = "compute-profile"
    STORAGE_CLAIM = "storage-claim"
    CONFIGURATION = "configuration"
    SECRET = "secret"
    WORKLOAD = "workload"
    NETWORK_ENTRYPOINT = "network-entrypoint"

    @property
    def rank(self) -> int:
        return _KIND_RANKS[self]


_KIND_RANKS = {kind: index for index, kind in enumerate(ResourceKind)}

IDENTITY_SUB_KINDS = frozenset({
    ResourceKind.IDENTITY_GROUP,
    ResourceKind.RESOURCE_SERVER,
    ResourceKind.IDENTITY_CLIENT,
    ResourceKind.IDENTITY_DOMAIN,
})

# Intents of these kinds may declare `provides_secrets` in their payload
SECRET_PRODUCER_KINDS = frozenset({
    ResourceKind.IDENTITY,
    ResourceKind.IDENTITY_CLIENT,
    ResourceKind.SECRET,
})

# Payload keys with a meaning outside the emitting adapter
SECRET_REFS = "secret_refs"
PROVIDES_SECRETS = "provides_secrets"
ROUTING_RULES = "rules"


@dataclass(frozen=True)
class Ref:
    """Reference to an attribute of another intent in the same graph"""
    target: str
    attribute: str

    def to_dict(self) -> Dict[str, str]:
        return {"$ref": self.target, "attribute": self.attribute}


def secret_ref(secret_name: str, key: str) -> str:
    return f"{secret_name}/{key}"


def freeze(value: Any) -> Any:
    """Deep-convert dicts and lists into read-only mappings and tuples"""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Deep-copy a frozen payload value back into plain dicts and lists"""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


def to_plain(value: Any) -> Any:
    """Plain JSON-compatible form of a payload value, references included"""
    if isinstance(value, Ref):
        return value.to_dict()
    if isinstance(value, Mapping):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    return value


def iter_refs(value: Any) -> Iterator[Ref]:
    """Yield every Ref nested anywhere inside a payload value"""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


@dataclass(frozen=True)
class ResourceIntent:
    """One unit of desired state and the logical names it depends on"""
    kind: ResourceKind
    name: str
    payload: Mapping[str, Any]
    depends_on: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "payload", freeze(dict(self.payload)))
        object.__setattr__(self, "depends_on", tuple(sorted(set(self.depends_on))))

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.kind.rank, self.name)

    def references(self) -> List[Ref]:
        return list(iter_refs(self.payload))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "dependsOn": list(self.depends_on),
            "payload": to_plain(self.payload),
        }


@dataclass(frozen=True)
class DeploymentGraph:
    """Ordered, immutable collection of resource intents for one deployment"""
    mode: Mode
    intents: Tuple[ResourceIntent, ...]

    def __post_init__(self):
        object.__setattr__(self, "intents", tuple(self.intents))

    def __iter__(self) -> Iterator[ResourceIntent]:
        return iter(self.intents)

    def __len__(self) -> int:
        return len(self.intents)

    @property
    def names(self) -> List[str]:
        return [intent.name for intent in self.intents]

    def get(self, name: str) -> Optional[ResourceIntent]:
        for intent in self.intents:
            if intent.name == name:
                return intent
        return None

    def __getitem__(self, name: str) -> ResourceIntent:
        intent = self.get(name)
        if intent is None:
            raise KeyError(name)
        return intent

    def of_kind(self, kind: ResourceKind) -> List[ResourceIntent]:
        return [intent for intent in self.intents if intent.kind is kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "intents": [intent.to_dict() for intent in self.intents],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_json().encode("utf-8")).hexdigest()
