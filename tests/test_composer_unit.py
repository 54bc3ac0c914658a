"""
Unit tests for the topology composer
Covers the three deployment modes, ordering and workload templates
"""
import pytest

from mcpgw_topology import composer
from mcpgw_topology.composer import compose, order_intents
from mcpgw_topology.errors import MissingExternalReference, MissingParameter
from mcpgw_topology.intents import Ref, ResourceIntent, ResourceKind
from mcpgw_topology.parameters import Mode, resolve
from mcpgw_topology.validator import validate
from mcpgw_topology.workloads import WORKLOAD_TEMPLATES, get_template

INFRASTRUCTURE_KINDS = {
    ResourceKind.NETWORK,
    ResourceKind.STORAGE,
    ResourceKind.COMPUTE_CLUSTER,
    ResourceKind.CERTIFICATE,
    ResourceKind.IDENTITY,
    ResourceKind.IDENTITY_GROUP,
    ResourceKind.RESOURCE_SERVER,
    ResourceKind.IDENTITY_CLIENT,
    ResourceKind.IDENTITY_DOMAIN,
}

WORKLOAD_NAMES = [
    "workload-auth-server",
    "workload-registry",
    "workload-mcpgw-server",
    "workload-currenttime-server",
    "workload-fininfo-server",
    "workload-faketools-server",
]


def position(graph, name):
    return graph.names.index(name)


@pytest.mark.unit
class TestCompleteMode:
    """Test the complete deployment graph"""

    def test_contains_infrastructure_and_applications(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)

        for name in ["network", "shared-filesystem", "compute-cluster", "tls-certificate",
                     "identity-pool", "identity-client-web", "identity-client-machine",
                     "namespace", "storage-claim", "configuration", "secret", "network-entrypoint"]:
            assert name in graph.names
        for name in WORKLOAD_NAMES:
            assert name in graph.names

    def test_graph_is_valid(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        assert validate(graph).ok

    def test_dependencies_precede_dependents(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        for intent in graph:
            for dependency in intent.depends_on:
                assert position(graph, dependency) < position(graph, intent.name)

    def test_network_comes_first(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        assert graph.names[0] == "network"
        assert position(graph, "network") < position(graph, "compute-cluster")
        assert position(graph, "network") < position(graph, "shared-filesystem")

    def test_workloads_depend_on_identity_and_storage(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        for name in WORKLOAD_NAMES:
            intent = graph[name]
            assert "identity-pool" in intent.depends_on
            assert "shared-filesystem" in intent.depends_on
            assert position(graph, "identity-pool") < position(graph, name)
            assert position(graph, "shared-filesystem") < position(graph, name)

    def test_entrypoint_depends_on_every_workload_and_certificate(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        entrypoint = graph["network-entrypoint"]

        assert set(WORKLOAD_NAMES) <= set(entrypoint.depends_on)
        assert "tls-certificate" in entrypoint.depends_on
        assert "addon-load-balancer-controller" in entrypoint.depends_on
        assert graph.names[-1] == "network-entrypoint"

    def test_identity_sub_intents(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        for name in ["identity-groups", "identity-resource-server", "identity-client-web",
                     "identity-client-machine", "identity-domain"]:
            assert "identity-pool" in graph[name].depends_on
        assert "identity-resource-server" in graph["identity-client-machine"].depends_on

    def test_cluster_addons(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        addons = {intent.name for intent in graph.of_kind(ResourceKind.CLUSTER_ADDON)}

        assert {
            "addon-coredns",
            "addon-pod-identity-agent",
            "addon-metrics-server",
            "addon-external-dns",
            "addon-load-balancer-controller",
            "addon-efs-csi-driver",
            "addon-log-forwarder",
        } == addons
        assert "shared-filesystem" in graph["addon-efs-csi-driver"].depends_on

    def test_monitoring_can_be_disabled(self, base_inputs, secret_generator):
        params = resolve("complete", {**base_inputs, "enableMonitoring": "false"}, {}, secret_generator)
        graph = compose(Mode.COMPLETE, params)

        assert "namespace-monitoring" not in graph.names
        assert "addon-log-forwarder" not in graph.names
        assert validate(graph).ok

    def test_foreign_values_are_references(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        data = graph["configuration"].payload["data"]

        assert data["CLUSTER_NAME"] == Ref("compute-cluster", "name")
        assert data["EFS_FILE_SYSTEM_ID"] == Ref("shared-filesystem", "id")
        assert data["COGNITO_CLIENT_ID"] == Ref("identity-client-web", "id")
        assert graph["secret"].payload["string_data"]["cognito-client-secret"] == Ref("identity-client-web", "secret")

    def test_imported_certificate(self, base_inputs, secret_generator):
        arn = "arn:aws:acm:us-east-1:123456789012:certificate/abc"
        params = resolve("complete", {**base_inputs, "certificateArn": arn}, {}, secret_generator)
        graph = compose(Mode.COMPLETE, params)
        assert graph["tls-certificate"].payload["import_arn"] == arn

    def test_max_azs_flows_into_network(self, base_inputs, secret_generator):
        params = resolve("complete", {**base_inputs, "maxAzs": "2"}, {}, secret_generator)
        graph = compose(Mode.COMPLETE, params)
        assert graph["network"].payload["max_azs"] == 2


@pytest.mark.unit
class TestInfrastructureOnlyMode:
    """Test the infrastructure-only graph"""

    def test_no_application_intents(self, infra_params):
        graph = compose(Mode.INFRASTRUCTURE_ONLY, infra_params)

        assert not graph.of_kind(ResourceKind.WORKLOAD)
        assert not graph.of_kind(ResourceKind.NETWORK_ENTRYPOINT)
        assert not graph.of_kind(ResourceKind.NAMESPACE)
        assert {intent.kind for intent in graph} <= INFRASTRUCTURE_KINDS | {ResourceKind.CLUSTER_ADDON}

    def test_is_prefix_of_complete_graph(self, base_inputs, secret_generator):
        infra = compose(Mode.INFRASTRUCTURE_ONLY, resolve("infrastructure-only", base_inputs, {}, secret_generator))
        complete = compose(Mode.COMPLETE, resolve("complete", base_inputs, {}, secret_generator))

        assert list(complete.intents[:len(infra)]) == list(infra.intents)

    def test_graph_is_valid(self, infra_params):
        assert validate(compose(Mode.INFRASTRUCTURE_ONLY, infra_params)).ok


@pytest.mark.unit
class TestApplicationOnlyMode:
    """Test the application-only graph"""

    def test_no_infrastructure_intents(self, app_only_params):
        graph = compose(Mode.APPLICATION_ONLY, app_only_params)

        assert not any(intent.kind in INFRASTRUCTURE_KINDS for intent in graph)
        assert not graph.of_kind(ResourceKind.CLUSTER_ADDON)
        assert not graph.of_kind(ResourceKind.COMPUTE_PROFILE)
        assert len(graph.of_kind(ResourceKind.WORKLOAD)) == 6

    def test_foreign_keys_are_literals(self, app_only_params):
        graph = compose(Mode.APPLICATION_ONLY, app_only_params)

        assert graph["storage-claim"].payload["file_system_id"] == "fs-0123456789abcdef0"
        assert graph["network-entrypoint"].payload["certificate_arn"].startswith("arn:aws:acm:")
        assert graph["configuration"].payload["data"]["CLUSTER_NAME"] == "mcp-gateway-registry"
        assert graph["secret"].payload["string_data"]["cognito-client-secret"] == "client-secret-value"
        assert not any(intent.references() for intent in graph)

    def test_graph_is_valid(self, app_only_params):
        assert validate(compose(Mode.APPLICATION_ONLY, app_only_params)).ok

    def test_missing_storage_reference(self, app_only_params):
        with pytest.raises(MissingExternalReference) as excinfo:
            compose(Mode.APPLICATION_ONLY, app_only_params.without("efsFileSystemId"))
        assert excinfo.value.kind == "storage"

    def test_missing_certificate_reference(self, app_only_params):
        with pytest.raises(MissingExternalReference) as excinfo:
            compose(Mode.APPLICATION_ONLY, app_only_params.without("certificateArn"))
        assert excinfo.value.kind == "certificate"

    def test_certificate_created_when_not_supplied(self, app_only_inputs, secret_generator):
        inputs = {key: value for key, value in app_only_inputs.items() if key != "certificateArn"}
        graph = compose(Mode.APPLICATION_ONLY, resolve("application-only", inputs, {}, secret_generator))

        assert [intent.name for intent in graph.of_kind(ResourceKind.CERTIFICATE)] == ["tls-certificate"]
        assert "import_arn" not in graph["tls-certificate"].payload
        assert "tls-certificate" in graph["network-entrypoint"].depends_on
        assert graph["network-entrypoint"].payload["certificate_arn"] == Ref("tls-certificate", "arn")
        assert validate(graph).ok

    def test_missing_domain_name_fails_fast(self, complete_params):
        with pytest.raises(MissingParameter):
            compose(Mode.COMPLETE, complete_params.without("domainName"))


@pytest.mark.unit
class TestRouting:
    """Test ingress routing rules"""

    def test_every_route_targets_a_workload(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        rules = graph["network-entrypoint"].payload["rules"]

        assert {rule["target"] for rule in rules} == set(WORKLOAD_NAMES)

    def test_most_specific_path_first(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        paths = [rule["path"] for rule in graph["network-entrypoint"].payload["rules"]]

        assert paths[-1] == "/"
        assert paths.index("/api/finance") < paths.index("/auth")

    def test_routes_and_ports(self):
        assert get_template("auth-server").port == 8888
        assert get_template("auth-server").route == "/auth"
        assert get_template("registry").port == 7860
        assert get_template("mcpgw-server").route == "/mcp"
        assert get_template("currenttime-server").route == "/api/time"
        assert get_template("fininfo-server").port == 8001
        assert get_template("faketools-server").route == "/api/tools"

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            get_template("nonexistent")


@pytest.mark.unit
class TestWorkloads:
    """Test workload payloads built from the static templates"""

    def test_secret_bindings_are_declared(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        auth = graph["workload-auth-server"]

        assert "mcp-gateway-secrets/secret-key" in auth.payload["secret_refs"]
        assert "secret" in auth.depends_on

    def test_all_workloads_mount_the_shared_claim(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        for intent in graph.of_kind(ResourceKind.WORKLOAD):
            assert intent.payload["volume"]["claim"] == "efs-pvc"
        assert graph["storage-claim"].payload["claim"] == "efs-pvc"

    def test_templates_have_unique_names_and_ports(self):
        names = [template.name for template in WORKLOAD_TEMPLATES]
        ports = [template.port for template in WORKLOAD_TEMPLATES]
        assert len(set(names)) == len(names) == 6
        assert len(set(ports)) == len(ports)


@pytest.mark.unit
class TestOrdering:
    """Test the topological sort and its tie-break"""

    def test_ties_broken_by_kind_then_name(self):
        intents = [
            ResourceIntent(ResourceKind.WORKLOAD, "b", {}),
            ResourceIntent(ResourceKind.WORKLOAD, "a", {}),
            ResourceIntent(ResourceKind.NETWORK, "z", {}),
        ]
        assert [intent.name for intent in order_intents(intents)] == ["z", "a", "b"]

    def test_dependency_overrides_rank(self):
        intents = [
            ResourceIntent(ResourceKind.NETWORK, "net", {}, depends_on=("ns",)),
            ResourceIntent(ResourceKind.NAMESPACE, "ns", {}),
        ]
        assert [intent.name for intent in order_intents(intents)] == ["ns", "net"]

    def test_cycle_members_are_kept(self):
        intents = [
            ResourceIntent(ResourceKind.WORKLOAD, "a", {}, depends_on=("b",)),
            ResourceIntent(ResourceKind.WORKLOAD, "b", {}, depends_on=("a",)),
            ResourceIntent(ResourceKind.NETWORK, "n", {}),
        ]
        assert [intent.name for intent in order_intents(intents)] == ["n", "a", "b"]

    def test_composition_is_deterministic(self, complete_params):
        first = compose(Mode.COMPLETE, complete_params)
        second = compose("complete", complete_params)
        assert first.to_json() == second.to_json()
        assert first.fingerprint() == second.fingerprint()

    def test_constants_match_graph(self, complete_params):
        graph = compose(Mode.COMPLETE, complete_params)
        assert graph[composer.ENTRYPOINT].kind is ResourceKind.NETWORK_ENTRYPOINT
