"""
Property-based tests for topology composition
Determinism, mode prefix and acyclicity hold for any valid parameter set
"""
import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from mcpgw_topology.composer import compose, order_intents
from mcpgw_topology.emission import emit
from mcpgw_topology.intents import DeploymentGraph, ResourceIntent, ResourceKind
from mcpgw_topology.parameters import Mode, resolve
from mcpgw_topology.validator import check_cycles, validate


# Test data generators
@st.composite
def dns_label(draw):
    return draw(st.from_regex(r"[a-z][a-z0-9]{0,10}", fullmatch=True))


@st.composite
def raw_inputs(draw):
    """Generate explicit parameter inputs valid for complete and infrastructure-only"""
    domain = f"{draw(dns_label())}.{draw(dns_label())}.com"
    inputs = {
        "domainName": domain,
        "adminPassword": draw(st.text(alphabet="abcXYZ123!@#", min_size=8, max_size=20)),
        "clusterName": draw(dns_label()),
        "maxAzs": draw(st.integers(min_value=1, max_value=4)),
        "namespace": draw(dns_label()),
        "enableMonitoring": draw(st.booleans()),
        "kubernetesVersion": draw(st.sampled_from(["1.27", "1.28", "1.30"])),
    }
    if draw(st.booleans()):
        inputs["certificateArn"] = f"arn:aws:acm:us-east-1:123456789012:certificate/{draw(dns_label())}"
    if draw(st.booleans()):
        inputs["hostedZoneId"] = "Z" + draw(st.from_regex(r"[A-Z0-9]{8}", fullmatch=True))
    return inputs


def fixed_secret():
    return "a" * 32


@pytest.mark.property
class TestCompositionProperties:

    @given(inputs=raw_inputs(), mode=st.sampled_from(list(Mode)))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_composition_is_deterministic(self, inputs, mode):
        if mode is Mode.APPLICATION_ONLY:
            inputs = {**inputs, "efsFileSystemId": "fs-1", "certificateArn": "arn:aws:acm:x"}
        params = resolve(mode, inputs, {}, fixed_secret)

        assert compose(mode, params).to_json() == compose(mode, params).to_json()

    @given(inputs=raw_inputs())
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_infrastructure_only_is_prefix_of_complete(self, inputs):
        infra = compose(Mode.INFRASTRUCTURE_ONLY, resolve(Mode.INFRASTRUCTURE_ONLY, inputs, {}, fixed_secret))
        complete = compose(Mode.COMPLETE, resolve(Mode.COMPLETE, inputs, {}, fixed_secret))

        assert complete.names[:len(infra)] == infra.names
        assert list(complete.intents[:len(infra)]) == list(infra.intents)

    @given(inputs=raw_inputs(), mode=st.sampled_from(list(Mode)))
    @settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_composed_graphs_validate_and_emit(self, inputs, mode):
        if mode is Mode.APPLICATION_ONLY:
            inputs = {**inputs, "efsFileSystemId": "fs-1", "certificateArn": "arn:aws:acm:x"}
        graph = compose(mode, resolve(mode, inputs, {}, fixed_secret))

        assert validate(graph).ok
        for index, intent in enumerate(graph):
            for dependency in intent.depends_on:
                assert graph.names.index(dependency) < index

        representation = emit(graph)
        assert representation.to_json() == emit(graph).to_json()

    @given(count=st.integers(min_value=1, max_value=12), data=st.data())
    @settings(max_examples=50, deadline=None)
    def test_order_respects_random_dags(self, count, data):
        names = [f"n{i}" for i in range(count)]
        kinds = list(ResourceKind)
        intents = []
        for index, name in enumerate(names):
            # Edges only point backwards, so the generated graph is acyclic
            deps = data.draw(st.lists(st.sampled_from(names[:index]), unique=True)) if index else []
            kind = data.draw(st.sampled_from(kinds))
            intents.append(ResourceIntent(kind, name, {}, depends_on=deps))

        shuffled = data.draw(st.permutations(intents))
        ordered = order_intents(shuffled)

        assert sorted(intent.name for intent in ordered) == sorted(names)
        seen = set()
        for intent in ordered:
            assert set(intent.depends_on) <= seen
            seen.add(intent.name)
        assert not check_cycles(DeploymentGraph(Mode.COMPLETE, ordered))
