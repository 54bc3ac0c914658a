"""
Unit tests for the deployment CLI
External binaries are mocked; CloudFormation and Cognito run against moto
"""
import json
import subprocess
from unittest.mock import patch

import boto3
import pytest
import yaml
from moto import mock_aws

from mcpgw_topology.cli import GatewayDeployer, main, parse_context
from mcpgw_topology.config import DeploymentConfig, reset_config
from mcpgw_topology.parameters import Mode
from mcpgw_topology.pipeline import DeploymentArtifact, build_deployment


def completed(returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


def commands(mock_run):
    return [call.args[0] for call in mock_run.call_args_list]


def applied_documents(mock_run):
    """YAML documents fed to kubectl apply, in call order"""
    return [
        yaml.safe_load(call.kwargs["input"])
        for call in mock_run.call_args_list
        if call.args[0][:2] == ["kubectl", "apply"]
    ]


@pytest.fixture
def config(tmp_path):
    return DeploymentConfig(environ={"CDK_APP_DIR": str(tmp_path), "AWS_REGION": "us-east-1"})


def write_artifact(deployment, config):
    directory = f"{config.cdk_app_dir}/{config.cdk_output_dir}"
    return DeploymentArtifact.from_deployment(deployment).save(directory)


@pytest.mark.unit
class TestParseContext:

    def test_pairs(self):
        assert parse_context(["domainName=mcp.example.com", "maxAzs=2", "empty="]) == {
            "domainName": "mcp.example.com",
            "maxAzs": "2",
            "empty": "",
        }

    def test_value_may_contain_equals(self):
        assert parse_context(["adminPassword=a=b"]) == {"adminPassword": "a=b"}

    @pytest.mark.parametrize("pair", ["novalue", "=value"])
    def test_invalid(self, pair):
        with pytest.raises(ValueError):
            parse_context([pair])


@pytest.mark.unit
class TestGatewayDeployer:
    """Test deployer commands with mocked binaries"""

    def test_stack_name_per_mode(self, config):
        assert GatewayDeployer(Mode.COMPLETE, config=config).stack_name == "McpgwCompleteInfrastructureStack"
        assert GatewayDeployer("infrastructure-only", config=config).stack_name == "McpgwInfrastructureStackFresh"
        assert GatewayDeployer("application-only", config=config).stack_name == "McpgwMicroservicesCdkStack"

    def test_context_arguments(self, config):
        deployer = GatewayDeployer(Mode.COMPLETE, {"maxAzs": "2", "domainName": "x.com"}, config)
        assert deployer._context_args() == [
            "--context", "deploymentMode=complete",
            "--context", "domainName=x.com",
            "--context", "maxAzs=2",
        ]

    def test_plan_needs_no_aws(self, config, base_inputs, capsys):
        deployer = GatewayDeployer(Mode.COMPLETE, base_inputs, config)
        assert deployer.plan() is True

        output = capsys.readouterr().out
        assert "network [network]" in output
        assert "network-entrypoint [network-entrypoint]" in output

    def test_plan_reports_missing_parameter(self, config, capsys):
        with patch.dict("os.environ", {}, clear=True):
            assert GatewayDeployer(Mode.COMPLETE, {}, config).plan() is False
        assert "domainName is required" in capsys.readouterr().out

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_synth_runs_cdk_in_app_dir(self, mock_run, config):
        mock_run.return_value = completed()
        assert GatewayDeployer(Mode.COMPLETE, {}, config).synth() is True

        cmd = commands(mock_run)[0]
        assert cmd[:3] == ["cdk", "synth", "McpgwCompleteInfrastructureStack"]
        assert "deploymentMode=complete" in cmd
        assert mock_run.call_args.kwargs["cwd"] == config.cdk_app_dir

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_profile_passed_to_cdk(self, mock_run, config):
        mock_run.return_value = completed()
        GatewayDeployer(Mode.COMPLETE, {}, config.with_overrides(profile="ops")).diff()
        assert commands(mock_run)[0][-2:] == ["--profile", "ops"]

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_failed_command(self, mock_run, config, capsys):
        mock_run.return_value = completed(returncode=1, stderr="boom")
        assert GatewayDeployer(Mode.COMPLETE, {}, config).destroy() is False
        assert "boom" in capsys.readouterr().out

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_missing_binary(self, mock_run, config):
        mock_run.side_effect = FileNotFoundError("cdk")
        assert GatewayDeployer(Mode.COMPLETE, {}, config).synth() is False

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_deploy_application_only_skips_cloudformation(self, mock_run, config, app_only_inputs, secret_generator):
        mock_run.return_value = completed()
        deployment = build_deployment("application-only", app_only_inputs, {}, secret_generator)
        write_artifact(deployment, config)

        assert GatewayDeployer(Mode.APPLICATION_ONLY, app_only_inputs, config).deploy() is True

        cmds = commands(mock_run)
        assert cmds[0][:2] == ["cdk", "synth"]
        assert not any(cmd[:2] == ["cdk", "deploy"] for cmd in cmds)
        assert cmds[1][:3] == ["aws", "eks", "update-kubeconfig"]
        assert "mcp-gateway-registry" in cmds[1]

        documents = applied_documents(mock_run)
        assert len(documents) == len(deployment.representation.cluster_declarations())
        assert documents[0]["kind"] == "Namespace"
        assert documents[-1]["kind"] == "Ingress"

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_deploy_without_artifact_fails(self, mock_run, config):
        mock_run.return_value = completed()
        assert GatewayDeployer(Mode.COMPLETE, {}, config).deploy() is False

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_apply_stops_at_first_failure(self, mock_run, config, app_only_inputs, secret_generator):
        deployment = build_deployment("application-only", app_only_inputs, {}, secret_generator)
        write_artifact(deployment, config)
        mock_run.side_effect = [completed(), completed(), completed(returncode=1, stderr="denied")]

        assert GatewayDeployer(Mode.APPLICATION_ONLY, {}, config).apply_manifests() is False
        assert mock_run.call_count == 3

    @patch("mcpgw_topology.cli.subprocess.run")
    def test_logs(self, mock_run, config, app_only_inputs, secret_generator):
        mock_run.return_value = completed()
        write_artifact(build_deployment("application-only", app_only_inputs, {}, secret_generator), config)

        assert GatewayDeployer(Mode.APPLICATION_ONLY, {}, config).logs("registry") is True
        assert commands(mock_run)[0] == ["kubectl", "logs", "-f", "deployment/registry", "-n", "mcp-registry"]


@pytest.mark.unit
class TestStackOutputs:
    """Test output lookup and apply-time values against moto"""

    def create_stack(self, name, outputs, region="us-east-1"):
        template = {
            "Resources": {"Placeholder": {"Type": "AWS::SNS::Topic"}},
            "Outputs": {key: {"Value": value} for key, value in outputs.items()},
        }
        boto3.client("cloudformation", region_name=region).create_stack(
            StackName=name, TemplateBody=json.dumps(template),
        )

    @mock_aws
    @patch("mcpgw_topology.cli.subprocess.run")
    def test_complete_apply_substitutes_outputs(self, mock_run, config, base_inputs, secret_generator):
        mock_run.return_value = completed()
        cognito = boto3.client("cognito-idp", region_name="us-east-1")
        pool_id = cognito.create_user_pool(PoolName="mcp-gateway-users")["UserPool"]["Id"]
        client = cognito.create_user_pool_client(
            UserPoolId=pool_id, ClientName="mcp-gateway-client", GenerateSecret=True,
        )["UserPoolClient"]

        deployment = build_deployment("complete", base_inputs, {}, secret_generator)
        representation = deployment.representation
        outputs = {key: f"value-{key}" for key in representation.placeholders()
                   if key not in representation.apply_time_values}
        outputs.update({"UserPoolId": pool_id, "UserPoolClientId": client["ClientId"], "EfsFileSystemId": "fs-42"})
        self.create_stack(deployment.stack_name, outputs)
        write_artifact(deployment, config)

        assert GatewayDeployer(Mode.COMPLETE, {}, config).apply_manifests() is True

        documents = {doc["kind"] + "/" + doc["metadata"]["name"]: doc for doc in applied_documents(mock_run)}
        secret = documents["Secret/mcp-gateway-secrets"]
        assert secret["stringData"]["cognito-client-secret"] == client["ClientSecret"]
        assert documents["StorageClass/efs-sc"]["parameters"]["fileSystemId"] == "fs-42"

        helm_calls = [cmd for cmd in commands(mock_run) if cmd[0] == "helm"]
        assert len(helm_calls) == 4
        assert all(cmd[1:3] == ["upgrade", "--install"] for cmd in helm_calls)

    @mock_aws
    @patch("mcpgw_topology.cli.subprocess.run")
    def test_missing_stack_fails_apply(self, mock_run, config, base_inputs, secret_generator):
        mock_run.return_value = completed()
        write_artifact(build_deployment("complete", base_inputs, {}, secret_generator), config)

        assert GatewayDeployer(Mode.COMPLETE, {}, config).apply_manifests() is False
        assert mock_run.call_count == 0

    @mock_aws
    def test_status_prints_outputs(self, config, capsys):
        self.create_stack("McpgwInfrastructureStackFresh", {"ClusterName": "mcp-gateway-registry"})

        assert GatewayDeployer(Mode.INFRASTRUCTURE_ONLY, {}, config).status() is True
        output = capsys.readouterr().out
        assert "CREATE_COMPLETE" in output
        assert "ClusterName: mcp-gateway-registry" in output

    @mock_aws
    @patch("mcpgw_topology.cli.subprocess.run")
    def test_apply_uses_artifact_region_and_masters_role(self, mock_run, config, base_inputs, secret_generator):
        mock_run.return_value = completed()
        cognito = boto3.client("cognito-idp", region_name="eu-west-1")
        pool_id = cognito.create_user_pool(PoolName="mcp-gateway-users")["UserPool"]["Id"]
        client_id = cognito.create_user_pool_client(
            UserPoolId=pool_id, ClientName="mcp-gateway-client", GenerateSecret=True,
        )["UserPoolClient"]["ClientId"]

        deployment = build_deployment("complete", {**base_inputs, "region": "eu-west-1"}, {}, secret_generator)
        outputs = {key: f"value-{key}" for key in deployment.representation.outputs}
        outputs.update({"UserPoolId": pool_id, "UserPoolClientId": client_id,
                        "MastersRoleArn": "arn:aws:iam::123456789012:role/masters"})
        self.create_stack(deployment.stack_name, outputs, region="eu-west-1")
        write_artifact(deployment, config)

        # config points at us-east-1, where no stack exists
        assert GatewayDeployer(Mode.COMPLETE, {}, config).apply_manifests() is True

        kubeconfig = commands(mock_run)[0]
        assert kubeconfig[:3] == ["aws", "eks", "update-kubeconfig"]
        assert kubeconfig[kubeconfig.index("--region") + 1] == "eu-west-1"
        assert kubeconfig[kubeconfig.index("--role-arn") + 1] == "arn:aws:iam::123456789012:role/masters"

    @mock_aws
    @patch("mcpgw_topology.cli.subprocess.run")
    def test_status_application_only_needs_no_stack(self, mock_run, config, app_only_inputs,
                                                     secret_generator, capsys):
        mock_run.return_value = completed()
        write_artifact(build_deployment("application-only", app_only_inputs, {}, secret_generator), config)

        assert GatewayDeployer(Mode.APPLICATION_ONLY, {}, config).status() is True
        assert commands(mock_run) == [["kubectl", "get", "pods,services,ingress", "-n", "mcp-registry"]]
        assert "declares no AWS resources" in capsys.readouterr().out

    @mock_aws
    def test_status_of_missing_stack(self, config):
        assert GatewayDeployer(Mode.COMPLETE, {}, config).status() is False


@pytest.mark.unit
class TestMain:
    """Test the command line entry point"""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_plan_exit_code(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["plan", "--mode", "infrastructure-only",
                  "-c", "domainName=mcp.example.com", "-c", "adminPassword=secret"])
        assert excinfo.value.code == 0

    def test_invalid_context_exit_code(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["plan", "-c", "broken"])
        assert excinfo.value.code == 1

    def test_invalid_mode_from_environment(self):
        with patch.dict("os.environ", {"DEPLOYMENT_MODE": "partial"}):
            with pytest.raises(SystemExit) as excinfo:
                main(["plan"])
        assert excinfo.value.code == 1

    def test_logs_requires_workload(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["logs"])
        assert excinfo.value.code == 2

    @patch("mcpgw_topology.cli.GatewayDeployer")
    def test_context_region_selects_client_region(self, mock_deployer):
        mock_deployer.return_value.plan.return_value = True
        with patch.dict("os.environ", {"AWS_REGION": "us-east-1"}):
            with pytest.raises(SystemExit):
                main(["plan", "-c", "region=eu-west-1"])

        assert mock_deployer.call_args.kwargs["config"].region == "eu-west-1"
        assert mock_deployer.call_args.kwargs["context"]["region"] == "eu-west-1"

    @patch("mcpgw_topology.cli.GatewayDeployer")
    def test_region_flag_wins_over_context(self, mock_deployer):
        mock_deployer.return_value.plan.return_value = True
        with pytest.raises(SystemExit):
            main(["plan", "--region", "ap-south-1", "-c", "region=eu-west-1"])

        assert mock_deployer.call_args.kwargs["config"].region == "ap-south-1"
        assert mock_deployer.call_args.kwargs["context"]["region"] == "ap-south-1"
