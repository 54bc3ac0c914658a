#!/usr/bin/env python3
"""
Deployment script for the MCP Gateway Registry
Synthesizes the stack, deploys it with the CDK CLI, then applies the
Kubernetes manifests and Helm releases in graph order.
"""
import argparse
import os
import subprocess
import sys
import tempfile
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .config import DeploymentConfig, configure_logging, get_config
from .emission import (
    COGNITO_CLIENT_SECRET_LOOKUP,
    PROVIDER_HELM,
    PROVIDER_KUBERNETES,
    Declaration,
    render_helm_values,
    render_manifest,
)
from .errors import EmissionFailure, TopologyError
from .parameters import Mode, resolve_mode
from .pipeline import DeploymentArtifact, artifact_path, build_deployment, stack_name_for

# Stack output naming the role mapped to system:masters on the cluster
MASTERS_ROLE_OUTPUT = "MastersRoleArn"

COMMANDS = ("plan", "synth", "diff", "deploy", "destroy", "status", "apply-manifests", "logs")


class GatewayDeployer:
    """Handles deployment of the MCP Gateway stack and its cluster workloads"""

    def __init__(self, mode: Mode, context: Optional[Dict[str, str]] = None,
                 config: Optional[DeploymentConfig] = None):
        self.mode = Mode.parse(mode)
        self.context = dict(context or {})
        self.config = config or get_config()
        self.stack_name = self.config.stack_name or stack_name_for(self.mode)
        self.app_dir = self.config.cdk_app_dir

    @property
    def output_dir(self) -> str:
        """Cloud assembly directory, relative to the CDK app directory unless absolute"""
        return os.path.join(self.app_dir, self.config.cdk_output_dir)

    @property
    def artifact_file(self) -> str:
        return artifact_path(self.output_dir, self.stack_name)

    # -- commands -----------------------------------------------------------

    def plan(self) -> bool:
        """Print the deployment graph without touching AWS"""
        print(f"📋 Planning {self.mode.value} deployment...")
        try:
            deployment = build_deployment(self.mode, self.context, os.environ)
        except TopologyError as e:
            print(f"❌ Planning failed: {e}")
            return False

        print("=" * 50)
        for index, intent in enumerate(deployment.graph, start=1):
            deps = ", ".join(intent.depends_on) or "-"
            print(f"{index:>3}. {intent.name} [{intent.kind.value}] <- {deps}")
        print("=" * 50)
        representation = deployment.representation
        print(f"Stack: {deployment.stack_name}")
        print(f"AWS constructs: {len(representation.aws_declarations())}")
        print(f"Cluster declarations: {len(representation.cluster_declarations())}")
        print(f"Graph fingerprint: {deployment.graph.fingerprint()}")
        return True

    def synth(self) -> bool:
        print(f"🔧 Synthesizing {self.stack_name}...")
        return self._cdk(["synth", self.stack_name, "--quiet", "--output", self.config.cdk_output_dir]
                         + self._context_args())

    def diff(self) -> bool:
        print(f"🔍 Comparing {self.stack_name} with the deployed stack...")
        return self._cdk(["diff", self.stack_name] + self._context_args())

    def destroy(self) -> bool:
        print(f"🗑️ Destroying {self.stack_name}...")
        return self._cdk(["destroy", self.stack_name, "--force"] + self._context_args())

    def deploy(self) -> bool:
        """Synthesize once, deploy the assembly, then apply cluster declarations"""
        print(f"🚀 Starting {self.mode.value} deployment of {self.stack_name}...")

        if not self.synth():
            print("❌ Synthesis failed. Aborting deployment.")
            return False

        artifact = self._load_artifact()
        if artifact is None:
            return False

        if artifact.representation.aws_declarations():
            print(f"📦 Deploying {self.stack_name}...")
            if not self._cdk(["deploy", self.stack_name, "--app", self.config.cdk_output_dir,
                              "--require-approval", "never"]):
                print(f"❌ Failed to deploy {self.stack_name}")
                return False
            print(f"✅ {self.stack_name} deployed successfully!")
        else:
            print("No AWS resources to deploy, skipping CloudFormation")

        if not self._apply_cluster(artifact):
            return False

        print(f"✅ Deployment of {self.stack_name} completed successfully!")
        if artifact.representation.aws_declarations():
            self._print_deployment_info(artifact.region)
        return True

    def apply_manifests(self) -> bool:
        """Apply the cluster half of an already synthesized deployment"""
        artifact = self._load_artifact()
        if artifact is None:
            return False
        return self._apply_cluster(artifact)

    def status(self) -> bool:
        print(f"📋 Status of {self.stack_name}")
        print("=" * 50)
        artifact = None
        if os.path.exists(self.artifact_file):
            artifact = self._load_artifact()
            if artifact is None:
                return False

        if artifact is not None and not artifact.representation.aws_declarations():
            print(f"{self.stack_name} declares no AWS resources")
        else:
            try:
                stack = self._describe_stack(artifact.region if artifact else None)
            except (ClientError, BotoCoreError) as e:
                print(f"❌ Could not describe {self.stack_name}: {e}")
                return False

            print(f"Stack status: {stack.get('StackStatus', 'UNKNOWN')}")
            for output in stack.get("Outputs", []):
                print(f"{output['OutputKey']}: {output['OutputValue']}")
        print("=" * 50)

        if artifact is not None:
            return self._kubectl(["get", "pods,services,ingress", "-n", artifact.namespace], stream=True)
        return True

    def logs(self, workload: str) -> bool:
        artifact = self._load_artifact()
        if artifact is None:
            return False
        return self._kubectl(["logs", "-f", f"deployment/{workload}", "-n", artifact.namespace], stream=True)

    # -- cluster apply ------------------------------------------------------

    def _apply_cluster(self, artifact: DeploymentArtifact) -> bool:
        representation = artifact.representation
        declarations = representation.cluster_declarations()
        if not declarations:
            print("No cluster declarations to apply")
            return True

        try:
            values = self._placeholder_values(artifact)
        except (ClientError, BotoCoreError, EmissionFailure) as e:
            print(f"❌ Could not collect stack outputs: {e}")
            return False

        if not self._update_kubeconfig(artifact, values):
            return False

        print(f"☸️ Applying {len(declarations)} cluster declarations...")
        for declaration in declarations:
            try:
                if declaration.provider == PROVIDER_KUBERNETES:
                    applied = self._apply_manifest(declaration, values)
                elif declaration.provider == PROVIDER_HELM:
                    applied = self._install_release(declaration, values)
                else:
                    applied = False
            except EmissionFailure as e:
                print(f"❌ {declaration.logical_id}: {e}")
                return False
            if not applied:
                print(f"❌ Failed to apply {declaration.logical_id}")
                return False

        print("✅ Cluster declarations applied!")
        return True

    def _placeholder_values(self, artifact: DeploymentArtifact) -> Dict[str, str]:
        """Stack outputs plus apply-time lookups, keyed by placeholder name"""
        representation = artifact.representation
        if not representation.placeholders() and MASTERS_ROLE_OUTPUT not in representation.outputs:
            return {}

        stack = self._describe_stack(artifact.region)
        values = {output["OutputKey"]: output["OutputValue"] for output in stack.get("Outputs", [])}

        for key, lookup in representation.apply_time_values.items():
            if lookup["lookup"] != COGNITO_CLIENT_SECRET_LOOKUP:
                raise EmissionFailure(f"Unknown apply-time lookup {lookup['lookup']!r} for {key}")
            pool_id = values.get(lookup["userPoolIdOutput"])
            client_id = values.get(lookup["clientIdOutput"])
            if not pool_id or not client_id:
                raise EmissionFailure(f"Stack outputs for {key} are not available yet")
            response = self.config.client("cognito-idp", artifact.region).describe_user_pool_client(
                UserPoolId=pool_id, ClientId=client_id,
            )
            values[key] = response["UserPoolClient"].get("ClientSecret", "")
        return values

    def _apply_manifest(self, declaration: Declaration, values: Dict[str, str]) -> bool:
        print(f"  {declaration.type}/{declaration.logical_id}")
        return self._kubectl(["apply", "-f", "-"], input_text=render_manifest(declaration, values))

    def _install_release(self, declaration: Declaration, values: Dict[str, str]) -> bool:
        body = declaration.plain_body()
        print(f"  helm release {body['release']} ({body['chart']})")

        values_file = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False)
        try:
            with values_file:
                values_file.write(render_helm_values(declaration, values))
            cmd = [
                "helm", "upgrade", "--install", body["release"], body["chart"],
                "--repo", body["repository"],
                "--namespace", body["namespace"],
                "--create-namespace",
                "-f", values_file.name,
            ]
            if body.get("version"):
                cmd.extend(["--version", body["version"]])
            return self._run(cmd)
        finally:
            os.unlink(values_file.name)

    def _update_kubeconfig(self, artifact: DeploymentArtifact, values: Dict[str, str]) -> bool:
        print(f"🔧 Updating kubeconfig for cluster {artifact.cluster_name}...")
        cmd = ["aws", "eks", "update-kubeconfig", "--name", artifact.cluster_name, "--region", artifact.region]
        if values.get(MASTERS_ROLE_OUTPUT):
            cmd.extend(["--role-arn", values[MASTERS_ROLE_OUTPUT]])
        if self.config.profile:
            cmd.extend(["--profile", self.config.profile])
        return self._run(cmd)

    # -- helpers ------------------------------------------------------------

    def _context_args(self) -> List[str]:
        args = ["--context", f"deploymentMode={self.mode.value}"]
        for key, value in sorted(self.context.items()):
            if key == "deploymentMode":
                continue
            args.extend(["--context", f"{key}={value}"])
        return args

    def _cdk(self, args: List[str]) -> bool:
        cmd = ["cdk"] + args
        if self.config.profile:
            cmd.extend(["--profile", self.config.profile])
        return self._run(cmd, cwd=self.app_dir)

    def _kubectl(self, args: List[str], input_text: Optional[str] = None, stream: bool = False) -> bool:
        return self._run(["kubectl"] + args, input_text=input_text, stream=stream)

    def _run(self, cmd: List[str], cwd: Optional[str] = None, input_text: Optional[str] = None,
             stream: bool = False) -> bool:
        """Run an external command; failures are printed, never retried"""
        try:
            if stream:
                result = subprocess.run(cmd, cwd=cwd, text=True)
            else:
                result = subprocess.run(cmd, cwd=cwd, input=input_text, capture_output=True, text=True)
        except OSError as e:
            print(f"❌ Could not run {cmd[0]}: {e}")
            return False

        if result.returncode != 0:
            print(f"❌ {' '.join(cmd[:3])} failed:")
            if not stream:
                print(result.stderr)
            return False
        return True

    def _describe_stack(self, region: Optional[str] = None) -> Dict:
        response = self.config.client("cloudformation", region).describe_stacks(StackName=self.stack_name)
        return response["Stacks"][0]

    def _load_artifact(self) -> Optional[DeploymentArtifact]:
        path = self.artifact_file
        if not os.path.exists(path):
            print(f"❌ No deployment artifact at {path}; run synth first")
            return None
        try:
            return DeploymentArtifact.load(path)
        except EmissionFailure as e:
            print(f"❌ {e}")
            return None

    def _print_deployment_info(self, region: str):
        """Print the stack outputs operators look up most"""
        try:
            stack = self._describe_stack(region)
        except (ClientError, BotoCoreError):
            return

        print("\n📋 Deployment Information:")
        print("=" * 50)
        for output in stack.get("Outputs", []):
            print(f"{output.get('Description') or output['OutputKey']}: {output['OutputValue']}")
        print("=" * 50)


def parse_context(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn repeated key=value flags into a dict"""
    context: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Context values must look like key=value, got {pair!r}")
        context[key.strip()] = value
    return context


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy the MCP Gateway Registry")
    parser.add_argument("command", choices=COMMANDS, help="Deployment action")
    parser.add_argument("workload", nargs="?", help="Workload name for the logs command")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in Mode],
        help="Deployment mode (default: deploymentMode context, DEPLOYMENT_MODE, then complete)"
    )
    parser.add_argument("--profile", help="AWS profile to use")
    parser.add_argument("--region", help="AWS region for deployment")
    parser.add_argument(
        "--context", "-c",
        action="append",
        metavar="KEY=VALUE",
        help="Parameter value passed as CDK context (repeatable)"
    )
    parser.add_argument("--log-level", help="Logging level (default: LOG_LEVEL or INFO)")
    return parser


def main(argv: Optional[List[str]] = None):
    """Main deployment script entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        context = parse_context(args.context)
        if args.region:
            context["region"] = args.region
        mode = Mode.parse(args.mode) if args.mode else resolve_mode(context, os.environ)
    except (ValueError, TopologyError) as e:
        print(f"❌ {e}")
        sys.exit(1)

    if args.command == "logs" and not args.workload:
        parser.error("logs requires a workload name")

    # -c region=... selects the stack environment and the AWS clients alike
    config = get_config().with_overrides(profile=args.profile, region=args.region or context.get("region"))
    deployer = GatewayDeployer(mode=mode, context=context, config=config)

    actions = {
        "plan": deployer.plan,
        "synth": deployer.synth,
        "diff": deployer.diff,
        "deploy": deployer.deploy,
        "destroy": deployer.destroy,
        "status": deployer.status,
        "apply-manifests": deployer.apply_manifests,
        "logs": lambda: deployer.logs(args.workload),
    }
    success = actions[args.command]()

    if success:
        print(f"\n🎉 {args.command} for {deployer.stack_name} completed successfully!")
        sys.exit(0)
    else:
        print(f"\n💥 {args.command} for {deployer.stack_name} failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
