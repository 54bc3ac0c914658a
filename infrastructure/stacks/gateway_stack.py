"""
Gateway Stack for the MCP Gateway Registry
Builds VPC, EKS on Fargate, EFS, certificate and Cognito constructs from the
AWS declarations of an emitted representation
"""
import json
import logging
from typing import Any, Callable, Dict, List, Mapping

from aws_cdk import (
    Stack,
    CfnOutput,
    Fn,
    Tags,
    aws_certificatemanager as acm,
    aws_cognito as cognito,
    aws_ec2 as ec2,
    aws_efs as efs,
    aws_eks as eks,
    aws_iam as iam,
    aws_route53 as route53,
)
from aws_cdk.lambda_layer_kubectl_v28 import KubectlV28Layer
from constructs import Construct

from mcpgw_topology.emission import Declaration, ExternalRepresentation, is_construct_ref, logical_id
from mcpgw_topology.errors import EmissionFailure
from mcpgw_topology.intents import thaw

logger = logging.getLogger(__name__)

PERFORMANCE_MODES = {
    "generalPurpose": efs.PerformanceMode.GENERAL_PURPOSE,
    "maxIO": efs.PerformanceMode.MAX_IO,
}

THROUGHPUT_MODES = {
    "bursting": efs.ThroughputMode.BURSTING,
    "elastic": efs.ThroughputMode.ELASTIC,
}

CLUSTER_LOGGING = {
    "api": eks.ClusterLoggingTypes.API,
    "audit": eks.ClusterLoggingTypes.AUDIT,
    "authenticator": eks.ClusterLoggingTypes.AUTHENTICATOR,
    "controllerManager": eks.ClusterLoggingTypes.CONTROLLER_MANAGER,
    "scheduler": eks.ClusterLoggingTypes.SCHEDULER,
}

ACCOUNT_RECOVERY = {
    "verified_email": cognito.AccountRecovery.EMAIL_ONLY,
    "verified_phone_number": cognito.AccountRecovery.PHONE_ONLY_WITHOUT_MFA,
}

STANDARD_SCOPES = {
    "openid": cognito.OAuthScope.OPENID,
    "email": cognito.OAuthScope.EMAIL,
    "profile": cognito.OAuthScope.PROFILE,
    "phone": cognito.OAuthScope.PHONE,
    "aws.cognito.signin.user.admin": cognito.OAuthScope.COGNITO_ADMIN,
}

# ALLOW_REFRESH_TOKEN_AUTH is always enabled by the construct
AUTH_FLOWS = {
    "ALLOW_USER_PASSWORD_AUTH": "user_password",
    "ALLOW_USER_SRP_AUTH": "user_srp",
    "ALLOW_ADMIN_USER_PASSWORD_AUTH": "admin_user_password",
    "ALLOW_CUSTOM_AUTH": "custom",
}

PRIVATE_SUBNETS = ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS)


class GatewayStack(Stack):
    """
    AWS half of an MCP Gateway deployment.

    Each AWS declaration of the representation is built with the matching
    aws-cdk-lib construct. Construct references in declaration bodies resolve
    to attributes of constructs built earlier, which is guaranteed by the
    declaration order. Kubernetes and Helm declarations are applied by the
    deployer once the stack is up.
    """

    def __init__(self, scope: Construct, construct_id: str,
                 representation: ExternalRepresentation, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.representation = representation
        self.built: Dict[str, Construct] = {}
        self.exports: Dict[str, Dict[str, Any]] = {}
        self.outputs: Dict[str, CfnOutput] = {}
        self._scopes: Dict[str, Dict[str, cognito.ResourceServerScope]] = {}

        builders: Dict[str, Callable[[Declaration, Dict[str, Any]], Construct]] = {
            "ec2.Vpc": self._vpc,
            "efs.FileSystem": self._file_system,
            "eks.FargateCluster": self._cluster,
            "acm.Certificate": self._certificate,
            "cognito.UserPool": self._user_pool,
            "cognito.UserPoolGroups": self._user_pool_groups,
            "cognito.UserPoolResourceServer": self._resource_server,
            "cognito.UserPoolClient": self._user_pool_client,
            "cognito.UserPoolDomain": self._user_pool_domain,
            "eks.CfnAddon": self._addon,
            "eks.PodIdentityAssociation": self._pod_identity,
            "eks.FargateProfile": self._fargate_profile,
        }

        for declaration in representation.aws_declarations():
            builder = builders.get(declaration.type)
            if builder is None:
                raise EmissionFailure(f"{declaration.logical_id}: no construct for {declaration.type}")
            self.built[declaration.logical_id] = builder(declaration, declaration.plain_body())

        # Hints may name cluster declarations; only built constructs become dependencies
        for declaration in representation.aws_declarations():
            source = self.built[declaration.logical_id]
            for dependency in declaration.depends_on:
                target = self.built.get(dependency)
                if target is None or target in source.node.scopes or source in target.node.scopes:
                    continue
                source.node.add_dependency(target)

        for key, output in sorted(representation.outputs.items()):
            self.outputs[key] = self._output(key, thaw(output))

        logger.info(f"{construct_id}: {len(self.built)} constructs, {len(self.outputs)} outputs")

    # -- references --------------------------------------------------------

    def _value(self, value: Any) -> Any:
        if not is_construct_ref(value):
            return value
        exported = self.exports.get(value["construct"], {})
        if value["attribute"] not in exported:
            raise EmissionFailure(f"{value['construct']} does not export {value['attribute']!r}")
        return exported[value["attribute"]]

    def _construct(self, value: Any) -> Construct:
        if not is_construct_ref(value) or value["construct"] not in self.built:
            raise EmissionFailure(f"Expected a reference to a built construct, got {value!r}")
        return self.built[value["construct"]]

    def _output(self, key: str, output: Dict[str, Any]) -> CfnOutput:
        value = self._value(output["Value"])
        if isinstance(value, list):
            value = Fn.join(",", value)
        elif not isinstance(value, str):
            value = str(value)

        cfn_output = CfnOutput(
            self,
            f"Output{key}",
            value=value,
            description=output.get("Description"),
        )
        cfn_output.override_logical_id(key)
        return cfn_output

    # -- network and storage -----------------------------------------------

    def _vpc(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        vpc = ec2.Vpc(
            self,
            declaration.logical_id,
            ip_addresses=ec2.IpAddresses.cidr(body["cidr"]),
            max_azs=body["max_azs"],
            nat_gateways=body["nat_gateways"],
            enable_dns_hostnames=True,
            enable_dns_support=True,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=body["subnet_cidr_mask"]
                ),
                ec2.SubnetConfiguration(
                    name="Private",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    cidr_mask=body["subnet_cidr_mask"]
                )
            ]
        )
        if body["flow_logs"]:
            vpc.add_flow_log("FlowLog")
        Tags.of(vpc).add("Name", body["name"])

        self.exports[declaration.logical_id] = {
            "id": vpc.vpc_id,
            "cidr": vpc.vpc_cidr_block,
            "public-subnets": [subnet.subnet_id for subnet in vpc.public_subnets],
            "private-subnets": [subnet.subnet_id for subnet in vpc.private_subnets],
        }
        return vpc

    def _file_system(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        access_point = body["access_point"]
        file_system = efs.FileSystem(
            self,
            declaration.logical_id,
            vpc=self._construct(body["vpc"]),
            vpc_subnets=PRIVATE_SUBNETS,
            encrypted=body["encrypted"],
            performance_mode=PERFORMANCE_MODES[body["performance_mode"]],
            throughput_mode=THROUGHPUT_MODES[body["throughput_mode"]],
            lifecycle_policy=efs.LifecyclePolicy[body["lifecycle_policy"]],
        )
        file_system.connections.allow_default_port_from(
            ec2.Peer.ipv4(self._value(body["vpc_cidr"])),
            "NFS access from the VPC"
        )
        point = file_system.add_access_point(
            "AccessPoint",
            path=access_point["path"],
            create_acl=efs.Acl(
                owner_uid=access_point["uid"],
                owner_gid=access_point["gid"],
                permissions=access_point["permissions"]
            ),
            posix_user=efs.PosixUser(uid=access_point["uid"], gid=access_point["gid"])
        )
        Tags.of(file_system).add("Name", body["name"])

        self.exports[declaration.logical_id] = {
            "id": file_system.file_system_id,
            "access-point-id": point.access_point_id,
            "security-group": file_system.connections.security_groups[0].security_group_id,
        }
        return file_system

    # -- compute ----------------------------------------------------------

    def _cluster(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        logical = declaration.logical_id
        profile = body["default_profile"]

        # Operators assume this role for kubectl access; it is mapped to system:masters
        masters_role = iam.Role(
            self,
            f"{logical}MastersRole",
            assumed_by=iam.AccountRootPrincipal(),
            description=f"Administrator access to EKS cluster {body['name']}"
        )

        cluster = eks.FargateCluster(
            self,
            logical,
            cluster_name=body["name"],
            version=eks.KubernetesVersion.of(body["version"]),
            vpc=self._construct(body["vpc"]),
            kubectl_layer=KubectlV28Layer(self, f"{logical}KubectlLayer"),
            masters_role=masters_role,
            endpoint_access=_endpoint_access(body),
            cluster_logging=[CLUSTER_LOGGING[log_type] for log_type in body["log_types"]],
            default_profile=eks.FargateProfileOptions(
                fargate_profile_name=profile["name"],
                selectors=[eks.Selector(namespace=namespace) for namespace in profile["namespaces"]],
                subnet_selection=PRIVATE_SUBNETS
            )
        )

        self.exports[logical] = {
            "name": cluster.cluster_name,
            "arn": cluster.cluster_arn,
            "endpoint": cluster.cluster_endpoint,
            "pod-execution-role-arn": cluster.default_profile.pod_execution_role.role_arn,
            "masters-role-arn": masters_role.role_arn,
        }
        return cluster

    def _fargate_profile(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        cluster = self._construct(body["cluster"])
        if not isinstance(cluster, eks.Cluster):
            raise EmissionFailure(f"{declaration.logical_id}: {body['cluster']['construct']} is not an EKS cluster")
        return cluster.add_fargate_profile(
            declaration.logical_id,
            fargate_profile_name=body["profile_name"],
            selectors=[eks.Selector(namespace=namespace) for namespace in body["namespaces"]],
            subnet_selection=PRIVATE_SUBNETS
        )

    def _addon(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        configuration = body.get("configuration")
        return eks.CfnAddon(
            self,
            declaration.logical_id,
            cluster_name=self._value(body["cluster"]),
            addon_name=body["addon_name"],
            addon_version=body.get("addon_version"),
            resolve_conflicts="OVERWRITE",
            configuration_values=json.dumps(configuration, sort_keys=True) if configuration else None
        )

    def _pod_identity(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        scope = Construct(self, declaration.logical_id)
        role = iam.Role(
            scope,
            "Role",
            assumed_by=iam.SessionTagsPrincipal(iam.ServicePrincipal("pods.eks.amazonaws.com")),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(name) for name in body["managed_policies"]
            ],
            description=f"Pod identity for {body['namespace']}/{body['service_account']}"
        )
        for statement in body["statements"]:
            role.add_to_policy(iam.PolicyStatement(
                actions=list(statement["actions"]),
                resources=_as_list(statement["resources"])
            ))

        eks.CfnPodIdentityAssociation(
            scope,
            "Association",
            cluster_name=self._value(body["cluster"]),
            namespace=body["namespace"],
            service_account=body["service_account"],
            role_arn=role.role_arn
        )
        return scope

    # -- certificate ------------------------------------------------------

    def _certificate(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        if body.get("hosted_zone_id"):
            zone = route53.HostedZone.from_hosted_zone_id(self, f"{declaration.logical_id}Zone", body["hosted_zone_id"])
            validation = acm.CertificateValidation.from_dns(zone)
        else:
            validation = acm.CertificateValidation.from_dns()

        certificate = acm.Certificate(
            self,
            declaration.logical_id,
            domain_name=body["domain_name"],
            subject_alternative_names=body["subject_alternative_names"],
            certificate_name=body["name"],
            validation=validation
        )
        self.exports[declaration.logical_id] = {"arn": certificate.certificate_arn}
        return certificate

    # -- identity ---------------------------------------------------------

    def _user_pool(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        policy = body["password_policy"]
        user_pool = cognito.UserPool(
            self,
            declaration.logical_id,
            user_pool_name=body["pool_name"],
            self_sign_up_enabled=body["self_sign_up"],
            sign_in_aliases=cognito.SignInAliases(
                username=True,
                email="email" in body["alias_attributes"]
            ),
            auto_verify=cognito.AutoVerifiedAttrs(email="email" in body["auto_verified_attributes"]),
            password_policy=cognito.PasswordPolicy(
                min_length=policy["minimum_length"],
                require_lowercase=policy["require_lowercase"],
                require_uppercase=policy["require_uppercase"],
                require_digits=policy["require_numbers"],
                require_symbols=policy["require_symbols"]
            ),
            account_recovery=ACCOUNT_RECOVERY[body["account_recovery"]]
        )
        self.exports[declaration.logical_id] = {
            "id": user_pool.user_pool_id,
            "arn": user_pool.user_pool_arn,
            "provider-url": user_pool.user_pool_provider_url,
        }
        return user_pool

    def _user_pool_groups(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        pool_id = self._value(body["user_pool"])
        admin = body["admin_user"]
        scope = Construct(self, declaration.logical_id)

        groups = {}
        for group in body["groups"]:
            groups[group["name"]] = cognito.CfnUserPoolGroup(
                scope,
                logical_id(group["name"]),
                user_pool_id=pool_id,
                group_name=group["name"],
                description=group["description"]
            )

        user = cognito.CfnUserPoolUser(
            scope,
            "AdminUser",
            user_pool_id=pool_id,
            username=admin["username"],
            message_action="SUPPRESS",
            user_attributes=[
                cognito.CfnUserPoolUser.AttributeTypeProperty(name="email", value=admin["email"]),
                cognito.CfnUserPoolUser.AttributeTypeProperty(name="email_verified", value="true"),
            ]
        )
        cognito.CfnUserPoolUserToGroupAttachment(
            scope,
            "AdminUserGroup",
            user_pool_id=pool_id,
            username=user.ref,
            group_name=groups[admin["group"]].ref
        )
        return scope

    def _resource_server(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        user_pool = self._construct(body["user_pool"])
        scopes = {
            scope["name"]: cognito.ResourceServerScope(
                scope_name=scope["name"],
                scope_description=scope["description"]
            )
            for scope in body["scopes"]
        }
        server = user_pool.add_resource_server(
            declaration.logical_id,
            identifier=body["identifier"],
            user_pool_resource_server_name=body["name"],
            scopes=list(scopes.values())
        )
        self._scopes[declaration.logical_id] = scopes
        self.exports[declaration.logical_id] = {"identifier": server.user_pool_resource_server_id}
        return server

    def _user_pool_client(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        user_pool = self._construct(body["user_pool"])
        flows = body["oauth_flows"]

        scopes = [STANDARD_SCOPES.get(name) or cognito.OAuthScope.custom(name) for name in body["oauth_scopes"]]
        if "resource_server" in body:
            server = self._construct(body["resource_server"])
            declared = self._scopes[body["resource_server"]["construct"]]
            scopes += [cognito.OAuthScope.resource_server(server, declared[name]) for name in body["resource_scopes"]]

        client = user_pool.add_client(
            declaration.logical_id,
            user_pool_client_name=body["client_name"],
            generate_secret=body["generate_secret"],
            auth_flows=cognito.AuthFlow(**{
                AUTH_FLOWS[flow]: True for flow in body["auth_flows"] if flow in AUTH_FLOWS
            }),
            o_auth=cognito.OAuthSettings(
                flows=cognito.OAuthFlows(
                    authorization_code_grant="code" in flows,
                    implicit_code_grant="implicit" in flows,
                    client_credentials="client_credentials" in flows
                ),
                scopes=scopes,
                callback_urls=body["callback_urls"] or None,
                logout_urls=body["logout_urls"] or None
            ),
            supported_identity_providers=[cognito.UserPoolClientIdentityProvider.COGNITO]
        )
        self.exports[declaration.logical_id] = {"id": client.user_pool_client_id}
        return client

    def _user_pool_domain(self, declaration: Declaration, body: Dict[str, Any]) -> Construct:
        user_pool = self._construct(body["user_pool"])
        domain = user_pool.add_domain(
            declaration.logical_id,
            cognito_domain=cognito.CognitoDomainOptions(domain_prefix=body["prefix"])
        )
        self.exports[declaration.logical_id] = {
            "prefix": domain.domain_name,
            "url": domain.base_url(),
        }
        return domain


def _endpoint_access(body: Mapping[str, Any]) -> eks.EndpointAccess:
    if body["endpoint_public_access"] and body["endpoint_private_access"]:
        return eks.EndpointAccess.PUBLIC_AND_PRIVATE
    if body["endpoint_private_access"]:
        return eks.EndpointAccess.PRIVATE
    return eks.EndpointAccess.PUBLIC


def _as_list(value: Any) -> List[str]:
    return list(value) if isinstance(value, (list, tuple)) else [value]