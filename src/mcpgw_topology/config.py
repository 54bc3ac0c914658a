"""
Configuration management for the deployment tooling
Environment-driven settings for the CLI and CDK app and boto3 session handling.
The composition core never reads this module.
"""
import copy
import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

import boto3

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class DeploymentConfig:
    """Settings read from environment variables, with lazily created AWS clients"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ
        self.log_level = env.get("LOG_LEVEL", "INFO").upper()
        self.profile = env.get("AWS_PROFILE") or None
        self.region = env.get("AWS_REGION") or env.get("CDK_DEFAULT_REGION") or "us-east-1"
        self.account = env.get("CDK_DEFAULT_ACCOUNT") or None
        self.cdk_app_dir = env.get("CDK_APP_DIR", "infrastructure")
        self.cdk_output_dir = env.get("CDK_OUTDIR", "cdk.out")
        self.stack_name = env.get("STACK_NAME") or None
        self._session = None
        self._clients: Dict[Tuple[str, Optional[str]], Any] = {}

    @property
    def session(self):
        if self._session is None:
            self._session = boto3.Session(profile_name=self.profile, region_name=self.region)
        return self._session

    def client(self, service: str, region: Optional[str] = None):
        """Get a cached boto3 client for the configured profile, in region or the configured one"""
        key = (service, region)
        if key not in self._clients:
            if region:
                self._clients[key] = self.session.client(service, region_name=region)
            else:
                self._clients[key] = self.session.client(service)
        return self._clients[key]

    def with_overrides(self, profile: Optional[str] = None, region: Optional[str] = None) -> "DeploymentConfig":
        """Copy of this config with CLI overrides applied; clients are not shared"""
        clone = copy.copy(self)
        clone._session = None
        clone._clients = {}
        if profile:
            clone.profile = profile
        if region:
            clone.region = region
        return clone


# Global configuration instance, created on first use
_config: Optional[DeploymentConfig] = None


def get_config() -> DeploymentConfig:
    """Get the process-wide deployment configuration"""
    global _config
    if _config is None:
        _config = DeploymentConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment"""
    global _config
    _config = None


def get_env_var(key: str, default: str = None, required: bool = False) -> str:
    """Get environment variable with optional default and required validation"""
    value = os.environ.get(key, default)

    if required and not value:
        raise ValueError(f"Required environment variable {key} is not set")

    return value


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging; level defaults to LOG_LEVEL"""
    level_name = (level or get_env_var("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    # boto debug output drowns the deployment log
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
