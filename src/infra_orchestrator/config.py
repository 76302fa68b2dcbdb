"""
Configuration management for the orchestrator.

Settings and the stack set are read from a YAML deployment file, merged over
built-in defaults and environment overrides, and handed to the orchestrators
as an immutable value.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import jsonschema
import yaml

from .deployment.models import StackDescriptor
from .deployment.planner import OUTPUT_REFERENCE
from .errors import ConfigurationError


@dataclass(frozen=True)
class OrchestratorConfig:
    """Immutable settings for one orchestrator instance."""

    # Environment identification
    environment_name: str = "eks-prod"
    aws_region: str = "us-east-1"
    aws_profile: Optional[str] = None

    # Naming patterns
    stack_name_pattern: str = "{environment}-{stack}"
    cluster_name_pattern: str = "{environment}-cluster"

    # Waiting and scheduling
    stack_timeout: float = 300
    delete_timeout: float = 1800
    poll_interval: float = 30
    max_workers: int = 4

    # Teardown
    confirmation_token: str = "yes"
    residual_tag_key: str = "Environment"
    load_balancer_drain_seconds: float = 60

    # Stack creation
    capabilities: Tuple[str, ...] = (
        "CAPABILITY_IAM",
        "CAPABILITY_NAMED_IAM",
        "CAPABILITY_AUTO_EXPAND",
    )
    tags: Tuple[Tuple[str, str], ...] = ()

    # Workload manifests, relative to the deployment file
    manifests_dir: str = "kubernetes"

    def format_name(self, pattern: str, **kwargs: Any) -> str:
        """Format a naming pattern with environment variables."""
        variables = {
            "environment": self.environment_name,
            "region": self.aws_region,
            **kwargs,
        }
        return pattern.format(**variables)

    def get_stack_name(self, stack: str) -> str:
        """Get the CloudFormation stack name for a descriptor name."""
        return self.format_name(self.stack_name_pattern, stack=stack)

    def get_cluster_name(self) -> str:
        """Get the EKS cluster name."""
        return self.format_name(self.cluster_name_pattern)

    @property
    def tag_map(self) -> Dict[str, str]:
        return dict(self.tags)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["capabilities"] = list(self.capabilities)
        data["tags"] = self.tag_map
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrchestratorConfig":
        """Create config from dictionary."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

        values = dict(data)
        if "capabilities" in values:
            values["capabilities"] = tuple(values["capabilities"])
        if "tags" in values:
            values["tags"] = tuple((str(k), str(v)) for k, v in dict(values["tags"]).items())
        return cls(**values)


DEPLOYMENT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "settings": {"type": "object"},
        "stacks": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "template"],
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "template": {"type": "string", "minLength": 1},
                    "parameters": {
                        "type": "object",
                        "additionalProperties": {"type": ["string", "number", "boolean"]},
                    },
                    "depends_on": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
    "additionalProperties": False,
}


@dataclass
class Deployment:
    """A loaded deployment file: settings plus stack descriptors."""

    config: OrchestratorConfig
    stacks: List[StackDescriptor]
    base_dir: Path = field(default_factory=Path.cwd)


class ConfigManager:
    """Loads deployment files and applies defaults and overrides."""

    # The three-stack EKS layout used when a file does not list stacks
    DEFAULT_STACKS: List[Dict[str, Any]] = [
        {
            "name": "vpc",
            "template": "cloudformation/01-vpc.yaml",
            "parameters": {"EnvironmentName": "{environment}"},
        },
        {
            "name": "eks-cluster",
            "template": "cloudformation/02-eks-cluster.yaml",
            "parameters": {"EnvironmentName": "{environment}"},
            "depends_on": ["vpc"],
        },
        {
            "name": "node-groups",
            "template": "cloudformation/03-node-groups.yaml",
            "parameters": {"EnvironmentName": "{environment}"},
            "depends_on": ["eks-cluster"],
        },
    ]

    ENV_OVERRIDES = {
        "ENVIRONMENT_NAME": "environment_name",
        "AWS_REGION": "aws_region",
        "AWS_PROFILE": "aws_profile",
    }

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    def read_file(self, path: Union[str, Path]) -> Dict[str, Any]:
        """Read and schema-validate a deployment file."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Deployment file not found: {path}")

        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {path}: {e}")

        self.validate(data, source=str(path))
        return data

    def validate(self, data: Any, source: str = "deployment") -> None:
        try:
            jsonschema.validate(instance=data, schema=DEPLOYMENT_SCHEMA)
        except jsonschema.ValidationError as e:
            location = ".".join(str(p) for p in e.absolute_path) or "root"
            raise ConfigurationError(f"{source}: {location}: {e.message}")

    def build(
        self,
        data: Optional[Dict[str, Any]] = None,
        overrides: Optional[Dict[str, Any]] = None,
        base_dir: Optional[Path] = None,
    ) -> Deployment:
        """Merge defaults, file data, environment and explicit overrides.

        Precedence, lowest first: built-in defaults, file settings, environment
        variables, explicit overrides (CLI flags). ``None`` overrides are ignored.
        """
        data = data or {}
        settings: Dict[str, Any] = dict(data.get("settings") or {})
        for variable, key in self.ENV_OVERRIDES.items():
            if self.environ.get(variable):
                settings[key] = self.environ[variable]
        for key, value in (overrides or {}).items():
            if value is not None:
                settings[key] = value

        config = OrchestratorConfig.from_dict(settings)
        stack_entries = data.get("stacks") or self.DEFAULT_STACKS
        stacks = [self._descriptor(entry, config) for entry in stack_entries]
        return Deployment(config=config, stacks=stacks, base_dir=base_dir or Path.cwd())

    def load(
        self,
        path: Optional[Union[str, Path]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Deployment:
        """Load a deployment file, or the defaults when no file is given."""
        if path is None:
            return self.build(overrides=overrides)
        path = Path(path)
        return self.build(self.read_file(path), overrides, base_dir=path.resolve().parent)

    @staticmethod
    def _descriptor(entry: Dict[str, Any], config: OrchestratorConfig) -> StackDescriptor:
        parameters = {}
        for key, value in (entry.get("parameters") or {}).items():
            if isinstance(value, str):
                try:
                    value = expand_placeholders(value, config)
                except (KeyError, IndexError, ValueError) as e:
                    raise ConfigurationError(
                        f"Stack '{entry['name']}' parameter {key}: unknown placeholder {e}"
                    )
            parameters[key] = value
        return StackDescriptor.create(
            name=entry["name"],
            template_reference=entry["template"],
            parameters=parameters,
            depends_on=entry.get("depends_on"),
        )


def load_deployment(
    path: Optional[Union[str, Path]] = None, overrides: Optional[Dict[str, Any]] = None
) -> Deployment:
    """Load a deployment using the process environment."""
    return ConfigManager().load(path, overrides)


def expand_placeholders(value: str, config: OrchestratorConfig) -> str:
    """Expand ``{environment}``/``{region}`` while keeping ``${stack.Output}`` references."""
    parts = []
    last = 0
    for match in OUTPUT_REFERENCE.finditer(value):
        parts.append(config.format_name(value[last:match.start()]))
        parts.append(match.group(0))
        last = match.end()
    parts.append(config.format_name(value[last:]))
    return "".join(parts)
