"""
Configuration management for the Worker Fleet Provisioner.
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional

from capacity import DEFAULT_DEPLOYMENT_TIMEOUT, DEFAULT_MAX_WORKERS, Fleet
from errors import ConfigurationError
from models import LaunchMethod, RetentionKind, Template, UsageMode


@dataclass
class ProvisionerConfig:
    """Runtime settings for the provisioner and its periodic tasks."""

    fleets_file: str = "fleets.json"
    credentials_file: Optional[str] = None
    state_file: Optional[str] = None
    cleanup_period: int = 900
    verification_period: int = 3600
    pool_period: int = 60
    poll_interval: int = 30
    online_timeout: int = 1800
    success_retention_minutes: int = 60
    failure_retention_minutes: int = 480
    check_timeout: int = 60
    clean_timeout: int = 900
    max_parallel: int = 16
    log_file: str = "fleet-provisioner.log"
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "ProvisionerConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            ProvisionerConfig instance
        """
        return cls(
            fleets_file=args.fleets,
            credentials_file=args.credentials,
            state_file=args.state_file,
            cleanup_period=args.cleanup_period,
            verification_period=args.verification_period,
            pool_period=args.pool_period,
            poll_interval=args.poll_interval,
            online_timeout=args.online_timeout,
            success_retention_minutes=args.success_retention,
            failure_retention_minutes=args.failure_retention,
            check_timeout=args.check_timeout,
            clean_timeout=args.clean_timeout,
            max_parallel=args.max_parallel,
            log_file=args.log_file,
            verbose=args.verbose,
        )


def _enum_value(enum_cls, value, field_name: str):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Invalid {field_name} {value!r}, expected one of: {allowed}")


def template_from_dict(fleet_name: str, data: Dict) -> Template:
    """Build a Template from its JSON definition."""
    if not data.get("name"):
        raise ConfigurationError(f"Template in fleet {fleet_name} has no name")
    return Template(
        name=data["name"],
        fleet_name=fleet_name,
        labels=data.get("labels", ""),
        usage_mode=_enum_value(UsageMode, data.get("usage_mode", "normal"), "usage_mode"),
        machine_type=data.get("machine_type", "e2-standard-2"),
        image=data.get("image", ""),
        launch_method=_enum_value(LaunchMethod, data.get("launch_method", "push"), "launch_method"),
        parallelism=int(data.get("parallelism", 1)),
        retention_kind=_enum_value(RetentionKind, data.get("retention", "idle"), "retention"),
        retention_minutes=int(data.get("retention_minutes", 60)),
        shutdown_on_idle=bool(data.get("shutdown_on_idle", False)),
        pool_size=int(data.get("pool_size", 1)),
        pool_max_age_hours=int(data.get("pool_max_age_hours", 0)),
        subnet=data.get("subnet", ""),
        storage_bucket=data.get("storage_bucket", ""),
        init_script=data.get("init_script", ""),
        credentials_id=data.get("credentials_id", ""),
        max_workers=int(data.get("max_workers", 0)),
        max_deployment_size=int(data.get("max_deployment_size", 0)),
        disabled=bool(data.get("disabled", False)),
    )


def fleet_from_dict(data: Dict) -> Fleet:
    """Build a Fleet, with its templates, from its JSON definition."""
    for key in ("name", "project_id", "zone"):
        if not data.get(key):
            raise ConfigurationError(f"Fleet definition is missing {key!r}")

    name = data["name"]
    templates = [template_from_dict(name, item) for item in data.get("templates", [])]
    names = [t.name for t in templates]
    if len(names) != len(set(names)):
        raise ConfigurationError(f"Fleet {name} has duplicate template names")

    return Fleet(
        name=name,
        project_id=data["project_id"],
        zone=data["zone"],
        max_workers=int(data.get("max_workers", DEFAULT_MAX_WORKERS)),
        deployment_timeout=int(data.get("deployment_timeout", DEFAULT_DEPLOYMENT_TIMEOUT)),
        credentials_id=data.get("credentials_id", ""),
        templates=templates,
    )


def load_fleets(path: str) -> List[Fleet]:
    """
    Load fleet definitions from a JSON file.

    Fleets always start with their configuration unverified.

    Args:
        path: Path to a file of the form {"fleets": [...]}

    Returns:
        List of Fleet objects in file order

    Raises:
        ConfigurationError: If the file is malformed
    """
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}")

    fleets = [fleet_from_dict(item) for item in data.get("fleets", [])]
    names = [fleet.name for fleet in fleets]
    if len(names) != len(set(names)):
        raise ConfigurationError(f"Duplicate fleet names in {path}")
    return fleets
