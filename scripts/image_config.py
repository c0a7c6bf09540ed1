#!/usr/bin/env python3
"""
ESXi Image Builder Configuration
Purpose: Load config/image-builder.yaml and fill in defaults
"""

import copy
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

from console import Colors


PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_FILE = PROJECT_ROOT / "config" / "image-builder.yaml"

ONLINE_DEPOT = (
    "https://hostupdate.vmware.com/software/VUM/PRODUCTION/main/vmw-depot-index.xml"
)

ACCEPTANCE_LEVELS = [
    "VMwareCertified",
    "VMwareAccepted",
    "PartnerSupported",
    "CommunitySupported",
]

DEFAULTS: Dict[str, Any] = {
    "projects_dir": "projects",
    "vendor": "Custom",
    "acceptance_level": "PartnerSupported",
    "no_signature_check": False,
    "online_depot": ONLINE_DEPOT,
    "online_profile_filter": "",
    "excluded_vibs": [],
    "powershell": {
        "executable": "pwsh",
        "module": "VMware.ImageBuilder",
        "timeout": 3600,
    },
    "vcenter": {},
    "ha_driver": {
        "package": "vmware-fdm",
        "depot_path": "/vSphere-HA-depot",
    },
}


def apply_defaults(config: Dict[str, Any], project_root: Path) -> Dict[str, Any]:
    """Merge defaults into a loaded config (one level deep for sections)"""
    merged = copy.deepcopy(DEFAULTS)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        elif value is not None:
            merged[key] = value

    projects_path = Path(str(merged["projects_dir"])).expanduser()
    if not projects_path.is_absolute():
        projects_path = project_root / projects_path

    merged["projects_path"] = projects_path
    merged["project_root"] = project_root
    if isinstance(merged["excluded_vibs"], list):
        merged["excluded_vibs"] = [str(name) for name in merged["excluded_vibs"]]
    return merged


def validate_config(config: Dict[str, Any]) -> list:
    """Return a list of configuration errors (empty if valid)"""
    errors = []

    if config["acceptance_level"] not in ACCEPTANCE_LEVELS:
        errors.append(
            f"Invalid 'acceptance_level': {config['acceptance_level']} "
            f"(expected one of {', '.join(ACCEPTANCE_LEVELS)})"
        )

    if not isinstance(config["excluded_vibs"], list):
        errors.append("'excluded_vibs' must be a list of package names")

    try:
        if int(config["powershell"]["timeout"]) <= 0:
            errors.append("'powershell.timeout' must be a positive number of seconds")
    except (TypeError, ValueError):
        errors.append("'powershell.timeout' must be a positive number of seconds")

    if not str(config["vendor"]).strip():
        errors.append("'vendor' must not be empty")

    vcenter = config["vcenter"]
    if vcenter and not vcenter.get("hostname"):
        errors.append("Missing 'vcenter.hostname' in config file")

    return errors


def load_config(config_file: Path) -> Dict[str, Any]:
    """Load configuration from YAML file"""
    if not config_file.exists():
        print(f"{Colors.RED}ERROR: Config file not found: {config_file}{Colors.NC}")
        print(f"Create it from: {DEFAULT_CONFIG_FILE}.example")
        sys.exit(1)

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        print(f"{Colors.RED}ERROR: Failed to parse YAML config: {e}{Colors.NC}")
        sys.exit(1)
    except (PermissionError, OSError) as e:
        print(f"{Colors.RED}ERROR: Failed to load config: {e}{Colors.NC}")
        sys.exit(1)

    if not isinstance(raw, dict):
        print(f"{Colors.RED}ERROR: Config file must contain a mapping: {config_file}{Colors.NC}")
        sys.exit(1)

    config = apply_defaults(raw, PROJECT_ROOT)

    # Report all errors at once
    errors = validate_config(config)
    if errors:
        print(f"{Colors.RED}ERROR: Configuration validation failed:{Colors.NC}")
        for error in errors:
            print(f"  - {error}")
        sys.exit(1)

    return config
