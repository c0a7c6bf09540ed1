#!/usr/bin/env python3
"""
ESXi Image Builder Secrets Management
Purpose: Securely load the vCenter password from environment variables, secrets file, or config file
"""

import getpass
import os
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

from console import Colors, print_message


VCENTER_PASSWORD_ENV = "ESXI_IMAGE_VCENTER_PASSWORD"


class SecretsManager:
    """Locate the vCenter password across env, secrets file, config and prompt"""

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir
        self.secrets_file = project_dir / "config" / "image-builder-secrets.yaml"

    def _read_secrets_file(self) -> Dict[str, Any]:
        if not self.secrets_file.exists():
            return {}

        try:
            with open(self.secrets_file, 'r', encoding='utf-8') as f:
                secrets = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            print_message(Colors.YELLOW, f"WARNING: Failed to load secrets file: {e}")
            return {}
        return secrets if isinstance(secrets, dict) else {}

    def get_vcenter_password(self, config_value: Optional[str] = None) -> str:
        """
        Get the vCenter password, first non-empty value wins:
        1. ESXI_IMAGE_VCENTER_PASSWORD environment variable
        2. vcenter_password in image-builder-secrets.yaml
        3. vcenter.password from the main config
        4. Interactive prompt
        """
        env_value = os.environ.get(VCENTER_PASSWORD_ENV)
        if env_value:
            return env_value

        file_value = self._read_secrets_file().get("vcenter_password")
        if file_value:
            return str(file_value)

        if config_value:
            return config_value

        return getpass.getpass("Enter vcenter password: ")

    def has_secrets_file(self) -> bool:
        """Check if secrets file exists"""
        return self.secrets_file.exists()

    def get_secrets_info(self) -> str:
        """Get information about secrets sources"""
        lines = []
        lines.append("Secrets Priority Order:")
        lines.append(f"  1. Environment variable ({VCENTER_PASSWORD_ENV})")
        lines.append("  2. Secrets file (config/image-builder-secrets.yaml)")
        lines.append("  3. Config file (config/image-builder.yaml, vcenter.password)")
        lines.append("  4. Interactive prompt")
        lines.append("")

        if self.has_secrets_file():
            lines.append(f"✓ Secrets file found: {self.secrets_file}")
        else:
            lines.append(f"⚠ Secrets file not found: {self.secrets_file}")
            lines.append(f"  Create from: {self.secrets_file}.example")

        lines.append("")
        lines.append("Environment variables:")
        if os.environ.get(VCENTER_PASSWORD_ENV):
            lines.append(f"  ✓ {VCENTER_PASSWORD_ENV} is set")
        else:
            lines.append(f"    {VCENTER_PASSWORD_ENV} not set")

        return "\n".join(lines)


def resolve_vcenter_password(config: Dict[str, Any]) -> str:
    """
    Resolve the vCenter password for the HA agent download.

    Only called once the user asked for the HA agent, so a build without it
    never prompts for credentials.
    """
    secrets_mgr = SecretsManager(config["project_root"])
    return secrets_mgr.get_vcenter_password(config.get("vcenter", {}).get("password"))
