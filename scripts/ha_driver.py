#!/usr/bin/env python3
"""
vSphere HA agent source
Purpose: Locate the HA agent package (vmware-fdm) served by a live vCenter

vCenter publishes the HA agent as an Image Builder depot under
https://<vcenter>/vSphere-HA-depot. The build adds that URL as a depot and
installs the package from it, so the agent matches the vCenter version.
"""

from typing import Any, Dict, Optional

import requests
import urllib3
from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

# Disable SSL warnings (vCenter usually runs with a self-signed certificate)
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class HADriverError(Exception):
    """The HA agent could not be resolved from vCenter"""


class HADriver:
    """Where the HA agent comes from and which vCenter provided it"""

    def __init__(self, depot_url: str, package: str, vcenter_version: str, vcenter_build: str):
        self.depot_url = depot_url
        self.package = package
        self.vcenter_version = vcenter_version
        self.vcenter_build = vcenter_build

    def __repr__(self):
        return (
            f"HADriver(package={self.package!r}, depot_url={self.depot_url!r}, "
            f"vcenter={self.vcenter_version}-{self.vcenter_build})"
        )


class VCenterClient:
    """Minimal vCenter session used to identify the HA agent source"""

    def __init__(self, hostname: str, username: str, password: str):
        self.hostname = hostname
        self.username = username
        self.password = password
        self.si: Optional[vim.ServiceInstance] = None

    def connect(self) -> None:
        """Connect to vCenter Server."""
        try:
            self.si = SmartConnect(
                host=self.hostname,
                user=self.username,
                pwd=self.password,
                disableSslCertValidation=True,
            )
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vCenter {self.hostname}: {e}") from e

        if self.about()["api_type"] != "VirtualCenter":
            self.disconnect()
            raise ValueError(f"{self.hostname} is not a vCenter Server")

    def disconnect(self) -> None:
        """Disconnect from vCenter Server."""
        if self.si:
            Disconnect(self.si)
            self.si = None

    def about(self) -> Dict[str, Any]:
        if not self.si:
            raise ConnectionError("Not connected to vCenter")
        about = self.si.content.about
        return {
            "full_name": about.fullName,
            "version": about.version,
            "build": about.build,
            "api_type": about.apiType,
        }

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()


def ha_depot_url(hostname: str, depot_path: str = "/vSphere-HA-depot") -> str:
    if not depot_path.startswith("/"):
        depot_path = "/" + depot_path
    return f"https://{hostname}{depot_path.rstrip('/')}"


def check_depot(depot_url: str, timeout: int = 10) -> bool:
    """Check that the depot index is served"""
    try:
        response = requests.get(f"{depot_url}/index.xml", verify=False, timeout=timeout)
    except requests.RequestException:
        return False
    return response.status_code == 200


def resolve_ha_driver(config: Dict[str, Any], password: str) -> HADriver:
    """
    Confirm vCenter is reachable and serves the HA depot.

    Args:
        config: Loaded image builder config (vcenter and ha_driver sections)
        password: vCenter password

    Returns:
        HADriver describing the depot URL and package to add

    Raises:
        HADriverError: vCenter not configured, unreachable, or depot missing
    """
    vcenter = config.get("vcenter") or {}
    ha_config = config["ha_driver"]

    hostname = vcenter.get("hostname")
    username = vcenter.get("username")
    if not hostname or not username:
        raise HADriverError(
            "vCenter is not configured (set vcenter.hostname and vcenter.username)"
        )

    try:
        with VCenterClient(hostname, username, password) as client:
            info = client.about()
    except (ConnectionError, ValueError) as e:
        raise HADriverError(str(e)) from e

    depot_url = ha_depot_url(hostname, ha_config["depot_path"])
    if not check_depot(depot_url):
        raise HADriverError(f"HA depot not reachable: {depot_url}")

    return HADriver(depot_url, ha_config["package"], info["version"], info["build"])
