#!/usr/bin/env python3
"""
PowerCLI Image Builder runner
Purpose: Drive VMware.ImageBuilder cmdlets through pwsh subprocesses

Image Builder keeps loaded depots and image profiles in the PowerShell
session, so every query here starts a fresh pwsh that re-adds the depots it
needs. The actual build runs as a single generated script (see build_script).
"""

import json
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from console import log


class PowerCLIError(Exception):
    """A PowerShell invocation failed"""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr

    def __str__(self):
        if self.stderr:
            return f"{self.args[0]}\n{self.stderr.strip()}"
        return self.args[0]


def ps_quote(value: Union[str, Path]) -> str:
    """Quote a value as a single-quoted PowerShell string literal"""
    return "'" + str(value).replace("'", "''") + "'"


def ps_array(values: Iterable[Union[str, Path]]) -> str:
    return "@(" + ",".join(ps_quote(v) for v in values) + ")"


class PowerCLIRunner:
    """Run Image Builder cmdlets in pwsh"""

    def __init__(
        self,
        executable: str = "pwsh",
        module: str = "VMware.ImageBuilder",
        timeout: int = 3600,
    ):
        self.executable = executable
        self.module = module
        self.timeout = int(timeout)

    def find_executable(self) -> Optional[str]:
        return shutil.which(self.executable)

    def _command(self, script: str) -> List[str]:
        return [self.executable, "-NoProfile", "-NonInteractive", "-Command", script]

    def _preamble(self, depots: Iterable[Union[str, Path]] = ()) -> str:
        lines = [
            "$ErrorActionPreference = 'Stop'",
            "$ProgressPreference = 'SilentlyContinue'",
            f"Import-Module {ps_quote(self.module)}",
        ]
        for depot in depots:
            lines.append(f"Add-EsxSoftwareDepot {ps_quote(depot)} | Out-Null")
        return "\n".join(lines)

    def run_raw(self, script: str) -> str:
        """Run a script as-is and return stdout"""
        try:
            result = subprocess.run(
                self._command(script),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError:
            raise PowerCLIError(f"PowerShell not found: {self.executable}") from None
        except subprocess.TimeoutExpired:
            raise PowerCLIError(
                f"PowerShell command timed out after {self.timeout}s"
            ) from None

        if result.returncode != 0:
            raise PowerCLIError(
                f"PowerShell command failed (exit {result.returncode})", result.stderr
            )
        return result.stdout

    def run(self, script: str, depots: Iterable[Union[str, Path]] = ()) -> str:
        """Run a script after importing the module and adding depots, return stdout"""
        log(f"pwsh: {script}")
        return self.run_raw(self._preamble(depots) + "\n" + script)

    def run_json(
        self, script: str, depots: Iterable[Union[str, Path]] = ()
    ) -> List[Dict[str, Any]]:
        """Run a pipeline and parse its ConvertTo-Json output into a list"""
        output = self.run(
            f"{script} | ConvertTo-Json -Depth 4 -Compress", depots
        ).strip()
        if not output:
            return []

        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise PowerCLIError(f"Could not parse PowerShell output: {e}") from None

        # A single object is not wrapped in an array
        if isinstance(data, dict):
            return [data]
        return list(data)

    def run_file(self, script_path: Path) -> int:
        """Run a .ps1 file with output streamed to the terminal"""
        log(f"pwsh -File {script_path}")
        try:
            result = subprocess.run(
                [
                    self.executable,
                    "-NoProfile",
                    "-NonInteractive",
                    "-ExecutionPolicy",
                    "Bypass",
                    "-File",
                    str(script_path),
                ],
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError:
            raise PowerCLIError(f"PowerShell not found: {self.executable}") from None
        except subprocess.TimeoutExpired:
            raise PowerCLIError(f"Build script timed out after {self.timeout}s") from None
        return result.returncode

    def module_version(self) -> str:
        """Return the installed Image Builder module version"""
        output = self.run_raw(
            f"(Get-Module -ListAvailable -Name {ps_quote(self.module)} | "
            "Sort-Object Version -Descending | Select-Object -First 1).Version.ToString()"
        ).strip()
        if not output:
            raise PowerCLIError(
                f"PowerShell module {self.module} is not installed "
                f"(Install-Module {self.module})"
            )
        return output

    def list_image_profiles(
        self, depots: Iterable[Union[str, Path]], name_filter: str = ""
    ) -> List[Dict[str, Any]]:
        """List image profiles in the given depots, sorted by name"""
        profiles = self.run_json(
            "Get-EsxImageProfile | Select-Object Name, Vendor, "
            "@{n='AcceptanceLevel';e={[string]$_.AcceptanceLevel}}",
            depots,
        )
        if name_filter:
            needle = name_filter.lower()
            profiles = [p for p in profiles if needle in str(p.get("Name", "")).lower()]
        return sorted(profiles, key=lambda p: str(p.get("Name", "")))

    def list_depot_packages(
        self, depots: Iterable[Union[str, Path]]
    ) -> List[Dict[str, Any]]:
        """List packages in the given depots (newest version of each name)"""
        depots = list(depots)
        if not depots:
            return []
        return self.run_json(
            "Get-EsxSoftwarePackage -Newest | Select-Object Name, Version, Vendor",
            depots,
        )

    def list_vib_files(self, vib_files: Iterable[Union[str, Path]]) -> List[Dict[str, Any]]:
        """Read package metadata from loose .vib files"""
        vib_files = list(vib_files)
        if not vib_files:
            return []
        return self.run_json(
            f"Get-EsxSoftwarePackage -PackageFilePath {ps_array(vib_files)} | "
            "Select-Object Name, Version, Vendor"
        )

    def list_profile_packages(
        self, depots: Iterable[Union[str, Path]], profile_name: str
    ) -> List[Dict[str, Any]]:
        """List the packages contained in an image profile"""
        return self.run_json(
            f"(Get-EsxImageProfile -Name {ps_quote(profile_name)}).VibList | "
            "Select-Object Name, Version",
            depots,
        )

    def export_profile_bundle(
        self, depots: Iterable[Union[str, Path]], profile_name: str, bundle_path: Path
    ):
        """Export an image profile from the given depots as an offline bundle"""
        self.run(
            f"Export-EsxImageProfile -ImageProfile {ps_quote(profile_name)} "
            f"-ExportToBundle -FilePath {ps_quote(bundle_path)} -Force | Out-Null",
            depots,
        )


def package_names(packages: Iterable[Dict[str, Any]]) -> List[str]:
    """Extract package names from cmdlet output rows"""
    return [str(p["Name"]) for p in packages if p.get("Name")]
