#!/usr/bin/env python3
"""
ESXi Image Build Script Generator
Purpose: Render the PowerCLI build script from the Jinja2 template
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader

from powercli import ps_quote


TEMPLATE_NAME = "build-image.ps1.j2"


class BuildScriptGenerator:
    """Generate the clone/add/remove/export script for one image build"""

    def __init__(self, config_dir: Path):
        self.config_dir = config_dir
        self.template_file = config_dir / TEMPLATE_NAME

        # Setup Jinja2 environment
        self.env = Environment(
            loader=FileSystemLoader(str(self.config_dir)),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["psq"] = ps_quote

    def get_template_vars(
        self,
        config: Dict[str, Any],
        project: str,
        depots: List[str],
        vib_files: List[Path],
        base_profile: str,
        profile_name: str,
        add: List[str],
        remove: List[str],
        bundle_path: Optional[Path],
        iso_path: Optional[Path],
    ) -> Dict[str, Any]:
        """Get template variables for a build"""
        return {
            "project": project,
            "module": config["powershell"]["module"],
            "depots": [str(d) for d in depots],
            "vib_files": [str(v) for v in vib_files],
            "base_profile": base_profile,
            "profile_name": profile_name,
            "vendor": config["vendor"],
            "description": f"{base_profile} customized for {project}",
            "acceptance_level": config["acceptance_level"],
            "no_signature_check": bool(config["no_signature_check"]),
            "add": list(add),
            "remove": list(remove),
            "bundle_path": str(bundle_path) if bundle_path else None,
            "iso_path": str(iso_path) if iso_path else None,
        }

    def render(self, template_vars: Dict[str, Any]) -> str:
        if not self.template_file.exists():
            raise FileNotFoundError(f"Template file not found: {self.template_file}")

        template = self.env.get_template(TEMPLATE_NAME)
        return template.render(**template_vars)

    def write(self, template_vars: Dict[str, Any], output_file: Path) -> Path:
        """Render and write the build script"""
        output_file.write_text(self.render(template_vars), encoding="utf-8")
        return output_file
