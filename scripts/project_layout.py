#!/usr/bin/env python3
"""
Project folder layout for ESXi image builds

Each project lives in its own folder under projects_dir:

    <project>/
        Source/            base offline bundles (*.zip)
        VIBs/              driver depots (*.zip) and loose packages (*.vib)
        Output/            exported bundle, ISO and the generated build script
        exclude-vibs.txt   optional, one package name per line
"""

import re
from pathlib import Path
from typing import List

SOURCE_DIR = "Source"
VIBS_DIR = "VIBs"
OUTPUT_DIR = "Output"
EXCLUDE_FILE = "exclude-vibs.txt"

MAX_PROJECT_NAME = 64
MAX_PROFILE_NAME = 128
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def is_valid_project_name(name: str) -> bool:
    """Project names become folder and profile names, keep them plain"""
    return len(name) <= MAX_PROJECT_NAME and bool(_NAME_RE.match(name))


def is_valid_profile_name(name: str) -> bool:
    """Profile names are also used as output file names"""
    return len(name) <= MAX_PROFILE_NAME and bool(_NAME_RE.match(name))


def list_projects(projects_dir: Path) -> List[Path]:
    """List existing project folders (sorted by name)"""
    if not projects_dir.is_dir():
        return []
    return sorted(
        (p for p in projects_dir.iterdir() if p.is_dir() and not p.name.startswith(".")),
        key=lambda p: p.name.lower(),
    )


def _files(directory: Path, pattern: str) -> List[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


class ProjectLayout:
    """Paths and file discovery for a single project folder"""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.name = self.root.name

    @property
    def source_dir(self) -> Path:
        return self.root / SOURCE_DIR

    @property
    def vibs_dir(self) -> Path:
        return self.root / VIBS_DIR

    @property
    def output_dir(self) -> Path:
        return self.root / OUTPUT_DIR

    @property
    def exclude_file(self) -> Path:
        return self.root / EXCLUDE_FILE

    def exists(self) -> bool:
        return self.root.is_dir()

    def missing_dirs(self) -> List[Path]:
        return [
            d for d in (self.source_dir, self.vibs_dir, self.output_dir) if not d.is_dir()
        ]

    def create(self, dry_run: bool = False) -> List[Path]:
        """Create the project folder and any missing subfolders"""
        created = []
        if not self.root.is_dir():
            created.append(self.root)
        created.extend(self.missing_dirs())

        if not dry_run:
            for directory in created:
                directory.mkdir(parents=True, exist_ok=True)
        return created

    def source_bundles(self) -> List[Path]:
        return _files(self.source_dir, "*.zip")

    def vib_depots(self) -> List[Path]:
        return _files(self.vibs_dir, "*.zip")

    def vib_files(self) -> List[Path]:
        return _files(self.vibs_dir, "*.vib")

    def has_staged_vibs(self) -> bool:
        return bool(self.vib_depots() or self.vib_files())

    def read_exclusions(self) -> List[str]:
        """Read package names from exclude-vibs.txt (missing file means none)"""
        if not self.exclude_file.is_file():
            return []

        names: List[str] = []
        for line in self.exclude_file.read_text(encoding="utf-8").splitlines():
            name = line.split("#", 1)[0].strip()
            if name and name not in names:
                names.append(name)
        return names

    def source_bundle_path(self, profile_name: str) -> Path:
        return self.source_dir / f"{profile_name}.zip"

    def bundle_path(self, profile_name: str) -> Path:
        return self.output_dir / f"{profile_name}.zip"

    def iso_path(self, profile_name: str) -> Path:
        return self.output_dir / f"{profile_name}.iso"

    def build_script_path(self, profile_name: str) -> Path:
        return self.output_dir / f"{profile_name}-build.ps1"
