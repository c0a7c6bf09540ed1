#!/usr/bin/env python3
"""
ESXi Custom Image Builder
Purpose: Build a custom ESXi offline bundle and ISO by cloning a base image
profile and adding driver VIBs (optionally the vSphere HA agent from vCenter)

Steps (each gated by a prompt):
  1. Check pwsh and the VMware.ImageBuilder module
  2. Select or create a project folder (Source/, VIBs/, Output/)
  3. Pick a base offline bundle from Source/ or download one from the online depot
  4. Confirm the driver VIBs are staged in VIBs/
  5. Optionally add the HA agent depot served by vCenter
  6. Pick the base image profile and name the clone
  7. Plan package changes (add / skip / exclude / remove)
  8. Export the offline bundle and ISO to Output/
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Add scripts directory to path for sibling imports
sys.path.insert(0, str(Path(__file__).parent))

# pylint: disable=wrong-import-position
from build_script import BuildScriptGenerator
from console import (
    Colors,
    UserAbort,
    ask_text,
    ask_yes_no,
    choose_from_list,
    print_banner,
    print_message,
    setup_log,
)
from ha_driver import HADriver, HADriverError, resolve_ha_driver
from image_config import DEFAULT_CONFIG_FILE, PROJECT_ROOT, load_config
from image_secrets import resolve_vcenter_password
from powercli import PowerCLIError, PowerCLIRunner, package_names
from project_layout import (
    ProjectLayout,
    is_valid_profile_name,
    is_valid_project_name,
    list_projects,
)
from vib_plan import VibPlan, plan_vib_changes


class ImageBuildError(Exception):
    """A build step failed"""


class ImageBuilder:
    """Interactive ESXi image build for one project"""

    def __init__(
        self,
        config: Dict[str, Any],
        runner: PowerCLIRunner,
        skip_confirm: bool = False,
        dry_run: bool = False,
        generator: Optional[BuildScriptGenerator] = None,
    ):
        self.config = config
        self.runner = runner
        self.skip_confirm = skip_confirm
        self.dry_run = dry_run
        self.generator = generator or BuildScriptGenerator(
            config["project_root"] / "config"
        )

    # Step 1
    def check_environment(self) -> str:
        """Verify pwsh and the Image Builder module are available"""
        print_message(Colors.YELLOW, "Checking PowerCLI environment...")

        executable = self.runner.find_executable()
        if not executable:
            raise ImageBuildError(
                f"PowerShell executable not found: {self.runner.executable} "
                "(install PowerShell 7 or set powershell.executable)"
            )
        print_message(Colors.GREEN, f"✓ PowerShell: {executable}")

        try:
            version = self.runner.module_version()
        except PowerCLIError as e:
            raise ImageBuildError(str(e)) from e

        print_message(Colors.GREEN, f"✓ {self.runner.module} {version}")
        print()
        return version

    # Step 2
    def select_project(self, name: Optional[str] = None) -> ProjectLayout:
        """Select an existing project folder or create a new one"""
        projects_dir = self.config["projects_path"]

        if name is None:
            projects = list_projects(projects_dir)
            if projects:
                choice = choose_from_list(
                    f"Projects in {projects_dir}:",
                    [p.name for p in projects],
                    allow_new=True,
                    new_label="Create new project",
                )
            else:
                print_message(Colors.YELLOW, f"No projects found in {projects_dir}")
                choice = "new"

            if choice == "new":
                name = ask_text(
                    "New project name",
                    validator=is_valid_project_name,
                    error="Invalid project name (letters, digits, '.', '_', '-')",
                )
            else:
                name = projects[choice].name
        elif not is_valid_project_name(name):
            raise ImageBuildError(f"Invalid project name: {name}")

        layout = ProjectLayout(projects_dir / name)

        if not layout.exists():
            if not ask_yes_no(
                f"Project '{name}' does not exist. Create it?", self.skip_confirm
            ):
                raise UserAbort()

        try:
            created = layout.create(dry_run=self.dry_run)
        except OSError as e:
            raise ImageBuildError(f"Cannot create project folders: {e}") from e
        for directory in created:
            if self.dry_run:
                print(f"{Colors.BLUE}[DRY RUN]{Colors.NC} Would create: {directory}")
            else:
                print_message(Colors.GREEN, f"✓ Created: {directory}")

        print_message(Colors.GREEN, f"✓ Project: {layout.root}")
        print()
        return layout

    # Step 3
    def acquire_source(
        self,
        layout: ProjectLayout,
        source: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> Tuple[str, Optional[str]]:
        """
        Pick the depot holding the base image.

        Returns:
            (depot, profile) where depot is a local offline bundle path (or the
            online depot URL in dry-run mode) and profile is the image profile
            already chosen from the online depot, if any
        """
        if source != "online":
            bundles = layout.source_bundles()
            if bundles:
                if len(bundles) == 1 and source == "local":
                    print_message(Colors.GREEN, f"✓ Source bundle: {bundles[0].name}")
                    return str(bundles[0]), None

                choice = choose_from_list(
                    f"Offline bundles in {layout.source_dir}:",
                    [b.name for b in bundles],
                    allow_new=source is None,
                    new_label="Download from the VMware online depot",
                )
                if choice != "new":
                    print_message(Colors.GREEN, f"✓ Source bundle: {bundles[choice].name}")
                    return str(bundles[choice]), None
            else:
                print_message(
                    Colors.YELLOW, f"No offline bundles (*.zip) in {layout.source_dir}"
                )
                if source == "local":
                    raise ImageBuildError(
                        f"Copy an ESXi offline bundle to {layout.source_dir} and re-run"
                    )
                if not ask_yes_no(
                    "Download a base image from the VMware online depot?",
                    self.skip_confirm,
                    default=True,
                ):
                    raise ImageBuildError(
                        f"Copy an ESXi offline bundle to {layout.source_dir} and re-run"
                    )

        return self._download_online_profile(layout, profile)

    def _download_online_profile(
        self, layout: ProjectLayout, profile: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        online_depot = self.config["online_depot"]
        name_filter = self.config["online_profile_filter"]

        print_message(Colors.YELLOW, f"Loading online depot {online_depot}...")
        print_message(Colors.YELLOW, "This may take a few minutes...")
        try:
            profiles = [
                p["Name"]
                for p in self.runner.list_image_profiles([online_depot], name_filter)
            ]
        except PowerCLIError as e:
            raise ImageBuildError(f"Failed to load online depot: {e}") from e

        if not profiles:
            raise ImageBuildError(
                f"No image profiles match '{name_filter}' in {online_depot}"
            )

        if profile:
            if profile not in profiles:
                raise ImageBuildError(f"Image profile not found in online depot: {profile}")
        else:
            profile = profiles[choose_from_list("Online image profiles:", profiles)]

        target = layout.source_bundle_path(profile)
        if target.exists() and ask_yes_no(
            f"{target.name} was already downloaded. Use it?", self.skip_confirm, default=True
        ):
            return str(target), profile

        if self.dry_run:
            print(
                f"{Colors.BLUE}[DRY RUN]{Colors.NC} Would export {profile} to {target}"
            )
            return online_depot, profile

        print_message(Colors.YELLOW, f"Downloading {profile} to {target}...")
        try:
            self.runner.export_profile_bundle([online_depot], profile, target)
        except PowerCLIError as e:
            raise ImageBuildError(f"Failed to download {profile}: {e}") from e

        print_message(Colors.GREEN, f"✓ Saved: {target}")
        return str(target), profile

    # Step 4
    def wait_for_vibs(self, layout: ProjectLayout) -> Tuple[List[Path], List[Path]]:
        """Show staged VIBs and wait until the user confirms staging is complete"""
        while True:
            depots = layout.vib_depots()
            vib_files = layout.vib_files()

            print()
            print_message(Colors.YELLOW, f"Staged in {layout.vibs_dir}:")
            for path in depots + vib_files:
                print(f"  - {path.name}")
            if not depots and not vib_files:
                print("  (nothing staged)")
            print()

            if ask_yes_no("Have all VIBs been copied to the VIBs folder?", self.skip_confirm):
                break
            input(f"Copy the VIBs to {layout.vibs_dir} and press Enter to rescan...")

        if not depots and not vib_files:
            if not ask_yes_no(
                "No VIBs staged. Continue without additional drivers?", self.skip_confirm
            ):
                raise UserAbort()

        return depots, vib_files

    # Step 5
    def resolve_ha(self, include_ha: Optional[bool] = None) -> Optional[HADriver]:
        """Optionally locate the HA agent depot on vCenter"""
        if include_ha is None:
            if not self.config.get("vcenter", {}).get("hostname"):
                return None
            # --yes never opts into HA; pass --ha for that
            if self.skip_confirm:
                print_message(Colors.YELLOW, "Skipping HA agent (use --ha to include it)")
                return None
            include_ha = ask_yes_no(
                f"Add the vSphere HA agent ({self.config['ha_driver']['package']}) "
                f"from vCenter {self.config['vcenter']['hostname']}?",
                default=False,
            )
        if not include_ha:
            return None

        password = resolve_vcenter_password(self.config)
        print_message(Colors.YELLOW, "Connecting to vCenter...")
        try:
            driver = resolve_ha_driver(self.config, password)
        except HADriverError as e:
            raise ImageBuildError(f"HA agent unavailable: {e}") from e

        print_message(
            Colors.GREEN,
            f"✓ vCenter {driver.vcenter_version} (build {driver.vcenter_build})",
        )
        print_message(Colors.GREEN, f"✓ HA depot: {driver.depot_url}")
        return driver

    # Step 6
    def select_base_profile(self, depot: str, profile: Optional[str] = None) -> str:
        """Pick the image profile to clone from the source depot"""
        print_message(Colors.YELLOW, f"Loading source depot {Path(depot).name}...")
        try:
            profiles = [p["Name"] for p in self.runner.list_image_profiles([depot])]
        except PowerCLIError as e:
            raise ImageBuildError(f"Failed to load source depot: {e}") from e

        if not profiles:
            raise ImageBuildError(f"No image profiles found in {depot}")

        if profile:
            if profile not in profiles:
                raise ImageBuildError(f"Image profile not found in source: {profile}")
        elif len(profiles) == 1:
            profile = profiles[0]
        else:
            profile = profiles[choose_from_list("Image profiles in source:", profiles)]

        print_message(Colors.GREEN, f"✓ Base profile: {profile}")
        return profile

    def choose_profile_name(
        self, layout: ProjectLayout, base_profile: str, name: Optional[str] = None
    ) -> str:
        """Name the cloned profile (also the output file name)"""
        if name is None:
            default = f"{base_profile}-{layout.name}"
            if self.skip_confirm:
                name = default
            else:
                name = ask_text(
                    "Name for the new image profile",
                    default=default,
                    validator=lambda value: is_valid_profile_name(value)
                    and value != base_profile,
                    error="Invalid profile name",
                )

        if not is_valid_profile_name(name):
            raise ImageBuildError(f"Invalid profile name: {name}")
        if name == base_profile:
            raise ImageBuildError("The new profile name must differ from the base profile")
        return name

    # Step 7
    def plan_packages(
        self,
        layout: ProjectLayout,
        source_depot: str,
        base_profile: str,
        vib_depots: List[Path],
        vib_files: List[Path],
        ha_driver: Optional[HADriver],
    ) -> VibPlan:
        """Compare packages in the base profile with the staged packages"""
        print_message(Colors.YELLOW, "Reading package lists...")
        try:
            installed = package_names(
                self.runner.list_profile_packages([source_depot], base_profile)
            )
            desired = package_names(self.runner.list_depot_packages(vib_depots))
            desired += package_names(self.runner.list_vib_files(vib_files))
        except PowerCLIError as e:
            raise ImageBuildError(f"Failed to read packages: {e}") from e

        if ha_driver:
            desired.append(ha_driver.package)

        excluded = list(self.config["excluded_vibs"])
        try:
            project_exclusions = layout.read_exclusions()
        except (OSError, UnicodeDecodeError) as e:
            raise ImageBuildError(f"Cannot read {layout.exclude_file}: {e}") from e
        excluded += [n for n in project_exclusions if n not in excluded]

        plan = plan_vib_changes(installed, desired, excluded)

        print()
        print(f"{Colors.BLUE}Package plan ({len(installed)} packages in {base_profile}):{Colors.NC}")
        for line in plan.summary_lines():
            print(f"  {line}")

        print()
        return plan

    # Step 8
    def confirm_outputs(
        self,
        layout: ProjectLayout,
        profile_name: str,
        want_bundle: bool = True,
        want_iso: bool = True,
    ) -> Tuple[Optional[Path], Optional[Path]]:
        """Resolve output paths, asking before replacing existing files"""
        outputs = []
        for wanted, path in (
            (want_bundle, layout.bundle_path(profile_name)),
            (want_iso, layout.iso_path(profile_name)),
        ):
            if not wanted:
                outputs.append(None)
            elif path.exists() and not ask_yes_no(
                f"{path} already exists. Replace it?", self.skip_confirm
            ):
                print_message(Colors.YELLOW, f"Skipping {path.name}")
                outputs.append(None)
            else:
                outputs.append(path)

        return outputs[0], outputs[1]

    def build(
        self,
        layout: ProjectLayout,
        depots: List[str],
        vib_files: List[Path],
        base_profile: str,
        profile_name: str,
        plan: VibPlan,
        bundle_path: Optional[Path],
        iso_path: Optional[Path],
    ) -> Optional[Path]:
        """Render and run the build script, returns the script path"""
        template_vars = self.generator.get_template_vars(
            self.config,
            layout.name,
            depots,
            vib_files,
            base_profile,
            profile_name,
            plan.to_add,
            plan.to_remove,
            bundle_path,
            iso_path,
        )

        try:
            if self.dry_run:
                print(f"{Colors.BLUE}[DRY RUN]{Colors.NC} Build script:")
                print(self.generator.render(template_vars))
                return None

            script_path = self.generator.write(
                template_vars, layout.build_script_path(profile_name)
            )
        except OSError as e:
            raise ImageBuildError(f"Failed to write build script: {e}") from e

        print_message(Colors.GREEN, f"✓ Build script: {script_path}")
        print_message(Colors.YELLOW, "Building image (this may take 10-20 minutes)...")
        print()

        try:
            returncode = self.runner.run_file(script_path)
        except PowerCLIError as e:
            raise ImageBuildError(str(e)) from e
        if returncode != 0:
            raise ImageBuildError(f"Build script failed (exit {returncode}): {script_path}")

        for path in (bundle_path, iso_path):
            if path and not path.exists():
                raise ImageBuildError(f"Expected output was not created: {path}")
        return script_path

    def run(self, args: argparse.Namespace) -> int:
        if self.dry_run:
            print_message(Colors.YELLOW, "========================================")
            print_message(Colors.YELLOW, "DRY RUN MODE - No changes will be made")
            print_message(Colors.YELLOW, "========================================\n")

        self.check_environment()
        layout = self.select_project(args.project)
        source_depot, online_profile = self.acquire_source(
            layout, args.source, args.profile
        )
        vib_depots, vib_files = self.wait_for_vibs(layout)
        ha_driver = self.resolve_ha(args.ha)

        base_profile = self.select_base_profile(
            source_depot, online_profile or args.profile
        )
        profile_name = self.choose_profile_name(layout, base_profile, args.name)
        plan = self.plan_packages(
            layout, source_depot, base_profile, vib_depots, vib_files, ha_driver
        )

        bundle_path, iso_path = self.confirm_outputs(
            layout, profile_name, not args.no_bundle, not args.no_iso
        )
        if not bundle_path and not iso_path:
            print_message(Colors.YELLOW, "Nothing to export, stopping")
            return 0

        depots = [source_depot] + [str(d) for d in vib_depots]
        if ha_driver:
            depots.append(ha_driver.depot_url)

        print(f"{Colors.BLUE}Build Plan:{Colors.NC}")
        print(f"  Project:        {layout.name}")
        print(f"  Base profile:   {base_profile}")
        print(f"  New profile:    {profile_name}")
        print(f"  Vendor:         {self.config['vendor']}")
        print(f"  Acceptance:     {self.config['acceptance_level']}")
        print(f"  HA agent:       {'yes' if ha_driver else 'no'}")
        print(f"  Offline bundle: {bundle_path or '(skipped)'}")
        print(f"  ISO:            {iso_path or '(skipped)'}")
        print()

        if not self.dry_run and not ask_yes_no("Start the build?", self.skip_confirm):
            raise UserAbort()

        script_path = self.build(
            layout,
            depots,
            vib_files,
            base_profile,
            profile_name,
            plan,
            bundle_path,
            iso_path,
        )

        if script_path:
            print()
            print_banner("Image Build Complete!")
            for path in (bundle_path, iso_path):
                if path:
                    size_mb = path.stat().st_size / (1024 * 1024)
                    print(f"  {path} ({size_mb:.1f} MB)")
            print()
        return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build a custom ESXi offline bundle and ISO with PowerCLI Image Builder",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Fully interactive
  %(prog)s --project r740 --source local    # Use the bundle in projects/r740/Source
  %(prog)s --project nuc --source online --profile ESXi-8.0U3-24022510-standard
  %(prog)s --project nuc --ha               # Add the HA agent from vCenter
  %(prog)s --project nuc --dry-run          # Print the build script only
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to YAML config file (default: config/image-builder.yaml)",
    )
    parser.add_argument("-p", "--project", help="Project folder name")
    parser.add_argument(
        "--source",
        choices=["local", "online"],
        help="Base image source: offline bundle in Source/ or the online depot",
    )
    parser.add_argument("--profile", help="Base image profile name")
    parser.add_argument("--name", help="Name of the new image profile")

    ha_group = parser.add_mutually_exclusive_group()
    ha_group.add_argument(
        "--ha",
        dest="ha",
        action="store_true",
        default=None,
        help="Add the vSphere HA agent from vCenter",
    )
    ha_group.add_argument(
        "--no-ha", dest="ha", action="store_false", help="Do not add the HA agent"
    )

    parser.add_argument(
        "--no-bundle", action="store_true", help="Do not export the offline bundle"
    )
    parser.add_argument("--no-iso", action="store_true", help="Do not export the ISO")
    parser.add_argument(
        "-y", "--yes", action="store_true", help="Skip confirmation prompts"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve everything and print the build script without exporting",
    )
    parser.add_argument("--log", help="Write a log file")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_bundle and args.no_iso:
        parser.error("--no-bundle and --no-iso together leave nothing to build")

    log_file = setup_log(args.log)

    config = load_config(args.config if args.config else DEFAULT_CONFIG_FILE)
    runner = PowerCLIRunner(
        executable=config["powershell"]["executable"],
        module=config["powershell"]["module"],
        timeout=config["powershell"]["timeout"],
    )

    print_banner("ESXi Custom Image Builder")

    builder = ImageBuilder(
        config,
        runner,
        skip_confirm=args.yes,
        dry_run=args.dry_run,
        generator=BuildScriptGenerator(PROJECT_ROOT / "config"),
    )
    try:
        result = builder.run(args)
        if log_file:
            print_message(Colors.BLUE, f"Log saved to: {log_file}")
        return result
    except KeyboardInterrupt:
        print()
        print_message(Colors.YELLOW, "Operation cancelled by user")
        return 130
    except UserAbort:
        print_message(Colors.RED, "Operation cancelled by user")
        return 1
    except ImageBuildError as e:
        print_message(Colors.RED, f"ERROR: {e}")
        if log_file:
            print_message(Colors.BLUE, f"Check log for details: {log_file}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
