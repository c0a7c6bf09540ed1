"""Tests for build_esxi_image.py

The PowerCLI runner is a MagicMock and prompts are answered by patching
builtins.input, so the whole interactive flow runs without pwsh.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from build_esxi_image import ImageBuildError, ImageBuilder, create_parser, main
from build_script import BuildScriptGenerator
from console import UserAbort
from ha_driver import HADriver, HADriverError
from image_config import PROJECT_ROOT, apply_defaults
from powercli import PowerCLIError
from project_layout import ProjectLayout

BASE = "ESXi-8.0U3-24022510-standard"


@pytest.fixture
def config(tmp_path):
    return apply_defaults({"vendor": "Homelab", "excluded_vibs": ["lsi-mr3"]}, tmp_path)


@pytest.fixture
def runner():
    mock_runner = MagicMock()
    mock_runner.executable = "pwsh"
    mock_runner.module = "VMware.ImageBuilder"
    mock_runner.find_executable.return_value = "/usr/bin/pwsh"
    mock_runner.module_version.return_value = "8.3.0"
    mock_runner.list_image_profiles.return_value = [{"Name": BASE}]
    mock_runner.list_profile_packages.return_value = [
        {"Name": "esx-base"},
        {"Name": "vmkusb"},
        {"Name": "lsi-mr3"},
    ]
    mock_runner.list_depot_packages.return_value = []
    mock_runner.list_vib_files.return_value = []
    return mock_runner


def make_builder(config, runner, **kwargs):
    return ImageBuilder(
        config, runner, generator=BuildScriptGenerator(PROJECT_ROOT / "config"), **kwargs
    )


@pytest.fixture
def layout(config):
    project = ProjectLayout(config["projects_path"] / "lab")
    project.create()
    return project


class TestCheckEnvironment:
    def test_ok(self, config, runner):
        assert make_builder(config, runner).check_environment() == "8.3.0"

    def test_missing_pwsh(self, config, runner):
        runner.find_executable.return_value = None
        with pytest.raises(ImageBuildError, match="PowerShell executable not found"):
            make_builder(config, runner).check_environment()

    def test_missing_module(self, config, runner):
        runner.module_version.side_effect = PowerCLIError("module not installed")
        with pytest.raises(ImageBuildError, match="not installed"):
            make_builder(config, runner).check_environment()


class TestSelectProject:
    def test_create_named_project(self, config, runner):
        layout = make_builder(config, runner, skip_confirm=True).select_project("lab")

        assert layout.root == config["projects_path"] / "lab"
        assert layout.missing_dirs() == []

    def test_decline_creation(self, config, runner):
        with patch("builtins.input", return_value="no"):
            with pytest.raises(UserAbort):
                make_builder(config, runner).select_project("lab")
        assert not (config["projects_path"] / "lab").exists()

    def test_invalid_name(self, config, runner):
        with pytest.raises(ImageBuildError, match="Invalid project name"):
            make_builder(config, runner).select_project("../etc")

    def test_pick_existing(self, config, runner, layout):
        (config["projects_path"] / "other").mkdir()
        with patch("builtins.input", return_value="1"):
            selected = make_builder(config, runner).select_project()
        assert selected.root == layout.root

    def test_create_from_menu(self, config, runner, layout):
        with patch("builtins.input", side_effect=["n", "bad name", "nuc", "yes"]):
            selected = make_builder(config, runner).select_project()
        assert selected.name == "nuc"
        assert selected.source_dir.is_dir()

    def test_dry_run_creates_nothing(self, config, runner):
        make_builder(config, runner, skip_confirm=True, dry_run=True).select_project("lab")
        assert not (config["projects_path"] / "lab").exists()


class TestAcquireSource:
    def test_single_local_bundle(self, config, runner, layout):
        bundle = layout.source_dir / "VMware-ESXi-8.0U3-depot.zip"
        bundle.write_bytes(b"")

        depot, profile = make_builder(config, runner).acquire_source(layout, "local")

        assert depot == str(bundle)
        assert profile is None

    def test_pick_local_bundle(self, config, runner, layout):
        (layout.source_dir / "a.zip").write_bytes(b"")
        (layout.source_dir / "b.zip").write_bytes(b"")

        with patch("builtins.input", return_value="2"):
            depot, _ = make_builder(config, runner).acquire_source(layout)

        assert Path(depot).name == "b.zip"

    def test_local_required_but_missing(self, config, runner, layout):
        with pytest.raises(ImageBuildError, match="Copy an ESXi offline bundle"):
            make_builder(config, runner).acquire_source(layout, "local")

    def test_online_download(self, config, runner, layout):
        with patch("builtins.input", return_value="1"):
            depot, profile = make_builder(config, runner).acquire_source(layout, "online")

        target = layout.source_bundle_path(BASE)
        assert (depot, profile) == (str(target), BASE)
        runner.export_profile_bundle.assert_called_once_with(
            [config["online_depot"]], BASE, target
        )

    def test_online_reuses_download(self, config, runner, layout):
        layout.source_bundle_path(BASE).write_bytes(b"")

        depot, _ = make_builder(config, runner, skip_confirm=True).acquire_source(
            layout, "online", BASE
        )

        assert depot == str(layout.source_bundle_path(BASE))
        runner.export_profile_bundle.assert_not_called()

    def test_online_unknown_profile(self, config, runner, layout):
        with pytest.raises(ImageBuildError, match="not found in online depot"):
            make_builder(config, runner).acquire_source(layout, "online", "ESXi-6.7")

    def test_online_dry_run_uses_depot_directly(self, config, runner, layout):
        depot, profile = make_builder(config, runner, dry_run=True).acquire_source(
            layout, "online", BASE
        )
        assert depot == config["online_depot"]
        assert profile == BASE
        runner.export_profile_bundle.assert_not_called()

    def test_offer_online_when_source_empty(self, config, runner, layout):
        with patch("builtins.input", side_effect=["", "1"]):
            depot, _ = make_builder(config, runner).acquire_source(layout)
        assert depot == str(layout.source_bundle_path(BASE))


class TestWaitForVibs:
    def test_rescan_until_confirmed(self, config, runner, layout):
        answers = iter(["no", "", "yes"])

        def fake_input(prompt):
            answer = next(answers)
            if prompt.startswith("Copy the VIBs"):
                (layout.vibs_dir / "net-community.zip").write_bytes(b"")
            return answer

        with patch("builtins.input", side_effect=fake_input):
            depots, vib_files = make_builder(config, runner).wait_for_vibs(layout)

        assert [d.name for d in depots] == ["net-community.zip"]
        assert vib_files == []

    def test_nothing_staged_declined(self, config, runner, layout):
        with patch("builtins.input", side_effect=["yes", "no"]):
            with pytest.raises(UserAbort):
                make_builder(config, runner).wait_for_vibs(layout)

    def test_skip_confirm(self, config, runner, layout):
        (layout.vibs_dir / "nvme.vib").write_bytes(b"")
        with patch("builtins.input") as mock_input:
            _, vib_files = make_builder(config, runner, skip_confirm=True).wait_for_vibs(layout)
        mock_input.assert_not_called()
        assert [v.name for v in vib_files] == ["nvme.vib"]


class TestResolveHA:
    def test_no_vcenter_configured(self, config, runner):
        assert make_builder(config, runner).resolve_ha() is None

    def test_declined(self, config, runner):
        config["vcenter"] = {"hostname": "vc", "username": "u"}
        with patch("builtins.input", return_value=""):
            assert make_builder(config, runner).resolve_ha() is None

    def test_yes_skips_ha_without_prompting(self, config, runner):
        config["vcenter"] = {"hostname": "vc", "username": "u"}
        with patch("builtins.input", side_effect=EOFError) as mock_input:
            builder = make_builder(config, runner, skip_confirm=True)
            assert builder.resolve_ha() is None
        mock_input.assert_not_called()

    def test_requested(self, config, runner):
        driver = HADriver("https://vc/vSphere-HA-depot", "vmware-fdm", "8.0.3", "1")
        with patch("build_esxi_image.resolve_vcenter_password", return_value="pw"), patch(
            "build_esxi_image.resolve_ha_driver", return_value=driver
        ) as mock_resolve:
            assert make_builder(config, runner).resolve_ha(True) is driver
        mock_resolve.assert_called_once_with(config, "pw")

    def test_failure(self, config, runner):
        with patch("build_esxi_image.resolve_vcenter_password", return_value="pw"), patch(
            "build_esxi_image.resolve_ha_driver", side_effect=HADriverError("no depot")
        ):
            with pytest.raises(ImageBuildError, match="HA agent unavailable"):
                make_builder(config, runner).resolve_ha(True)


class TestProfiles:
    def test_single_profile_auto_selected(self, config, runner):
        assert make_builder(config, runner).select_base_profile("/s/base.zip") == BASE

    def test_pick_profile(self, config, runner):
        runner.list_image_profiles.return_value = [
            {"Name": BASE},
            {"Name": "ESXi-8.0U3-24022510-no-tools"},
        ]
        with patch("builtins.input", return_value="2"):
            profile = make_builder(config, runner).select_base_profile("/s/base.zip")
        assert profile == "ESXi-8.0U3-24022510-no-tools"

    def test_unknown_profile(self, config, runner):
        with pytest.raises(ImageBuildError):
            make_builder(config, runner).select_base_profile("/s/base.zip", "ESXi-7.0")

    def test_default_name(self, config, runner, layout):
        name = make_builder(config, runner, skip_confirm=True).choose_profile_name(layout, BASE)
        assert name == f"{BASE}-lab"

    def test_prompted_name_must_differ_from_base(self, config, runner, layout):
        with patch("builtins.input", side_effect=[BASE, "custom-8u3"]):
            name = make_builder(config, runner).choose_profile_name(layout, BASE)
        assert name == "custom-8u3"

    def test_given_name_same_as_base(self, config, runner, layout):
        with pytest.raises(ImageBuildError, match="must differ"):
            make_builder(config, runner).choose_profile_name(layout, BASE, BASE)


class TestPlanPackages:
    def test_plan(self, config, runner, layout):
        layout.exclude_file.write_text("bad-driver\n")
        runner.list_depot_packages.return_value = [
            {"Name": "net-community"},
            {"Name": "vmkusb"},
            {"Name": "bad-driver"},
        ]
        runner.list_vib_files.return_value = [{"Name": "nvme-pci"}]
        driver = HADriver("https://vc/vSphere-HA-depot", "vmware-fdm", "8.0.3", "1")

        plan = make_builder(config, runner).plan_packages(
            layout, "/s/base.zip", BASE, [Path("/v/a.zip")], [Path("/v/n.vib")], driver
        )

        assert plan.to_add == ["net-community", "nvme-pci", "vmware-fdm"]
        assert plan.already_present == ["vmkusb"]
        assert plan.excluded == ["bad-driver"]
        assert plan.to_remove == ["lsi-mr3"]
        runner.list_profile_packages.assert_called_once_with(["/s/base.zip"], BASE)

    def test_unreadable_exclusions(self, config, runner, layout):
        layout.exclude_file.write_bytes(b"\xff\xfe bad-driver\n")
        with pytest.raises(ImageBuildError, match="Cannot read"):
            make_builder(config, runner).plan_packages(
                layout, "/s/base.zip", BASE, [], [], None
            )


class TestConfirmOutputs:
    def test_new_outputs(self, config, runner, layout):
        bundle, iso = make_builder(config, runner).confirm_outputs(layout, "custom")
        assert bundle == layout.bundle_path("custom")
        assert iso == layout.iso_path("custom")

    def test_keep_existing_bundle(self, config, runner, layout):
        layout.bundle_path("custom").write_bytes(b"old")
        with patch("builtins.input", return_value="no"):
            bundle, iso = make_builder(config, runner).confirm_outputs(layout, "custom")
        assert bundle is None
        assert iso == layout.iso_path("custom")

    def test_replace_existing(self, config, runner, layout):
        layout.iso_path("custom").write_bytes(b"old")
        with patch("builtins.input", return_value="yes"):
            _, iso = make_builder(config, runner).confirm_outputs(layout, "custom")
        assert iso == layout.iso_path("custom")

    def test_iso_not_wanted(self, config, runner, layout):
        _, iso = make_builder(config, runner).confirm_outputs(layout, "custom", want_iso=False)
        assert iso is None


class TestRun:
    """End-to-end flow with the mocked runner."""

    def test_dry_run(self, config, runner, capsys):
        args = create_parser().parse_args(
            ["--project", "lab", "--source", "online", "--profile", BASE, "--dry-run", "--yes"]
        )

        assert make_builder(config, runner, skip_confirm=True, dry_run=True).run(args) == 0

        output = capsys.readouterr().out
        assert f"New-EsxImageProfile -CloneProfile '{BASE}'" in output
        assert "Remove-EsxSoftwarePackage -ImageProfile $imageProfile -SoftwarePackage 'lsi-mr3'" in output
        assert not (config["projects_path"] / "lab").exists()
        runner.run_file.assert_not_called()
        runner.export_profile_bundle.assert_not_called()

    def test_build(self, config, runner, layout):
        (layout.source_dir / "base.zip").write_bytes(b"")
        (layout.vibs_dir / "net.zip").write_bytes(b"")
        runner.list_depot_packages.return_value = [{"Name": "net-community"}]
        profile_name = f"{BASE}-lab"

        def fake_build(script_path):
            layout.bundle_path(profile_name).write_bytes(b"zip")
            layout.iso_path(profile_name).write_bytes(b"iso")
            return 0

        runner.run_file.side_effect = fake_build
        args = create_parser().parse_args(["--project", "lab", "--source", "local", "--no-ha", "-y"])

        assert make_builder(config, runner, skip_confirm=True).run(args) == 0

        script_path = layout.build_script_path(profile_name)
        runner.run_file.assert_called_once_with(script_path)
        script = script_path.read_text()
        assert f"Add-EsxSoftwareDepot '{layout.source_dir / 'base.zip'}'" in script
        assert f"Add-EsxSoftwareDepot '{layout.vibs_dir / 'net.zip'}'" in script
        assert "-SoftwarePackage 'net-community'" in script

    def test_build_failure(self, config, runner, layout):
        (layout.source_dir / "base.zip").write_bytes(b"")
        (layout.vibs_dir / "net.zip").write_bytes(b"")
        runner.run_file.return_value = 1
        args = create_parser().parse_args(["--project", "lab", "--source", "local", "-y"])

        with pytest.raises(ImageBuildError, match="Build script failed"):
            make_builder(config, runner, skip_confirm=True).run(args)

    def test_nothing_to_export(self, config, runner, layout):
        (layout.source_dir / "base.zip").write_bytes(b"")
        (layout.vibs_dir / "net.zip").write_bytes(b"")
        layout.iso_path(f"{BASE}-lab").write_bytes(b"old")
        args = create_parser().parse_args(["--project", "lab", "--source", "local", "--no-bundle"])

        answers = iter(["yes", "", "no"])  # VIBs staged, default name, keep ISO
        with patch("builtins.input", side_effect=lambda _prompt: next(answers)):
            assert make_builder(config, runner).run(args) == 0
        runner.run_file.assert_not_called()


class TestMain:
    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "image-builder.yaml"
        path.write_text(yaml.safe_dump({"projects_dir": str(tmp_path / "projects")}))
        return path

    def test_missing_pwsh_exits_1(self, config_file):
        mock_runner = MagicMock()
        mock_runner.find_executable.return_value = None
        with patch("build_esxi_image.PowerCLIRunner", return_value=mock_runner):
            assert main(["--config", str(config_file), "--project", "lab", "-y"]) == 1

    def test_user_abort_exits_1(self, config_file):
        mock_runner = MagicMock()
        mock_runner.find_executable.return_value = "/usr/bin/pwsh"
        mock_runner.module_version.return_value = "8.3.0"
        with patch("build_esxi_image.PowerCLIRunner", return_value=mock_runner), patch(
            "builtins.input", return_value="q"
        ):
            (config_file.parent / "projects" / "lab").mkdir(parents=True)
            assert main(["--config", str(config_file)]) == 1

    def test_no_outputs_is_usage_error(self, config_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(config_file), "--no-bundle", "--no-iso"])
        assert exc_info.value.code == 2

    def test_uncreatable_project_exits_1(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        config_file = tmp_path / "image-builder.yaml"
        config_file.write_text(yaml.safe_dump({"projects_dir": str(blocker)}))
        mock_runner = MagicMock()
        mock_runner.find_executable.return_value = "/usr/bin/pwsh"
        mock_runner.module_version.return_value = "8.3.0"
        with patch("build_esxi_image.PowerCLIRunner", return_value=mock_runner):
            assert main(["--config", str(config_file), "--project", "lab", "-y"]) == 1
