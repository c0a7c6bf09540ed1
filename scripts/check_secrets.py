#!/usr/bin/env python3
"""
Check Secrets Status
Purpose: Display where the vCenter password for the HA agent download will come from
"""

import sys
from pathlib import Path

# Add scripts directory to path
sys.path.insert(0, str(Path(__file__).parent))

# pylint: disable=wrong-import-position
from image_secrets import SecretsManager


def main():
    """
    Print the secrets status report for this project.

    The report lists the lookup order used for the vCenter password and
    marks which of the sources are currently available. Nothing is prompted
    for and no secret value is printed.
    """
    script_dir = Path(__file__).resolve().parent
    project_dir = script_dir.parent

    secrets_mgr = SecretsManager(project_dir)

    print("\n" + "=" * 60)
    print("ESXi Image Builder Secrets Status")
    print("=" * 60 + "\n")

    print(secrets_mgr.get_secrets_info())

    print("\n" + "=" * 60 + "\n")


if __name__ == "__main__":
    main()
