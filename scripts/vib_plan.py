#!/usr/bin/env python3
"""
VIB change planning

Compares the packages already in the base image profile with the packages
staged for the build and the exclusion list. Matching is by package name
only, there is no dependency or version resolution.
"""

from typing import Iterable, List


class VibPlan:
    """Result of comparing installed, desired and excluded package names"""

    def __init__(self):
        self.to_add: List[str] = []
        self.already_present: List[str] = []
        self.excluded: List[str] = []
        self.to_remove: List[str] = []

    @property
    def has_changes(self) -> bool:
        return bool(self.to_add or self.to_remove)

    def summary_lines(self) -> List[str]:
        lines = []
        sections = [
            ("Add", self.to_add),
            ("Skip (already in image)", self.already_present),
            ("Skip (excluded)", self.excluded),
            ("Remove (excluded)", self.to_remove),
        ]
        for label, names in sections:
            lines.append(f"{label}: {len(names)}")
            for name in names:
                lines.append(f"  - {name}")
        return lines


def _unique(names: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for name in names:
        if name not in seen:
            seen.add(name)
            result.append(name)
    return result


def plan_vib_changes(
    installed: Iterable[str], desired: Iterable[str], excluded: Iterable[str]
) -> VibPlan:
    """
    Decide which packages to add to, skip for, or remove from the cloned profile.

    Args:
        installed: Package names in the base image profile
        desired: Package names from the staged depots and loose VIBs
        excluded: Package names that must not end up in the image

    Returns:
        VibPlan where every desired name is in exactly one of to_add,
        already_present or excluded, and to_remove holds the installed
        packages that are excluded (in installed order)
    """
    installed_list = _unique(installed)
    installed_set = set(installed_list)
    excluded_set = set(excluded)

    plan = VibPlan()
    for name in _unique(desired):
        if name in excluded_set:
            plan.excluded.append(name)
        elif name in installed_set:
            plan.already_present.append(name)
        else:
            plan.to_add.append(name)

    plan.to_remove = [name for name in installed_list if name in excluded_set]
    return plan
