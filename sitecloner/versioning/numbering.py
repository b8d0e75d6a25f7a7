"""Version numbers are "major.minor" strings, strictly increasing per website."""

from __future__ import annotations

from typing import Iterable, Literal

from sitecloner.errors import ValidationError

ChangeType = Literal["initial", "edit", "regeneration"]

INITIAL_VERSION = "1.0"


def parse_version(version_string: str) -> tuple[int, int]:
    """Parse "1.2" into (1, 2). Raises ValidationError on anything else."""
    parts = version_string.split(".")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValidationError(f"Invalid version format: {version_string!r}")
    return int(parts[0]), int(parts[1])


def format_version(major: int, minor: int) -> str:
    return f"{major}.{minor}"


def latest_version(numbers: Iterable[str]) -> tuple[int, int] | None:
    parsed = [parse_version(n) for n in numbers]
    return max(parsed) if parsed else None


def next_version_number(existing: Iterable[str], change_type: ChangeType = "edit") -> str:
    """Compute the next number from the highest existing one.

    edit bumps the minor number (1.0 -> 1.1), regeneration bumps the major
    number and resets minor (1.3 -> 2.0). The first version is always 1.0.
    """
    latest = latest_version(existing)
    if latest is None or change_type == "initial":
        if latest is not None:
            raise ValidationError("Initial version requested but versions already exist")
        return INITIAL_VERSION
    major, minor = latest
    match change_type:
        case "edit":
            return format_version(major, minor + 1)
        case "regeneration":
            return format_version(major + 1, 0)
        case _:
            raise ValidationError(f"Unknown change type: {change_type}")
