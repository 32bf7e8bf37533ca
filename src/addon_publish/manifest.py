"""
Add-on manifest parsing and validation.

Turns the raw manifest file into an AddonManifest. Pure transformation over
local input: no network calls, deterministic, and every rule is checked
before the pipeline authenticates or builds anything.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import (
    InvalidIdentifier,
    InvalidManifest,
    InvalidVersion,
    MissingBuildFile,
    MissingField,
)
from .models import ADDON_ID_RE, ARCHITECTURE_PLATFORMS, SEMVER_RE, AddonManifest

__all__ = [
    "MANIFEST_FILENAMES",
    "parse",
    "load_manifest",
    "find_manifest",
    "bump_version",
    "write_version",
]

logger = logging.getLogger(__name__)

MANIFEST_FILENAMES = ["addons.yml", "addons.yaml", "addon.yml", "addon.yaml"]

REQUIRED_FIELDS = ("id", "version", "architectures")

# Top-level "version: ..." line, optionally quoted; the rest of the line is kept
VERSION_LINE_RE = re.compile(r"^(version[ \t]*:[ \t]*)(['\"]?)[^'\"\s#]+\2", re.MULTILINE)

_REGISTRY_RE = re.compile(r"^[^:]*(:\d+)?$")
_IMAGE_NAME_RE = re.compile(r"^[_\-a-z0-9]+(:[a-z0-9._-]+)?$")


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def parse(raw: bytes, manifest_dir: Union[str, Path]) -> AddonManifest:
    """
    Parse and validate raw manifest bytes.

    Args:
        raw: Manifest file content (YAML)
        manifest_dir: Directory Dockerfile paths are relative to

    Returns:
        Validated AddonManifest

    Raises:
        MissingField: id, version or architectures absent/empty
        InvalidIdentifier: id outside lowercase alnum + hyphen
        InvalidVersion: version is not a semantic version
        MissingBuildFile: a Dockerfile does not exist below manifest_dir
        InvalidManifest: any other structural problem
    """
    manifest_dir = Path(manifest_dir)

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise InvalidManifest(f"Manifest is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise InvalidManifest("Manifest must be a mapping with id, version and architectures")

    for name in REQUIRED_FIELDS:
        if _is_blank(data.get(name)):
            raise MissingField(name)

    addon_id = str(data["id"])
    if not ADDON_ID_RE.match(addon_id):
        raise InvalidIdentifier(addon_id)

    # YAML reads "1.0" as a float, keep the textual form for the error message
    version = str(data["version"])
    if not SEMVER_RE.match(version):
        raise InvalidVersion(version)

    architectures = _validate_architectures(data["architectures"], manifest_dir)
    _validate_services(data.get("services") or {})

    document = dict(data)
    document.update({"id": addon_id, "version": version, "architectures": architectures})
    document["services"] = {name: service or {} for name, service in (data.get("services") or {}).items()}

    try:
        manifest = AddonManifest.model_validate(document)
    except PydanticValidationError as e:
        raise InvalidManifest(f"Invalid manifest: {e}") from e

    logger.debug(f"Parsed manifest {manifest.id}@{manifest.version} "
                 f"for {', '.join(manifest.arch_tags)}")
    return manifest


def _validate_architectures(entries: Any, manifest_dir: Path) -> List[Dict[str, str]]:
    """Check every architecture target and its Dockerfile; return normalized entries."""
    if not isinstance(entries, list):
        raise InvalidManifest("architectures must be a list of {tag, dockerfile} entries")

    normalized = []
    seen = set()
    root = manifest_dir.resolve()

    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise InvalidManifest(f"architectures[{index}] must be a mapping with tag and dockerfile")
        for key in ("tag", "dockerfile"):
            if _is_blank(entry.get(key)):
                raise MissingField(f"architectures[{index}].{key}")

        tag = str(entry["tag"])
        dockerfile = str(entry["dockerfile"])

        if tag not in ARCHITECTURE_PLATFORMS:
            raise InvalidManifest(
                f"Unknown architecture '{tag}'. Expected one of: {', '.join(ARCHITECTURE_PLATFORMS)}"
            )
        if tag in seen:
            raise InvalidManifest(f"Duplicate architecture target: {tag}")
        seen.add(tag)

        # Dockerfiles must live inside the project directory
        candidate = (root / dockerfile).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            raise MissingBuildFile(tag, dockerfile)

        normalized.append({"tag": tag, "dockerfile": dockerfile})

    return normalized


def _validate_services(services: Any) -> None:
    """Validate the optional runtime services section."""
    if not isinstance(services, dict):
        raise InvalidManifest("services must be a mapping of service name to definition")

    for service_id, service in services.items():
        if service is None:
            continue
        if not isinstance(service, dict):
            raise InvalidManifest(f"Service {service_id} must be a mapping")

        image = service.get("image")
        if image is not None:
            _validate_service_image(service_id, str(image))

        for port in service.get("ports") or []:
            _validate_port_mapping(service_id, str(port))

        for dependency in service.get("depends_on") or []:
            if dependency not in services:
                raise InvalidManifest(
                    f"Service {service_id} depends on '{dependency}', which is not defined "
                    "in this manifest. Only services of the same add-on can be dependencies."
                )

        for volume in service.get("volumes") or []:
            if str(volume).split(":", 1)[0] != "logvolume":
                raise InvalidManifest(
                    f"Service {service_id} requests volume '{volume}'. Only 'logvolume' is supported."
                )


def _validate_service_image(service_id: str, image: str) -> None:
    parts = image.split("/")
    if len(parts) == 2:
        if not _REGISTRY_RE.match(parts[0]):
            raise InvalidManifest(f"Service registry address invalid for {service_id}: {image}")
        image_name = parts[1]
    elif len(parts) == 1:
        image_name = parts[0]
    else:
        raise InvalidManifest(f"Service image invalid for {service_id}: {image}")

    if not _IMAGE_NAME_RE.match(image_name):
        raise InvalidManifest(f"Service image name invalid for {service_id}: {image_name}")


def _validate_port_mapping(service_id: str, port: str) -> None:
    """
    Validate a port mapping such as ``8080``, ``8080:80``, ``6060:6060/udp``
    or ``5000-5010:5000-5010``. Host ports below 1024 are privileged.
    """
    mapping, _, protocol = port.partition("/")
    if protocol and protocol not in ("tcp", "udp"):
        raise InvalidManifest(
            f"Ports pattern invalid. The part after / must be tcp or udp for {service_id}: {port}"
        )

    segments = mapping.split(":")
    if len(segments) > 2:
        raise InvalidManifest(
            f"Ports pattern invalid. Maximum of two colon separated segments allowed for "
            f"{service_id}: {port}"
        )

    for position, segment in enumerate(segments):
        bounds = segment.split("-")
        if len(bounds) > 2:
            raise InvalidManifest(
                f"Ports pattern invalid. A range can have only two segments for {service_id}: {segment}"
            )
        for bound in bounds:
            if not bound.isdigit() or not 0 < int(bound) <= 65535:
                raise InvalidManifest(f"A port must be a number between 1 and 65535! For {service_id}: {bound}")
            is_host_port = len(segments) == 2 and position == 0
            if is_host_port and int(bound) < 1024:
                raise InvalidManifest(
                    f"You cannot map to a port below 1024. Those are for privileged services only! "
                    f"For {service_id}: {bound}"
                )


def find_manifest(path: Union[str, Path]) -> Path:
    """
    Locate the manifest file.

    Args:
        path: Manifest file or project directory containing one

    Returns:
        Path to the manifest file

    Raises:
        InvalidManifest: If no manifest file exists
    """
    path = Path(path)
    if path.is_file():
        return path

    if path.is_dir():
        for filename in MANIFEST_FILENAMES:
            candidate = path / filename
            if candidate.is_file():
                return candidate
        raise InvalidManifest(
            f"Add-on manifest not found in {path}. Expected one of: {', '.join(MANIFEST_FILENAMES)}"
        )

    raise InvalidManifest(f"Did not find the add-on manifest file: {path}")


def load_manifest(path: Union[str, Path]) -> AddonManifest:
    """Read the manifest file (or the one inside a project directory) and parse it."""
    manifest_path = find_manifest(path)
    logger.debug(f"Reading manifest {manifest_path}")
    return parse(manifest_path.read_bytes(), manifest_path.parent)


def bump_version(current_version: str, bump: str) -> str:
    """
    Apply semantic version bump to current version.

    Args:
        current_version: Current version string (e.g., "1.2.3")
        bump: Bump strategy ("patch", "minor", "major")

    Returns:
        New version string; pre-release and build metadata are dropped

    Raises:
        InvalidVersion: If current_version is not a semantic version
        ValueError: If bump strategy is unknown
    """
    match = SEMVER_RE.match(current_version)
    if not match:
        raise InvalidVersion(current_version)

    major, minor, patch = (int(part) for part in match.group(1, 2, 3))

    if bump == "patch":
        patch += 1
    elif bump == "minor":
        minor += 1
        patch = 0
    elif bump == "major":
        major += 1
        minor = 0
        patch = 0
    else:
        raise ValueError(f"Unknown bump strategy: {bump}. Use 'patch', 'minor', or 'major'")

    return f"{major}.{minor}.{patch}"


def write_version(manifest_path: Union[str, Path], new_version: str) -> Optional[str]:
    """
    Update the version in the manifest file.

    Only the top-level ``version:`` line is replaced, so comments and
    formatting of the rest of the file are kept.

    Args:
        manifest_path: Manifest file or project directory
        new_version: New version to set

    Returns:
        The previous version
    """
    manifest_path = find_manifest(manifest_path)
    text = manifest_path.read_text()

    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise InvalidManifest("Manifest must be a mapping with id, version and architectures")

    previous = data.get("version")
    updated, count = VERSION_LINE_RE.subn(
        lambda m: f"{m.group(1)}{m.group(2)}{new_version}{m.group(2)}", text, count=1
    )
    if count == 0:
        # version written in a form the line edit does not handle (flow mapping, block scalar)
        data["version"] = new_version
        updated = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        logger.warning(f"Rewrote {manifest_path.name} in full, comments were not kept")

    manifest_path.write_text(updated)

    return None if previous is None else str(previous)
