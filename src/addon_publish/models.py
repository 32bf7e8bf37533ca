"""
Data models for add-on publishing.

These Pydantic models provide type safety and validation for the publish
workflow, from parsing the add-on manifest to assembling the catalog request.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

# Architecture tags accepted in manifests and the OCI platform they build for
ARCHITECTURE_PLATFORMS: Dict[str, str] = {
    "x86-64": "linux/amd64",
    "armv7": "linux/arm/v7",
    "armv8": "linux/arm64",
}

ADDON_ID_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

# https://semver.org/#is-there-a-suggested-regular-expression-regex-to-check-a-semver-string
SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

# registry[:port]/path[/path...](:tag | @sha256:<hex>)
IMAGE_REF_RE = re.compile(
    r"^(?P<repository>[a-zA-Z0-9.-]+(?::[0-9]+)?(?:/[a-z0-9][a-z0-9._-]*)+)"
    r"(?:(?::(?P<tag>[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}))|(?:@(?P<digest>sha256:[a-f0-9]{64})))$"
)


class ArchitectureTarget(BaseModel):
    """One (CPU architecture, Dockerfile) pair the add-on is built for."""
    model_config = ConfigDict(frozen=True)

    tag: str = Field(..., description="Architecture tag (x86-64, armv7, armv8)")
    dockerfile: str = Field(..., description="Dockerfile path relative to the manifest directory")

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v: str) -> str:
        if v not in ARCHITECTURE_PLATFORMS:
            raise ValueError(
                f"Unknown architecture '{v}'. Expected one of: {', '.join(ARCHITECTURE_PLATFORMS)}"
            )
        return v

    @property
    def platform(self) -> str:
        """OCI platform string handed to the build engine."""
        return ARCHITECTURE_PLATFORMS[self.tag]


class ImageReference(BaseModel):
    """Fully qualified registry path plus digest or tag of a built image."""
    model_config = ConfigDict(frozen=True)

    tag: str = Field(..., description="Architecture tag this image was built for")
    ref: str = Field(..., description="registry/namespace/repo@sha256:... or registry/namespace/repo:tag")
    size: Optional[int] = Field(default=None, description="Image size in bytes, if known")

    @field_validator("ref")
    @classmethod
    def validate_ref(cls, v: str) -> str:
        if not IMAGE_REF_RE.match(v):
            raise ValueError(f"Invalid image reference: {v}")
        return v

    @property
    def repository(self) -> str:
        """Registry host plus repository path, without tag or digest."""
        return IMAGE_REF_RE.match(self.ref).group("repository")

    @property
    def reference(self) -> str:
        """The tag or digest part of the reference."""
        match = IMAGE_REF_RE.match(self.ref)
        return match.group("digest") or match.group("tag")

    @property
    def is_digest(self) -> bool:
        return IMAGE_REF_RE.match(self.ref).group("digest") is not None


class Service(BaseModel):
    """Runtime service description carried in the manifest."""
    model_config = ConfigDict(frozen=True, extra="allow")

    image: Optional[str] = Field(default=None, description="Image name, optionally with registry and tag")
    ports: List[str] = Field(default_factory=list, description="Port mappings (host:container[/proto])")
    depends_on: List[str] = Field(default_factory=list, description="Services of this add-on started first")
    volumes: List[str] = Field(default_factory=list, description="Volume mounts (only logvolume)")


class AddonManifest(BaseModel):
    """
    Add-on description parsed from the manifest file.

    The identity (id + version) and the display metadata are fixed after
    validation. ``images`` stays empty until the Image Resolver has verified
    one pushed image per architecture target.
    """
    model_config = ConfigDict(frozen=True)

    # Identity
    id: str = Field(..., description="Globally unique add-on identifier")
    version: str = Field(..., description="Semantic version of this release")

    # Display metadata
    title: Optional[str] = Field(default=None, description="Human readable name")
    description: Optional[str] = Field(default=None, description="Short description")
    authors: List[str] = Field(default_factory=list, description="Author names")
    license: Optional[str] = Field(default=None, description="SPDX license identifier")
    homepage: Optional[str] = Field(default=None, description="Project homepage")
    changelog_url: Optional[str] = Field(default=None, description="Changelog location")

    # Build / publish
    architectures: List[ArchitectureTarget] = Field(..., description="Targets to build")
    images: List[ImageReference] = Field(default_factory=list, description="Resolved images")
    services: Dict[str, Service] = Field(default_factory=dict, description="Runtime services")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not ADDON_ID_RE.match(v):
            raise ValueError(f"Invalid add-on id: {v}")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not SEMVER_RE.match(v):
            raise ValueError(f"Invalid semantic version: {v}")
        return v

    @model_validator(mode="after")
    def validate_targets(self) -> "AddonManifest":
        """Architecture tags are unique and images only refer to declared targets."""
        tags = [target.tag for target in self.architectures]
        if not tags:
            raise ValueError("At least one architecture target is required")
        duplicates = sorted({tag for tag in tags if tags.count(tag) > 1})
        if duplicates:
            raise ValueError(f"Duplicate architecture target(s): {', '.join(duplicates)}")

        image_tags = [image.tag for image in self.images]
        unknown = sorted(set(image_tags) - set(tags))
        if unknown:
            raise ValueError(f"Image(s) for undeclared architecture(s): {', '.join(unknown)}")
        if len(image_tags) != len(set(image_tags)):
            raise ValueError("At most one image per architecture target")
        return self

    @property
    def arch_tags(self) -> List[str]:
        return [target.tag for target in self.architectures]

    @computed_field
    @property
    def is_resolved(self) -> bool:
        """True when every architecture target has exactly one image reference."""
        return sorted(image.tag for image in self.images) == sorted(self.arch_tags)

    def image_for(self, tag: str) -> Optional[ImageReference]:
        for image in self.images:
            if image.tag == tag:
                return image
        return None

    def to_document(self) -> Dict[str, Any]:
        """Manifest as a plain document in the file format (no computed fields)."""
        return self.model_dump(exclude={"is_resolved"}, exclude_none=True)


class OwnershipStatus(str, Enum):
    """Result of comparing the catalog owner with the current account."""
    NOT_REGISTERED = "not_registered"
    OWNED_BY_SELF = "owned_by_self"
    OWNED_BY_OTHER = "owned_by_other"


class OwnershipRecord(BaseModel):
    """Catalog-side fact: add-on identifier -> owning account id."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    addon_id: str = Field(..., alias="id", description="Add-on identifier")
    owner: str = Field(..., description="Owning account id")
    versions: List[str] = Field(default_factory=list, description="Published versions")
    last_updated: Optional[int] = Field(default=None, description="Unix timestamp of the last publish")


class PublishRequest(BaseModel):
    """
    Payload sent to the catalog in the Publishing stage.

    Only built from a fully resolved manifest; the catalog applies it
    atomically (accept or reject).
    """
    model_config = ConfigDict(frozen=True)

    manifest: AddonManifest
    owner: str = Field(..., description="Account publishing this version")
    archs: List[str] = Field(..., description="Architectures the images were built for")
    size: int = Field(default=0, description="Sum of image sizes in bytes")
    published_at: int = Field(default_factory=lambda: int(time.time()))

    @model_validator(mode="after")
    def require_resolved(self) -> "PublishRequest":
        if not self.manifest.is_resolved:
            raise ValueError("PublishRequest requires every architecture target to have an image")
        return self

    @classmethod
    def from_manifest(cls, manifest: AddonManifest, owner: str) -> "PublishRequest":
        return cls(
            manifest=manifest,
            owner=owner,
            archs=manifest.arch_tags,
            size=sum(image.size or 0 for image in manifest.images),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = self.manifest.to_document()
        payload.update({
            "owner": self.owner,
            "archs": self.archs,
            "size": self.size,
            "last_updated": self.published_at,
        })
        return payload


BuildStatus = Literal["succeeded", "failed", "skipped", "cancelled"]


@dataclass(frozen=True)
class BuildOutcome:
    """Result of one architecture's build inside the Building stage."""
    tag: str
    status: BuildStatus
    image: Optional[ImageReference] = None
    detail: Optional[str] = None
    attempts: int = 0


@dataclass(frozen=True)
class Credential:
    """
    Bearer credentials for the catalog API and the registry push endpoint.

    Owned by the Credential Provider. Timestamps are unix seconds; a registry
    token without expiry is considered valid as long as the catalog token is.
    """
    account_id: str
    catalog_token: str = field(repr=False)
    catalog_expires_at: float
    registry_username: str
    registry_token: str = field(repr=False)
    registry_expires_at: Optional[float] = None
    refresh_token: Optional[str] = field(default=None, repr=False)
    email: str = ""
    display_name: str = ""

    def is_expired(self, now: Optional[float] = None, skew: float = 0.0) -> bool:
        now = time.time() if now is None else now
        if now + skew >= self.catalog_expires_at:
            return True
        if self.registry_expires_at is not None and now + skew >= self.registry_expires_at:
            return True
        return False

    @property
    def registry_creds(self) -> str:
        """``user:secret`` pair as accepted by ``podman --creds``."""
        return f"{self.registry_username}:{self.registry_token}"


__all__ = [
    "ARCHITECTURE_PLATFORMS",
    "ADDON_ID_RE",
    "SEMVER_RE",
    "ArchitectureTarget",
    "ImageReference",
    "Service",
    "AddonManifest",
    "OwnershipStatus",
    "OwnershipRecord",
    "PublishRequest",
    "BuildOutcome",
    "BuildStatus",
    "Credential",
]
