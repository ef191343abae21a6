from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


# Container labels understood by basewatch
ENABLED_LABEL = 'basewatch.enabled'
BASE_IMAGE_LABEL = 'basewatch.base'
INSTANCE_LABEL = 'basewatch.instance'
TAG_STRATEGY_LABEL = 'basewatch.tag-strategy'
TAG_KEEP_LABEL = 'basewatch.tag-keep'
TAG_IGNORE_LABEL = 'basewatch.tag-ignore'
HELPER_MARKER_LABEL = 'basewatch.helper-container'


@dataclass(frozen=True)
class ImageIdentifier:
    """An image name and tag, e.g. ``nginx`` + ``1.25``."""
    image: str
    tag: str = 'latest'

    @property
    def name_with_tag(self) -> str:
        return f"{self.image}:{self.tag}"

    @classmethod
    def from_string(cls, value: str) -> 'ImageIdentifier':
        """Parse ``name[:tag]``. A colon before the last slash is a registry port, not a tag."""
        image_start = value.rfind('/')
        tag_start = value.rfind(':')
        if tag_start > image_start:
            return cls(value[:tag_start], value[tag_start + 1:] or 'latest')
        return cls(value, 'latest')

    def __str__(self) -> str:
        return self.name_with_tag


@dataclass(frozen=True)
class ContainerRef:
    """A container as seen by the checker."""
    id: str
    names: Tuple[str, ...]
    labels: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    image_id: Optional[str] = None  # sha256:... of the running image
    image_ref: Optional[str] = None  # image name the container was created from

    @property
    def is_self(self) -> bool:
        return INSTANCE_LABEL in self.labels


class BindingKind(Enum):
    EXPLICIT = 'explicit'  # tracked base named by the basewatch.base label
    IMPLICIT = 'implicit'  # tracked base is the image the container runs


@dataclass(frozen=True)
class BaseImageBinding:
    container: ContainerRef
    identifier: ImageIdentifier
    kind: BindingKind

    @property
    def is_explicit(self) -> bool:
        return self.kind is BindingKind.EXPLICIT


@dataclass(frozen=True)
class RemoteMetadata:
    updated_by: str
    update_time: datetime


@dataclass(frozen=True)
class ImageUpdate:
    """A local image that builds on (or is) an out-of-date base image."""
    source_image_id: str
    source_image_names: Tuple[str, ...]
    remote_manifest_digest: str
    identifier: ImageIdentifier
    remote_metadata: Optional[RemoteMetadata] = None


@dataclass(frozen=True)
class ContainerUpdate:
    names: Tuple[str, ...]
    image_update: ImageUpdate
    is_self: bool = False


@dataclass(frozen=True)
class TagUpdate:
    """A newer version tag published for the image a container tracks."""
    names: Tuple[str, ...]
    current_tag: str
    new_tag: str
    identifier: ImageIdentifier
    remote_metadata: Optional[RemoteMetadata] = None


@dataclass(frozen=True)
class AuthEntry:
    host: str
    encoded_auth: str  # base64 of "user:pass"


class EnrollmentMode(Enum):
    OPT_IN = 'opt_in'
    OPT_OUT = 'opt_out'


class BaseImageUpdateStrategy(Enum):
    ONLY_PULL_UNKNOWN = 'only_pull_unknown'  # pull missing base images only
    PULL_AND_UPDATE = 'pull_and_update'  # also refresh outdated base images

    @property
    def update_outdated(self) -> bool:
        return self is BaseImageUpdateStrategy.PULL_AND_UPDATE


@dataclass
class HelperConfig:
    """How to run the operator supplied rebuild helper."""
    image: str = 'docker'
    entrypoint: Optional[str] = None
    mounts: List[str] = field(default_factory=list)  # "source:dest[:mode]"


@dataclass
class WatchConfig:
    """Runtime configuration for the basewatch agent."""
    check_interval: int = 3600
    enrollment_mode: EnrollmentMode = EnrollmentMode.OPT_OUT
    base_image_update: BaseImageUpdateStrategy = BaseImageUpdateStrategy.ONLY_PULL_UNKNOWN
    docker_config: Optional[str] = None
    known_updates_file: str = '/var/lib/basewatch/known-updates.json'
    notify_again: bool = False
    check_tags: bool = True
    auto_rebuild: bool = False
    webhook_url: Optional[str] = None
    hostname: Optional[str] = None
    pull_timeout: int = 300
    registry_cache_tokens: bool = True
    updater: HelperConfig = field(default_factory=HelperConfig)
    registries: Dict[str, Dict] = field(default_factory=dict)
