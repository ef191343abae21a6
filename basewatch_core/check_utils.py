import re
from typing import Dict, Iterable, List, Optional, Set

from basewatch_core import docker_utils as du
from basewatch_core.errors import PullTimeoutError
from basewatch_core.library_utils import LibraryHelper
from basewatch_core.metadata_utils import MetadataFetcher
from basewatch_core.models import (
    BASE_IMAGE_LABEL,
    ENABLED_LABEL,
    TAG_IGNORE_LABEL,
    TAG_KEEP_LABEL,
    TAG_STRATEGY_LABEL,
    BaseImageBinding,
    BaseImageUpdateStrategy,
    BindingKind,
    ContainerRef,
    ContainerUpdate,
    EnrollmentMode,
    ImageIdentifier,
    ImageUpdate,
    RemoteMetadata,
    TagUpdate,
)
from basewatch_core.semver_utils import latest_version, parser_from_strategy


def is_participating(mode: EnrollmentMode, container: ContainerRef, logger) -> bool:
    """Whether ``container`` is enrolled, judged only by its ``basewatch.enabled`` label.

    A missing label means "no" under OPT_IN and "yes" under OPT_OUT. Values
    other than true/false are warned about and get the same default.
    """
    default = mode is EnrollmentMode.OPT_OUT
    value = container.labels.get(ENABLED_LABEL)
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered == 'true':
        return True
    if lowered == 'false':
        return False
    logger.warning(f"Container '{', '.join(container.names)}' has an invalid value for '{ENABLED_LABEL}': {value}")
    return default


def is_outdated(local_digests: Iterable[str], remote_digest: str) -> bool:
    """True if no locally recorded repo digest ends with the remote manifest digest."""
    return not any(d.endswith(remote_digest) for d in local_digests)


def contains_base_layers(base_layers: Iterable[str], container_layers: Iterable[str]) -> bool:
    """True if every base image layer is part of the container image (order irrelevant)."""
    return set(base_layers) <= set(container_layers)


def resolve_binding(docker_client, library_helper: LibraryHelper, container: ContainerRef,
                    logger) -> Optional[BaseImageBinding]:
    """Bind a container to the base image it tracks.

    An explicit ``basewatch.base`` label wins; otherwise the first repo tag of
    the image the container runs is tracked.
    """
    label = container.labels.get(BASE_IMAGE_LABEL)
    if label:
        parsed = ImageIdentifier.from_string(label.strip())
        identifier = ImageIdentifier(library_helper.friendly_image_name(parsed.image), parsed.tag)
        return BaseImageBinding(container, identifier, BindingKind.EXPLICIT)

    attrs = du.inspect_image(docker_client, container.image_id or container.image_ref or '')
    tags = du.repo_tags(attrs) if attrs else []
    if not tags:
        logger.info(
            f"Enrolled container '{', '.join(container.names)}' has an unlabeled image and no '{BASE_IMAGE_LABEL}' label"
        )
        return None
    parsed = ImageIdentifier.from_string(tags[0])
    identifier = ImageIdentifier(library_helper.friendly_image_name(parsed.image), parsed.tag)
    return BaseImageBinding(container, identifier, BindingKind.IMPLICIT)


def dedupe_bindings(bindings: Iterable[BaseImageBinding]) -> List[BaseImageBinding]:
    """One binding per running image id; the container with the smallest id represents it."""
    chosen: Dict[str, BaseImageBinding] = {}
    for binding in sorted(bindings, key=lambda b: b.container.id):
        chosen.setdefault(binding.container.image_id, binding)
    return list(chosen.values())


def filter_tags(tags: Iterable[str], keep: Optional[str], ignore: Optional[str]) -> List[str]:
    keep_re = re.compile(keep) if keep else None
    ignore_re = re.compile(ignore) if ignore else None
    result = []
    for tag in tags:
        if keep_re is not None and not keep_re.search(tag):
            continue
        if ignore_re is not None and ignore_re.search(tag):
            continue
        result.append(tag)
    return result


class UpdateChecker:
    """Finds running containers whose base image has a newer published version."""

    def __init__(
        self,
        docker_client,
        registry,
        library_helper: LibraryHelper,
        notifier,
        logger,
        metadata_fetcher: Optional[MetadataFetcher] = None,
        enrollment_mode: EnrollmentMode = EnrollmentMode.OPT_OUT,
        base_image_update: BaseImageUpdateStrategy = BaseImageUpdateStrategy.ONLY_PULL_UNKNOWN,
        pull_timeout: int = 300,
    ):
        self.docker_client = docker_client
        self.registry = registry
        self.library_helper = library_helper
        self.notifier = notifier
        self.logger = logger
        self.metadata_fetcher = metadata_fetcher or MetadataFetcher()
        self.enrollment_mode = enrollment_mode
        self.base_image_update = base_image_update
        self.pull_timeout = pull_timeout

    def participating_containers(self) -> List[ContainerRef]:
        containers = du.list_containers(self.docker_client, self.logger)
        return [c for c in containers if is_participating(self.enrollment_mode, c, self.logger)]

    def participating_bindings(self) -> List[BaseImageBinding]:
        bindings = []
        for container in self.participating_containers():
            if not container.image_id:
                self.logger.warning(f"Container '{', '.join(container.names)}' has no image id")
                continue
            binding = resolve_binding(self.docker_client, self.library_helper, container, self.logger)
            if binding is not None:
                bindings.append(binding)
        return dedupe_bindings(bindings)

    def check(self) -> Set[ImageUpdate]:
        """All image updates for participating containers.

        Errors for one binding are reported to the notifier and do not stop the
        others. Pull timeouts abort the whole check.
        """
        updates: Set[ImageUpdate] = set()
        for binding in self.participating_bindings():
            try:
                update = self.check_binding(binding)
            except PullTimeoutError:
                raise
            except Exception as e:
                self.logger.error(f"Error checking {binding.identifier} for '{', '.join(binding.container.names)}': {e}")
                self.notifier.notify_error(e)
                continue
            if update is not None:
                updates.add(update)
        return updates

    def check_binding(self, binding: BaseImageBinding) -> Optional[ImageUpdate]:
        identifier = binding.identifier
        names = ', '.join(binding.container.names)

        if binding.is_explicit and not du.image_exists(self.docker_client, identifier.name_with_tag):
            self.logger.info(f"Base image {identifier} of '{names}' is not present locally")
            du.pull_image(self.docker_client, identifier, self.logger, self.pull_timeout)

        base_image = du.inspect_image(self.docker_client, identifier.name_with_tag)
        if base_image is None:
            self.logger.warning(f"Base image {identifier} of '{names}' could not be inspected")
            return None
        if not du.repo_digests(base_image):
            self.logger.warning(f"Could not find repo digest for image '{identifier}'")
            return None

        remote_digest = self.registry.fetch_digest(identifier.image, identifier.tag)
        outdated = is_outdated(du.repo_digests(base_image), remote_digest)

        container_image = du.inspect_image(self.docker_client, binding.container.image_id)
        if container_image is None:
            self.logger.warning(f"Image {binding.container.image_id} of '{names}' could not be inspected")
            return None

        if binding.kind is BindingKind.IMPLICIT:
            stale = outdated
        elif outdated and not self.base_image_update.update_outdated:
            # comparing layers against a base known to be stale tells nothing
            self.logger.info(f"Base image {identifier} is outdated, not pulling it")
            stale = True
        else:
            if outdated:
                self.logger.info(f"Updating base image {identifier}")
                du.pull_image(self.docker_client, identifier, self.logger, self.pull_timeout)
                base_image = du.inspect_image(self.docker_client, identifier.name_with_tag) or base_image
                outdated = is_outdated(du.repo_digests(base_image), remote_digest)
            else:
                self.logger.debug(f"Base image {identifier} is up to date")
            stale = outdated or not contains_base_layers(du.layers(base_image), du.layers(container_image))

        if not stale:
            self.logger.debug(f"Container '{names}' is up to date with {identifier}")
            return None

        self.logger.info(f"Container '{names}' is out of date for image '{identifier}'")
        return ImageUpdate(
            source_image_id=binding.container.image_id,
            source_image_names=tuple(du.repo_tags(container_image)),
            remote_manifest_digest=remote_digest,
            identifier=identifier,
            remote_metadata=self._metadata(identifier),
        )

    def _metadata(self, identifier: ImageIdentifier) -> Optional[RemoteMetadata]:
        try:
            return self.metadata_fetcher.fetch(identifier)
        except Exception as e:
            self.logger.warning(f"Could not fetch metadata for {identifier}: {e}")
            return None

    def check_containers(self) -> List[ContainerUpdate]:
        """Map image updates onto every enrolled container running an outdated image."""
        image_updates = self.check()
        image_map: Dict[str, ImageUpdate] = {}
        for update in sorted(image_updates, key=lambda u: (u.source_image_id, u.identifier.name_with_tag)):
            image_map.setdefault(update.source_image_id, update)

        updates: List[ContainerUpdate] = []
        for container in du.list_containers(self.docker_client, self.logger, all=True):
            if not is_participating(self.enrollment_mode, container, self.logger):
                self.logger.debug(f"Skipping container '{', '.join(container.names)}', not enrolled")
                continue
            update = image_map.get(container.image_id)
            if update is None:
                self.logger.info(f"Container '{', '.join(container.names)}' is up to date")
                continue
            self.logger.info(
                f"Container '{', '.join(container.names)}' has an update ({update.remote_manifest_digest})"
            )
            updates.append(ContainerUpdate(container.names, update, container.is_self))
        return updates

    def check_tags(self) -> List[TagUpdate]:
        """Newer version tags for containers that carry a ``basewatch.tag-strategy`` label."""
        updates: List[TagUpdate] = []
        tag_lists: Dict[str, List[str]] = {}
        for container in sorted(self.participating_containers(), key=lambda c: c.id):
            strategy = container.labels.get(TAG_STRATEGY_LABEL)
            if not strategy:
                continue
            names = ', '.join(container.names)
            try:
                parser = parser_from_strategy(strategy)
            except ValueError as e:
                self.logger.warning(f"Container '{names}' has an invalid '{TAG_STRATEGY_LABEL}': {e}")
                continue
            binding = resolve_binding(self.docker_client, self.library_helper, container, self.logger)
            if binding is None:
                continue
            identifier = binding.identifier
            try:
                current = parser.parse(identifier.tag)
            except ValueError as e:
                self.logger.warning(f"Current tag of '{names}' is not a version, skipping: {e}")
                continue

            try:
                if identifier.image not in tag_lists:
                    tag_lists[identifier.image] = self.registry.list_tags(identifier.image)
                candidates = filter_tags(
                    tag_lists[identifier.image],
                    container.labels.get(TAG_KEEP_LABEL),
                    container.labels.get(TAG_IGNORE_LABEL),
                )
            except re.error as e:
                self.logger.warning(f"Container '{names}' has an invalid tag filter: {e}")
                continue
            except Exception as e:
                self.logger.error(f"Error listing tags of {identifier.image} for '{names}': {e}")
                self.notifier.notify_error(e)
                continue

            best = latest_version(candidates, parser, self.logger)
            if best is None or not best[1] > current:
                self.logger.debug(f"No newer version than {identifier.tag} for '{names}'")
                continue
            new_identifier = ImageIdentifier(identifier.image, best[0])
            self.logger.info(f"Version upgrade for '{names}': {identifier.tag} -> {best[0]}")
            updates.append(TagUpdate(
                names=container.names,
                current_tag=identifier.tag,
                new_tag=best[0],
                identifier=new_identifier,
                remote_metadata=self._metadata(new_identifier),
            ))
        return updates
