from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional

from docker.errors import ImageNotFound, NotFound

from basewatch_core.errors import PullError, PullTimeoutError
from basewatch_core.models import ContainerRef, ImageIdentifier


def container_ref(container) -> ContainerRef:
    """Snapshot the fields the checker needs from a docker SDK container."""
    attrs = getattr(container, 'attrs', {}) or {}
    labels = getattr(container, 'labels', None) or attrs.get('Config', {}).get('Labels') or {}
    name = getattr(container, 'name', None) or attrs.get('Name', '').lstrip('/')
    return ContainerRef(
        id=container.id,
        names=(name,) if name else (),
        labels=dict(labels),
        image_id=attrs.get('Image'),
        image_ref=attrs.get('Config', {}).get('Image'),
    )


def list_containers(docker_client, logger, all: bool = False, filters: Optional[Dict] = None) -> List[ContainerRef]:
    containers = docker_client.containers.list(all=all, filters=filters or {})
    refs = []
    for c in containers:
        try:
            refs.append(container_ref(c))
        except (KeyError, AttributeError) as e:
            logger.warning(f"Skipping container with unreadable metadata {getattr(c, 'id', '?')}: {e}")
    return refs


def inspect_image(docker_client, reference: str) -> Optional[Dict[str, Any]]:
    """``docker image inspect`` attributes, or None if the image is not present locally."""
    try:
        return docker_client.images.get(reference).attrs
    except (ImageNotFound, NotFound):
        return None


def image_exists(docker_client, reference: str) -> bool:
    return inspect_image(docker_client, reference) is not None


def repo_digests(image_attrs: Dict[str, Any]) -> List[str]:
    return list(image_attrs.get('RepoDigests') or [])


def repo_tags(image_attrs: Dict[str, Any]) -> List[str]:
    return list(image_attrs.get('RepoTags') or [])


def layers(image_attrs: Dict[str, Any]) -> List[str]:
    return list((image_attrs.get('RootFS') or {}).get('Layers') or [])


def _consume_pull(stream, identifier: ImageIdentifier) -> None:
    for event in stream:
        if isinstance(event, dict) and event.get('error'):
            raise PullError(f"Pull of {identifier.name_with_tag} failed: {event['error']}")


def pull_image(docker_client, identifier: ImageIdentifier, logger, timeout: float = 300) -> None:
    """Pull ``identifier`` and block until done, raising PullTimeoutError past ``timeout`` seconds.

    The progress stream is drained on a worker thread so a stalled daemon
    cannot hold the caller beyond the deadline.
    """
    logger.info(f"Pulling image: {identifier.name_with_tag}")
    stream = docker_client.api.pull(identifier.image, tag=identifier.tag, stream=True, decode=True)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='pull')
    try:
        future = executor.submit(_consume_pull, stream, identifier)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            _close_stream(stream, logger)
            raise PullTimeoutError(
                f"Pull of {identifier.name_with_tag} did not finish within {timeout}s"
            ) from None
    finally:
        executor.shutdown(wait=False)
    logger.debug(f"Pulled image: {identifier.name_with_tag}")


def _close_stream(stream, logger) -> None:
    close = getattr(stream, 'close', None)
    if close is None:
        return
    try:
        close()
    except ValueError as e:
        # a generator still blocked in the worker cannot be closed from here
        logger.debug(f"Pull stream left to the worker: {e}")
