import re
from typing import Iterable, Optional, Set

import requests


OFFICIAL_IMAGES_URL = 'https://api.github.com/repos/docker-library/official-images/contents/library'
DOCKER_HUB_HOST = 'index.docker.io'
_HUB_ALIASES = ('docker.io/', 'index.docker.io/', 'registry-1.docker.io/')


def _has_registry(image: str) -> bool:
    """True if the first path component names a registry host (has a dot/port or is localhost)."""
    if '/' not in image:
        return False
    first = image.split('/', 1)[0]
    return '.' in first or ':' in first or first == 'localhost'


class LibraryHelper:
    """Knows which images belong to Docker's "official images" program.

    Docker Hub expects official images under a ``library/`` namespace, which
    nobody writes out. The listing is fetched from GitHub; when that is not
    available any slash-less Docker Hub name is treated as a library image.
    """

    def __init__(self, library_images: Optional[Iterable[str]] = None):
        self.library_images: Optional[Set[str]] = set(library_images) if library_images is not None else None

    @classmethod
    def from_github(cls, session: requests.Session, logger, timeout: int = 10) -> 'LibraryHelper':
        try:
            resp = session.get(
                OFFICIAL_IMAGES_URL,
                headers={'Accept': 'application/vnd.github.v3+json'},
                timeout=timeout,
            )
            resp.raise_for_status()
            names = {item['path'].replace('library/', '', 1) for item in resp.json() if item.get('path')}
            logger.info(f"Loaded {len(names)} official library images")
            return cls(names)
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Could not fetch official library images, guessing from names: {e}")
            return cls(None)

    def is_library_image(self, image: str) -> bool:
        for alias in _HUB_ALIASES:
            if image.startswith(alias):
                return self.is_library_image(image[len(alias):])
        if _has_registry(image):
            return False
        if self.library_images is None:
            return '/' not in image
        return image in self.library_images

    def normalize_image_name(self, image: str) -> str:
        """Return ``registry/path`` with the implicit Docker Hub host and ``library/`` prefix filled in."""
        name = image
        on_hub = False
        for alias in _HUB_ALIASES:
            if name.startswith(alias):
                name = name[len(alias):]
                on_hub = True
                break
        if not on_hub and _has_registry(name):
            return name
        if self.is_library_image(name):
            name = 'library/' + name
        return DOCKER_HUB_HOST + '/' + name

    def registry_host(self, image: str) -> str:
        """Host (and port) of the registry serving ``image``."""
        return self.normalize_image_name(image).split('/', 1)[0]

    def registry_url(self, image: str) -> str:
        return 'https://' + self.registry_host(image)

    def repository_path(self, image: str) -> str:
        """Normalized name without the registry, also used as the token scope path."""
        return self.normalize_image_name(image).split('/', 1)[1]

    def friendly_image_name(self, image: str) -> str:
        """Name as ``docker image inspect`` knows it, e.g. ``nginx`` instead of ``index.docker.io/library/nginx``."""
        name = self.normalize_image_name(image)
        name = re.sub(r'^' + re.escape(DOCKER_HUB_HOST) + '/', '', name)
        name = re.sub(r'^library/', '', name)
        return name

    def is_docker_hub_image(self, image: str) -> bool:
        return self.registry_host(image) == DOCKER_HUB_HOST
