from datetime import datetime
from typing import Optional

import requests

from basewatch_core.library_utils import LibraryHelper
from basewatch_core.models import ImageIdentifier, RemoteMetadata


class MetadataFetcher:
    """Looks up who published an image tag and when. Returning None is always allowed."""

    def fetch(self, identifier: ImageIdentifier) -> Optional[RemoteMetadata]:
        return None


class DockerHubMetadataFetcher(MetadataFetcher):

    def __init__(self, session: requests.Session, library_helper: LibraryHelper, logger, timeout: int = 10):
        self.session = session
        self.library_helper = library_helper
        self.logger = logger
        self.timeout = timeout

    def fetch(self, identifier: ImageIdentifier) -> Optional[RemoteMetadata]:
        if not self.library_helper.is_docker_hub_image(identifier.image):
            return None
        repo = self.library_helper.repository_path(identifier.image)
        url = f"https://hub.docker.com/v2/repositories/{repo}/tags/{identifier.tag}/"
        try:
            resp = self.session.get(url, headers={'Accept': 'application/json'}, timeout=self.timeout)
            if resp.status_code != 200:
                self.logger.debug(f"No Docker Hub metadata for {identifier}: {resp.status_code}")
                return None
            data = resp.json()
            updated = datetime.fromisoformat(data['last_updated'].replace('Z', '+00:00'))
            return RemoteMetadata(data.get('last_updater_username') or 'unknown', updated)
        except (requests.RequestException, ValueError, KeyError, TypeError, AttributeError) as e:
            self.logger.warning(f"Failed to fetch Docker Hub metadata for {identifier}: {e}")
            return None
