import logging

import requests

from basewatch_core.library_utils import LibraryHelper
from basewatch_core.metadata_utils import DockerHubMetadataFetcher
from basewatch_core.models import INSTANCE_LABEL, ContainerRef, ImageIdentifier


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")


class FakeSession:
    def __init__(self, response):
        self.response = response

    def get(self, url, headers=None, timeout=None):
        return self.response


def test_identifier_from_string_with_tag():
    ident = ImageIdentifier.from_string('a/b:c')
    assert ident.image == 'a/b'
    assert ident.tag == 'c'


def test_identifier_from_string_defaults_to_latest():
    assert ImageIdentifier.from_string('a/b') == ImageIdentifier('a/b', 'latest')


def test_identifier_registry_port_is_not_a_tag():
    ident = ImageIdentifier.from_string('localhost:5000/app')
    assert ident.image == 'localhost:5000/app'
    assert ident.tag == 'latest'
    assert ImageIdentifier.from_string('localhost:5000/app:2').name_with_tag == 'localhost:5000/app:2'


def test_container_ref_is_self_from_instance_label():
    assert ContainerRef('1', ('bw',), {INSTANCE_LABEL: ''}).is_self is True
    assert ContainerRef('2', ('web',), {}).is_self is False


def test_normalize_library_image_without_listing():
    helper = LibraryHelper(None)
    assert helper.normalize_image_name('nginx') == 'index.docker.io/library/nginx'
    assert helper.normalize_image_name('myorg/app') == 'index.docker.io/myorg/app'
    assert helper.normalize_image_name('docker.io/nginx') == 'index.docker.io/library/nginx'


def test_normalize_keeps_explicit_registry():
    helper = LibraryHelper(None)
    assert helper.normalize_image_name('ghcr.io/owner/app') == 'ghcr.io/owner/app'
    assert helper.registry_host('registry.local:5000/app') == 'registry.local:5000'
    assert helper.repository_path('registry.local:5000/team/app') == 'team/app'
    assert helper.registry_url('ghcr.io/owner/app') == 'https://ghcr.io'


def test_library_listing_decides_prefix():
    helper = LibraryHelper({'nginx'})
    assert helper.repository_path('nginx') == 'library/nginx'
    assert helper.repository_path('notofficial') == 'notofficial'


def test_friendly_image_name_strips_hub_parts():
    helper = LibraryHelper(None)
    assert helper.friendly_image_name('index.docker.io/library/nginx') == 'nginx'
    assert helper.friendly_image_name('docker.io/myorg/app') == 'myorg/app'
    assert helper.friendly_image_name('ghcr.io/owner/app') == 'ghcr.io/owner/app'
    assert helper.is_docker_hub_image('nginx') is True
    assert helper.is_docker_hub_image('ghcr.io/owner/app') is False


def test_from_github_reads_listing():
    body = [{'path': 'library/nginx'}, {'path': 'library/redis'}]
    helper = LibraryHelper.from_github(FakeSession(FakeResponse(200, body)), logging.getLogger('test'))
    assert helper.library_images == {'nginx', 'redis'}


def test_from_github_falls_back_when_unavailable():
    helper = LibraryHelper.from_github(FakeSession(FakeResponse(503)), logging.getLogger('test'))
    assert helper.library_images is None
    assert helper.is_library_image('alpine') is True


class RecordingSession(FakeSession):
    def __init__(self, response):
        super().__init__(response)
        self.urls = []

    def get(self, url, headers=None, timeout=None):
        self.urls.append(url)
        return self.response


def test_hub_metadata_for_library_tag():
    body = {'last_updater_username': 'doijanky', 'last_updated': '2024-05-01T10:00:00.123456Z'}
    session = RecordingSession(FakeResponse(200, body))
    fetcher = DockerHubMetadataFetcher(session, LibraryHelper(None), logging.getLogger('test'))

    meta = fetcher.fetch(ImageIdentifier('nginx', '1.25'))

    assert session.urls == ['https://hub.docker.com/v2/repositories/library/nginx/tags/1.25/']
    assert meta.updated_by == 'doijanky'
    assert meta.update_time.year == 2024
    assert meta.update_time.tzinfo is not None


def test_hub_metadata_skips_other_registries_and_failures():
    session = RecordingSession(FakeResponse(404))
    fetcher = DockerHubMetadataFetcher(session, LibraryHelper(None), logging.getLogger('test'))

    assert fetcher.fetch(ImageIdentifier('ghcr.io/owner/app', '1.0')) is None
    assert session.urls == []
    assert fetcher.fetch(ImageIdentifier('myorg/app', '1.0')) is None
