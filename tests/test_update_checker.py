import logging
import time
from types import SimpleNamespace

import pytest
from docker.errors import ImageNotFound

from basewatch_core import docker_utils
from basewatch_core.check_utils import (
    UpdateChecker,
    contains_base_layers,
    dedupe_bindings,
    filter_tags,
    is_outdated,
    is_participating,
    resolve_binding,
)
from basewatch_core.errors import DigestFetchError, PullError, PullTimeoutError
from basewatch_core.library_utils import LibraryHelper
from basewatch_core.models import (
    BASE_IMAGE_LABEL,
    ENABLED_LABEL,
    INSTANCE_LABEL,
    TAG_IGNORE_LABEL,
    TAG_STRATEGY_LABEL,
    BaseImageUpdateStrategy,
    BindingKind,
    ContainerRef,
    EnrollmentMode,
    ImageIdentifier,
)

LOG = logging.getLogger('test')


class FakeImages:
    def __init__(self, images):
        self.images = images

    def get(self, ref):
        if ref not in self.images:
            raise ImageNotFound(f"No such image: {ref}")
        return SimpleNamespace(attrs=self.images[ref])


class FakeAPI:
    def __init__(self, on_pull=None, events=None):
        self.pulls = []
        self.on_pull = on_pull
        self.events = events or [{'status': 'Pull complete'}]

    def pull(self, image, tag=None, stream=False, decode=False):
        self.pulls.append((image, tag))
        if self.on_pull:
            self.on_pull(image, tag)
        return iter(self.events)


class FakeContainers:
    def __init__(self, containers):
        self.containers = containers

    def list(self, all=False, filters=None):
        return list(self.containers)


def container(cid, name, image_id, labels=None):
    return SimpleNamespace(
        id=cid,
        name=name,
        labels=labels or {},
        attrs={'Image': image_id, 'Config': {'Image': name + ':img'}},
    )


def docker_client(containers, images, api=None):
    return SimpleNamespace(containers=FakeContainers(containers), images=FakeImages(images), api=api or FakeAPI())


class FakeRegistry:
    def __init__(self, digests=None, tags=None, errors=None):
        self.digests = digests or {}
        self.tags = tags or {}
        self.errors = errors or {}
        self.tag_calls = []

    def fetch_digest(self, image, tag):
        if image in self.errors:
            raise self.errors[image]
        return self.digests[(image, tag)]

    def list_tags(self, image):
        self.tag_calls.append(image)
        if image in self.errors:
            raise self.errors[image]
        return self.tags[image]


class RecordingNotifier:
    def __init__(self):
        self.errors = []

    def notify_error(self, error):
        self.errors.append(error)


def make_checker(client, registry, strategy=BaseImageUpdateStrategy.ONLY_PULL_UNKNOWN,
                 mode=EnrollmentMode.OPT_OUT, notifier=None):
    return UpdateChecker(
        client,
        registry,
        LibraryHelper(None),
        notifier or RecordingNotifier(),
        LOG,
        enrollment_mode=mode,
        base_image_update=strategy,
    )


def nginx_setup(local_digest='sha256:X', base_layers=('l1',), app_layers=('l1', 'l2')):
    images = {
        'nginx:1.25': {'RepoDigests': [f'nginx@{local_digest}'], 'RootFS': {'Layers': list(base_layers)}},
        'sha256:app': {'RepoTags': ['app:1'], 'RootFS': {'Layers': list(app_layers)}},
    }
    containers = [container('c1', 'web', 'sha256:app', {BASE_IMAGE_LABEL: 'nginx:1.25'})]
    return containers, images


# plain rules

def test_is_outdated_matches_digest_suffix():
    assert is_outdated(['nginx@sha256:abc'], 'sha256:abc') is False
    assert is_outdated(['nginx@sha256:abc', 'mirror/nginx@sha256:old'], 'sha256:abc') is False
    assert is_outdated(['nginx@sha256:old'], 'sha256:abc') is True
    assert is_outdated([], 'sha256:abc') is True


def test_layer_containment_ignores_order():
    assert contains_base_layers(['a', 'b'], ['b', 'c', 'a']) is True
    assert contains_base_layers(['a', 'd'], ['a', 'b', 'c']) is False


def test_enrollment_defaults_per_mode():
    plain = ContainerRef('1', ('web',), {})
    assert is_participating(EnrollmentMode.OPT_IN, plain, LOG) is False
    assert is_participating(EnrollmentMode.OPT_OUT, plain, LOG) is True


def test_enrollment_label_overrides_mode():
    enabled = ContainerRef('1', ('web',), {ENABLED_LABEL: 'true'})
    disabled = ContainerRef('2', ('db',), {ENABLED_LABEL: 'False'})
    assert is_participating(EnrollmentMode.OPT_IN, enabled, LOG) is True
    assert is_participating(EnrollmentMode.OPT_OUT, disabled, LOG) is False


def test_enrollment_invalid_value_falls_back_to_mode(caplog):
    odd = ContainerRef('1', ('web',), {ENABLED_LABEL: 'maybe'})
    with caplog.at_level(logging.WARNING):
        assert is_participating(EnrollmentMode.OPT_IN, odd, LOG) is False
        assert is_participating(EnrollmentMode.OPT_OUT, odd, LOG) is True
    assert 'invalid value' in caplog.text


def test_resolve_binding_explicit_and_implicit():
    client = docker_client([], {'sha256:app': {'RepoTags': ['redis:7']}})
    helper = LibraryHelper(None)

    explicit = resolve_binding(client, helper, ContainerRef('1', ('a',), {BASE_IMAGE_LABEL: 'docker.io/nginx:1.25'}), LOG)
    assert explicit.kind is BindingKind.EXPLICIT
    assert explicit.identifier == ImageIdentifier('nginx', '1.25')

    implicit = resolve_binding(client, helper, ContainerRef('2', ('b',), {}, 'sha256:app'), LOG)
    assert implicit.kind is BindingKind.IMPLICIT
    assert implicit.identifier == ImageIdentifier('redis', '7')


def test_resolve_binding_without_repo_tags_is_skipped():
    client = docker_client([], {'sha256:app': {'RepoTags': []}})
    assert resolve_binding(client, LibraryHelper(None), ContainerRef('1', ('a',), {}, 'sha256:app'), LOG) is None


def test_dedupe_keeps_smallest_container_id():
    helper = LibraryHelper(None)
    client = docker_client([], {})
    b = resolve_binding(client, helper, ContainerRef('b', ('second',), {BASE_IMAGE_LABEL: 'nginx'}, 'sha256:app'), LOG)
    a = resolve_binding(client, helper, ContainerRef('a', ('first',), {BASE_IMAGE_LABEL: 'nginx'}, 'sha256:app'), LOG)
    result = dedupe_bindings([b, a])
    assert len(result) == 1
    assert result[0].container.names == ('first',)


def test_filter_tags_keep_and_ignore():
    tags = ['1.2.0', '1.3.0-alpine', '1.3.0', 'latest']
    assert filter_tags(tags, r'^\d', r'alpine') == ['1.2.0', '1.3.0']
    assert filter_tags(tags, None, None) == tags


# detection

def test_outdated_explicit_base_only_pull_unknown_reports_without_pulling():
    containers, images = nginx_setup(local_digest='sha256:X')
    api = FakeAPI()
    client = docker_client(containers, images, api)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    updates = make_checker(client, registry).check()

    assert len(updates) == 1
    update = next(iter(updates))
    assert update.remote_manifest_digest == 'sha256:Y'
    assert update.source_image_id == 'sha256:app'
    assert update.source_image_names == ('app:1',)
    assert update.identifier == ImageIdentifier('nginx', '1.25')
    assert api.pulls == []


def test_current_base_with_all_layers_is_up_to_date():
    containers, images = nginx_setup(local_digest='sha256:Y')
    client = docker_client(containers, images)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    assert make_checker(client, registry).check() == set()


def test_current_base_with_missing_layer_is_stale():
    containers, images = nginx_setup(local_digest='sha256:Y', base_layers=('l1', 'l9'))
    client = docker_client(containers, images)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    assert len(make_checker(client, registry).check()) == 1


def test_pull_and_update_refreshes_base_then_compares_layers():
    containers, images = nginx_setup(local_digest='sha256:X')

    def refresh(image, tag):
        images['nginx:1.25'] = {'RepoDigests': ['nginx@sha256:Y'], 'RootFS': {'Layers': ['l3']}}

    api = FakeAPI(on_pull=refresh)
    client = docker_client(containers, images, api)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    updates = make_checker(client, registry, BaseImageUpdateStrategy.PULL_AND_UPDATE).check()

    assert api.pulls == [('nginx', '1.25')]
    assert len(updates) == 1


def test_missing_explicit_base_is_pulled_first():
    containers, images = nginx_setup(local_digest='sha256:Y')
    base = images.pop('nginx:1.25')
    api = FakeAPI(on_pull=lambda image, tag: images.update({'nginx:1.25': base}))
    client = docker_client(containers, images, api)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    assert make_checker(client, registry).check() == set()
    assert api.pulls == [('nginx', '1.25')]


def test_implicit_binding_stale_iff_outdated():
    images = {'sha256:redis': {'RepoTags': ['redis:7'], 'RepoDigests': ['redis@sha256:old']}}
    images['redis:7'] = images['sha256:redis']
    client = docker_client([container('c1', 'cache', 'sha256:redis')], images)

    stale = make_checker(client, FakeRegistry(digests={('redis', '7'): 'sha256:new'})).check()
    fresh = make_checker(client, FakeRegistry(digests={('redis', '7'): 'sha256:old'})).check()

    assert len(stale) == 1
    assert fresh == set()


def test_base_without_repo_digests_is_skipped():
    containers, images = nginx_setup()
    images['nginx:1.25']['RepoDigests'] = []
    client = docker_client(containers, images)

    assert make_checker(client, FakeRegistry()).check() == set()


def test_opt_in_ignores_unlabelled_containers():
    containers, images = nginx_setup(local_digest='sha256:X')
    client = docker_client(containers, images)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    assert make_checker(client, registry, mode=EnrollmentMode.OPT_IN).check() == set()


def test_binding_errors_are_reported_and_others_continue():
    containers, images = nginx_setup(local_digest='sha256:X')
    images['sha256:other'] = {'RepoTags': ['other:1'], 'RootFS': {'Layers': []}}
    images['redis:7'] = {'RepoDigests': ['redis@sha256:a'], 'RootFS': {'Layers': []}}
    containers.append(container('c2', 'cache', 'sha256:other', {BASE_IMAGE_LABEL: 'redis:7'}))
    client = docker_client(containers, images)
    failure = DigestFetchError(404)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'}, errors={'redis': failure})
    notifier = RecordingNotifier()

    updates = make_checker(client, registry, notifier=notifier).check()

    assert len(updates) == 1
    assert notifier.errors == [failure]


def test_pull_errors_are_reported_per_binding():
    containers, images = nginx_setup()
    images.pop('nginx:1.25')
    client = docker_client(containers, images, FakeAPI(events=[{'error': 'manifest unknown'}]))
    notifier = RecordingNotifier()

    assert make_checker(client, FakeRegistry(), notifier=notifier).check() == set()
    assert isinstance(notifier.errors[0], PullError)


def test_pull_timeout_aborts_check(monkeypatch):
    containers, images = nginx_setup()
    images.pop('nginx:1.25')
    client = docker_client(containers, images)

    def timeout(*args, **kwargs):
        raise PullTimeoutError("too slow")

    monkeypatch.setattr(docker_utils, 'pull_image', timeout)
    with pytest.raises(PullTimeoutError):
        make_checker(client, FakeRegistry()).check()


class StalledAPI:
    def __init__(self, delay):
        self.delay = delay

    def pull(self, image, tag=None, stream=False, decode=False):
        def events():
            time.sleep(self.delay)
            yield {'status': 'Pull complete'}
        return events()


def test_pull_image_gives_up_while_stream_is_silent():
    client = SimpleNamespace(api=StalledAPI(delay=1.0))

    started = time.monotonic()
    with pytest.raises(PullTimeoutError):
        docker_utils.pull_image(client, ImageIdentifier('nginx', '1.25'), LOG, timeout=0.1)

    assert time.monotonic() - started < 0.8


def test_pull_image_within_deadline_succeeds():
    client = SimpleNamespace(api=StalledAPI(delay=0.05))
    docker_utils.pull_image(client, ImageIdentifier('nginx', '1.25'), LOG, timeout=5)


def test_stalled_pull_aborts_whole_check():
    containers, images = nginx_setup()
    images.pop('nginx:1.25')
    client = docker_client(containers, images, StalledAPI(delay=1.0))
    checker = make_checker(client, FakeRegistry())
    checker.pull_timeout = 0.1

    with pytest.raises(PullTimeoutError):
        checker.check()


def test_check_containers_maps_updates_to_every_container():
    containers, images = nginx_setup(local_digest='sha256:X')
    containers.append(container('c2', 'web-2', 'sha256:app', {INSTANCE_LABEL: 'yes'}))
    containers.append(container('c3', 'db', 'sha256:db', {ENABLED_LABEL: 'false'}))
    client = docker_client(containers, images)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    updates = make_checker(client, registry).check_containers()

    assert [u.names for u in updates] == [('web',), ('web-2',)]
    assert [u.is_self for u in updates] == [False, True]
    assert updates[0].image_update is updates[1].image_update


def test_check_containers_leaves_opted_out_containers_alone():
    containers, images = nginx_setup(local_digest='sha256:X')
    containers.append(container('c2', 'optout', 'sha256:app', {ENABLED_LABEL: 'false'}))
    client = docker_client(containers, images)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    updates = make_checker(client, registry).check_containers()

    assert [u.names for u in updates] == [('web',)]


def test_check_containers_opt_in_maps_only_enrolled():
    containers, images = nginx_setup(local_digest='sha256:X')
    containers[0].labels[ENABLED_LABEL] = 'true'
    containers.append(container('c2', 'unlabelled', 'sha256:app'))
    client = docker_client(containers, images)
    registry = FakeRegistry(digests={('nginx', '1.25'): 'sha256:Y'})

    updates = make_checker(client, registry, mode=EnrollmentMode.OPT_IN).check_containers()

    assert [u.names for u in updates] == [('web',)]


# tag upgrades

def tag_container(cid, labels):
    base = {BASE_IMAGE_LABEL: 'myorg/app:1.2.0'}
    base.update(labels)
    return container(cid, 'app-' + cid, 'sha256:app', base)


def test_check_tags_semver_picks_highest_and_skips_bogus():
    client = docker_client([tag_container('c1', {TAG_STRATEGY_LABEL: 'semver'})], {})
    registry = FakeRegistry(tags={'myorg/app': ['1.2.0', '1.3.0', 'bogus']})

    updates = make_checker(client, registry).check_tags()

    assert len(updates) == 1
    assert updates[0].current_tag == '1.2.0'
    assert updates[0].new_tag == '1.3.0'
    assert updates[0].identifier == ImageIdentifier('myorg/app', '1.3.0')
    assert updates[0].names == ('app-c1',)


def test_check_tags_nothing_newer():
    client = docker_client([tag_container('c1', {TAG_STRATEGY_LABEL: 'semver'})], {})
    registry = FakeRegistry(tags={'myorg/app': ['1.0.0', '1.2.0']})

    assert make_checker(client, registry).check_tags() == []


def test_check_tags_applies_ignore_filter():
    labels = {TAG_STRATEGY_LABEL: 'semver', TAG_IGNORE_LABEL: 'rc'}
    client = docker_client([tag_container('c1', labels)], {})
    registry = FakeRegistry(tags={'myorg/app': ['1.2.0', '2.0.0-rc.1', '1.2.1']})

    updates = make_checker(client, registry).check_tags()
    assert [u.new_tag for u in updates] == ['1.2.1']


def test_check_tags_invalid_strategy_skips_container():
    client = docker_client([tag_container('c1', {TAG_STRATEGY_LABEL: 'calver'})], {})
    registry = FakeRegistry(tags={'myorg/app': ['9.0.0']})

    assert make_checker(client, registry).check_tags() == []
    assert registry.tag_calls == []


def test_check_tags_registry_error_is_reported():
    client = docker_client([tag_container('c1', {TAG_STRATEGY_LABEL: 'semver'})], {})
    failure = DigestFetchError(401)
    notifier = RecordingNotifier()
    registry = FakeRegistry(errors={'myorg/app': failure})

    assert make_checker(client, registry, notifier=notifier).check_tags() == []
    assert notifier.errors == [failure]


def test_check_tags_lists_each_image_once():
    labels = {TAG_STRATEGY_LABEL: 'semver'}
    client = docker_client([tag_container('c1', labels), tag_container('c2', labels)], {})
    registry = FakeRegistry(tags={'myorg/app': ['1.2.0', '1.4.0']})

    updates = make_checker(client, registry).check_tags()
    assert len(updates) == 2
    assert registry.tag_calls == ['myorg/app']
