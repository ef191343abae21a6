import hashlib
import json
import threading
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from docker.errors import APIError, DockerException

from basewatch_core import docker_utils as du
from basewatch_core.errors import RebuildFailedError, StaleSnapshotError
from basewatch_core.models import HELPER_MARKER_LABEL, ContainerUpdate, HelperConfig, ImageIdentifier

BASE_PULL_TIMEOUT = 300


def parse_mounts(mounts: Iterable[str]) -> Dict[str, Dict[str, str]]:
    """Turn ``source:dest[:mode]`` strings into the docker SDK volumes mapping."""
    volumes: Dict[str, Dict[str, str]] = {}
    for mount in mounts:
        parts = mount.split(':')
        if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid mount '{mount}', expected source:dest[:mode]")
        volumes[parts[0]] = {'bind': parts[1], 'mode': parts[2] if len(parts) == 3 else 'rw'}
    return volumes


def _distinct_names(updates: Iterable[ContainerUpdate]) -> List[str]:
    names: List[str] = []
    for update in updates:
        for name in update.names:
            if name not in names:
                names.append(name)
    return names


class UpdateOrchestrator:
    """Refreshes base images and hands the actual rebuild to an operator supplied helper container.

    Containers are never recreated here; the helper receives the container
    names as arguments and does whatever rebuilding means for this host.
    """

    def __init__(self, docker_client, helper: HelperConfig, logger, pull_timeout: int = BASE_PULL_TIMEOUT):
        if not helper.entrypoint:
            raise ValueError("The rebuild helper needs an entrypoint")
        self.docker_client = docker_client
        self.helper = helper
        self.logger = logger
        self.pull_timeout = pull_timeout
        self.volumes = parse_mounts(helper.mounts)
        self.cleanup_helpers()

    def cleanup_helpers(self) -> None:
        """Remove helper containers left behind by an earlier, interrupted run."""
        leftovers = self.docker_client.containers.list(
            all=True, filters={'label': HELPER_MARKER_LABEL, 'status': ['exited', 'created']}
        )
        for container in leftovers:
            self.logger.info(f"Removing leftover helper container {container.id}")
            container.remove()

    def update_base_image(self, identifier: ImageIdentifier) -> None:
        self.logger.info(f"Updating base image {identifier}")
        du.pull_image(self.docker_client, identifier, self.logger, self.pull_timeout)

    def rebuild_containers(self, updates: Sequence[ContainerUpdate],
                           progress_callback: Optional[Callable[[str], None]] = None) -> None:
        """Pull fresh base images, then run the helper for other containers and lastly for ourselves.

        The self update runs in a second helper invocation after progress has
        been reported, since it will likely take this process down.
        """
        self.logger.info(f"Rebuilding {len(updates)} containers")
        identifiers = []
        for update in updates:
            if update.image_update.identifier not in identifiers:
                identifiers.append(update.image_update.identifier)
        for identifier in identifiers:
            self.update_base_image(identifier)

        others = _distinct_names(u for u in updates if not u.is_self)
        own = [u for u in updates if u.is_self]
        if others:
            self.run_helper(others)
        else:
            self.logger.debug("No containers besides ourselves to rebuild")

        if progress_callback is not None:
            if own:
                progress_callback(f"Updated (except for {len(own)} self update(s))!")
            else:
                progress_callback("Updated!")

        if own:
            self.logger.info("Updating basewatch itself, no further progress can be reported")
            if len(own) > 1:
                self.logger.warning(f"{len(own)} basewatch instances are scheduled for an update")
            self.run_helper(_distinct_names(own))

    def _ensure_helper_image(self) -> None:
        if du.image_exists(self.docker_client, self.helper.image):
            return
        identifier = ImageIdentifier.from_string(self.helper.image)
        self.logger.info(f"Pulling helper image {identifier}")
        du.pull_image(self.docker_client, identifier, self.logger, self.pull_timeout)

    def run_helper(self, names: List[str]) -> None:
        """Run the helper with ``names`` and block until it exits; non-zero exit raises RebuildFailedError."""
        self._ensure_helper_image()
        command = [self.helper.entrypoint] + list(names)
        container = self.docker_client.containers.create(
            self.helper.image,
            command=command,
            labels={HELPER_MARKER_LABEL: 'true'},
            volumes=self.volumes,
        )
        self.logger.info(f"Started updater has ID {container.id}")

        try:
            stream = container.attach(stdout=True, stderr=True, stream=True, logs=True, demux=True)
            container.start()
            try:
                self._forward_output(stream)
            except (APIError, DockerException, OSError) as e:
                raise RebuildFailedError(f"Lost the helper output stream: {e}") from e
            try:
                result = container.wait()
            except (APIError, DockerException, OSError) as e:
                raise RebuildFailedError(f"Could not wait for the helper container: {e}") from e
        finally:
            self._remove_helper(container)

        status = (result or {}).get('StatusCode', -1)
        if status != 0:
            self.logger.warning(f"Rebuild failed with exit code {status}")
            raise RebuildFailedError(f"Rebuild script failed, exit code: {status}")
        self.logger.info("Rebuild script finished successfully")

    def _remove_helper(self, container) -> None:
        try:
            container.remove(force=True)
        except (APIError, DockerException) as e:
            # picked up by cleanup_helpers on the next start
            self.logger.warning(f"Could not remove helper container {container.id}: {e}")

    def _forward_output(self, stream) -> None:
        pending = {'stdout': '', 'stderr': ''}
        for chunk in stream:
            out, err = chunk if isinstance(chunk, tuple) else (chunk, None)
            for key, data in (('stdout', out), ('stderr', err)):
                if not data:
                    continue
                text = pending[key] + data.decode('utf-8', errors='replace')
                *lines, pending[key] = text.split('\n')
                for line in lines:
                    self._log_line(key, line)
        for key, rest in pending.items():
            if rest:
                self._log_line(key, rest)

    def _log_line(self, stream_name: str, line: str) -> None:
        line = line.rstrip('\r')
        if stream_name == 'stderr':
            self.logger.warning(f"[updater] {line}")
        else:
            self.logger.info(f"[updater] {line}")


def snapshot_id(updates: Iterable[ContainerUpdate]) -> str:
    """Content hash of an update list, independent of its order."""
    canonical = sorted(
        [
            list(u.names),
            u.image_update.source_image_id,
            u.image_update.remote_manifest_digest,
            u.image_update.identifier.name_with_tag,
            u.is_self,
        ]
        for u in updates
    )
    return hashlib.sha256(json.dumps(canonical).encode('utf-8')).hexdigest()


class RebuildSessions:
    """The update list a user may act on, bound to the snapshot id it was announced with."""

    def __init__(self, logger):
        self.logger = logger
        self._lock = threading.Lock()
        self._snapshot_id: Optional[str] = None
        self._updates: List[ContainerUpdate] = []
        self._selected: Optional[List[ContainerUpdate]] = None

    @property
    def current_id(self) -> Optional[str]:
        with self._lock:
            return self._snapshot_id

    def publish(self, updates: Sequence[ContainerUpdate]) -> str:
        new_id = snapshot_id(updates)
        with self._lock:
            if new_id != self._snapshot_id:
                self._selected = None
            self._snapshot_id = new_id
            self._updates = list(updates)
        self.logger.debug(f"Published update snapshot {new_id[:12]} with {len(updates)} update(s)")
        return new_id

    def _check(self, requested: str) -> None:
        if self._snapshot_id is None or requested != self._snapshot_id:
            raise StaleSnapshotError(f"Update snapshot {requested[:12]} is no longer current")

    def narrow(self, requested: str, names: Iterable[str]) -> List[ContainerUpdate]:
        """Restrict the snapshot to updates touching ``names``."""
        wanted = set(names)
        with self._lock:
            self._check(requested)
            self._selected = [u for u in self._updates if wanted.intersection(u.names)]
            return list(self._selected)

    def resolve(self, requested: str) -> List[ContainerUpdate]:
        with self._lock:
            self._check(requested)
            if self._selected is not None:
                return list(self._selected)
            return list(self._updates)
