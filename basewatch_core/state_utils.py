import fcntl
import json
import os
import time
from typing import Any, Dict, List, Optional, Sequence

from basewatch_core.errors import FilterError
from basewatch_core.models import ContainerUpdate


class UpdateFilter:
    """Decides which updates are worth announcing; ``commit`` makes that decision stick."""

    def filter(self, updates: Sequence[ContainerUpdate]) -> List[ContainerUpdate]:
        return list(updates)

    def commit(self) -> None:
        pass


class KnownUpdateFilter(UpdateFilter):
    """Drops updates whose remote manifest digest was already announced.

    Known updates live in a JSON file keyed by remote manifest digest, so a
    further push for the same local image is announced again.
    """

    def __init__(self, state_file: str, logger, notify_again: bool = False):
        self.state_file = state_file
        self.lock_file = state_file + '.lock'
        self.logger = logger
        self.notify_again = notify_again
        self._pending: Optional[Dict[str, Any]] = None

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.state_file):
            return {}
        try:
            with open(self.state_file, 'r') as f:
                data = json.load(f)
            known = data.get('known_updates', {})
            if not isinstance(known, dict):
                raise ValueError("known_updates is not an object")
            return known
        except (OSError, ValueError, AttributeError) as e:
            self.logger.warning(f"Failed loading known updates from {self.state_file}, starting empty: {e}")
            return {}

    def filter(self, updates):
        known = self._load()
        self.logger.info(f"Loaded {len(known)} already known update(s)")
        filtered = []
        for update in updates:
            digest = update.image_update.remote_manifest_digest
            if digest in known and not self.notify_again:
                self.logger.info(
                    f"Skipping notify for {list(update.image_update.source_image_names)} - "
                    f"{update.image_update.source_image_id}"
                )
                continue
            filtered.append(update)

        pending = dict(known)
        for update in filtered:
            image_update = update.image_update
            pending[image_update.remote_manifest_digest] = {
                'remote_manifest': image_update.remote_manifest_digest,
                'local_image_id': image_update.source_image_id,
                'repo_tags': list(image_update.source_image_names),
                'original_containers': list(update.names),
            }
        self._pending = pending
        return filtered

    def commit(self):
        if self._pending is None:
            return
        try:
            state_dir = os.path.dirname(self.state_file) or '.'
            os.makedirs(state_dir, exist_ok=True)
            data = json.dumps({'known_updates': self._pending}, indent=2)
            with open(self.lock_file, 'w') as lock_fd:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX)
                tmp_path = os.path.join(state_dir, f'.tmp_known_{int(time.time() * 1000)}.json')
                with open(tmp_path, 'w') as tf:
                    tf.write(data)
                    tf.flush()
                    os.fsync(tf.fileno())
                os.replace(tmp_path, self.state_file)
        except OSError as e:
            raise FilterError(f"Failed to save known updates to {self.state_file}: {e}") from e
        self.logger.debug(f"Committed {len(self._pending)} known update(s) to {self.state_file}")
