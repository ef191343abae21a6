import json
from typing import Any, Dict, List, Optional, Sequence

import requests

from basewatch_core.models import ContainerUpdate, RemoteMetadata, TagUpdate


def _metadata_payload(metadata: Optional[RemoteMetadata]) -> Optional[Dict[str, str]]:
    if metadata is None:
        return None
    return {'updated_by': metadata.updated_by, 'update_time': metadata.update_time.isoformat()}


def container_update_payload(update: ContainerUpdate) -> Dict[str, Any]:
    image_update = update.image_update
    return {
        'names': list(update.names),
        'is_self': update.is_self,
        'image': image_update.identifier.name_with_tag,
        'source_image_id': image_update.source_image_id,
        'source_image_names': list(image_update.source_image_names),
        'remote_manifest_digest': image_update.remote_manifest_digest,
        'remote_metadata': _metadata_payload(image_update.remote_metadata),
    }


def tag_update_payload(update: TagUpdate) -> Dict[str, Any]:
    return {
        'names': list(update.names),
        'image': update.identifier.image,
        'current_tag': update.current_tag,
        'new_tag': update.new_tag,
        'remote_metadata': _metadata_payload(update.remote_metadata),
    }


class Notifier:
    """Receives the results of a check cycle."""

    def notify(self, updates: Sequence[ContainerUpdate]) -> None:
        raise NotImplementedError

    def notify_tags(self, tag_updates: Sequence[TagUpdate]) -> None:
        raise NotImplementedError

    def notify_error(self, error: BaseException) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):

    def __init__(self, logger):
        self.logger = logger

    def notify(self, updates):
        for update in updates:
            self.logger.info(
                f"Update available for {', '.join(update.names)}: "
                f"{update.image_update.identifier} ({update.image_update.remote_manifest_digest})"
            )

    def notify_tags(self, tag_updates):
        for update in tag_updates:
            self.logger.info(
                f"New version for {', '.join(update.names)}: "
                f"{update.identifier.image} {update.current_tag} -> {update.new_tag}"
            )

    def notify_error(self, error):
        self.logger.error(f"Update check failed: {error}")


class WebhookNotifier(Notifier):
    """POSTs JSON events to a webhook. Delivery failures are logged, never raised."""

    def __init__(self, url: str, logger, session: Optional[requests.Session] = None,
                 hostname: Optional[str] = None, timeout: int = 5):
        self.url = url
        self.logger = logger
        self.session = session or requests.Session()
        self.hostname = hostname
        self.timeout = timeout

    def _post(self, event_type: str, payload: Dict[str, Any]) -> None:
        body = {'event': event_type, **payload}
        if self.hostname:
            body['hostname'] = self.hostname
        try:
            resp = self.session.post(
                self.url,
                headers={'Content-Type': 'application/json'},
                data=json.dumps(body),
                timeout=self.timeout,
            )
            if resp.status_code >= 400:
                self.logger.warning(f"Webhook notify returned {resp.status_code}")
        except requests.RequestException as e:
            self.logger.warning(f"Webhook notify failed: {e}")

    def notify(self, updates):
        if not updates:
            return
        self._post('updates_found', {'updates': [container_update_payload(u) for u in updates]})

    def notify_tags(self, tag_updates):
        if not tag_updates:
            return
        self._post('tag_updates_found', {'updates': [tag_update_payload(u) for u in tag_updates]})

    def notify_error(self, error):
        self._post('check_failed', {'error': str(error), 'type': type(error).__name__})


class MultiNotifier(Notifier):

    def __init__(self, notifiers: List[Notifier]):
        self.notifiers = notifiers

    def notify(self, updates):
        for n in self.notifiers:
            n.notify(updates)

    def notify_tags(self, tag_updates):
        for n in self.notifiers:
            n.notify_tags(tag_updates)

    def notify_error(self, error):
        for n in self.notifiers:
            n.notify_error(error)
