#!/usr/bin/env python3
"""
basewatch
Watches running containers for newer releases of the base images they were
built from, announces them, and on request hands rebuilds to a helper container.
"""

import argparse
import os
import socket
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, List, Optional

import docker
import requests
from docker.errors import DockerException

from basewatch_core import config_utils as cu
from basewatch_core import docker_utils as du
from basewatch_core import metrics_utils as mu
from basewatch_core.auth_utils import CredentialStore, default_docker_config_path, load_docker_config_auths
from basewatch_core.check_utils import UpdateChecker
from basewatch_core.errors import ConfigError
from basewatch_core.library_utils import LibraryHelper
from basewatch_core.logging_utils import setup_logging
from basewatch_core.metadata_utils import DockerHubMetadataFetcher
from basewatch_core.models import INSTANCE_LABEL, ContainerUpdate, WatchConfig
from basewatch_core.notify_utils import LogNotifier, MultiNotifier, WebhookNotifier
from basewatch_core.rebuild_utils import RebuildSessions, UpdateOrchestrator
from basewatch_core.registry_utils import RegistryClient, TokenCache
from basewatch_core.state_utils import KnownUpdateFilter


class Basewatch:
    """The basewatch agent: periodic checks, notifications and rebuild triggers."""

    def __init__(self, config_file: str = None):
        if config_file is None:
            config_file = os.getenv('CONFIG_FILE', cu.DEFAULT_CONFIG_FILE)
        self.config_file = config_file
        self.logger = setup_logging()
        cu.load_env_file(os.getenv('ENV_FILE', cu.DEFAULT_ENV_FILE), self.logger)
        self.config = self.load_config()
        self.init_docker_client()
        self.init_metrics()
        self.build_components()
        self.sessions = RebuildSessions(self.logger)
        self.executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='rebuild')
        self.last_rebuild = None

    def load_config(self) -> WatchConfig:
        if not os.path.exists(self.config_file):
            self.logger.warning(f"Configuration file {self.config_file} not found, creating defaults")
            self.config_file = cu.create_default_config(self.config_file, self.logger)
        try:
            return cu.load_config(self.config_file, self.logger)
        except ConfigError as e:
            self.logger.error(f"Invalid configuration: {e}")
            sys.exit(1)

    def init_docker_client(self):
        try:
            self.docker_client = docker.from_env()
            self.docker_client.ping()
            self.logger.info("Docker client initialized successfully")
        except DockerException as e:
            self.logger.error(f"Failed to initialize Docker client: {e}")
            sys.exit(1)

    def init_metrics(self):
        m = mu.init_metrics(self.logger)
        self.metrics_enabled = m['enabled']
        self.counter_checks = m['checks']
        self.counter_updates_found = m['updates_found']
        self.counter_rebuilds = m['rebuilds']
        self.counter_failures = m['failures']

    def build_components(self):
        config = self.config
        session = requests.Session()
        library_helper = LibraryHelper.from_github(session, self.logger)
        entries = load_docker_config_auths(config.docker_config or default_docker_config_path(), self.logger)
        credentials = CredentialStore(entries, config.registries, self.logger)
        token_cache = TokenCache(self.logger) if config.registry_cache_tokens else None
        self.registry = RegistryClient(session, library_helper, credentials, self.logger, token_cache)

        notifiers = [LogNotifier(self.logger)]
        if config.webhook_url:
            hostname = config.hostname or socket.gethostname()
            notifiers.append(WebhookNotifier(config.webhook_url, self.logger, session, hostname))
        self.notifier = MultiNotifier(notifiers)

        self.checker = UpdateChecker(
            self.docker_client,
            self.registry,
            library_helper,
            self.notifier,
            self.logger,
            metadata_fetcher=DockerHubMetadataFetcher(session, library_helper, self.logger),
            enrollment_mode=config.enrollment_mode,
            base_image_update=config.base_image_update,
            pull_timeout=config.pull_timeout,
        )
        self.update_filter = KnownUpdateFilter(config.known_updates_file, self.logger, config.notify_again)
        self.orchestrator = None
        if config.updater.entrypoint:
            self.orchestrator = UpdateOrchestrator(self.docker_client, config.updater, self.logger)
        else:
            self.logger.info("No updater entrypoint configured, rebuilds are disabled")

    def verify_instance_count(self) -> int:
        """Warn unless exactly one container carries the basewatch instance label."""
        own = du.list_containers(self.docker_client, self.logger, all=True, filters={'label': INSTANCE_LABEL})
        if not own:
            self.logger.warning(
                f"No container carries the '{INSTANCE_LABEL}' label, updates of basewatch itself will "
                "be treated like any other container"
            )
        elif len(own) > 1:
            self.logger.warning(f"{len(own)} containers carry the '{INSTANCE_LABEL}' label")
        return len(own)

    def run_cycle(self) -> List[ContainerUpdate]:
        """One check: detect, filter, notify and remember. Returns the newly announced updates."""
        mu.inc(self.counter_checks)
        try:
            updates = self.checker.check_containers()
            tag_updates = self.checker.check_tags() if self.config.check_tags else []
            mu.inc(self.counter_updates_found, len(updates))
            self.sessions.publish(updates)

            fresh = self.update_filter.filter(updates)
            if fresh:
                self.notifier.notify(fresh)
            if tag_updates:
                self.notifier.notify_tags(tag_updates)
            self.update_filter.commit()
        except Exception as e:
            self.logger.error(f"Update check failed: {e}")
            mu.inc(self.counter_failures)
            self.notifier.notify_error(e)
            return []

        self.logger.info(f"Check complete: {len(updates)} update(s), {len(fresh)} new, {len(tag_updates)} tag update(s)")
        if fresh and self.config.auto_rebuild and self.orchestrator is not None:
            self.last_rebuild = self.executor.submit(self._rebuild, updates)
        return fresh

    def trigger_rebuild(self, snapshot_id: str, names: Optional[Iterable[str]] = None) -> Future:
        """Rebuild the updates announced under ``snapshot_id`` on the rebuild worker.

        Raises StaleSnapshotError right away if a newer check replaced the snapshot.
        """
        if self.orchestrator is None:
            raise ConfigError("No updater entrypoint configured, cannot rebuild")
        if names is not None:
            self.sessions.narrow(snapshot_id, names)
        updates = self.sessions.resolve(snapshot_id)
        self.last_rebuild = self.executor.submit(self._rebuild, updates)
        return self.last_rebuild

    def _rebuild(self, updates: List[ContainerUpdate]) -> None:
        try:
            self.orchestrator.rebuild_containers(updates, self._progress)
        except Exception as e:
            self.logger.error(f"Rebuild failed: {e}")
            mu.inc(self.counter_failures)
            self.notifier.notify_error(e)
            raise
        mu.inc(self.counter_rebuilds)

    def _progress(self, message: str) -> None:
        self.logger.info(message)

    def run(self):
        """Main execution loop."""
        self.logger.info("basewatch starting...")
        self.logger.info(f"Check interval: {self.config.check_interval} seconds")
        self.verify_instance_count()
        try:
            while True:
                self.logger.info("Checking for updates...")
                self.run_cycle()
                self.logger.info(f"Sleeping for {self.config.check_interval} seconds...")
                time.sleep(self.config.check_interval)
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal. Shutting down...")
        finally:
            self.executor.shutdown(wait=True)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='basewatch base image update watcher')
    parser.add_argument('--config', dest='config', help='Path to basewatch_config.json')
    parser.add_argument('--once', action='store_true', help='Run a single update check and exit')
    parser.add_argument('--test', action='store_true', help='Test Docker connectivity and registry auth, then exit')
    args = parser.parse_args()

    watcher = Basewatch(config_file=args.config)

    if args.test:
        ok = True
        try:
            watcher.docker_client.ping()
            print('Docker connectivity: OK')
        except DockerException as e:
            print(f'Docker connectivity: FAIL - {e}')
            ok = False
        for binding in watcher.checker.participating_bindings():
            try:
                watcher.registry.resolve_auth_header(binding.identifier.image)
                print(f'Registry auth for {binding.identifier.image}: OK')
            except Exception as e:
                print(f'Registry auth for {binding.identifier.image}: FAIL - {e}')
                ok = False
        sys.exit(0 if ok else 1)

    if args.once:
        watcher.verify_instance_count()
        watcher.run_cycle()
        watcher.executor.shutdown(wait=True)
        sys.exit(0)

    watcher.run()


if __name__ == "__main__":
    main()
