import base64
import json
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

import boto3
from google.auth import default
from google.auth.transport.requests import Request

from basewatch_core.errors import AuthError
from basewatch_core.models import AuthEntry


REALM_PATTERN = re.compile(r'realm="(.+?)"')
SERVICE_PATTERN = re.compile(r'service="(.+?)"')

_HUB_HOSTS = {'docker.io', 'index.docker.io', 'registry-1.docker.io', 'registry.hub.docker.com'}
_ECR_HOST = re.compile(r'^\d+\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com$')
_GCR_HOST = re.compile(r'^(?:[a-z]+\.)?gcr\.io$|^[a-z0-9-]+-docker\.pkg\.dev$')


class AuthState(Enum):
    NO_AUTH_TRIED = 'no_auth_tried'
    BASIC_ATTEMPTED = 'basic_attempted'
    CHALLENGE_PARSED = 'challenge_parsed'
    BEARER_OBTAINED = 'bearer_obtained'


@dataclass(frozen=True)
class Challenge:
    scheme: str
    realm: Optional[str] = None
    service: Optional[str] = None

    def token_params(self, scope_path: str) -> Dict[str, str]:
        params = {'scope': f"repository:{scope_path}:pull"}
        if self.service:
            params['service'] = self.service
        return params


@dataclass(frozen=True)
class AuthStep:
    """Result of one transition of the registry auth negotiation.

    ``resolved`` is True once ``header`` holds the final Authorization value
    (``None`` meaning the registry accepts anonymous requests). When the state
    is CHALLENGE_PARSED a token must be requested for ``challenge``.
    """
    state: AuthState
    resolved: bool = False
    header: Optional[str] = None
    challenge: Optional[Challenge] = None


def parse_challenge(header: Optional[str]) -> Challenge:
    if not header:
        raise AuthError("Could not find www-authenticate header")
    lowered = header.lower()
    if lowered.startswith('basic') or ('basic' in lowered and 'bearer' not in lowered):
        return Challenge('basic')
    if 'bearer' not in lowered:
        raise AuthError(f"Unknown challenge type: '{header}'")
    realm = REALM_PATTERN.search(header)
    if not realm:
        raise AuthError(f"Bearer challenge without realm: '{header}'")
    service = SERVICE_PATTERN.search(header)
    return Challenge('bearer', realm.group(1), service.group(1) if service else None)


def advance(
    state: AuthState,
    credentials: Optional[str],
    status_code: Optional[int] = None,
    authenticate_header: Optional[str] = None,
    token: Optional[str] = None,
) -> AuthStep:
    """Transition function of the challenge negotiation, free of any HTTP.

    From NO_AUTH_TRIED / BASIC_ATTEMPTED it consumes the ``/v2/`` probe
    response; from CHALLENGE_PARSED it consumes the issued ``token``.
    """
    if state in (AuthState.NO_AUTH_TRIED, AuthState.BASIC_ATTEMPTED):
        if status_code is None:
            raise ValueError(f"Probe status required in state {state.value}")
        if status_code in (200, 204):
            header = f"Basic {credentials}" if credentials else None
            return AuthStep(state, resolved=True, header=header)
        challenge = parse_challenge(authenticate_header)
        if challenge.scheme == 'basic':
            if not credentials:
                raise AuthError("Registry wants basic auth but no credentials are stored for it")
            return AuthStep(AuthState.BASIC_ATTEMPTED, resolved=True, header=f"Basic {credentials}")
        return AuthStep(AuthState.CHALLENGE_PARSED, challenge=challenge)
    if state is AuthState.CHALLENGE_PARSED:
        if not token:
            raise AuthError("Token endpoint did not hand out a token")
        return AuthStep(AuthState.BEARER_OBTAINED, resolved=True, header=f"Bearer {token}")
    raise ValueError(f"No transitions out of {state.value}")


def normalize_auth_host(key: str) -> str:
    """Reduce a docker config ``auths`` key (often a URL) to a bare registry host."""
    host = re.sub(r'^[a-z]+://', '', key.strip())
    host = host.split('/', 1)[0].lower()
    if host in _HUB_HOSTS:
        return 'index.docker.io'
    return host


def load_docker_config_auths(path: str, logger) -> List[AuthEntry]:
    """Read ``auths[host].auth`` from a docker ``config.json``."""
    if not path or not os.path.exists(path):
        return []
    with open(path, 'r') as f:
        config = json.load(f)
    entries: List[AuthEntry] = []
    for key, value in (config.get('auths') or {}).items():
        auth = (value or {}).get('auth')
        if not auth:
            logger.debug(f"Skipping docker config entry without inline auth: {key}")
            continue
        entries.append(AuthEntry(normalize_auth_host(key), auth))
    logger.info(f"Loaded {len(entries)} registry credential(s) from {path}")
    return entries


def default_docker_config_path() -> str:
    return os.path.join(os.path.expanduser('~'), '.docker', 'config.json')


def _to_aware_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if getattr(dt, 'tzinfo', None) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class CredentialStore:
    """Registry credentials by host: static docker config entries plus ECR/GCR minted ones."""

    def __init__(self, entries: Optional[List[AuthEntry]] = None, registries: Optional[Dict] = None, logger=None):
        self.entries: Dict[str, str] = {}
        for entry in entries or []:
            self.entries.setdefault(normalize_auth_host(entry.host), entry.encoded_auth)
        self.registries = registries or {}
        self.logger = logger
        self._ecr_cache: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def get(self, host: str) -> Optional[str]:
        host = normalize_auth_host(host)
        if host in self.entries:
            return self.entries[host]
        ecr = _ECR_HOST.match(host)
        if ecr and 'ecr' in self.registries:
            return self._ecr_auth(host, ecr.group(1))
        if _GCR_HOST.match(host) and 'gcr' in self.registries:
            return self._gcr_auth()
        return None

    def _ecr_auth(self, host: str, region: str) -> Optional[str]:
        now = datetime.now(timezone.utc)
        with self._lock:
            cached = self._ecr_cache.get(region)
            if cached and now < cached['expires'] - timedelta(minutes=5):
                return cached['auth']
            config = self.registries.get('ecr') or {}
            access_key = config.get('aws_access_key_id')
            secret_key = config.get('aws_secret_access_key')
            try:
                if access_key and secret_key:
                    client = boto3.client(
                        'ecr',
                        region_name=region,
                        aws_access_key_id=access_key,
                        aws_secret_access_key=secret_key,
                    )
                else:
                    client = boto3.client('ecr', region_name=region)
                data = client.get_authorization_token()['authorizationData'][0]
            except Exception as e:
                raise AuthError(f"ECR authentication error for {host}: {e}") from e
            expires = _to_aware_utc(data.get('expiresAt')) or (now + timedelta(hours=12))
            self._ecr_cache[region] = {'auth': data['authorizationToken'], 'expires': expires}
            if self.logger:
                self.logger.info(f"Obtained ECR credentials for region {region}")
            return data['authorizationToken']

    def _gcr_auth(self) -> Optional[str]:
        config = self.registries.get('gcr') or {}
        if config.get('service_account_path'):
            os.environ['GOOGLE_APPLICATION_CREDENTIALS'] = config['service_account_path']
        try:
            credentials, _ = default(scopes=['https://www.googleapis.com/auth/cloud-platform'])
            credentials.refresh(Request())
        except Exception as e:
            raise AuthError(f"GCR authentication error: {e}") from e
        raw = f"oauth2accesstoken:{credentials.token}".encode()
        return base64.b64encode(raw).decode()
