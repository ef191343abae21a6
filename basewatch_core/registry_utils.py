import re
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import requests

from basewatch_core.auth_utils import AuthState, Challenge, CredentialStore, advance
from basewatch_core.errors import DigestFetchError, ProtocolError, TokenFetchError
from basewatch_core.library_utils import LibraryHelper


USER_AGENT = 'basewatch'
# Offer every manifest type at once so the registry picks the same one the local daemon got
MANIFEST_ACCEPT = ', '.join([
    'application/vnd.docker.distribution.manifest.list.v2+json',
    'application/vnd.docker.distribution.manifest.v1+json',
    'application/vnd.docker.distribution.manifest.v2+json',
])
DIGEST_HEADER = 'docker-content-digest'
HUB_AUTH_URL = 'https://auth.docker.io/token'
HUB_AUTH_SERVICE = 'registry.docker.io'
HUB_REGISTRY_URL = 'https://index.docker.io'
TOKEN_SAFETY_MARGIN = 10
DEFAULT_TOKEN_LIFETIME = 300
_LINK_NEXT = re.compile(r'<([^>]+)>\s*;\s*rel="?next"?')


class TokenCache:
    """Bearer tokens by scope path, dropped shortly before the server says they expire.

    The lifetime is the ``expires_in`` the token endpoint last declared. When a
    response declares a different lifetime the whole cache is replaced.
    """

    def __init__(self, logger, lifetime: int = DEFAULT_TOKEN_LIFETIME, clock: Callable[[], float] = time.monotonic):
        self.logger = logger
        self.clock = clock
        self._lock = threading.Lock()
        self.lifetime = lifetime
        self._entries: Dict[str, Tuple[str, float]] = self._build()

    def _build(self) -> Dict[str, Tuple[str, float]]:
        self.logger.info(f"Building token cache with assumed lifetime {self.lifetime}s")
        return {}

    @property
    def ttl(self) -> int:
        return max(self.lifetime - TOKEN_SAFETY_MARGIN, 0)

    def get(self, key: str, loader: Callable[[str], Tuple[str, int]]) -> str:
        """Return the cached token for ``key`` or load one; ``loader`` returns (token, expires_in)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self.clock() < entry[1]:
                return entry[0]
            token, expires_in = loader(key)
            if expires_in != self.lifetime:
                self.lifetime = expires_in
                self._entries = self._build()
            self._entries[key] = (token, self.clock() + self.ttl)
            return token

    def __len__(self) -> int:
        return len(self._entries)


def _request_token(session: requests.Session, url: str, params: Dict[str, str], logger,
                   credentials: Optional[str] = None, timeout: int = 30) -> Tuple[str, int]:
    headers = {'User-Agent': USER_AGENT}
    if credentials:
        headers['Authorization'] = f"Basic {credentials}"
    resp = session.get(url, params=params, headers=headers, timeout=timeout)
    if resp.status_code != 200:
        logger.error(f"Unsuccessful token request to {url} with status {resp.status_code}: {resp.text}")
        raise TokenFetchError(f"Could not fetch token as response returned status {resp.status_code}")
    try:
        body = resp.json()
    except ValueError as e:
        raise TokenFetchError(f"Token endpoint {url} returned invalid JSON") from e
    token = body.get('token') or body.get('access_token')
    if not token:
        logger.error(f"Weird response to token request at {url}: {body}")
        raise TokenFetchError("Could not fetch token as response does not contain a valid token")
    return token, int(body.get('expires_in', DEFAULT_TOKEN_LIFETIME))


def _digest_from(resp, image: str, tag: str, logger) -> str:
    if resp.status_code != 200:
        logger.info(f"Failed to fetch image digest for '{image}':'{tag}' ({resp.status_code})")
        raise DigestFetchError(resp.status_code)
    digest = resp.headers.get(DIGEST_HEADER)
    if not digest:
        raise ProtocolError(f"Registry answered 200 for '{image}:{tag}' without a {DIGEST_HEADER} header")
    return digest


class RegistryClient:
    """Docker Registry v2 client: auth negotiation, manifest digests and tag lists."""

    def __init__(
        self,
        session: requests.Session,
        library_helper: LibraryHelper,
        credentials: CredentialStore,
        logger,
        token_cache: Optional[TokenCache] = None,
        timeout: int = 30,
    ):
        self.session = session
        self.library_helper = library_helper
        self.credentials = credentials
        self.logger = logger
        self.token_cache = token_cache
        self.timeout = timeout

    def resolve_auth_header(self, image: str) -> Optional[str]:
        """Return the Authorization header value to talk to the registry serving ``image``.

        ``None`` means the registry accepts anonymous requests.
        """
        registry_url = self.library_helper.registry_url(image)
        host = self.library_helper.registry_host(image)
        creds = self.credentials.get(host)

        headers = {'User-Agent': USER_AGENT}
        state = AuthState.NO_AUTH_TRIED
        if creds:
            headers['Authorization'] = f"Basic {creds}"
            state = AuthState.BASIC_ATTEMPTED
        probe = self.session.get(f"{registry_url}/v2/", headers=headers, timeout=self.timeout)
        self.logger.debug(f"Challenge probe for {host} answered {probe.status_code}")

        step = advance(state, creds, status_code=probe.status_code,
                       authenticate_header=probe.headers.get('www-authenticate'))
        if step.state is AuthState.CHALLENGE_PARSED:
            token = self._bearer_token(step.challenge, self.library_helper.repository_path(image), creds)
            step = advance(step.state, creds, token=token)
        return step.header

    def _bearer_token(self, challenge: Challenge, scope_path: str, creds: Optional[str]) -> str:
        def load(_key: str) -> Tuple[str, int]:
            self.logger.debug(f"Requesting token from {challenge.realm} for {scope_path}")
            return _request_token(self.session, challenge.realm, challenge.token_params(scope_path),
                                  self.logger, creds, self.timeout)

        if self.token_cache is None:
            return load(scope_path)[0]
        return self.token_cache.get(f"{challenge.realm}|{scope_path}", load)

    def fetch_digest(self, image: str, tag: str) -> str:
        """Manifest digest of ``image:tag``, read from the HEAD response header.

        This is not the image id; locally it shows up in ``RepoDigests``.
        """
        self.logger.debug(f"Fetching digest for '{image}':'{tag}'")
        url = f"{self.library_helper.registry_url(image)}/v2/{self.library_helper.repository_path(image)}/manifests/{tag}"
        headers = {'Accept': MANIFEST_ACCEPT, 'User-Agent': USER_AGENT}
        auth = self.resolve_auth_header(image)
        if auth:
            headers['Authorization'] = auth
        resp = self.session.head(url, headers=headers, timeout=self.timeout)
        return _digest_from(resp, image, tag, self.logger)

    def list_tags(self, image: str) -> List[str]:
        """All tags published for ``image``, following ``Link`` pagination."""
        registry_url = self.library_helper.registry_url(image)
        url: Optional[str] = f"{registry_url}/v2/{self.library_helper.repository_path(image)}/tags/list"
        headers = {'Accept': 'application/json', 'User-Agent': USER_AGENT}
        auth = self.resolve_auth_header(image)
        if auth:
            headers['Authorization'] = auth
        tags: List[str] = []
        while url:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
            if resp.status_code != 200:
                self.logger.warning(f"Failed to list tags for {image}: {resp.status_code}")
                raise DigestFetchError(resp.status_code)
            tags.extend(resp.json().get('tags') or [])
            url = None
            match = _LINK_NEXT.search(resp.headers.get('link', '') or '')
            if match:
                link = match.group(1)
                url = link if link.startswith('http') else registry_url + link
        return tags


class HubRegistryClient:
    """Digest lookups against Docker Hub only, with one cached anonymous token per repository."""

    def __init__(self, session: requests.Session, library_helper: LibraryHelper, logger,
                 token_cache: Optional[TokenCache] = None, timeout: int = 30):
        self.session = session
        self.library_helper = library_helper
        self.logger = logger
        self.token_cache = token_cache or TokenCache(logger)
        self.timeout = timeout

    def _fetch_token(self, path: str) -> Tuple[str, int]:
        self.logger.debug(f"Fetching token for {path}")
        params = {'service': HUB_AUTH_SERVICE, 'scope': f"repository:{path}:pull"}
        return _request_token(self.session, HUB_AUTH_URL, params, self.logger, timeout=self.timeout)

    def fetch_digest(self, image: str, tag: str) -> str:
        path = self.library_helper.repository_path(image)
        token = self.token_cache.get(path, self._fetch_token)
        resp = self.session.head(
            f"{HUB_REGISTRY_URL}/v2/{path}/manifests/{tag}",
            headers={'Accept': MANIFEST_ACCEPT, 'Authorization': f"Bearer {token}", 'User-Agent': USER_AGENT},
            timeout=self.timeout,
        )
        return _digest_from(resp, image, tag, self.logger)
