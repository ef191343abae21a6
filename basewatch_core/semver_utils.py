import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Any, List, Optional, Tuple


SEMVER_STRATEGY = 'semver'
REGEX_STRATEGY_PREFIX = 'regex:'

_COERCE = re.compile(
    r"(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+([0-9A-Za-z.-]+))?"
)


def _identifiers(value: Optional[str]) -> Optional[List[Any]]:
    if not value:
        return None
    result: List[Any] = []
    for ident in value.split('.'):
        # numeric identifiers with leading zeroes stay strings
        if ident.isdigit() and not (len(ident) > 1 and ident[0] == '0'):
            result.append(int(ident))
        else:
            result.append(ident)
    return result


def _compare_identifiers(pre1: List[Any], pre2: List[Any]) -> int:
    for a, b in zip(pre1, pre2):
        if a == b:
            continue
        a_is_int = isinstance(a, int)
        b_is_int = isinstance(b, int)
        if a_is_int and b_is_int:
            return 1 if a > b else -1
        # numeric identifiers have lower precedence than alphanumeric ones
        if a_is_int:
            return -1
        if b_is_int:
            return 1
        return 1 if str(a) > str(b) else -1
    if len(pre1) == len(pre2):
        return 0
    return 1 if len(pre1) > len(pre2) else -1


@total_ordering
@dataclass(frozen=True)
class Version:
    major: int
    minor: int = 0
    patch: int = 0
    prerelease: Optional[Tuple[Any, ...]] = None
    build: Optional[Tuple[Any, ...]] = field(default=None)

    def _cmp(self, other: 'Version') -> int:
        for a, b in zip((self.major, self.minor, self.patch), (other.major, other.minor, other.patch)):
            if a != b:
                return 1 if a > b else -1
        pre1, pre2 = self.prerelease, other.prerelease
        if pre1 is None and pre2 is not None:
            return 1  # stable > prerelease
        if pre1 is not None and pre2 is None:
            return -1
        if pre1 is not None and pre2 is not None:
            result = _compare_identifiers(list(pre1), list(pre2))
            if result:
                return result
        # Build metadata breaks ties so "1.2.3-ls7" style rebuild counters still order
        if self.build is None and other.build is None:
            return 0
        if self.build is None:
            return -1
        if other.build is None:
            return 1
        return _compare_identifiers(list(self.build), list(other.build))

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self._cmp(other) == 0

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self._cmp(other) < 0

    def __hash__(self):
        return hash((self.major, self.minor, self.patch, self.prerelease, self.build))

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += '-' + '.'.join(str(p) for p in self.prerelease)
        if self.build:
            text += '+' + '.'.join(str(b) for b in self.build)
        return text


def _as_tuple(value: Optional[List[Any]]) -> Optional[Tuple[Any, ...]]:
    return tuple(value) if value else None


def parse_semver(version: str) -> Tuple[int, int, int, Optional[List[Any]]]:
    """Parse a semantic version string into components.

    Tolerates prefixes like 'v' or 'release-' and missing minor/patch parts
    ('v1.2' is 1.2.0). Returns (major, minor, patch, prerelease_list or None).
    """
    m = _COERCE.search(version)
    if not m:
        raise ValueError(f"Invalid semver string: {version}")
    major, minor, patch, prerelease = m.group(1), m.group(2), m.group(3), m.group(4)
    return (int(major), int(minor or 0), int(patch or 0), _identifiers(prerelease))


def compare_semver(version1: str, version2: str) -> int:
    """Compare two semantic versions per SemVer 2.0.0.

    Returns 1 if v1 > v2, -1 if v1 < v2, 0 if equal.
    """
    a = SemverParser().parse(version1)
    b = SemverParser().parse(version2)
    if a == b:
        return 0
    return 1 if a > b else -1


class VersionParser:
    """Turns a tag into a comparable Version or raises ValueError."""

    def parse(self, tag: str) -> Version:
        raise NotImplementedError


class SemverParser(VersionParser):

    def parse(self, tag: str) -> Version:
        m = _COERCE.search(tag)
        if not m:
            raise ValueError(f"Could not parse version string as semver: {tag}")
        major, minor, patch, pre = parse_semver(tag)
        return Version(major, minor, patch, _as_tuple(pre), _as_tuple(_identifiers(m.group(5))))


class RegexParser(VersionParser):
    """Full-match a tag against a pattern with named groups major, minor, patch and optional build."""

    def __init__(self, pattern: str):
        self.regex = re.compile(pattern)
        missing = {'major', 'minor', 'patch'} - set(self.regex.groupindex)
        if missing:
            raise ValueError(f"Version regex lacks named group(s): {', '.join(sorted(missing))}")

    def parse(self, tag: str) -> Version:
        m = self.regex.fullmatch(tag)
        if not m:
            raise ValueError(f"Version string '{tag}' does not match the expected format")
        parts = []
        for name in ('major', 'minor', 'patch'):
            value = m.group(name)
            if value is None:
                raise ValueError(f"Missing required version component '{name}' in '{tag}'")
            try:
                parts.append(int(value))
            except ValueError as e:
                raise ValueError(f"Invalid number format for version component: {value}") from e
        build = m.group('build') if 'build' in self.regex.groupindex else None
        return Version(parts[0], parts[1], parts[2], None, _as_tuple(_identifiers(build)))


def parser_from_strategy(strategy: str) -> VersionParser:
    """Build the parser named by a tag-strategy label: ``semver`` or ``regex:<pattern>``."""
    strategy = strategy.strip()
    if strategy == SEMVER_STRATEGY:
        return SemverParser()
    if not strategy.startswith(REGEX_STRATEGY_PREFIX):
        raise ValueError(f"Unknown parser type: {strategy}")
    pattern = strategy[len(REGEX_STRATEGY_PREFIX):]
    try:
        return RegexParser(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regex pattern: {pattern}") from e


def latest_version(tags: List[str], parser: VersionParser, logger) -> Optional[Tuple[str, Version]]:
    """Highest (tag, version) among ``tags``; tags the parser rejects are skipped."""
    best: Optional[Tuple[str, Version]] = None
    for tag in tags:
        try:
            version = parser.parse(tag)
        except ValueError as e:
            logger.debug(f"Skipping tag '{tag}': {e}")
            continue
        if best is None or version > best[1]:
            best = (tag, version)
    return best
