"""
AT URI: parse, render, and edit record identifiers.

Grammar (case-insensitive):
    absolute:  (at://)? <host> (/<path>)? (?<query>)? (#<fragment>)?
    relative:              (/<path>)? (?<query>)? (#<fragment>)?

    host is either a DID (did:method:id) or a handle-like domain token.
    The first path segment is the collection, the second the record key.

Parsing is strict (a string either matches the grammar or is rejected);
reading structured fields is permissive (missing segments read as "").
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from urllib.parse import parse_qsl, urlencode

from atrepo import AT_URI_PREFIX, AT_URI_SCHEME, RECORD_KEY_PLACEHOLDER

log = logging.getLogger(__name__)

# Compiled once at import; read-only afterwards.
_ABSOLUTE_RE = re.compile(
    r"^(at://)?((?:did:[a-z0-9:%-]+)|(?:[a-z0-9][a-z0-9.:-]*))"
    r"(/[^?#\s]*)?(\?[^#\s]+)?(#[^\s]+)?$",
    re.IGNORECASE,
)
_RELATIVE_RE = re.compile(
    r"^(/[^?#\s]*)?(\?[^#\s]+)?(#[^\s]+)?$",
    re.IGNORECASE,
)


class AtUriError(ValueError):
    """Base error for AT URI construction."""


class InvalidIdentifier(AtUriError):
    """String does not match the absolute AT URI grammar."""


class InvalidBase(AtUriError):
    """Base string does not match the absolute AT URI grammar."""


class InvalidPath(AtUriError):
    """Relative reference does not match the relative grammar."""


SearchParams = list[tuple[str, str]]


@dataclass(frozen=True)
class ParsedUri:
    host: str
    pathname: str
    search_params: tuple[tuple[str, str], ...]
    hash: str


@dataclass(frozen=True)
class ParsedRelativeUri:
    pathname: str
    search_params: tuple[tuple[str, str], ...]
    hash: str


def _decode_query(query: str) -> tuple[tuple[str, str], ...]:
    """Decode a query string (with or without its leading '?') into ordered pairs."""
    if query.startswith("?"):
        query = query[1:]
    return tuple(parse_qsl(query, keep_blank_values=True))


def _strip_marker(value: str | None, marker: str) -> str:
    if not value:
        return ""
    return value[1:] if value.startswith(marker) else value


def parse_absolute(value: str) -> ParsedUri | None:
    """Match ``value`` against the absolute grammar.

    Returns None when the grammar does not match; callers decide whether
    that is an error.
    """
    m = _ABSOLUTE_RE.match(value)
    if m is None:
        log.debug("Not an absolute AT URI: %r", value)
        return None
    _scheme, host, pathname, query, fragment = m.groups()
    return ParsedUri(
        host=host,
        pathname=pathname or "",
        search_params=_decode_query(query or ""),
        hash=_strip_marker(fragment, "#"),
    )


def parse_relative(value: str) -> ParsedRelativeUri | None:
    """Match ``value`` against the relative grammar (no scheme, no host)."""
    m = _RELATIVE_RE.match(value)
    if m is None:
        log.debug("Not a relative AT URI reference: %r", value)
        return None
    pathname, query, fragment = m.groups()
    return ParsedRelativeUri(
        pathname=pathname or "",
        search_params=_decode_query(query or ""),
        hash=_strip_marker(fragment, "#"),
    )


def is_at_uri(value: str) -> bool:
    """True if ``value`` matches the absolute AT URI grammar."""
    return parse_absolute(value) is not None


def _split_path(pathname: str) -> tuple[bool, list[str]]:
    """Split a pathname into (rooted, segments). "" and "/" have no segments."""
    rooted = pathname.startswith("/")
    body = pathname[1:] if rooted else pathname
    return rooted, body.split("/") if body else []


def _join_path(rooted: bool, segments: list[str]) -> str:
    return ("/" if rooted else "") + "/".join(segments)


@dataclass
class AtUri:
    """A parsed AT URI.

    Usage:
        uri = AtUri.from_string("at://did:plc:abc/app.bsky.feed.post/3k2")
        uri.collection            # "app.bsky.feed.post"
        uri.record_key = "3k3"
        str(uri)                  # "at://did:plc:abc/app.bsky.feed.post/3k3"

        ref = AtUri.from_string("/app.bsky.feed.like/1", base="at://did:plc:abc")
    """

    host: str
    pathname: str = ""
    search_params: SearchParams = field(default_factory=list)
    hash: str = ""

    @classmethod
    def from_string(cls, uri: str, base: str | None = None) -> AtUri:
        """Construct from a full URI, or from a relative reference against ``base``.

        Raises InvalidIdentifier, InvalidBase or InvalidPath.
        """
        if base is None:
            parsed = parse_absolute(uri)
            if parsed is None:
                raise InvalidIdentifier(f"Invalid at uri: {uri!r}")
            return cls(
                host=parsed.host,
                pathname=parsed.pathname,
                search_params=list(parsed.search_params),
                hash=parsed.hash,
            )

        parsed_base = parse_absolute(base)
        if parsed_base is None:
            raise InvalidBase(f"Invalid at uri: {base!r}")
        relative = parse_relative(uri)
        if relative is None:
            raise InvalidPath(f"Invalid path: {uri!r}")
        return cls(
            host=parsed_base.host,
            pathname=relative.pathname,
            search_params=list(relative.search_params),
            hash=relative.hash,
        )

    @classmethod
    def make(
        cls,
        authority: str,
        collection: str | None = None,
        record_key: str | None = None,
    ) -> AtUri:
        """Build from a DID or handle plus optional collection and record key."""
        value = authority
        if collection is not None:
            value += f"/{collection}"
        if record_key is not None:
            value += f"/{record_key}"
        return cls.from_string(value)

    def copy(self) -> AtUri:
        return replace(self, search_params=list(self.search_params))

    # --- URL-style accessors ---

    @property
    def protocol(self) -> str:
        return AT_URI_SCHEME

    @property
    def origin(self) -> str:
        return f"{AT_URI_PREFIX}{self.host}"

    @property
    def hostname(self) -> str:
        return self.host

    @hostname.setter
    def hostname(self, value: str) -> None:
        self.host = value

    @property
    def search(self) -> str:
        """The query string without its leading '?', or "" when empty."""
        return urlencode(self.search_params)

    @search.setter
    def search(self, value: str) -> None:
        self.search_params = list(_decode_query(value))

    @property
    def href(self) -> str:
        return self.to_string()

    # --- Record addressing ---

    @property
    def collection(self) -> str:
        _rooted, segments = _split_path(self.pathname)
        return segments[0] if segments else ""

    @collection.setter
    def collection(self, value: str) -> None:
        rooted, segments = _split_path(self.pathname)
        if segments:
            segments[0] = value
        else:
            segments = [value]
        self.pathname = _join_path(rooted, segments)

    @property
    def record_key(self) -> str:
        _rooted, segments = _split_path(self.pathname)
        return segments[1] if len(segments) > 1 else ""

    @record_key.setter
    def record_key(self, value: str) -> None:
        rooted, segments = _split_path(self.pathname)
        if len(segments) >= 2:
            segments[1] = value
        elif len(segments) == 1:
            segments.append(value)
        else:
            # No collection to hang the key on: keep a placeholder segment.
            segments = [RECORD_KEY_PLACEHOLDER, value]
        self.pathname = _join_path(rooted, segments)

    # --- Rendering ---

    def to_string(self) -> str:
        path = self.pathname or "/"
        if not path.startswith("/"):
            path = f"/{path}"

        qs = self.search
        if qs and not qs.startswith("?"):
            qs = f"?{qs}"

        fragment = self.hash
        if fragment and not fragment.startswith("#"):
            fragment = f"#{fragment}"

        return f"{AT_URI_PREFIX}{self.host}{path}{qs}{fragment}"

    def __str__(self) -> str:
        return self.to_string()
