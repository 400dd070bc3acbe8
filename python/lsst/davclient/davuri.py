# This file is part of lsst-davclient.
#
# Developed for the LSST Data Management System.
# This product includes software developed by the LSST Project
# (https://www.lsst.org).
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Resolution of caller-supplied paths into request URLs."""

from __future__ import annotations

__all__ = (
    "DavUriResolver",
    "RequestTarget",
    "has_scheme",
    "normalize_base_path",
    "normalize_server",
    "quote_path",
    "resolve_url",
    "split_origin",
    "strip_server",
)

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import NamedTuple
from urllib.parse import quote, unquote

from urllib3.util import Url, parse_url

log = logging.getLogger(__name__.replace(".davuri", ".dav"))

# Characters allowed unescaped in the path component of a request URL,
# in addition to letters, digits and "_.-~" (RFC 3986, section 3.3).
_PATH_SAFE = "/:@!$&'()*+,;="

# An absolute URL starts with a scheme followed by "://".
_scheme_rex = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")
_origin_rex = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*://[^/]*)(.*)$", re.DOTALL)


class RequestTarget(NamedTuple):
    """Absolute URL of a request and whether it was resolved as a
    collection.
    """

    url: str
    append_trailing_slash: bool


def normalize_server(server: str | None) -> str:
    """Return `server` without any trailing '/'.

    Parameters
    ----------
    server : `str`, optional
        Origin of the webDAV server, e.g. 'https://webdav.example.org/'.
    """
    return "" if not server else server.strip().rstrip("/")


def normalize_base_path(path: str | None) -> str:
    """Return `path` so that it starts and ends with a single '/'.

    An empty or `None` path is normalized to '/'.

    Parameters
    ----------
    path : `str`, optional
        Path of the collection to use as root (e.g. 'remote.php/webdav').
    """
    trimmed = "" if path is None else path.strip().strip("/")
    return f"/{trimmed}/" if trimmed else "/"


def has_scheme(path: str) -> bool:
    """Return True if `path` is an absolute URL, e.g. 'https://host/a/b'."""
    return _scheme_rex.match(path) is not None


def split_origin(url: str) -> tuple[str, str]:
    """Split an absolute URL into its origin and the rest of the URL.

    Parameters
    ----------
    url : `str`
        Absolute URL, e.g. 'https://host.example.org:1234/a/b#c'.

    Returns
    -------
    origin : `str`
        Scheme and authority, e.g. 'https://host.example.org:1234'.
    path : `str`
        Everything after the authority, e.g. '/a/b#c'. Characters such as
        '#' or '?' are not interpreted since they may be part of a
        decoded href.
    """
    if (match := _origin_rex.match(url)) is None:
        raise ValueError(f"{url!r} is not an absolute URL")

    return match.group(1), match.group(2)


def strip_server(server: str, path: str) -> str:
    """Remove the prefix `server` from `path` if present.

    The comparison is case-insensitive. The prefix is only removed when it
    is followed by '/' or by nothing at all, so that
    'https://host.example.org.evil' is not mistaken for a path of
    'https://host.example.org'.
    """
    if not server or len(path) < len(server):
        return path

    if path[: len(server)].lower() != server.lower():
        return path

    rest = path[len(server) :]
    return rest if rest[:1] in ("", "/") else path


def quote_path(path: str) -> str:
    """Percent-encode a decoded URL path.

    Characters which are not allowed in a URL path, including '#', '?',
    '%' and space, are escaped.
    """
    return quote(path, safe=_PATH_SAFE)


def _with_port(server: str, port: int | None) -> str:
    if port is None:
        return server

    parsed = parse_url(server)
    return Url(scheme=parsed.scheme, auth=parsed.auth, host=parsed.host, port=port).url


def resolve_url(
    server: str,
    root: str,
    path: str | None,
    append_trailing_slash: bool = False,
    port: int | None = None,
) -> str:
    """Return the absolute, escaped URL to use for accessing `path`.

    Parameters
    ----------
    server : `str`
        Origin of the webDAV server, without trailing '/'
        (e.g. 'https://webdav.example.org').
    root : `str`
        Path of the root collection on `server`, as reported by the server
        (e.g. '/remote.php/webdav/'). It may also be an absolute URL when
        the server reports its root on another authority.
    path : `str`, optional
        Requested path. It may be empty (the root collection itself),
        relative to the root collection, already prefixed by the root
        collection, prefixed by `server`, or an absolute URL. It may be
        percent-encoded or not.
    append_trailing_slash : `bool`
        If True, the returned URL ends with '/'. Use this for collections.
    port : `int`, optional
        Port to use instead of the default port of `server`.

    Returns
    -------
    url : `str`
        Absolute URL, e.g.
        'https://webdav.example.org/remote.php/webdav/My%20Docs/'.

    Notes
    -----
    Absolute URLs on another authority are used without re-prefixing them
    with `root`, so that hrefs returned by the server round-trip.
    Checking whether `path` already starts with `root` is case-insensitive,
    since servers are not consistent about the case of the hrefs they
    return.
    """
    path = strip_server(server, path or "")
    if has_scheme(path):
        origin, target_path = split_origin(path)
        target_path = unquote(target_path) or "/"
    else:
        if has_scheme(root):
            origin, root_path = split_origin(root)
        else:
            origin, root_path = _with_port(server, port), root

        root_path = normalize_base_path(unquote(root_path))
        relative = unquote(path).strip()

        # Don't prepend the root twice if the caller already included it.
        prefix = root_path.rstrip("/")
        if (
            prefix
            and relative[: len(prefix)].lower() == prefix.lower()
            and relative[len(prefix) : len(prefix) + 1] in ("", "/")
        ):
            relative = relative[len(prefix) :]

        target_path = root_path + relative.strip("/")

    if append_trailing_slash and not target_path.endswith("/"):
        target_path += "/"

    return origin + quote_path(target_path)


class DavUriResolver:
    """Resolve paths relative to the root collection of a webDAV endpoint.

    The root collection is the one the server reports for the configured
    base path. Servers may echo the base path verbatim, in another case or
    under a different alias, so the path the server uses for itself is
    trusted over the configured one.

    Parameters
    ----------
    server : `str`
        Origin of the server, e.g. 'https://webdav.example.org'.
    base_path : `str`
        Configured path of the root collection, e.g. '/remote.php/webdav/'.
    port : `int`, optional
        Port to use instead of the default port of `server`.
    fetch_root : `callable`, optional
        Coroutine function called with the URL of the configured base path
        and returning the href the server reports for it. If `None`, the
        configured base path is used as root without asking the server.

    Notes
    -----
    The root is resolved at most once per instance once a resolution
    succeeds. Concurrent callers observing an unresolved root share a
    single in-flight resolution. If that resolution fails, the exception
    is propagated to all of them and the next call tries again.
    """

    def __init__(
        self,
        server: str,
        base_path: str,
        port: int | None = None,
        fetch_root: Callable[[str], Awaitable[str]] | None = None,
    ) -> None:
        self._server: str = normalize_server(server)
        self._base_path: str = normalize_base_path(base_path)
        self._port: int | None = port
        self._fetch_root = fetch_root

        # Root collection as reported by the server. Written once.
        self._root: str | None = None
        self._root_task: asyncio.Future[str] | None = None

    @property
    def server(self) -> str:
        return self._server

    @property
    def base_path(self) -> str:
        return self._base_path

    @property
    def port(self) -> int | None:
        return self._port

    @property
    def root(self) -> str | None:
        """Root collection reported by the server, or `None` if not resolved
        yet.
        """
        return self._root

    @property
    def base_url(self) -> str:
        """URL of the configured base path."""
        return resolve_url(self._server, self._base_path, "", append_trailing_slash=True, port=self._port)

    async def resolved_root(self) -> str:
        """Return the root collection, asking the server for it if needed."""
        if self._root is not None:
            return self._root

        if self._fetch_root is None:
            self._root = self._base_path
            return self._root

        task = self._root_task
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store_root())
            task.add_done_callback(_consume_exception)
            self._root_task = task

        # Cancelling one of the callers must not cancel the resolution the
        # other callers are waiting for.
        return await asyncio.shield(task)

    async def _fetch_and_store_root(self) -> str:
        assert self._fetch_root is not None
        url = self.base_url
        log.debug("resolving root collection of %s", url)
        try:
            root = await self._fetch_root(url)
        finally:
            self._root_task = None

        if self._root is None:
            self._root = root
            log.debug("root collection of %s resolved to %s", url, root)

        return self._root

    async def resolve(self, path: str | None, append_trailing_slash: bool = False) -> RequestTarget:
        """Return the request target for `path`.

        Parameters
        ----------
        path : `str`, optional
            Requested path, see `resolve_url`.
        append_trailing_slash : `bool`
            True if `path` designates a collection.

        Returns
        -------
        target : `RequestTarget`
            Absolute URL for `path`.
        """
        path = path or ""
        if has_scheme(strip_server(self._server, path)):
            root = self._base_path if self._root is None else self._root
        else:
            root = await self.resolved_root()

        url = resolve_url(
            self._server, root, path, append_trailing_slash=append_trailing_slash, port=self._port
        )
        return RequestTarget(url, append_trailing_slash)


def _consume_exception(task: asyncio.Future[str]) -> None:
    # Avoid "exception was never retrieved" warnings when every caller
    # waiting for the root resolution was cancelled.
    if not task.cancelled():
        task.exception()
