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

from __future__ import annotations

__all__ = (
    "DavAuthorizer",
    "DavConfig",
    "DavConfigPool",
    "dump_response",
    "expand_vars",
    "make_retry",
    "normalize_path",
    "normalize_url",
    "redact_url",
)

import logging
import os
import posixpath
import random
import stat
from collections.abc import Mapping, MutableMapping
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qsl, urlparse, urlunparse

import yaml
from urllib3.response import HTTPResponse
from urllib3.util import Retry, Url, make_headers, parse_url

from .davuri import normalize_base_path, normalize_server, split_origin

# Use the same logger than `dav.py`.
log = logging.getLogger(f"""{__name__.replace(".davutils", ".dav")}""")


def normalize_path(path: str | None) -> str:
    """Normalize a path intended to be part of a URL.

    A path of the form "///a/b/c///../d/e/" would be normalized as "/a/b/d/e".
    The returned path is always absolute, i.e. starts by "/" and never
    ends by "/" except when the path is exactly "/".

    Parameters
    ----------
    path : `str`, optional
        Path to normalize (e.g., '/path/to/..///normalize/').

    Returns
    -------
    url : `str`
        Normalized URL (e.g., '/path/normalize').
    """
    return "/" if not path else "/" + posixpath.normpath(path).lstrip("/")


def normalize_url(url: str) -> str:
    """Normalize an endpoint URL so that its scheme is 'http' or 'https' and
    its path is normalized.

    Parameters
    ----------
    url : `str`
        URL to normalize (e.g., 'davs://example.org:1234///path/to//../dir/').

    Returns
    -------
    url : `str`
        Normalized URL (e.g. 'https://example.org:1234/path/dir').
    """
    parsed = parse_url(url)
    scheme = "http" if parsed.scheme is None else parsed.scheme.replace("dav", "http")
    return Url(scheme=scheme, host=parsed.host, port=parsed.port, path=normalize_path(parsed.path)).url


def redact_url(url: str) -> str:
    """Return a modified `url` with authorization query redacted. The
    goal is that this method should be used for logging URLs to avoid
    leaking authorization tokens.

    Parameters
    ----------
    url : `str`

    Returns
    -------
    redacted_url : `str`
        For instance, when called with an URL like:

            https://host.example.org:1234/a/b/c/file.data?key1=value1&authz=token

        the returned value would be:

            https://host.example.org:1234/a/b/c/file.data?key1=value1&authz=[...]
    """
    parsed_url = urlparse(url)
    if not parsed_url.query:
        return url

    redacted_query: list[str] = []
    for pair in parse_qsl(parsed_url.query):
        if pair[0] == "authz":
            redacted_query.append("authz=[...]")
        else:
            redacted_query.append(f"{pair[0]}={pair[1]}")

    redacted_url = parsed_url._replace(query="&".join(redacted_query))
    return str(urlunparse(redacted_url))


def expand_vars(path: str | None) -> str | None:
    """Expand the environment variables in `path` and return the path with
    the value of the variable expanded.

    Parameters
    ----------
    path : `str` or `None`
        Abolute or relative path which may include an environment variable
        (e.g. '$HOME/path/to/my/file').

    Returns
    -------
    path: `str`
        The path with the values of the environment variables expanded.
    """
    return None if path is None else os.path.expandvars(path)


class DavConfig:
    """Configurable settings a webDAV client must use when interacting with a
    particular storage endpoint.

    Parameters
    ----------
    config : `dict` [ `str`, `typing.Any` ], optional
        Dictionary of configurable settings for the webDAV endpoint.

        The endpoint is given either by ``config["base_url"]``, e.g.

            "https://webdav.example.org:1234/remote.php/webdav/"

        or by its two components ``config["server"]`` (e.g.
        "https://webdav.example.org:1234") and ``config["base_path"]`` (e.g.
        "/remote.php/webdav/"). Explicit components take precedence over
        the ones derived from ``base_url``. Schemes "dav" and "davs" are
        accepted as aliases of "http" and "https".
    """

    # Timeout in seconds to establish a network connection with the remote
    # server.
    DEFAULT_TIMEOUT_CONNECT: float = 10.0

    # Timeout in seconds to read the response to a request sent to a server.
    DEFAULT_TIMEOUT_READ: float = 300.0

    # Timeout in seconds to read the response to an upload request. The
    # server may need a long time to acknowledge the reception of a large
    # file.
    DEFAULT_TIMEOUT_UPLOAD: float = 1200.0

    # Maximum number of network connections to persist against a single
    # "host:port" pair.
    DEFAULT_PERSISTENT_CONNECTIONS_PER_HOST: int = 20

    # Size of the buffer (in mebibytes, i.e. 1024*1024 bytes) the webdav
    # client of this endpoint will use when sending requests and receiving
    # responses.
    DEFAULT_BUFFER_SIZE: int = 5

    # Number of times to retry requests before failing. The client itself
    # does not retry: any retry is done by urllib3 according to this
    # setting.
    DEFAULT_RETRIES: int = 0

    # Minimal and maximal retry backoff (in seconds) for the client to compute
    # the wait time before retrying a request.
    DEFAULT_RETRY_BACKOFF_MIN: float = 1.0
    DEFAULT_RETRY_BACKOFF_MAX: float = 3.0

    # Maximum number of redirections to follow for a single request.
    DEFAULT_MAX_REDIRECTS: int = 10

    # Value of the 'User-Agent' header sent with every request.
    DEFAULT_USER_AGENT: str = "lsst-davclient"

    # If False, the server certificate is not verified. Only useful for
    # test servers using self-signed certificates.
    DEFAULT_VERIFY_SERVER_CERTIFICATE: bool = True

    # Path to a directory or certificate bundle file where the certificates
    # of the trusted certificate authorities can be found.
    # If None, the certificates trusted by the system are used.
    DEFAULT_TRUSTED_AUTHORITIES: str | None = None

    # If this option is set to True, memory usage is computed and reported
    # when executing in debug mode.
    DEFAULT_COLLECT_MEMORY_USAGE: bool = False

    # Settings which designate the endpoint.
    _ENDPOINT_KEYS = ("base_url", "server", "base_path")

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self._settings: dict[str, Any] = {} if config is None else dict(config)
        config = self._settings

        server, base_path = "", "/"
        if (base_url := expand_vars(config.get("base_url"))) is not None:
            server, base_path = split_origin(normalize_url(base_url))

        self._server: str = normalize_server(expand_vars(config.get("server", server)))
        self._base_path: str = normalize_base_path(config.get("base_path", base_path))
        self._port: int | None = None if config.get("port") is None else int(config["port"])

        self._user_agent: str = str(config.get("user_agent", DavConfig.DEFAULT_USER_AGENT))
        self._headers: dict[str, str] = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}

        self._timeout_connect: float = float(config.get("timeout_connect", DavConfig.DEFAULT_TIMEOUT_CONNECT))
        self._timeout_read: float = float(config.get("timeout_read", DavConfig.DEFAULT_TIMEOUT_READ))
        self._timeout_upload: float = float(config.get("timeout_upload", DavConfig.DEFAULT_TIMEOUT_UPLOAD))
        self._persistent_connections_per_host: int = int(
            config.get(
                "persistent_connections_per_host",
                DavConfig.DEFAULT_PERSISTENT_CONNECTIONS_PER_HOST,
            )
        )
        self._buffer_size: int = 1_048_576 * int(config.get("buffer_size", DavConfig.DEFAULT_BUFFER_SIZE))
        self._retries: int = int(config.get("retries", DavConfig.DEFAULT_RETRIES))
        self._retry_backoff_min: float = float(
            config.get("retry_backoff_min", DavConfig.DEFAULT_RETRY_BACKOFF_MIN)
        )
        self._retry_backoff_max: float = float(
            config.get("retry_backoff_max", DavConfig.DEFAULT_RETRY_BACKOFF_MAX)
        )
        self._proxy: str | None = expand_vars(config.get("proxy"))
        self._verify_server_certificate: bool = bool(
            config.get("verify_server_certificate", DavConfig.DEFAULT_VERIFY_SERVER_CERTIFICATE)
        )
        self._trusted_authorities: str | None = expand_vars(
            config.get("trusted_authorities", DavConfig.DEFAULT_TRUSTED_AUTHORITIES)
        )
        self._user_cert: str | None = expand_vars(config.get("user_cert"))
        self._user_key: str | None = expand_vars(config.get("user_key"))
        self._token: str | None = expand_vars(config.get("token"))
        self._username: str | None = expand_vars(config.get("username"))
        self._password: str | None = expand_vars(config.get("password"))
        self._collect_memory_usage: bool = config.get(
            "collect_memory_usage", DavConfig.DEFAULT_COLLECT_MEMORY_USAGE
        )

        if self._retries < 0:
            raise ValueError(f"Number of retries for endpoint {self.base_url} must be positive or zero")

    def for_url(self, url: str) -> DavConfig:
        """Return a copy of these settings for the endpoint at `url`.

        Parameters
        ----------
        url : `str`
            URL of the endpoint, including its base path.
        """
        settings = {k: v for k, v in self._settings.items() if k not in DavConfig._ENDPOINT_KEYS}
        settings["base_url"] = url
        return DavConfig(settings)

    @property
    def base_url(self) -> str:
        return self._server + self._base_path

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
    def user_agent(self) -> str:
        return self._user_agent

    @property
    def headers(self) -> dict[str, str]:
        return dict(self._headers)

    @property
    def timeout_connect(self) -> float:
        return self._timeout_connect

    @property
    def timeout_read(self) -> float:
        return self._timeout_read

    @property
    def timeout_upload(self) -> float:
        return self._timeout_upload

    @property
    def persistent_connections_per_host(self) -> int:
        return self._persistent_connections_per_host

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def retry_backoff_min(self) -> float:
        return self._retry_backoff_min

    @property
    def retry_backoff_max(self) -> float:
        return self._retry_backoff_max

    @property
    def proxy(self) -> str | None:
        return self._proxy

    @property
    def verify_server_certificate(self) -> bool:
        return self._verify_server_certificate

    @property
    def trusted_authorities(self) -> str | None:
        return self._trusted_authorities

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def password(self) -> str | None:
        return self._password

    @property
    def user_cert(self) -> str | None:
        return self._user_cert

    @property
    def user_key(self) -> str | None:
        # If no user certificate was specified in the configuration,
        # ignore the private key, even if it was provided.
        if self._user_cert is None:
            return None

        # If we have a user certificate but not a private key, assume the
        # private key is included in the same file as the user certificate.
        return self._user_cert if self._user_key is None else self._user_key

    @property
    def collect_memory_usage(self) -> bool:
        return self._collect_memory_usage


class DavConfigPool:
    """Registry of configurable settings for all known webDAV endpoints.

    Parameters
    ----------
    filename : `str`, optional
        Name of an environment variable holding the path of the file to
        load the configuration from, or the path itself. An existing file
        is used even if its name is a valid variable name. The path can
        include environment variables or '~', e.g.
        '$HOME/path/to/config.yaml'. If `None`, the environment variable
        'LSST_DAVCLIENT_CONFIG' is used. If that variable is not set, the
        pool is empty.

        The configuration file is a YAML file with the structure below:

          - base_url: "davs://webdav1.example.org:1234/remote.php/webdav/"
            timeout_connect: 20.0
            timeout_read: 120.0
            timeout_upload: 3600.0
            user_agent: "my-application/1.0"
            headers:
              X-Requested-With: "my-application"
            token: "/path/to/bearer/token/file"
            trusted_authorities: "/etc/grid-security/certificates"

          - server: "https://webdav2.example.org"
            base_path: "/dav"
            port: 8443
            username: "${DAV_USER}"
            password: "${DAV_PASSWORD}"
            ...

        All settings are optional. If no settings are found in the
        configuration file for a particular webDAV endpoint, sensible
        defaults will be used.
    """

    # Environment variable holding the path of the configuration file.
    DEFAULT_ENVIRONMENT_VARIABLE: str = "LSST_DAVCLIENT_CONFIG"

    def __init__(self, filename: str | None = None) -> None:
        # The key of this dictionary is the lowercased URL of the webDAV
        # endpoint, e.g. "https://host.example.org:1234/remote.php/webdav/"
        self._configs: dict[str, DavConfig] = {}

        # filename can be the name of an environment variable or a path.
        # Use the default environment variable if none was specified.
        if filename is None:
            filename = DavConfigPool.DEFAULT_ENVIRONMENT_VARIABLE

        if filename.isidentifier() and not os.path.isfile(filename):
            if (path := os.getenv(filename)) is None or not path:
                return
        else:
            path = filename

        path = os.path.expanduser(os.path.expandvars(path))
        if not os.path.isfile(path):
            raise FileNotFoundError(f"webDAV configuration file {path} does not exist")

        log.debug("loading webDAV configuration from %s", path)
        with open(path) as file:
            items = yaml.safe_load(file) or []

        if not isinstance(items, list):
            raise ValueError(f"configuration file {path} must contain a list of endpoint configurations")

        for config_item in items:
            config = DavConfig(config_item)
            key = config.base_url.lower()
            if key in self._configs:
                # We already have a configuration for the same
                # endpoint. That is likely a human error in
                # the configuration file.
                raise ValueError(
                    f"""configuration file {path} contains two configurations for """
                    f"""endpoint {config.base_url}"""
                )
            self._configs[key] = config

    def __len__(self) -> int:
        return len(self._configs)

    def get_config_for_url(self, url: str) -> DavConfig:
        """Return the configuration to use for interacting with the server
        which hosts the resource at `url`.

        Parameters
        ----------
        url : `str`
            URL for which to obtain a configuration.

        Returns
        -------
        config : `DavConfig`
            Configuration of the endpoint with the longest base URL `url`
            starts with. If there is none, a default configuration for
            `url`.
        """
        normalized = normalize_url(url).lower()
        best: DavConfig | None = None
        for endpoint, config in self._configs.items():
            prefix = endpoint.rstrip("/")
            if normalized[: len(prefix)] == prefix and normalized[len(prefix) : len(prefix) + 1] in ("", "/"):
                if best is None or len(config.base_url) > len(best.base_url):
                    best = config

        if best is not None:
            return best

        # No config was found for the specified URL. Use the default.
        return DavConfig({"base_url": url})


def make_retry(config: DavConfig) -> Retry:
    """Create a ``urllib3.util.Retry`` object from settings in `config`.

    Parameters
    ----------
    config : `DavConfig`
        Configurable settings for a webDAV storage endpoint.

    Returns
    -------
    retry : `urllib3.util.Retry`
        Retry object to be used when creating a ``urllib3.PoolManager``.

    Notes
    -----
    Redirections are always followed. Exhausting the retries on a bad
    status returns the last response instead of raising, so that the
    caller can report the status code.
    """
    backoff_min: float = config.retry_backoff_min
    backoff_max: float = config.retry_backoff_max
    retry = Retry(
        # Limits are set per kind of error, not globally.
        total=None,
        # How many connection-related errors to retry on.
        connect=config.retries,
        # How many times to retry on read errors.
        read=config.retries,
        # How many times to retry on other errors.
        other=0,
        # How many redirections to follow.
        redirect=DavConfig.DEFAULT_MAX_REDIRECTS,
        # Backoff factor to apply between attempts after the second try
        # (seconds). Compute a random jitter to prevent all the clients which
        # started at the same time to overwhelm the server.
        backoff_factor=backoff_min + (backoff_max - backoff_min) * random.random(),
        # How many times to retry on bad status codes.
        status=config.retries,
        # Set of uppercased HTTP method verbs that we should retry on.
        # We only automatically retry idempotent requests.
        allowed_methods=frozenset(["COPY", "DELETE", "GET", "HEAD", "OPTIONS", "PROPFIND", "PUT"]),
        # HTTP status codes that we should force a retry on.
        status_forcelist=(
            frozenset(
                [
                    HTTPStatus.TOO_MANY_REQUESTS,  # 429
                    HTTPStatus.INTERNAL_SERVER_ERROR,  # 500
                    HTTPStatus.BAD_GATEWAY,  # 502
                    HTTPStatus.SERVICE_UNAVAILABLE,  # 503
                    HTTPStatus.GATEWAY_TIMEOUT,  # 504
                ]
            )
            if config.retries > 0
            else None
        ),
        # Whether to respect "Retry-After" header on status codes defined
        # above.
        respect_retry_after_header=True,
        raise_on_status=False,
    )
    return retry


class DavAuthorizer:
    """Attach an 'Authorization' header to each request.

    Parameters
    ----------
    token : `str`, optional
        Can be either the path to a local file which contains the
        value of a bearer token or the token itself. If `token` is a file
        it must be protected so that only the owner can read and write it.
    username : `str`, optional
        User name for basic authentication. Ignored if `token` is given.
    password : `str`, optional
        Password for basic authentication.

    Notes
    -----
    Credentials are only sent over secure HTTP to avoid leaking them.
    """

    def __init__(self, token: str | None = None, username: str | None = None, password: str | None = None):
        self._token: str | None = None
        self._path: str | None = None
        self._mtime: float = -1.0
        self._basic: str | None = None

        if token is not None:
            self._token = token
            if os.path.isfile(token):
                self._path = os.path.abspath(token)
                if not self._is_protected(self._path):
                    raise PermissionError(
                        f"""Authorization token file at {self._path} must be protected for access only """
                        """by its owner"""
                    )
                self._refresh()
        elif username is not None:
            self._basic = make_headers(basic_auth=f"{username}:{password or ''}")["authorization"]

    def _refresh(self) -> None:
        """Read the token file (if any) if its modification time is more recent
        than the last time we read it.
        """
        if self._path is None:
            return

        if (mtime := os.stat(self._path).st_mtime) > self._mtime:
            log.debug("Reading authorization token from file %s", self._path)
            self._mtime = mtime
            with open(self._path) as f:
                self._token = f.read().rstrip("\n")

    def _is_protected(self, filepath: str) -> bool:
        """Return true if the permissions of file at filepath only allow for
        access by its owner.
        """
        mode = stat.S_IMODE(os.stat(filepath).st_mode)
        owner_accessible = bool(mode & stat.S_IRWXU)
        group_accessible = bool(mode & stat.S_IRWXG)
        other_accessible = bool(mode & stat.S_IRWXO)
        return owner_accessible and not group_accessible and not other_accessible

    def set_authorization(self, url: str, headers: MutableMapping[str, str]) -> None:
        """Add the 'Authorization' header to `headers` if `url` uses secure
        HTTP.

        Parameters
        ----------
        url : `str`
            Target URL of the request.
        headers : `dict` [ `str`, `str` ]
            Dict to augment with authorization information.
        """
        if not url.lower().startswith("https://"):
            return

        if self._token is not None:
            self._refresh()
            headers["Authorization"] = f"Bearer {self._token}"
        elif self._basic is not None:
            headers["Authorization"] = self._basic


def dump_response(method: str, resp: HTTPResponse, url: str) -> None:
    """Dump response for debugging purposes.

    Parameters
    ----------
    method : `str`
        Method name to include in log output.
    resp : `HTTPResponse`
        Response to dump.
    url : `str`
        URL the request was sent to.
    """
    if not log.isEnabledFor(logging.DEBUG):
        return

    log.debug("%s %s", method, redact_url(url))
    log.debug("   %s %s", resp.status, resp.reason)

    for header, value in resp.headers.items():
        if header.lower() not in ("authorization", "set-cookie"):
            log.debug("   %s: %s", header, value)
