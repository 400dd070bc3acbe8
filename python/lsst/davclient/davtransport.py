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

"""HTTP transport used by the webDAV client."""

from __future__ import annotations

__all__ = (
    "DavResponse",
    "DavTransport",
    "Urllib3Transport",
)

import asyncio
import logging
import os
from collections.abc import Mapping
from types import TracebackType
from typing import BinaryIO, Protocol

import astropy.units as u
from urllib3 import HTTPHeaderDict, PoolManager, ProxyManager, Timeout
from urllib3.exceptions import HTTPError
from urllib3.response import HTTPResponse

from lsst.utils.timer import time_this

from ._resourceHandles import DavResponseStream
from .daverrors import DavError, DavErrorKind
from .davutils import DavAuthorizer, DavConfig, make_retry, redact_url

# Use the same logger than `dav.py`.
log = logging.getLogger(f"""{__name__.replace(".davtransport", ".dav")}""")


class DavResponse:
    """Response to a request, whose body has not been read yet.

    Parameters
    ----------
    response : `urllib3.response.HTTPResponse`
        Response as received from the server, obtained with
        ``preload_content=False``.
    url : `str`
        URL the request was sent to.
    chunk_size : `int`, optional
        Size in bytes of the chunks to read the body by.

    Notes
    -----
    The status line and headers are available as soon as the instance
    exists. The body is only read on demand, via `stream` or `read`. The
    response must be closed, either with `aclose` or by using it as an
    asynchronous context manager, unless its stream is handed over to
    someone else.
    """

    def __init__(self, response: HTTPResponse, url: str, chunk_size: int | None = None) -> None:
        self._response: HTTPResponse = response
        self._url: str = url
        self._stream: DavResponseStream = DavResponseStream(response, url, chunk_size=chunk_size)

    async def __aenter__(self) -> DavResponse:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def reason(self) -> str:
        return self._response.reason or ""

    @property
    def headers(self) -> Mapping[str, str]:
        return self._response.headers

    @property
    def url(self) -> str:
        return self._url

    @property
    def raw(self) -> HTTPResponse:
        """Underlying urllib3 response."""
        return self._response

    @property
    def stream(self) -> DavResponseStream:
        """Body of the response."""
        return self._stream

    async def read(self) -> bytes:
        """Read and return the whole body."""
        return await self._stream.read()

    async def aclose(self) -> None:
        """Close the response. A small unread body is drained so the
        connection can be reused for another request.
        """
        await self._stream.release()


class DavTransport(Protocol):
    """Interface of the objects which send requests on behalf of a
    `~lsst.davclient.DavClient`.

    Implementations deliver the response as soon as its headers are
    received. Cancelling the calling task must release any network resource
    associated to the request.
    """

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None = None,
    ) -> DavResponse:
        """Send a metadata or control request and return its response."""
        ...

    async def send_upload(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | BinaryIO,
    ) -> DavResponse:
        """Send a request carrying file contents and return its response."""
        ...

    async def aclose(self) -> None:
        """Release the resources held by this transport."""
        ...


class Urllib3Transport:
    """Send requests using a ``urllib3.PoolManager``.

    Each request is sent from a worker thread so that the event loop
    is never blocked by network operations.

    Parameters
    ----------
    config : `DavConfig`
        Configuration of the endpoint this transport sends requests to.
    """

    def __init__(self, config: DavConfig) -> None:
        self._config: DavConfig = config

        # Prepare the trusted authorities certificates
        ca_certs, ca_cert_dir = None, None
        if self._config.trusted_authorities is not None:
            if os.path.isdir(self._config.trusted_authorities):
                ca_cert_dir = self._config.trusted_authorities
            elif os.path.isfile(self._config.trusted_authorities):
                ca_certs = self._config.trusted_authorities
            else:
                raise FileNotFoundError(
                    f"Trusted authorities file or directory {self._config.trusted_authorities} does not exist"
                )

        # If a token was specified for this endpoint, prefer it as the
        # authentication method, instead of a <user certificate, private key>
        # pair, even if they were also specified.
        self._authorizer = DavAuthorizer(
            token=self._config.token,
            username=self._config.username,
            password=self._config.password,
        )
        if self._config.token is not None:
            user_cert, user_key = None, None
        else:
            user_cert = self._config.user_cert
            user_key = self._config.user_key

        # Timeout for requests carrying file contents. The server may take
        # long to acknowledge the reception of a large file.
        self._upload_timeout = Timeout(
            connect=self._config.timeout_connect,
            read=self._config.timeout_upload,
        )

        pool_args = dict(
            # Number of connection pools to cache before discarding the least
            # recently used pool. Each connection pool manages network
            # connections to a single host, so this is basically the number
            # of "host:port" we persist network connections to.
            num_pools=10,
            # Number of connections to the same "host:port" to persist for
            # later reuse. If more than this number of network connections
            # are needed at a particular moment, they will be created and
            # discarded after use.
            maxsize=self._config.persistent_connections_per_host,
            # Retry configuration. By default no request is retried.
            retries=make_retry(self._config),
            # Socket timeout in seconds for each individual connection.
            timeout=Timeout(
                connect=self._config.timeout_connect,
                read=self._config.timeout_read,
            ),
            # Size in bytes of the buffer for reading/writing data from/to
            # the underlying socket.
            blocksize=self._config.buffer_size,
            # Client certificate and private key for esablishing TLS
            # connections. If None, no client certificate is sent to the
            # server. Only relevant for endpoints using secure HTTP protocol.
            cert_file=user_cert,
            key_file=user_key,
            # Verification of the server certificate can only be disabled
            # explicitly in the configuration.
            cert_reqs="CERT_REQUIRED" if self._config.verify_server_certificate else "CERT_NONE",
            # Directory where the certificates of the trusted certificate
            # authorities can be found. The contents of that directory
            # must be as expected by OpenSSL.
            ca_cert_dir=ca_cert_dir,
            # Path to a file of concatenated CA certificates in PEM format.
            ca_certs=ca_certs,
        )
        self._pool_manager: PoolManager
        if self._config.proxy is not None:
            self._pool_manager = ProxyManager(self._config.proxy, **pool_args)
        else:
            self._pool_manager = PoolManager(**pool_args)

    @property
    def config(self) -> DavConfig:
        return self._config

    def _request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: BinaryIO | bytes | None = None,
        timeout: Timeout | None = None,
    ) -> HTTPResponse:
        """Send a generic HTTP request and return the response without
        reading its body.

        Parameters
        ----------
        method : `str`
            Request method, e.g. 'GET', 'PUT', 'PROPFIND'.
        url : `str`
            Target URL.
        headers : `dict[str, str]`
            Headers to sent with the request.
        body : `bytes` or binary file-like object, optional
            Request body.
        timeout : `urllib3.Timeout`, optional
            Timeout for this request. If `None`, the default timeout of
            the pool manager is used.

        Returns
        -------
        resp: `HTTPResponse`
            Response to the request as received from the server.
        """
        with time_this(
            log,
            msg="%s %s",
            args=(
                method,
                redact_url(url),
            ),
            mem_usage=self._config.collect_memory_usage,
            mem_unit=u.mebibyte,
        ):
            kwargs = {} if timeout is None else {"timeout": timeout}
            resp = self._pool_manager.request(
                method,
                url,
                body=body,
                headers=headers,
                preload_content=False,
                **kwargs,
            )

        return resp

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: BinaryIO | bytes | None,
        timeout: Timeout | None = None,
    ) -> DavResponse:
        # Ensure we only send credentials over secure HTTP to avoid leaking
        # them.
        request_headers = HTTPHeaderDict(headers)
        self._authorizer.set_authorization(url, request_headers)

        log.debug("sending request %s %s", method, redact_url(url))
        task = asyncio.ensure_future(
            asyncio.to_thread(self._request, method, url, request_headers, body, timeout)
        )
        try:
            resp = await asyncio.shield(task)
        except asyncio.CancelledError:
            log.debug("request %s %s cancelled", method, redact_url(url))
            task.add_done_callback(_release_response)
            raise
        except HTTPError as exc:
            raise DavError(
                DavErrorKind.TRANSPORT,
                f"{method} {redact_url(url)}: {exc}",
                url=url,
            ) from exc

        return DavResponse(resp, url, chunk_size=self._config.buffer_size)

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | None = None,
    ) -> DavResponse:
        return await self._send(method, url, headers, body)

    async def send_upload(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes | BinaryIO,
    ) -> DavResponse:
        return await self._send(method, url, headers, body, timeout=self._upload_timeout)

    async def aclose(self) -> None:
        self._pool_manager.clear()


def _release_response(task: asyncio.Future[HTTPResponse]) -> None:
    """Discard the response of a request whose caller was cancelled."""
    if task.cancelled() or task.exception() is not None:
        return

    resp = task.result()
    resp.close()
    resp.release_conn()
