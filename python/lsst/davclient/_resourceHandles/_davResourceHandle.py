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

__all__ = ("DavResponseStream",)

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from types import TracebackType
from typing import TypeVar

from urllib3.exceptions import HTTPError
from urllib3.response import HTTPResponse

from ..daverrors import DavError, DavErrorKind
from ..davutils import redact_url

log = logging.getLogger(__name__.replace("._resourceHandles._davResourceHandle", ".dav"))

_T = TypeVar("_T")


class DavResponseStream:
    """Asynchronous reader of the body of an HTTP response.

    Parameters
    ----------
    response : `urllib3.response.HTTPResponse`
        Response whose body has not been read yet, i.e. obtained with
        ``preload_content=False``.
    url : `str`
        URL the response was obtained from. Only used for logging.
    chunk_size : `int`, optional
        Size in bytes of the chunks returned when iterating over the stream.

    Notes
    -----
    Reading from the underlying socket is done in a worker thread so the
    event loop is never blocked. If a read is cancelled, the stream is
    closed and the network connection is discarded.

    Whoever obtains an instance of this class is responsible for closing
    it, either explicitly via `aclose` or by using it as an asynchronous
    context manager.
    """

    DEFAULT_CHUNK_SIZE: int = 1_048_576

    # Maximum size of the unread part of a body which is read and discarded
    # to return the connection to its pool.
    DEFAULT_DRAIN_LIMIT: int = 65_536

    def __init__(self, response: HTTPResponse, url: str, chunk_size: int | None = None) -> None:
        self._response: HTTPResponse = response
        self._url: str = url
        self._chunk_size: int = self.DEFAULT_CHUNK_SIZE if chunk_size is None else chunk_size
        self._closed: bool = False
        self._eof: bool = False
        self._bytes_read: int = 0
        log.debug("opening response stream for %s [%d]", redact_url(self._url), id(self))

    async def __aenter__(self) -> DavResponseStream:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self.iter_chunks()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def url(self) -> str:
        return self._url

    @property
    def bytes_read(self) -> int:
        """Number of bytes read from the stream so far."""
        return self._bytes_read

    async def _run(self, func: Callable[[], _T]) -> _T:
        """Run `func` in a worker thread. If the caller is cancelled, close
        this stream once `func` returns.
        """
        task = asyncio.ensure_future(asyncio.to_thread(func))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            log.debug("read cancelled for %s [%d]", redact_url(self._url), id(self))
            self._closed = True
            task.add_done_callback(lambda _: self._discard())
            raise

    async def read(self, size: int = -1) -> bytes:
        """Read up to `size` bytes from the stream.

        Parameters
        ----------
        size : `int`, optional
            Maximum number of bytes to read. Negative or omitted indicates
            that all the remaining data must be read.

        Returns
        -------
        data : `bytes`
            Bytes read. An empty value signals the end of the stream.
        """
        if self._closed:
            raise ValueError("I/O operation on closed stream")

        if size == 0 or self._eof:
            return b""

        amount = None if size < 0 else size
        try:
            data: bytes = await self._run(lambda: self._response.read(amount))
        except HTTPError as exc:
            self.close()
            raise DavError(
                DavErrorKind.TRANSPORT,
                f"Error reading response body from {redact_url(self._url)}: {exc}",
                url=self._url,
            ) from exc

        if not data or amount is None:
            self._eof = True

        self._bytes_read += len(data)
        return data

    async def iter_chunks(self, chunk_size: int | None = None) -> AsyncIterator[bytes]:
        """Iterate over the remaining data of the stream.

        Parameters
        ----------
        chunk_size : `int`, optional
            Maximum size in bytes of each chunk. Defaults to the chunk size
            of this stream.
        """
        size = self._chunk_size if chunk_size is None else chunk_size
        while chunk := await self.read(size):
            yield chunk

    async def aclose(self) -> None:
        """Close the stream and release the network connection."""
        self.close()

    async def release(self, limit: int | None = None) -> None:
        """Close the stream, keeping the network connection for reuse if
        the unread part of the body is small enough to be drained.

        Parameters
        ----------
        limit : `int`, optional
            Maximum number of unread bytes to drain. Defaults to
            `DEFAULT_DRAIN_LIMIT`. Bodies of unknown length are never
            drained.
        """
        if self._closed:
            return

        limit = self.DEFAULT_DRAIN_LIMIT if limit is None else limit
        remaining = self._response.length_remaining
        if not self._eof and remaining is not None and remaining <= limit:
            await self._run(self._response.drain_conn)
            # drain_conn() ignores read errors, so check the whole body
            # was actually consumed before reusing the connection.
            self._eof = self._response.length_remaining == 0

        self.close()

    def close(self) -> None:
        """Close the stream and release the network connection.

        If the body was entirely read, the connection is returned to its
        pool for reuse. Otherwise it is discarded.
        """
        if self._closed:
            return

        self._closed = True
        log.debug(
            "closing response stream for %s after %d bytes [%d]",
            redact_url(self._url),
            self._bytes_read,
            id(self),
        )
        if self._eof:
            # Once released the connection is no longer attached to the
            # response, so closing the response leaves it open.
            self._response.release_conn()
            self._response.close()
        else:
            self._discard()

    def _discard(self) -> None:
        self._response.close()
        self._response.release_conn()
