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

__all__ = ("DavClient",)

import io
import logging
from collections.abc import Iterable, Mapping
from http import HTTPStatus
from types import TracebackType
from typing import BinaryIO

from urllib3 import HTTPHeaderDict

from ._resourceHandles import DavResponseStream
from .daverrors import DavError, DavErrorKind
from .davpropfind import DavPropfindParser, DavResource
from .davtransport import DavResponse, DavTransport, Urllib3Transport
from .davuri import DavUriResolver, RequestTarget, resolve_url, split_origin
from .davutils import DavConfig, DavConfigPool, dump_response, redact_url

log = logging.getLogger(__name__)

# Body of every PROPFIND request: ask for all the live properties.
_PROPFIND_BODY = b"""<?xml version="1.0" encoding="utf-8"?><propfind xmlns="DAV:"><allprop/></propfind>"""


class DavClient:
    """Asynchronous client of a webDAV storage endpoint.

    Parameters
    ----------
    config : `DavConfig`
        Configuration of the endpoint, which designates at least the
        server, e.g. 'https://webdav.example.org', and the path of the
        collection paths are relative to, e.g. '/remote.php/webdav/'.
    transport : `DavTransport`, optional
        Object to send requests with. If `None`, a `Urllib3Transport` is
        created for `config` and closed along with this client.

    Notes
    -----
    Paths given to the methods of this class can be relative to the root
    collection of the endpoint (e.g. 'dir/file.txt'), already prefixed by
    the root collection (e.g. '/remote.php/webdav/dir/file.txt'), or
    absolute URLs such as the ones servers may return as hrefs. They can be
    percent-encoded or not.

    The root collection is the href the server reports for the configured
    base path. It is retrieved once, the first time a relative path must
    be resolved.

    Methods may be called concurrently. Cancelling the calling task
    releases the resources associated to the request in progress.
    """

    def __init__(self, config: DavConfig, transport: DavTransport | None = None) -> None:
        if not config.server:
            raise ValueError("No webDAV server configured: one of 'base_url' or 'server' must be set")

        self._config: DavConfig = config
        self._owns_transport: bool = transport is None
        self._transport: DavTransport = Urllib3Transport(config) if transport is None else transport
        self._resolver: DavUriResolver = DavUriResolver(
            config.server,
            config.base_path,
            port=config.port,
            fetch_root=self._fetch_root,
        )

    @classmethod
    def from_url(
        cls, url: str, config_pool: DavConfigPool | None = None, transport: DavTransport | None = None
    ) -> DavClient:
        """Create a client for the endpoint at `url`.

        Parameters
        ----------
        url : `str`
            URL of the endpoint, e.g.
            'davs://webdav.example.org/remote.php/webdav/'.
        config_pool : `DavConfigPool`, optional
            Known endpoint configurations. The settings of the endpoint
            `url` belongs to are used, if any. If `None`, configurations are
            loaded from the file designated by the environment variable
            'LSST_DAVCLIENT_CONFIG'.
        transport : `DavTransport`, optional
            Object to send requests with.
        """
        pool = DavConfigPool() if config_pool is None else config_pool
        config = pool.get_config_for_url(url).for_url(url)
        return cls(config, transport=transport)

    async def __aenter__(self) -> DavClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def __str__(self) -> str:
        return f"DavClient({self._config.base_url})"

    @property
    def config(self) -> DavConfig:
        return self._config

    async def aclose(self) -> None:
        """Release the network connections held by this client."""
        if self._owns_transport:
            await self._transport.aclose()

    async def resolve(self, path: str | None, append_trailing_slash: bool = False) -> RequestTarget:
        """Return the URL a request for `path` is sent to.

        Parameters
        ----------
        path : `str`, optional
            Path of the resource.
        append_trailing_slash : `bool`, optional
            True if `path` designates a collection.
        """
        return await self._resolver.resolve(path, append_trailing_slash=append_trailing_slash)

    async def list(
        self,
        path: str | None = "/",
        depth: int | str | None = 1,
        headers: Mapping[str, str] | None = None,
    ) -> list[DavResource]:
        """List the contents of the collection at `path`.

        Parameters
        ----------
        path : `str`, optional
            Path of the collection.
        depth : `int` or `str`, optional
            Value of the 'Depth' header, e.g. 1 or 'infinity'. If `None`,
            no 'Depth' header is sent and the server applies its default.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Returns
        -------
        resources : `list` [ `DavResource` ]
            Resources in the collection, in the order the server returned
            them. The collection itself is not included.
        """
        target = await self._resolver.resolve(path, append_trailing_slash=True)
        resources = await self._propfind(target.url, depth, headers)

        # Some servers include the listed collection in the listing.
        listed_url = target.url.lower()
        origin, _ = split_origin(target.url)
        contents: list[DavResource] = []
        for resource in resources:
            if resource.is_collection:
                if self._resolver.root is None:
                    # Listing by absolute URL: hrefs are absolute paths on
                    # the server, the root collection is not needed.
                    resource_url = resolve_url(origin, "/", resource.href, append_trailing_slash=True)
                else:
                    resource_target = await self._resolver.resolve(resource.href, append_trailing_slash=True)
                    resource_url = resource_target.url
                if resource_url.lower() == listed_url:
                    continue

            contents.append(resource)

        log.debug("listed %d resources in %s", len(contents), redact_url(target.url))
        return contents

    async def get_folder(
        self, path: str | None = "/", headers: Mapping[str, str] | None = None
    ) -> DavResource:
        """Return the properties of the collection at `path`.

        Parameters
        ----------
        path : `str`, optional
            Path of the collection.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.
        """
        target = await self._resolver.resolve(path, append_trailing_slash=True)
        return await self._stat(target.url, headers)

    async def get_file(self, path: str | None = "/", headers: Mapping[str, str] | None = None) -> DavResource:
        """Return the properties of the file at `path`.

        Parameters
        ----------
        path : `str`, optional
            Path of the file.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.
        """
        target = await self._resolver.resolve(path)
        return await self._stat(target.url, headers)

    async def download(self, path: str, headers: Mapping[str, str] | None = None) -> DavResponseStream:
        """Download the file at `path`.

        Parameters
        ----------
        path : `str`
            Path of the file.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Returns
        -------
        stream : `DavResponseStream`
            Contents of the file. The caller must close it.
        """
        target = await self._resolver.resolve(path)
        return await self._get(target.url, {"translate": "f"}, (HTTPStatus.OK,), headers)

    async def download_partial(
        self, path: str, start: int, end: int, headers: Mapping[str, str] | None = None
    ) -> DavResponseStream:
        """Download the bytes `start` to `end` of the file at `path`.

        Parameters
        ----------
        path : `str`
            Path of the file.
        start : `int`
            Offset of the first byte to download.
        end : `int`
            Offset of the last byte to download, as sent in the 'Range'
            header.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Returns
        -------
        stream : `DavResponseStream`
            Requested contents. The caller must close it. Servers which
            ignore the 'Range' header send the whole file.
        """
        target = await self._resolver.resolve(path)
        return await self._get(
            target.url,
            {"translate": "f", "Range": f"bytes={start}-{end}"},
            (HTTPStatus.OK, HTTPStatus.PARTIAL_CONTENT),
            headers,
        )

    async def upload(
        self,
        path: str | None,
        content: bytes | BinaryIO,
        name: str,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Upload `content` as the file `name` in the collection `path`.

        Parameters
        ----------
        path : `str`
            Path of the collection to upload into.
        content : `bytes` or binary file-like object
            Contents of the file. File objects are read as they are sent.
        name : `str`
            Name of the file.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Returns
        -------
        uploaded : `bool`
            Always True. A failure raises `DavError`.
        """
        target = await self._resolver.resolve(_join(path, name))
        await self._put(target.url, content, None, headers)
        return True

    async def upload_partial(
        self,
        path: str | None,
        content: bytes | BinaryIO,
        name: str,
        start: int,
        end: int,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Upload `content` as the bytes `start` to `end` of the file `name`
        in the collection `path`.

        Parameters
        ----------
        path : `str`
            Path of the collection to upload into.
        content : `bytes` or seekable binary file-like object
            Contents to upload. Its length must be exactly ``end - start``.
        name : `str`
            Name of the file.
        start : `int`
            Offset of the first byte of `content` in the file.
        end : `int`
            Offset where `content` ends in the file.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Returns
        -------
        uploaded : `bool`
            Always True. A failure raises `DavError`.

        Raises
        ------
        DavError
            With kind `DavErrorKind.PRECONDITION` if the length of `content`
            is not ``end - start``. No request is sent in that case.
        """
        length = _content_length(content)
        if length is None or end - start != length:
            raise DavError(
                DavErrorKind.PRECONDITION,
                f"Cannot upload byte range {start}-{end} of {name}: content length is {length} bytes, "
                f"expected {end - start}",
            )

        target = await self._resolver.resolve(_join(path, name))
        operation_headers = {
            "Content-Range": f"bytes {start}-{end}/*",
            "Content-Length": str(end - start),
        }
        await self._put(target.url, content, operation_headers, headers)
        return True

    async def create_dir(self, path: str | None, name: str, headers: Mapping[str, str] | None = None) -> bool:
        """Create the collection `name` in the collection `path`.

        Parameters
        ----------
        path : `str`
            Path of the parent collection.
        name : `str`
            Name of the collection to create.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Returns
        -------
        created : `bool`
            Always True. A failure raises `DavError`.

        Raises
        ------
        DavError
            With kind `DavErrorKind.CONFLICT` if the server answered with
            status 409, i.e. the parent collection does not exist or the
            collection already exists.
        """
        target = await self._resolver.resolve(_join(path, name), append_trailing_slash=True)
        message = f"Can not create directory {redact_url(target.url)}"
        async with await self._transport.send("MKCOL", target.url, self._headers(None, headers)) as resp:
            if resp.status == HTTPStatus.CONFLICT:
                # The parent collection does not exist or there is already a
                # resource with that name.
                dump_response("MKCOL", resp.raw, target.url)
                raise DavError(
                    DavErrorKind.CONFLICT,
                    f"{message}: status {resp.status} {resp.reason}",
                    status=resp.status,
                    url=target.url,
                )
            self._check_status(
                "MKCOL", resp, (HTTPStatus.OK, HTTPStatus.CREATED, HTTPStatus.NO_CONTENT), message
            )

        return True

    async def delete_file(self, path: str, headers: Mapping[str, str] | None = None) -> None:
        """Delete the file at `path`.

        Parameters
        ----------
        path : `str`
            Path of the file.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.
        """
        target = await self._resolver.resolve(path)
        await self._delete(target.url, headers)

    async def delete_folder(self, path: str, headers: Mapping[str, str] | None = None) -> None:
        """Delete the collection at `path`.

        Parameters
        ----------
        path : `str`
            Path of the collection.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.

        Notes
        -----
        Depending on the server, a collection which is not empty is
        either deleted along with its contents or not deleted at all.
        """
        target = await self._resolver.resolve(path, append_trailing_slash=True)
        await self._delete(target.url, headers)

    async def move_file(
        self,
        source: str,
        destination: str,
        overwrite: bool | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Move the file at `source` to `destination`.

        Parameters
        ----------
        source : `str`
            Path of the file to move.
        destination : `str`
            New path of the file.
        overwrite : `bool`, optional
            If not `None`, the value of the 'Overwrite' header.
        headers : `dict` [ `str`, `str` ], optional
            Additional headers to send with the request.
        """
        return await self._transfer("MOVE", source, destination, False, overwrite, headers)

    async def move_folder(
        self,
        source: str,
        destination: str,
        overwrite: bool | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Move the collection at `source` to `destination`.

        Parameters are the same as for `move_file`.
        """
        return await self._transfer("MOVE", source, destination, True, overwrite, headers)

    async def copy_file(
        self,
        source: str,
        destination: str,
        overwrite: bool | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Copy the file at `source` to `destination`.

        Parameters are the same as for `move_file`.
        """
        return await self._transfer("COPY", source, destination, False, overwrite, headers)

    async def copy_folder(
        self,
        source: str,
        destination: str,
        overwrite: bool | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bool:
        """Copy the collection at `source` and its contents to
        `destination`.

        Parameters are the same as for `move_file`.
        """
        return await self._transfer("COPY", source, destination, True, overwrite, headers)

    def _headers(
        self, operation_headers: Mapping[str, str] | None, headers: Mapping[str, str] | None
    ) -> HTTPHeaderDict:
        """Return the headers of a request.

        Headers set by the caller take precedence over the ones set by the
        operation, which take precedence over the default headers of the
        endpoint. Names are compared regardless of their case.
        """
        merged = HTTPHeaderDict({"User-Agent": self._config.user_agent})
        for layer in (self._config.headers, operation_headers, headers):
            if layer:
                for key, value in layer.items():
                    merged[key] = value

        return merged

    def _check_status(
        self, method: str, resp: DavResponse, accepted: Iterable[int], message: str | None = None
    ) -> None:
        """Raise `DavError` if the status of `resp` is not one of `accepted`.

        Parameters
        ----------
        method : `str`
            Method of the request.
        resp : `DavResponse`
            Response to check.
        accepted : `collections.abc.Iterable` [ `int` ]
            Status codes which indicate success.
        message : `str`, optional
            Description of the operation which failed, to use in the
            exception message.
        """
        if resp.status in accepted:
            return

        dump_response(method, resp.raw, resp.url)
        if message is None:
            message = f"Unexpected response to {method} {redact_url(resp.url)}"
        raise DavError(
            DavErrorKind.PROTOCOL,
            f"{message}: status {resp.status} {resp.reason}",
            status=resp.status,
            url=resp.url,
        )

    async def _fetch_root(self, url: str) -> str:
        """Return the href the server reports for the collection at
        `url`.
        """
        resource = await self._stat(url, None)
        return resource.href

    async def _propfind(
        self, url: str, depth: int | str | None, headers: Mapping[str, str] | None
    ) -> list[DavResource]:
        """Send a PROPFIND request and parse the response body as it is
        received.
        """
        operation_headers = {"Content-Type": "text/xml"}
        if depth is not None:
            operation_headers["Depth"] = str(depth)

        parser = DavPropfindParser()
        resources: list[DavResource] = []
        request_headers = self._headers(operation_headers, headers)
        async with await self._transport.send("PROPFIND", url, request_headers, _PROPFIND_BODY) as resp:
            self._check_status("PROPFIND", resp, (HTTPStatus.OK, HTTPStatus.MULTI_STATUS))
            async for chunk in resp.stream:
                resources.extend(parser.feed(chunk))
            resources.extend(parser.close())

        return resources

    async def _stat(self, url: str, headers: Mapping[str, str] | None) -> DavResource:
        resources = await self._propfind(url, 0, headers)
        if not resources:
            raise DavError(
                DavErrorKind.PARSE,
                f"No resource found in response to PROPFIND {redact_url(url)}",
                url=url,
            )

        return resources[0]

    async def _get(
        self,
        url: str,
        operation_headers: Mapping[str, str],
        accepted: Iterable[int],
        headers: Mapping[str, str] | None,
    ) -> DavResponseStream:
        resp = await self._transport.send("GET", url, self._headers(operation_headers, headers))
        try:
            self._check_status("GET", resp, accepted)
        except DavError:
            await resp.aclose()
            raise

        # The caller is now responsible for closing the stream.
        return resp.stream

    async def _put(
        self,
        url: str,
        content: bytes | BinaryIO,
        operation_headers: Mapping[str, str] | None,
        headers: Mapping[str, str] | None,
    ) -> None:
        request_headers = self._headers(operation_headers, headers)
        async with await self._transport.send_upload("PUT", url, request_headers, content) as resp:
            self._check_status(
                "PUT",
                resp,
                (HTTPStatus.OK, HTTPStatus.CREATED, HTTPStatus.NO_CONTENT),
                f"Can not upload file to {redact_url(url)}",
            )

    async def _delete(self, url: str, headers: Mapping[str, str] | None) -> None:
        async with await self._transport.send("DELETE", url, self._headers(None, headers)) as resp:
            self._check_status(
                "DELETE",
                resp,
                (HTTPStatus.OK, HTTPStatus.NO_CONTENT),
                f"Unable to delete resource {redact_url(url)}",
            )

    async def _transfer(
        self,
        method: str,
        source: str,
        destination: str,
        is_collection: bool,
        overwrite: bool | None,
        headers: Mapping[str, str] | None,
    ) -> bool:
        """Send a MOVE or COPY request."""
        source_target = await self._resolver.resolve(source, append_trailing_slash=is_collection)
        destination_target = await self._resolver.resolve(destination, append_trailing_slash=is_collection)
        operation_headers = {"Destination": destination_target.url}
        if overwrite is not None:
            operation_headers["Overwrite"] = "T" if overwrite else "F"

        request_headers = self._headers(operation_headers, headers)
        async with await self._transport.send(method, source_target.url, request_headers) as resp:
            self._check_status(
                method,
                resp,
                (HTTPStatus.OK, HTTPStatus.CREATED),
                f"Could not {method.lower()} {redact_url(source_target.url)} to "
                f"{redact_url(destination_target.url)}",
            )

        return True


def _join(path: str | None, name: str) -> str:
    """Return the path of `name` in collection `path`."""
    return f"""{(path or "").rstrip("/")}/{name.lstrip("/")}"""


def _content_length(content: bytes | BinaryIO) -> int | None:
    """Return the number of bytes left to read from `content`, or `None`
    if it cannot be determined without reading it.
    """
    if isinstance(content, bytes | bytearray | memoryview):
        return len(content)

    try:
        if not content.seekable():
            return None
        position = content.tell()
        end = content.seek(0, io.SEEK_END)
        content.seek(position, io.SEEK_SET)
    except (AttributeError, OSError):
        return None

    return end - position
