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

__all__ = ("DavPropfindParser", "DavResource", "decode_href")

import posixpath
import re
import xml.etree.ElementTree as eTree
from datetime import UTC, datetime
from typing import Any
from urllib.parse import unquote

from .daverrors import DavError, DavErrorKind


def decode_href(href: str) -> str:
    """Decode the text of an 'href' element.

    A literal '#' is escaped before decoding so that it is kept as part of
    the path instead of being taken for the start of a fragment. The
    returned value is decoded exactly once.
    """
    return unquote(href.strip().replace("#", "%23"))


def parse_datetime(value: str | None) -> datetime | None:
    """Parse a date as found in 'getlastmodified' or 'creationdate'.

    Returns `None` if `value` cannot be parsed.
    """
    if not value or not (value := value.strip()):
        return None

    # 'getlastmodified' is of the form 'Wed, 12 Mar 2025 10:11:13 GMT'
    # (RFC 1123) and 'creationdate' of the form '2025-03-12T10:11:13Z'
    # (RFC 3339), but servers don't always follow the rules.
    try:
        return datetime.strptime(value, "%a, %d %b %Y %H:%M:%S GMT").replace(tzinfo=UTC)
    except ValueError:
        pass

    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _parse_int(value: str | None) -> int | None:
    if not value:
        return None

    try:
        return int(value.strip())
    except ValueError:
        return None


def _parse_flag(value: str | None) -> bool:
    return value is not None and value.strip().lower() in ("true", "1")


class DavResource:
    """Properties of a single webDAV resource, as retrieved via a PROPFIND
    request.

    Parameters
    ----------
    href : `str`
        Decoded href of the resource. It may be a path or an absolute URL.
    is_collection : `bool`, optional
        Whether the resource is a collection (a directory).
    is_hidden : `bool`, optional
        Whether the server flags the resource as hidden.
    display_name : `str`, optional
        Name of the resource. If empty, it is derived from `href`.
    content_type : `str`, optional
        MIME type of the resource.
    etag : `str`, optional
        Entity tag of the resource.
    content_length : `int`, optional
        Size in bytes of the resource.
    creation_date : `datetime`, optional
        Creation date of the resource.
    last_modified : `datetime`, optional
        Last modification date of the resource.

    Notes
    -----
    The href of a collection always ends with '/' and the href of any
    other resource never does, regardless of what the server returned. The
    only exception is the server root, whose href is always '/'.
    """

    def __init__(
        self,
        href: str,
        is_collection: bool = False,
        is_hidden: bool = False,
        display_name: str | None = None,
        content_type: str | None = None,
        etag: str | None = None,
        content_length: int | None = None,
        creation_date: datetime | None = None,
        last_modified: datetime | None = None,
    ) -> None:
        # Some webDAV servers do not append a "/" to the href of
        # collections while others do it for every resource.
        trimmed = href.rstrip("/")
        self._href: str = trimmed + "/" if is_collection or not trimmed else trimmed
        self._is_collection: bool = is_collection
        self._is_hidden: bool = is_hidden

        # Some webDAV servers don't include the 'displayname' property in
        # their response so infer it from the href, which is already
        # decoded.
        if not display_name:
            display_name = posixpath.basename(trimmed) or "/"

        self._display_name: str = display_name
        self._content_type: str | None = content_type
        self._etag: str | None = etag
        self._content_length: int | None = content_length
        self._creation_date: datetime | None = creation_date
        self._last_modified: datetime | None = last_modified

    def __repr__(self) -> str:
        return (
            f"DavResource(href={self._href!r}, is_collection={self._is_collection}, "
            f"display_name={self._display_name!r}, content_length={self._content_length})"
        )

    @property
    def href(self) -> str:
        return self._href

    @property
    def is_collection(self) -> bool:
        return self._is_collection

    @property
    def is_hidden(self) -> bool:
        return self._is_hidden

    @property
    def display_name(self) -> str:
        return self._display_name

    @property
    def content_type(self) -> str | None:
        return self._content_type

    @property
    def etag(self) -> str | None:
        return self._etag

    @property
    def content_length(self) -> int | None:
        return self._content_length

    @property
    def creation_date(self) -> datetime | None:
        return self._creation_date

    @property
    def last_modified(self) -> datetime | None:
        return self._last_modified


class DavPropfindParser:
    """Incremental parser of the response body to a PROPFIND request.

    Data is fed to the parser as it is received from the server and each
    call to `feed` returns the resources whose 'response' element was
    completed by that chunk. An instance parses a single document.

    Notes
    -----
    A response body to a PROPFIND request is of the form (indented for
    readability)::

        <?xml version="1.0" encoding="UTF-8"?>
        <D:multistatus xmlns:D="DAV:">
            <D:response>
                <D:href>/path/to/collection/</D:href>
                <D:propstat>
                    <D:prop>
                        <D:resourcetype><D:collection/></D:resourcetype>
                        <D:getlastmodified>Fri, 27 Jan 2023 13:59:01 GMT</D:getlastmodified>
                    </D:prop>
                    <D:status>HTTP/1.1 200 OK</D:status>
                </D:propstat>
            </D:response>
            <D:response>
               ...
            </D:response>
        </D:multistatus>

    Element names are matched without regard to their namespace or case,
    since servers add vendor properties such as 'iscollection' or
    'ishidden' in their own namespaces. Unknown elements are ignored.
    """

    # Regular expression to compare against the 'status' element of a
    # PROPFIND response's 'propstat' element.
    _status_ok_rex = re.compile(r"^\s*HTTP/\S+\s+2\d\d\b", re.IGNORECASE)

    # Properties whose text content is kept as is.
    _text_properties = {
        "displayname": "display_name",
        "getcontenttype": "content_type",
        "getetag": "etag",
    }

    def __init__(self) -> None:
        self._parser = eTree.XMLPullParser(events=("start", "end"))

        # Local names of the elements currently open.
        self._stack: list[str] = []

        # Values collected for the 'response' element being parsed.
        self._fields: dict[str, Any] | None = None

        # Values collected for the 'propstat' element being parsed and its
        # status, if any.
        self._propstat: dict[str, Any] | None = None
        self._propstat_status: str | None = None

    def feed(self, data: bytes) -> list[DavResource]:
        """Parse a chunk of the response body.

        Parameters
        ----------
        data : `bytes`
            Next chunk of the response body.

        Returns
        -------
        resources : `list` [ `DavResource` ]
            Resources completed by this chunk, in document order.
        """
        try:
            self._parser.feed(data)
            return self._process_events()
        except eTree.ParseError as exc:
            raise DavError(
                DavErrorKind.PARSE, f"Unable to parse response to PROPFIND request: {exc}"
            ) from exc

    def close(self) -> list[DavResource]:
        """Signal the end of the response body.

        Returns
        -------
        resources : `list` [ `DavResource` ]
            Resources completed by the last chunk, if any.
        """
        try:
            self._parser.close()
            return self._process_events()
        except eTree.ParseError as exc:
            raise DavError(
                DavErrorKind.PARSE, f"Unable to parse response to PROPFIND request: {exc}"
            ) from exc

    def parse(self, body: bytes) -> list[DavResource]:
        """Parse a complete response body.

        Parameters
        ----------
        body : `bytes`
            XML-encoded response body to a PROPFIND request.

        Returns
        -------
        resources : `list` [ `DavResource` ]
            One resource per 'response' element, in document order. The
            list is empty if the body has no 'response' element.
        """
        resources = self.feed(body)
        resources.extend(self.close())
        return resources

    def _process_events(self) -> list[DavResource]:
        completed: list[DavResource] = []
        for event, element in self._parser.read_events():
            name = element.tag.rpartition("}")[2].lower()
            if event == "start":
                self._start(name)
                self._stack.append(name)
            else:
                self._stack.pop()
                if (resource := self._end(name, element)) is not None:
                    completed.append(resource)

        return completed

    @property
    def _parent(self) -> str | None:
        return self._stack[-1] if self._stack else None

    def _target(self) -> dict[str, Any] | None:
        """Return where the value of a property must be stored, if it is
        part of a 'response' element.
        """
        if self._fields is None:
            return None

        return self._propstat if self._propstat is not None else self._fields

    def _start(self, name: str) -> None:
        match name:
            case "response":
                self._fields = {}
                self._propstat = None
            case "propstat" if self._fields is not None:
                self._propstat = {}
                self._propstat_status = None
            case "hidden" | "ishidden":
                # The mere presence of the element flags the resource as
                # hidden.
                if (target := self._target()) is not None and "prop" in self._stack:
                    target["is_hidden"] = True

    def _end(self, name: str, element: eTree.Element) -> DavResource | None:
        if name == "response":
            resource = self._make_resource()
            element.clear()
            return resource

        if self._fields is None:
            return None

        # Empty elements (e.g. '<D:getetag/>') have no text and are
        # considered absent.
        text = element.text
        match name:
            case "href":
                if self._parent == "response" and text and text.strip():
                    self._fields["href"] = decode_href(text)
            case "status":
                if self._parent == "propstat":
                    self._propstat_status = text
            case "propstat":
                self._commit_propstat()
            case _ if "prop" not in self._stack:
                pass
            case "collection":
                if self._parent == "resourcetype" and (target := self._target()) is not None:
                    target["is_collection"] = True
            case "iscollection":
                if _parse_flag(text) and (target := self._target()) is not None:
                    target["is_collection"] = True
            case "getcontentlength":
                if (length := _parse_int(text)) is not None and (target := self._target()) is not None:
                    target["content_length"] = length
            case "creationdate" | "getlastmodified":
                key = "creation_date" if name == "creationdate" else "last_modified"
                if (date := parse_datetime(text)) is not None and (target := self._target()) is not None:
                    target[key] = date
            case _ if name in self._text_properties:
                if text and text.strip() and (target := self._target()) is not None:
                    target[self._text_properties[name]] = text.strip()

        return None

    def _commit_propstat(self) -> None:
        """Merge the properties of the 'propstat' element just closed into
        the response, if its status is OK.
        """
        propstat, status = self._propstat, self._propstat_status
        self._propstat, self._propstat_status = None, None
        if propstat is None or self._fields is None:
            return

        # A 'propstat' without status is accepted. Properties reported with
        # a non-2xx status, e.g. 'HTTP/1.1 404 Not Found', were not found.
        if status is not None and not self._status_ok_rex.match(status):
            return

        for key, value in propstat.items():
            if key in ("is_collection", "is_hidden"):
                self._fields[key] = self._fields.get(key, False) or value
            else:
                self._fields[key] = value

    def _make_resource(self) -> DavResource | None:
        fields, self._fields, self._propstat = self._fields, None, None
        if fields is None:
            return None

        if "href" not in fields:
            raise DavError(DavErrorKind.PARSE, "Property 'href' expected but not found in PROPFIND response")

        return DavResource(**fields)
