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

__all__ = ("DavError", "DavErrorKind")

import enum


class DavErrorKind(enum.Enum):
    """Kinds of failure a webDAV operation can report."""

    # The server answered with a status code not accepted by the operation.
    PROTOCOL = "protocol"

    # The server answered 409 Conflict to a MKCOL request: an ancestor of
    # the collection is missing or the target already exists.
    CONFLICT = "conflict"

    # The response body is not a usable multistatus document.
    PARSE = "parse"

    # An argument supplied by the caller was rejected before any request
    # was sent.
    PRECONDITION = "precondition"

    # The request could not be sent or its response could not be received.
    TRANSPORT = "transport"


class DavError(Exception):
    """Failure of a webDAV operation.

    Parameters
    ----------
    kind : `DavErrorKind`
        What kind of failure this is.
    message : `str`
        Human readable description of the operation which failed.
    status : `int`, optional
        HTTP status code returned by the server, if a response was received.
    url : `str`, optional
        Target URL of the request which failed, if any.
    """

    def __init__(
        self, kind: DavErrorKind, message: str, status: int | None = None, url: str | None = None
    ) -> None:
        super().__init__(message)
        self._kind: DavErrorKind = kind
        self._status: int | None = status
        self._url: str | None = url

    @property
    def kind(self) -> DavErrorKind:
        return self._kind

    @property
    def status(self) -> int | None:
        return self._status

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def is_protocol_error(self) -> bool:
        """True if the server answered with an unexpected status code.

        A conflict is a protocol error with a specific meaning.
        """
        return self._kind in (DavErrorKind.PROTOCOL, DavErrorKind.CONFLICT)

    def __str__(self) -> str:
        message = super().__str__()
        if self._status is None:
            return f"[{self._kind.value}] {message}"

        return f"[{self._kind.value}] {message} (HTTP status {self._status})"

    def __repr__(self) -> str:
        return f"DavError({self._kind}, {super().__str__()!r}, status={self._status}, url={self._url!r})"
