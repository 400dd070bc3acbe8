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

"""Asynchronous client library for webDAV storage endpoints."""

from ._resourceHandles import DavResponseStream
from .dav import DavClient
from .daverrors import DavError, DavErrorKind
from .davpropfind import DavPropfindParser, DavResource
from .davtransport import DavResponse, DavTransport, Urllib3Transport
from .davuri import DavUriResolver, RequestTarget, resolve_url
from .davutils import DavConfig, DavConfigPool

__all__ = (
    "DavClient",
    "DavConfig",
    "DavConfigPool",
    "DavError",
    "DavErrorKind",
    "DavPropfindParser",
    "DavResource",
    "DavResponse",
    "DavResponseStream",
    "DavTransport",
    "DavUriResolver",
    "RequestTarget",
    "Urllib3Transport",
    "resolve_url",
)
