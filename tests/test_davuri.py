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

import asyncio
import unittest

from lsst.davclient import DavUriResolver, RequestTarget, resolve_url
from lsst.davclient.davuri import (
    has_scheme,
    normalize_base_path,
    normalize_server,
    quote_path,
    split_origin,
    strip_server,
)

SERVER = "https://webdav.example.org"
ROOT = "/remote.php/webdav/"


class UriHelpersTestCase(unittest.TestCase):
    """Test the helpers used for resolving paths."""

    def test_normalize(self):
        self.assertEqual(normalize_server("https://webdav.example.org///"), SERVER)
        self.assertEqual(normalize_server(None), "")
        self.assertEqual(normalize_base_path("remote.php/webdav"), ROOT)
        self.assertEqual(normalize_base_path("/remote.php/webdav//"), ROOT)
        self.assertEqual(normalize_base_path(""), "/")
        self.assertEqual(normalize_base_path(None), "/")
        self.assertEqual(normalize_base_path("/"), "/")

    def test_has_scheme(self):
        self.assertTrue(has_scheme("https://host/a"))
        self.assertTrue(has_scheme("davs://host/a"))
        self.assertFalse(has_scheme("/a/b"))
        self.assertFalse(has_scheme("a/b:c"))

    def test_split_origin(self):
        self.assertEqual(split_origin("https://host:1234/a/b#c"), ("https://host:1234", "/a/b#c"))
        self.assertEqual(split_origin("https://host"), ("https://host", ""))
        with self.assertRaises(ValueError):
            split_origin("/a/b")

    def test_strip_server(self):
        self.assertEqual(strip_server(SERVER, f"{SERVER}/a/b"), "/a/b")
        self.assertEqual(strip_server(SERVER, "HTTPS://WebDAV.example.org/a"), "/a")
        self.assertEqual(strip_server(SERVER, SERVER), "")
        self.assertEqual(strip_server(SERVER, f"{SERVER}.evil/a"), f"{SERVER}.evil/a")
        self.assertEqual(strip_server(SERVER, "/a"), "/a")

    def test_quote_path(self):
        self.assertEqual(quote_path("/a b/c#d?e%f"), "/a%20b/c%23d%3Fe%25f")
        self.assertEqual(quote_path("/a:b@c/d~e_f-g.h"), "/a:b@c/d~e_f-g.h")


class ResolveUrlTestCase(unittest.TestCase):
    """Test the resolution of paths into request URLs."""

    def test_root(self):
        self.assertEqual(resolve_url(SERVER, ROOT, None), f"{SERVER}{ROOT}")
        self.assertEqual(resolve_url(SERVER, ROOT, ""), f"{SERVER}{ROOT}")
        self.assertEqual(resolve_url(SERVER, ROOT, "/", append_trailing_slash=True), f"{SERVER}{ROOT}")

    def test_relative(self):
        self.assertEqual(resolve_url(SERVER, ROOT, "dir/file.txt"), f"{SERVER}{ROOT}dir/file.txt")
        self.assertEqual(resolve_url(SERVER, ROOT, "/dir/file.txt"), f"{SERVER}{ROOT}dir/file.txt")
        self.assertEqual(resolve_url(SERVER, "/", "/Test/photo.jpg"), f"{SERVER}/Test/photo.jpg")

    def test_trailing_slash(self):
        self.assertEqual(resolve_url(SERVER, ROOT, "dir", append_trailing_slash=True), f"{SERVER}{ROOT}dir/")
        self.assertEqual(resolve_url(SERVER, ROOT, "dir/", append_trailing_slash=True), f"{SERVER}{ROOT}dir/")
        self.assertEqual(resolve_url(SERVER, ROOT, "dir/"), f"{SERVER}{ROOT}dir")

    def test_root_prefix(self):
        """The root is not prepended twice, whatever the case of the
        path.
        """
        self.assertEqual(resolve_url(SERVER, ROOT, f"{ROOT}dir/a"), f"{SERVER}{ROOT}dir/a")
        self.assertEqual(resolve_url(SERVER, ROOT, "/Remote.PHP/WebDAV/dir/a"), f"{SERVER}{ROOT}dir/a")
        self.assertEqual(resolve_url(SERVER, ROOT, "/remote.php/webdav"), f"{SERVER}{ROOT}")

        # A path which merely starts with the same characters as the root
        # is relative to the root.
        self.assertEqual(
            resolve_url(SERVER, "/dav/", "/davx/y"),
            f"{SERVER}/dav/davx/y",
        )

    def test_escaping(self):
        self.assertEqual(resolve_url(SERVER, ROOT, "My Docs/a#1.txt"), f"{SERVER}{ROOT}My%20Docs/a%231.txt")

        # Encoded paths are not encoded twice.
        self.assertEqual(
            resolve_url(SERVER, ROOT, "My%20Docs/a%231.txt"), f"{SERVER}{ROOT}My%20Docs/a%231.txt"
        )
        self.assertEqual(
            resolve_url(SERVER, "/remote%20dav/", "x y"),
            f"{SERVER}/remote%20dav/x%20y",
        )

    def test_server_prefix(self):
        self.assertEqual(resolve_url(SERVER, ROOT, f"{SERVER}{ROOT}dir/a"), f"{SERVER}{ROOT}dir/a")
        self.assertEqual(resolve_url(SERVER, ROOT, f"{SERVER}/dir/a"), f"{SERVER}{ROOT}dir/a")
        self.assertEqual(resolve_url(SERVER, ROOT, SERVER, append_trailing_slash=True), f"{SERVER}{ROOT}")

    def test_absolute(self):
        """URLs on other servers are used as they are."""
        self.assertEqual(
            resolve_url(SERVER, ROOT, "https://other.example.org/dav/a%20b"),
            "https://other.example.org/dav/a%20b",
        )
        self.assertEqual(
            resolve_url(SERVER, ROOT, "https://other.example.org/dav/a b", append_trailing_slash=True),
            "https://other.example.org/dav/a%20b/",
        )
        self.assertEqual(
            resolve_url(SERVER, ROOT, f"{SERVER}.evil/x"),
            f"{SERVER}.evil/x",
        )
        self.assertEqual(resolve_url(SERVER, ROOT, "https://other.example.org"), "https://other.example.org/")

    def test_absolute_root(self):
        self.assertEqual(
            resolve_url(SERVER, "https://alias.example.org/dav/", "dir/a"),
            "https://alias.example.org/dav/dir/a",
        )

    def test_port(self):
        self.assertEqual(
            resolve_url(SERVER, ROOT, "dir/a", port=8443),
            f"https://webdav.example.org:8443{ROOT}dir/a",
        )


class DavUriResolverTestCase(unittest.IsolatedAsyncioTestCase):
    """Test the resolution of the root collection."""

    async def test_no_fetch(self):
        resolver = DavUriResolver(SERVER + "/", "remote.php/webdav")
        self.assertIsNone(resolver.root)
        self.assertEqual(resolver.base_url, f"{SERVER}{ROOT}")
        target = await resolver.resolve("a b", append_trailing_slash=True)
        self.assertEqual(target, RequestTarget(f"{SERVER}{ROOT}a%20b/", True))
        self.assertEqual(resolver.root, ROOT)

    async def test_root_alias(self):
        """The root reported by the server is used instead of the
        configured one.
        """

        async def fetch_root(url: str) -> str:
            self.assertEqual(url, f"{SERVER}{ROOT}")
            return "/Remote.php/WebDAV/"

        resolver = DavUriResolver(SERVER, ROOT, fetch_root=fetch_root)
        target = await resolver.resolve("dir")
        self.assertEqual(target.url, f"{SERVER}/Remote.php/WebDAV/dir")
        self.assertFalse(target.append_trailing_slash)

        # The configured prefix is still recognized.
        target = await resolver.resolve(f"{ROOT}dir")
        self.assertEqual(target.url, f"{SERVER}/Remote.php/WebDAV/dir")

    async def test_concurrent_first_calls(self):
        """Concurrent first calls share a single resolution."""
        calls = 0

        async def fetch_root(url: str) -> str:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return ROOT

        resolver = DavUriResolver(SERVER, ROOT, fetch_root=fetch_root)
        targets = await asyncio.gather(*(resolver.resolve(f"file{i}") for i in range(10)))
        self.assertEqual(calls, 1)
        self.assertEqual([t.url for t in targets], [f"{SERVER}{ROOT}file{i}" for i in range(10)])

        await resolver.resolve("again")
        self.assertEqual(calls, 1)

    async def test_failure_is_retried(self):
        calls = 0

        async def fetch_root(url: str) -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("server unavailable")
            return ROOT

        resolver = DavUriResolver(SERVER, ROOT, fetch_root=fetch_root)
        with self.assertRaises(RuntimeError):
            await resolver.resolve("a")
        self.assertIsNone(resolver.root)

        target = await resolver.resolve("a")
        self.assertEqual(target.url, f"{SERVER}{ROOT}a")
        self.assertEqual(resolver.root, ROOT)
        self.assertEqual(calls, 2)

    async def test_cancelled_caller(self):
        """Cancelling one caller does not cancel the resolution other
        callers wait for.
        """
        release = asyncio.Event()

        async def fetch_root(url: str) -> str:
            await release.wait()
            return ROOT

        resolver = DavUriResolver(SERVER, ROOT, fetch_root=fetch_root)
        first = asyncio.ensure_future(resolver.resolve("a"))
        second = asyncio.ensure_future(resolver.resolve("b"))
        await asyncio.sleep(0)
        first.cancel()
        release.set()

        with self.assertRaises(asyncio.CancelledError):
            await first
        self.assertEqual((await second).url, f"{SERVER}{ROOT}b")

    async def test_absolute_path(self):
        """Absolute URLs don't need the root to be resolved."""

        async def fetch_root(url: str) -> str:
            raise AssertionError("root must not be resolved")

        resolver = DavUriResolver(SERVER, ROOT, fetch_root=fetch_root)
        target = await resolver.resolve("https://other.example.org/x/y")
        self.assertEqual(target.url, "https://other.example.org/x/y")
        self.assertIsNone(resolver.root)


if __name__ == "__main__":
    unittest.main()
