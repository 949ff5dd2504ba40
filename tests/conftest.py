import gzip
import hashlib
from collections.abc import Iterator
from email.utils import format_datetime
from datetime import UTC, datetime

import httpx
import pytest

from aptmirror.fetcher import DownloadManager
from aptmirror.jobs import Scheduler
from aptmirror.utils import try_parse_date

LAST_MODIFIED = format_datetime(datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC), usegmt=True)


class Body(httpx.SyncByteStream):
    """A response body that is only read when the client streams it."""

    def __init__(self, content: bytes):
        self.content = content

    def __iter__(self) -> Iterator[bytes]:
        if self.content:
            yield self.content


class FakeArchive:
    """In-memory HTTP server for httpx.MockTransport."""

    def __init__(self):
        self.files: dict[str, bytes | tuple[int, dict[str, str], bytes]] = {}
        self.last_modified: dict[str, str] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, content: bytes, last_modified: str | None = LAST_MODIFIED) -> None:
        self.files[url] = content
        if last_modified:
            self.last_modified[url] = last_modified

    def respond(self, url: str, status: int, headers: dict[str, str] | None = None, content: bytes = b"") -> None:
        """Serve a fixed response, e.g. a redirect or a broken body."""
        self.files[url] = (status, headers or {}, content)

    def urls_requested(self) -> list[str]:
        return [str(request.url) for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        entry = self.files.get(url)
        if entry is None:
            return httpx.Response(404)
        if isinstance(entry, tuple):
            status, headers, content = entry
            return httpx.Response(status, headers=headers, stream=Body(content))

        headers = {"Content-Length": str(len(entry))}
        if last_modified := self.last_modified.get(url):
            headers["Last-Modified"] = last_modified
            since = try_parse_date(request.headers.get("if-modified-since"))
            if since is not None and try_parse_date(last_modified) <= since:
                return httpx.Response(304, headers={"Last-Modified": last_modified})
        return httpx.Response(200, headers=headers, stream=Body(entry))

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler), follow_redirects=False)


@pytest.fixture
def archive() -> FakeArchive:
    return FakeArchive()


@pytest.fixture
def scheduler() -> Iterator[Scheduler]:
    scheduler = Scheduler()
    yield scheduler
    scheduler.join()


@pytest.fixture
def manager(scheduler: Scheduler, archive: FakeArchive) -> Iterator[DownloadManager]:
    manager = DownloadManager(scheduler, worker_count=4, client=archive.client())
    yield manager
    manager.join()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stanza(
    name: str,
    version: str = "1.0",
    arch: str = "amd64",
    depends: str = "",
    pre_depends: str = "",
    provides: str = "",
    essential: bool = False,
    filename: str | None = None,
    content: bytes | None = None,
) -> str:
    """A Packages stanza; `content` fills in Size and SHA256 for a fake .deb."""
    lines = [
        f"Package: {name}",
        f"Version: {version}",
        f"Architecture: {arch}",
        "Maintainer: Nobody <nobody@example.org>",
    ]
    if pre_depends:
        lines.append(f"Pre-Depends: {pre_depends}")
    if depends:
        lines.append(f"Depends: {depends}")
    if provides:
        lines.append(f"Provides: {provides}")
    if essential:
        lines.append("Essential: yes")
    lines.append(f"Filename: {filename or f'pool/main/{name[0]}/{name}/{name}_{version}_{arch}.deb'}")
    if content is not None:
        lines.append(f"Size: {len(content)}")
        lines.append(f"SHA256: {sha256(content)}")
    lines.append("Description: test package")
    lines.append(" long description")
    lines.append(" .")
    lines.append(" more text")
    return "\n".join(lines) + "\n"


def packages_file(*stanzas: str) -> bytes:
    return "\n".join(stanzas).encode()


def release_file(files: dict[str, bytes], **info: str) -> bytes:
    """A Release file listing SHA256 and MD5Sum entries for `files`."""
    lines = [f"{key.capitalize()}: {value}" for key, value in info.items()] or ["Origin: Test"]
    lines.append("SHA256:")
    for name, data in files.items():
        lines.append(f" {sha256(data)} {len(data):>8} {name}")
    lines.append("MD5Sum:")
    for name, data in files.items():
        lines.append(f" {hashlib.md5(data).hexdigest()} {len(data):>8} {name}")
    return ("\n".join(lines) + "\n").encode()


def gz(data: bytes) -> bytes:
    return gzip.compress(data, mtime=0)


BASE = "http://mirror.test/debian/"
DIST = BASE + "dists/stable/"

DEBS = {
    ("base-files", "12.4", "amd64"): dict(essential=True),
    ("libc6", "2.36-9", "amd64"): dict(),
    ("hello", "2.10-3", "amd64"): dict(depends="libc6 (>= 2.34), hello-data"),
    ("build-essential", "12.9", "amd64"): dict(depends="gcc | clang"),
    ("gcc", "12.2.0-3", "amd64"): dict(depends="libc6"),
    ("hello-data", "2.10-3", "all"): dict(),
    ("unused", "1.0", "amd64"): dict(),
}


def deb_content(name: str) -> bytes:
    return f"!<arch>\n{name}\n".encode()


def deb_filename(name: str, version: str, arch: str) -> str:
    return f"{name}_{version}_{arch}.deb"


@pytest.fixture
def served(archive: FakeArchive) -> FakeArchive:
    """A `stable main` archive with amd64 and all indexes and every package file in DEBS."""
    stanzas = {"amd64": [], "all": []}
    for (name, version, arch), fields in DEBS.items():
        content = deb_content(name)
        filename = f"pool/main/{name[0]}/{name}/{deb_filename(name, version, arch)}"
        stanzas[arch].append(stanza(name, version, arch=arch, filename=filename, content=content, **fields))
        archive.add(BASE + filename, content)

    indexes = {
        "main/binary-amd64/Packages.gz": gz(packages_file(*stanzas["amd64"])),
        "main/binary-all/Packages": packages_file(*stanzas["all"]),
    }
    for name, content in indexes.items():
        archive.add(DIST + name, content)
    archive.add(DIST + "Release", release_file(indexes))
    return archive
