import os

import pytest

from aptmirror.errors import FetchError, RedirectLimitError, VerificationError
from aptmirror.fetcher import Download, DownloadManager, atomic_publish
from aptmirror.utils import try_parse_date
from aptmirror.verify import DigestVerifier, SizeVerifier

from .conftest import LAST_MODIFIED, sha256

URL = "http://mirror.test/debian/pool/main/h/hello/hello_1.0_amd64.deb"
DATA = b"!<arch>\n" + b"x" * 50000


def verifiers(data=DATA):
    return [DigestVerifier("sha256", sha256(data)), SizeVerifier(len(data))]


def test_download_publishes_verified_file(manager, archive, tmp_path):
    archive.add(URL, DATA)
    output = tmp_path / "pool" / "hello.deb"
    results = []

    download = Download(URL, output, verifiers(), callback=results.append)
    assert manager.wait(download) == output

    assert output.read_bytes() == DATA
    assert results[0].ok and results[0].value == output
    assert output.stat().st_mtime == try_parse_date(LAST_MODIFIED).timestamp()
    assert archive.requests[0].headers["accept-encoding"] == "identity"
    assert [p.name for p in output.parent.iterdir()] == ["hello.deb"]


def test_valid_cache_skips_request(manager, archive, tmp_path):
    output = tmp_path / "hello.deb"
    output.write_bytes(DATA)

    download = Download(URL, output, verifiers(), check_mtime=False)
    assert manager.wait(download) == output
    assert archive.requests == []


def test_not_modified_keeps_local_file(manager, archive, tmp_path):
    archive.add(URL, DATA)
    output = tmp_path / "Release"

    manager.wait(Download(URL, output))
    manager.wait(Download(URL, output))

    assert len(archive.requests) == 2
    assert "if-modified-since" not in archive.requests[0].headers
    assert try_parse_date(archive.requests[1].headers["if-modified-since"]) == try_parse_date(LAST_MODIFIED)
    assert output.read_bytes() == DATA


def test_invalid_cache_is_refetched(manager, archive, tmp_path):
    archive.add(URL, DATA)
    output = tmp_path / "hello.deb"
    output.write_bytes(b"truncated")

    manager.wait(Download(URL, output, verifiers(), check_mtime=False))
    assert output.read_bytes() == DATA
    assert "if-modified-since" not in archive.requests[0].headers


def test_follows_redirects(manager, archive, tmp_path):
    archive.respond(URL, 302, {"Location": "/mirror/hello.deb"})
    archive.add("http://mirror.test/mirror/hello.deb", DATA)

    output = tmp_path / "hello.deb"
    manager.wait(Download(URL, output, verifiers()))
    assert output.read_bytes() == DATA
    assert archive.urls_requested() == [URL, "http://mirror.test/mirror/hello.deb"]


def test_redirect_limit(scheduler, archive, tmp_path):
    archive.respond("http://mirror.test/a", 301, {"Location": "/b"})
    archive.respond("http://mirror.test/b", 307, {"Location": "/a"})
    manager = DownloadManager(scheduler, worker_count=1, client=archive.client(), max_redirects=3)
    try:
        with pytest.raises(RedirectLimitError):
            manager.wait(Download("http://mirror.test/a", tmp_path / "a"))
    finally:
        manager.join()
    assert len(archive.requests) == 4
    assert not (tmp_path / "a").exists()


def test_http_error(manager, archive, tmp_path):
    results = []
    with pytest.raises(FetchError, match="404"):
        manager.wait(Download(URL, tmp_path / "missing.deb", callback=results.append))
    assert not results[0].ok
    assert not (tmp_path / "missing.deb").exists()


def test_unsupported_scheme(manager, tmp_path):
    with pytest.raises(FetchError, match="ftp downloads not supported"):
        manager.wait(Download("ftp://mirror.test/debian/Release", tmp_path / "Release"))


def test_checksum_mismatch_keeps_old_file(manager, archive, tmp_path):
    archive.add(URL, DATA)
    output = tmp_path / "hello.deb"
    output.write_bytes(b"old content")

    with pytest.raises(VerificationError, match="checksum mismatch"):
        manager.wait(Download(URL, output, [DigestVerifier("sha256", "00" * 32)], allow_cache=False))

    assert output.read_bytes() == b"old content"
    assert [p.name for p in tmp_path.iterdir()] == ["hello.deb"]


def test_short_body_is_rejected(manager, archive, tmp_path):
    archive.respond(URL, 200, {"Content-Length": "999"}, b"abc")
    output = tmp_path / "hello.deb"

    with pytest.raises(FetchError, match="Unexpected response body size"):
        manager.wait(Download(URL, output))
    assert list(tmp_path.iterdir()) == []


def test_ephemeral_download(manager, archive):
    archive.add(URL, DATA)
    tmpfile = manager.wait(Download(URL, verifiers=verifiers()))
    try:
        assert tmpfile.read() == DATA
        assert os.path.exists(tmpfile.name)
    finally:
        tmpfile.close()
    assert not os.path.exists(tmpfile.name)


def test_parallel_downloads_keep_argument_order(manager, archive, tmp_path):
    urls = [f"http://mirror.test/file{i}" for i in range(8)]
    for i, url in enumerate(urls):
        archive.add(url, str(i).encode() * (100 * (8 - i)))

    outputs = manager.wait(*(Download(url, tmp_path / url.rsplit("/", 1)[1]) for url in urls))
    assert outputs == [tmp_path / f"file{i}" for i in range(8)]


def test_wait_without_downloads(manager):
    assert manager.wait() == []


def test_atomic_publish_keeps_mode(tmp_path):
    output = tmp_path / "Packages"
    output.write_bytes(b"old")
    output.chmod(0o640)
    tmp = tmp_path / ".Packages.tmp"
    tmp.write_bytes(b"new")

    atomic_publish(tmp, output)
    assert output.read_bytes() == b"new"
    assert output.stat().st_mode & 0o777 == 0o640
    assert not tmp.exists()


def test_atomic_publish_uses_umask_for_new_files(tmp_path):
    tmp = tmp_path / ".Packages.tmp"
    tmp.write_bytes(b"new")
    tmp.chmod(0o600)

    old_umask = os.umask(0o022)
    try:
        atomic_publish(tmp, tmp_path / "Packages")
    finally:
        os.umask(old_umask)
    assert (tmp_path / "Packages").stat().st_mode & 0o777 == 0o644
    assert [p.name for p in tmp_path.iterdir()] == ["Packages"]
