"""Verified, cache aware file downloads running on a bounded worker queue."""

import logging
import os
import stat
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from os import utime
from pathlib import Path
from typing import IO, Any
from urllib.parse import urljoin, urlparse

import httpx

from aptmirror.constants import CHUNK_SIZE, DEFAULT_PARALLEL, HTTP_TIMEOUT, MAX_REDIRECTS
from aptmirror.errors import FetchError, RedirectLimitError, VerificationError
from aptmirror.jobs import Collector, Result, Scheduler
from aptmirror.utils import http_date, human_size, try_parse_date, url_to_template
from aptmirror.verify import CacheCheck, DownloadVerifier, verify_file

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = {"http", "https"}
REDIRECT_CODES = {301, 302, 303, 307, 308}

Callback = Callable[[Result], Any]


@dataclass(eq=False)
class Download:
    """A single file request.

    Without an `output_path` the download is ephemeral: on success the callback
    receives the open temporary file, which is deleted once closed. Otherwise it
    receives the published path.
    """

    url: str
    output_path: Path | None = None
    verifiers: list[DownloadVerifier] = field(default_factory=list)
    allow_cache: bool = True
    check_mtime: bool = True
    callback: Callback | None = None
    extra_callback: Callback | None = None
    last_mtime: float | None = field(default=None, init=False)

    def __str__(self) -> str:
        if self.output_path is None:
            return self.url
        return f"{self.url} => {self.output_path.name}"

    def check_cache(self) -> CacheCheck:
        """Verify an existing destination file and remember its mtime if it is usable."""
        if not self.allow_cache or self.output_path is None or not self.output_path.is_file():
            return CacheCheck.UNKNOWN
        state, reason = verify_file(self.output_path, self.verifiers)
        if state is CacheCheck.VALID:
            self.last_mtime = self.output_path.stat().st_mtime
        else:
            logger.debug(f"Cache entry {self.output_path} not valid: {reason}")
        return state

    def _deliver(self, result: Result) -> None:
        try:
            if self.callback is not None:
                self.callback(result)
        finally:
            if self.extra_callback is not None:
                self.extra_callback(result)

    def succeed(self, value: Path | IO[bytes] | None) -> None:
        self._deliver(Result(value=value))

    def fail(self, error: BaseException | str) -> None:
        self._deliver(Result.failure(error))


def _default_mode(directory: Path) -> int:
    """Mode a freshly created file gets in `directory` under the current umask."""
    marker = directory / f".permissions_check.{threading.get_ident()}.{os.getpid()}"
    os.close(os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o666))
    try:
        return stat.S_IMODE(marker.stat().st_mode)
    finally:
        marker.unlink(missing_ok=True)


def atomic_publish(tmp_path: Path, output_path: Path) -> None:
    """Move a finished temp file over `output_path`, keeping the old owner and mode."""
    try:
        old_stat = output_path.stat()
        uid, gid, mode = old_stat.st_uid, old_stat.st_gid, stat.S_IMODE(old_stat.st_mode)
    except FileNotFoundError:
        uid = gid = None
        mode = _default_mode(output_path.parent)

    os.replace(tmp_path, output_path)

    if uid is not None:
        try:
            os.chown(output_path, uid, gid)
        except PermissionError:
            logger.debug(f"Unable to restore ownership of {output_path}, moving on")
    try:
        os.chmod(output_path, mode)
    except PermissionError:
        logger.debug(f"Unable to restore permissions of {output_path}, moving on")


class DownloadManager:
    """Runs `Download` jobs on one shared bounded queue.

    Per job: cache check, conditional GET with redirect following, streamed
    verification into a private temp file, then an atomic rename over the
    destination.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        worker_count: int = DEFAULT_PARALLEL,
        client: httpx.Client | None = None,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self.scheduler = scheduler
        self.max_redirects = max_redirects
        self._client = client or httpx.Client(follow_redirects=False, timeout=HTTP_TIMEOUT)
        self._queue = scheduler.start_queue(worker_count, self._run, name="download")

    def add(self, download: Download) -> None:
        self._queue.add(download)

    def wait(self, *downloads: Download) -> Any:
        """Queue the downloads and block until all of them have finished.

        Returns:
            The result of the single download, or the list of results in
            argument order.

        Raises:
            The first error any of the downloads reported.
        """
        if not downloads:
            return []
        collector = Collector(self.scheduler)
        for download in downloads:
            download.extra_callback = collector.collect()
            self.add(download)
        results = collector.results_throw()
        return results[0] if len(downloads) == 1 else results

    def join(self) -> None:
        self._queue.join()
        self._client.close()

    def _run(self, download: Download) -> None:
        logger.debug(f"GET {download}")
        try:
            outcome, value = self._process(download)
        except (httpx.HTTPError, OSError, FetchError, VerificationError) as e:
            logger.warning(f"FAIL {download}: {e}")
            download.fail(e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error downloading {download}: {e}")
            download.fail(e)
            return
        logger.info(f"DONE {download} ({outcome})")
        download.succeed(value)

    def _process(self, download: Download) -> tuple[str, Path | IO[bytes] | None]:
        download.check_cache()
        if download.last_mtime is not None and not download.check_mtime:
            return "cache", download.output_path

        last_mtime = download.last_mtime if download.check_mtime else None
        with self._request(download.url, last_mtime) as response:
            if response is None:
                return "not modified", download.output_path
            return self._receive(download, response)

    @contextmanager
    def _request(self, url: str, last_mtime: float | None) -> Iterator[httpx.Response | None]:
        """Issue a GET, following redirects; yields None for "not modified"."""
        redirects = self.max_redirects
        while True:
            scheme = urlparse(url).scheme
            if scheme not in SUPPORTED_SCHEMES:
                raise FetchError(f"{scheme} downloads not supported")

            headers = {"Accept-Encoding": "identity"}
            if last_mtime is not None:
                headers["If-Modified-Since"] = http_date(last_mtime)

            with self._client.stream("GET", url, headers=headers) as response:
                location = response.headers.get("location")
                if response.status_code in REDIRECT_CODES and location:
                    if redirects <= 0:
                        raise RedirectLimitError(f"Redirect limit exceeded for {url}")
                    redirects -= 1
                    url = urljoin(url, location)
                    logger.debug(f"Redirected to {url}")
                    continue
                if response.status_code == 304 and last_mtime is not None:
                    yield None
                    return
                if response.status_code != 200:
                    raise FetchError(f"Unexpected response code {response.status_code} for {url}")
                yield response
                return

    def _receive(self, download: Download, response: httpx.Response) -> tuple[str, Path | IO[bytes]]:
        content_length = response.headers.get("content-length")
        expected = int(content_length) if content_length is not None else None
        template = url_to_template(download.url)

        if download.output_path is None:
            tmpfile = tempfile.NamedTemporaryFile(prefix=f"{template}.")
        else:
            download.output_path.parent.mkdir(parents=True, exist_ok=True)
            tmpfile = tempfile.NamedTemporaryFile(
                prefix=f".{template}.", dir=download.output_path.parent, delete=False
            )

        tmp_path = Path(tmpfile.name)
        try:
            have = self._write_verified(download, response, tmpfile, expected)
        except BaseException:
            tmpfile.close()
            tmp_path.unlink(missing_ok=True)
            raise

        if download.output_path is None:
            tmpfile.seek(0)
            return human_size(have), tmpfile

        tmpfile.close()
        try:
            atomic_publish(tmp_path, download.output_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        if last_modified := try_parse_date(response.headers.get("last-modified")):
            remote_ts = last_modified.timestamp()
            utime(download.output_path, (remote_ts, remote_ts))
        return human_size(have), download.output_path

    @staticmethod
    def _write_verified(
        download: Download, response: httpx.Response, tmpfile: IO[bytes], expected: int | None
    ) -> int:
        verifiers = download.verifiers
        for verifier in verifiers:
            verifier.reset()

        have = 0
        for chunk in response.iter_raw(CHUNK_SIZE):
            have += len(chunk)
            for verifier in verifiers:
                if (reason := verifier.update(chunk)) is not None:
                    raise VerificationError(reason)
            tmpfile.write(chunk)

        if expected is not None and have != expected:
            raise FetchError(f"Unexpected response body size: {have} != {expected}")
        for verifier in verifiers:
            if (reason := verifier.finish()) is not None:
                raise VerificationError(reason)
        tmpfile.flush()
        return have
