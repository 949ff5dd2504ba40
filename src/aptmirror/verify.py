"""Streaming verification of downloaded content."""

import hashlib
import logging
from collections.abc import Iterable
from enum import Enum
from pathlib import Path

from aptmirror.constants import CHUNK_SIZE

logger = logging.getLogger(__name__)

# Release/Packages checksum field names to hashlib names
DIGEST_METHODS = {
    "sha256": "sha256",
    "sha1": "sha1",
    "md5": "md5",
    "md5sum": "md5",
}


class CacheCheck(str, Enum):
    """Outcome of a file level check that does not read the content.

    VALID: the file is known good.
    INVALID: the file is known bad.
    UNKNOWN: the content must be streamed through the verifier to decide.
    """

    VALID = "valid"
    INVALID = "invalid"
    UNKNOWN = "unknown"


class DownloadVerifier:
    """Base verifier: accepts everything.

    `update` and `finish` return None when the data is acceptable, otherwise a
    short reason string.
    """

    def reset(self) -> None:
        pass

    def update(self, chunk: bytes) -> str | None:
        return None

    def finish(self) -> str | None:
        return None

    def fast_verify_file(self, path: Path) -> tuple[CacheCheck, str | None]:
        return CacheCheck.UNKNOWN, None


class DigestVerifier(DownloadVerifier):
    """Compare a hex digest computed over the streamed content."""

    def __init__(self, method: str, hexdigest: str, trust_local: bool = False):
        try:
            self.method = DIGEST_METHODS[method.lower()]
        except KeyError:
            raise ValueError(f"Unsupported checksum type {method!r}") from None
        self.hexdigest = hexdigest.lower()
        self.trust_local = trust_local
        self.reset()

    def __repr__(self) -> str:
        return f"DigestVerifier({self.method}, {self.hexdigest[:12]}...)"

    def reset(self) -> None:
        self._digest = hashlib.new(self.method)

    def update(self, chunk: bytes) -> str | None:
        self._digest.update(chunk)
        return None

    def finish(self) -> str | None:
        if self._digest.hexdigest() == self.hexdigest:
            return None
        return f"{self.method} checksum mismatch"

    def fast_verify_file(self, path: Path) -> tuple[CacheCheck, str | None]:
        # trusted local files (e.g. immutable pool files) skip rehashing
        if self.trust_local:
            return CacheCheck.VALID, None
        return CacheCheck.UNKNOWN, None


class SizeVerifier(DownloadVerifier):
    """Require an exact byte count."""

    def __init__(self, size: int):
        self.size = int(size)
        self.reset()

    def __repr__(self) -> str:
        return f"SizeVerifier({self.size})"

    def reset(self) -> None:
        self._have = 0

    def update(self, chunk: bytes) -> str | None:
        self._have += len(chunk)
        return None

    def finish(self) -> str | None:
        if self._have == self.size:
            return None
        return f"size mismatch: {self._have} != {self.size}"

    def fast_verify_file(self, path: Path) -> tuple[CacheCheck, str | None]:
        have = path.stat().st_size
        if have == self.size:
            return CacheCheck.VALID, None
        return CacheCheck.INVALID, f"size mismatch: {have} != {self.size}"


def stream_verify(chunks: Iterable[bytes], verifiers: list[DownloadVerifier]) -> str | None:
    """Feed chunks through every verifier; return the first failure reason, if any."""
    for verifier in verifiers:
        verifier.reset()
    for chunk in chunks:
        for verifier in verifiers:
            if (reason := verifier.update(chunk)) is not None:
                return reason
    for verifier in verifiers:
        if (reason := verifier.finish()) is not None:
            return reason
    return None


def iter_file_chunks(path: Path, chunk_size: int = CHUNK_SIZE):
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            yield chunk


def verify_file(path: Path, verifiers: list[DownloadVerifier]) -> tuple[CacheCheck, str | None]:
    """Check an existing file against the verifiers.

    Cheap file level checks run first; only verifiers that cannot decide from
    file metadata get a streaming pass over the content.

    Returns:
        VALID or INVALID with the failure reason. Never UNKNOWN.
    """
    try:
        remaining = []
        for verifier in verifiers:
            state, reason = verifier.fast_verify_file(path)
            if state is CacheCheck.INVALID:
                return CacheCheck.INVALID, reason
            if state is CacheCheck.UNKNOWN:
                remaining.append(verifier)
        if remaining and (reason := stream_verify(iter_file_chunks(path), remaining)) is not None:
            return CacheCheck.INVALID, reason
    except OSError as e:
        return CacheCheck.INVALID, str(e)
    return CacheCheck.VALID, None
