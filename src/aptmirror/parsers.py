"""Parsers for Release and Packages index files."""

import bz2
import gzip
import io
import logging
import lzma
import os
from collections.abc import Iterator
from pathlib import Path
from urllib.parse import urljoin

from debian import deb822
from pydantic import ValidationError

from aptmirror.errors import ParseError, ReleaseConsistencyError
from aptmirror.models import IndexTarget, PackageRecord, ReleaseEntry
from aptmirror.utils import url_to_filename
from aptmirror.verify import DigestVerifier, DownloadVerifier, SizeVerifier

logger = logging.getLogger(__name__)

# Release checksum fields, preferred first, and the deb822 key of the digest column
HASHKEYS = (("SHA256", "sha256"), ("SHA1", "sha1"), ("MD5Sum", "md5sum"))
COMPRESSIONS = (".gz", ".bz2", ".xz")
OPENERS = {".gz": gzip.open, ".bz2": bz2.open, ".xz": lzma.open}

# fields kept from Packages stanzas, everything else is dropped while parsing
# fmt: off
FIELDS = [
    "Filename", "Package", "Architecture", "Version", "Depends", "Pre-Depends",
    "Provides", "Essential", "MD5sum", "SHA1", "SHA256", "Size",
]
# fmt: on
CANONICAL = {field.lower(): field for field in FIELDS}


def split_compression(filename: str) -> tuple[str, str]:
    """Split `main/binary-amd64/Packages.xz` into the logical name and its compression suffix."""
    for suffix in COMPRESSIONS:
        if filename.endswith(suffix):
            return filename.removesuffix(suffix), suffix
    return filename, ""


class ReleaseFile:
    """Checksums and sizes of the index files listed in a Release file.

    Args:
        base_url: URL the listed file names are relative to
        path: Local path of the downloaded (and verified) Release file
        lists_dir: Directory index files are downloaded to
    """

    def __init__(self, base_url: str, path: Path, lists_dir: Path):
        self.base_url = base_url
        self.lists_dir = lists_dir
        self.files: dict[str, dict[str, ReleaseEntry]] = {}
        self.info: dict[str, str] = {}

        try:
            release = deb822.Release(path.read_text(encoding="utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise ParseError(f"Release file {path}: {e}") from e

        hash_fields = {field.lower() for field, _ in HASHKEYS}
        for key in release.keys():
            if key.lower() not in hash_fields:
                self.info[str(key)] = release[key]

        for field, column in HASHKEYS:
            for entry in release.get(field, []):
                try:
                    checksum, size, name = entry[column], int(entry["size"]), entry["name"]
                except (KeyError, ValueError) as e:
                    raise ParseError(f"Release file: cannot parse {field} file info line {entry!r}") from e
                self._add_file(field, checksum, size, name)

    def _add_file(self, checksum_type: str, checksum: str, size: int, filename: str) -> None:
        name, compression = split_compression(filename)
        entry = self.files.setdefault(name, {}).get(compression)
        if entry is None:
            self.files[name][compression] = ReleaseEntry(size=size, checksums={checksum_type: checksum})
            return
        if entry.size != size:
            raise ReleaseConsistencyError(f"Release file: inconsistent file sizes for {filename!r}")
        if checksum_type in entry.checksums:
            raise ReleaseConsistencyError(f"Release file: already have {checksum_type} for {filename!r}")
        entry.checksums[checksum_type] = checksum

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.info.get(key, default)

    def target(self, filename: str) -> IndexTarget:
        """Pick the smallest listed variant of `filename`."""
        variants = self.files.get(filename)
        if not variants:
            raise ParseError(f"Release didn't contain file {filename}")
        compression, entry = min(variants.items(), key=lambda item: item[1].size)
        url = urljoin(self.base_url, filename + compression)
        uncompressed = variants.get("")
        return IndexTarget(
            filename=filename,
            compression=compression,
            url=url,
            output_path=self.lists_dir / url_to_filename(url),
            size=entry.size,
            uncompressed_size=uncompressed.size if uncompressed else None,
        )

    def verifiers(self, target: IndexTarget) -> list[DownloadVerifier]:
        entry = self.files[target.filename][target.compression]
        verifiers: list[DownloadVerifier] = []
        for field, _ in HASHKEYS:
            if checksum := entry.checksums.get(field):
                verifiers.append(DigestVerifier(field, checksum))
                break
        verifiers.append(SizeVerifier(entry.size))
        return verifiers


def _normalize(value: str) -> str:
    """Join continuation lines with newlines; a lone "." stands for an empty line."""
    head, *rest = value.splitlines() or [""]
    lines = [head.strip()] if head.strip() else []
    lines.extend("" if line.strip() == "." else line.strip() for line in rest)
    return "\n".join(lines)


def _safe_int(value: str | None) -> int | None:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def build_record(entry: dict[str, str], base_url: str) -> PackageRecord:
    """Turn one filtered stanza into a PackageRecord."""
    filename = entry.get("Filename")
    return PackageRecord(
        name=entry["Package"],
        version=entry["Version"],
        architecture=entry["Architecture"],
        filename=filename,
        size=_safe_int(entry.get("Size")),
        md5sum=entry.get("MD5sum"),
        sha1=entry.get("SHA1"),
        sha256=entry.get("SHA256"),
        depends=entry.get("Depends", ""),
        pre_depends=entry.get("Pre-Depends", ""),
        provides=entry.get("Provides", ""),
        essential=entry.get("Essential", "").lower() == "yes",
        url=urljoin(base_url, filename) if filename else None,
    )


class PackagesParser:
    """Lazily stream `(PackageRecord, progress)` pairs out of a downloaded Packages file.

    `progress` is the fraction of the (possibly compressed) file consumed so far.
    """

    def __init__(self, base_url: str, target: IndexTarget):
        self.base_url = base_url
        self.target = target

    @property
    def url(self) -> str:
        return self.target.url

    def __repr__(self) -> str:
        return f"PackagesParser({self.url!r})"

    def _iter_entries(self) -> Iterator[tuple[dict[str, str], float]]:
        compression = self.target.compression
        if compression and compression not in OPENERS:
            raise ParseError(f"Unknown compression {compression}")

        with self.target.output_path.open("rb") as raw:
            total = os.fstat(raw.fileno()).st_size or 1
            stream = OPENERS[compression](raw) if compression else raw
            with io.TextIOWrapper(stream, encoding="utf-8", errors="replace") as text:
                for paragraph in deb822.Packages.iter_paragraphs(text, fields=FIELDS, use_apt_pkg=False):
                    entry = {CANONICAL[key.lower()]: _normalize(value) for key, value in paragraph.items()}
                    if entry:
                        yield entry, min(raw.tell() / total, 1.0)

    def __iter__(self) -> Iterator[tuple[PackageRecord, float]]:
        for entry, progress in self._iter_entries():
            try:
                record = build_record(entry, self.base_url)
            except (KeyError, ValidationError) as e:
                raise ParseError(f"Invalid stanza in {self.url}: {entry.get('Package', entry)!r}: {e}") from e
            yield record, progress
