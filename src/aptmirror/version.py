"""Debian package version parsing and ordering."""

import re
from functools import total_ordering
from typing import TypeAlias

from aptmirror.errors import VersionError

EPOCH = re.compile(r"^[0-9]*$")
UPSTREAM = re.compile(r"^[A-Za-z0-9.+~:-]*$")
REVISION = re.compile(r"^[A-Za-z0-9+.~]*$")
# alternating (non-digit run, digit run) pairs; never matches at the end of the string
SCAN = re.compile(r"(?!$)([^0-9]*)([0-9]*)")

# remap so plain character order matches dpkg: "~" < end of run < letters < other symbols
REPLACE = str.maketrans({"~": "!", "+": "{", "-": "|", ".": "}", ":": "~"})
# appended to every run; sorts after "~" (remapped to "!") and before letters
SENTINEL = "#"
END = (SENTINEL, 0)

ScanKey: TypeAlias = tuple[tuple[str, int], ...]


def _scan_version(part: str) -> ScanKey:
    pairs = [(text.translate(REPLACE) + SENTINEL, int(digits or 0)) for text, digits in SCAN.findall(part)]
    # an empty part compares like "0"
    if not pairs:
        pairs.append(END)
    # a version that ends here compares like an empty run followed by 0
    pairs.append(END)
    return tuple(pairs)


@total_ordering
class DebianVersion:
    """A parsed `[epoch:]upstream[-revision]` version string.

    Instances are immutable and ordered the way dpkg orders versions.
    """

    __slots__ = ("version", "epoch", "upstream", "revision", "cmp")

    def __init__(self, version: str):
        version = version.strip()
        epoch, sep, rest = version.partition(":")
        if not sep:
            epoch, rest = "", version
        upstream, sep, revision = rest.rpartition("-")
        if not sep:
            upstream, revision = rest, ""

        if not EPOCH.match(epoch):
            raise VersionError(f"Invalid epoch in debian version {version!r}")
        if not upstream or not UPSTREAM.match(upstream):
            raise VersionError(f"Invalid debian version {version!r}")
        if not REVISION.match(revision):
            raise VersionError(f"Invalid debian revision {revision!r} in {version!r}")

        object.__setattr__(self, "version", version)
        object.__setattr__(self, "epoch", int(epoch or 0))
        object.__setattr__(self, "upstream", upstream)
        object.__setattr__(self, "revision", revision)
        object.__setattr__(
            self, "cmp", (self.epoch, _scan_version(self.upstream), _scan_version(self.revision))
        )

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DebianVersion):
            return NotImplemented
        return self.cmp == other.cmp

    def __lt__(self, other: "DebianVersion") -> bool:
        if not isinstance(other, DebianVersion):
            return NotImplemented
        return self.cmp < other.cmp

    def __hash__(self) -> int:
        return hash(self.cmp)

    def __repr__(self) -> str:
        return f"DebianVersion({self.version!r})"

    def __str__(self) -> str:
        return self.version


def compare(a: str | DebianVersion, b: str | DebianVersion) -> int:
    """Return a negative number, zero or a positive number as `a` is older, equal or newer than `b`."""
    va = a if isinstance(a, DebianVersion) else DebianVersion(a)
    vb = b if isinstance(b, DebianVersion) else DebianVersion(b)
    return (va.cmp > vb.cmp) - (va.cmp < vb.cmp)
