"""Data models for APT archive metadata."""

from functools import cached_property
from pathlib import Path
from typing import TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aptmirror.constants import ARCH_ALL
from aptmirror.errors import VersionError
from aptmirror.verify import DigestVerifier, DownloadVerifier, SizeVerifier
from aptmirror.version import DebianVersion

OptionalStr: TypeAlias = str | None

# preferred first
CHECKSUM_FIELDS = ("SHA256", "SHA1", "MD5sum")


class PackageRecord(BaseModel):
    """One binary package stanza from a Packages index."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    architecture: str
    filename: OptionalStr = None
    size: int | None = None
    md5sum: OptionalStr = None
    sha1: OptionalStr = None
    sha256: OptionalStr = None
    depends: str = ""
    pre_depends: str = ""
    provides: str = ""
    essential: bool = False
    url: OptionalStr = None

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        try:
            DebianVersion(value)
        except VersionError as e:
            raise ValueError(str(e)) from e
        return value

    @cached_property
    def debian_version(self) -> DebianVersion:
        return DebianVersion(self.version)

    @property
    def is_arch_all(self) -> bool:
        return self.architecture == ARCH_ALL

    @property
    def deb_filename(self) -> str:
        """Local file name of the package: `<name>_<version>_<arch>.deb`."""
        return f"{self.name}_{self.version}_{self.architecture}.deb"

    def preferred_checksum(self) -> tuple[str, str] | None:
        for field in CHECKSUM_FIELDS:
            if value := getattr(self, field.lower()):
                return field, value
        return None

    def verifiers(self, trust_local: bool = True) -> list[DownloadVerifier]:
        """Digest and size verifiers for the package file.

        Pool files never change once published, so by default a local file of
        the right size is trusted without rehashing.
        """
        verifiers: list[DownloadVerifier] = []
        if checksum := self.preferred_checksum():
            verifiers.append(DigestVerifier(checksum[0], checksum[1], trust_local=trust_local))
        if self.size is not None:
            verifiers.append(SizeVerifier(self.size))
        return verifiers


class ReleaseEntry(BaseModel):
    """Size and checksums of one file variant listed in a Release file."""

    size: int
    checksums: dict[str, str] = Field(default_factory=dict)


class IndexTarget(BaseModel):
    """A Packages index file chosen from a Release file and where it lives locally."""

    filename: str
    compression: str
    url: str
    output_path: Path
    size: int
    uncompressed_size: int | None = None
