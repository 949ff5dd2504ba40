"""Exception types raised by aptmirror."""


class AptMirrorError(Exception):
    """Base class for all aptmirror errors."""


class ConfigError(AptMirrorError):
    """The mirror configuration file is missing or invalid."""


class VersionError(AptMirrorError, ValueError):
    """A Debian version string could not be parsed."""


class ParseError(AptMirrorError, ValueError):
    """An index or release file could not be parsed."""


class ReleaseConsistencyError(ParseError):
    """A Release file lists conflicting metadata for one file."""


class ResolutionError(AptMirrorError):
    """Dependency resolution failed."""


class PackageNotFoundError(ResolutionError):
    def __init__(self, name: str, arch: str):
        super().__init__(f"Package {name!r} not found for {arch}")
        self.name = name
        self.arch = arch


class UnfulfillableDependencyError(ResolutionError):
    def __init__(self, clause: str, package: str | None = None):
        msg = f"Cannot fulfill dependency {clause.strip()!r}"
        if package:
            msg += f" of {package}"
        super().__init__(msg)
        self.clause = clause
        self.package = package


class IndexFrozenError(ResolutionError, RuntimeError):
    """Packages were added after the provides index was built."""


class VerificationError(AptMirrorError):
    """Downloaded content failed checksum or size verification."""


class FetchError(AptMirrorError):
    """A transport-level download failure."""


class RedirectLimitError(FetchError):
    """Too many redirects were followed for one download."""


class SignatureError(AptMirrorError):
    """A detached signature did not verify against the trusted keyrings."""


class SyncError(AptMirrorError):
    """A mirror run could not complete."""


class QueueClosedError(RuntimeError):
    """A job was added to a queue that has been joined."""


class CollectorStateError(RuntimeError):
    """A collector slot was completed twice or reserved after finalization."""
