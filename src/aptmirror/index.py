"""Package index, virtual package resolution and dependency closure selection."""

import logging
import re
import threading
from collections import deque
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import TypeAlias

from aptmirror.constants import ARCH_ALL
from aptmirror.errors import IndexFrozenError, PackageNotFoundError, UnfulfillableDependencyError
from aptmirror.fetcher import Download, DownloadManager
from aptmirror.jobs import Collector
from aptmirror.models import PackageRecord

logger = logging.getLogger(__name__)

VERSION_CLAUSE = re.compile(r"\([^)]*\)")
# build profile and architecture restrictions, only seen in source stanzas
RESTRICTIONS = re.compile(r"\[[^\]]*\]|<[^>]*>")

Entry: TypeAlias = tuple[str, str]


def _bare_name(token: str) -> str:
    # "python3:any" -> "python3"
    return token.strip().partition(":")[0].strip()


def parse_provides(field: str) -> list[str]:
    """Bare virtual package names from a Provides field."""
    names = (_bare_name(name) for name in VERSION_CLAUSE.sub("", field).split(","))
    return [name for name in names if name]


def parse_dependencies(field: str) -> list[tuple[str, list[str]]]:
    """Split a Depends style field into clauses of alternative package names.

    Version constraints are dropped. Returns `(clause, alternatives)` pairs,
    the clause text kept for error messages.
    """
    clauses = []
    for clause in RESTRICTIONS.sub("", VERSION_CLAUSE.sub("", field)).split(","):
        if not clause.strip():
            continue
        alternatives = [name for name in map(_bare_name, clause.split("|")) if name]
        clauses.append((clause.strip(), alternatives))
    return clauses


class ArchiveIndex:
    """Newest record per (package, architecture) across all loaded sources.

    Records may be added from several threads until the provides index is
    built; after that the index is frozen and only read.

    Args:
        architectures: Target architectures of the mirror ("all" is implied)
    """

    def __init__(self, architectures: Iterable[str] = ()):
        self.all_architectures = list(dict.fromkeys([*architectures, ARCH_ALL]))
        self._lock = threading.RLock()
        self._packages: dict[str, dict[str, PackageRecord]] = {}
        self._provides: dict[str, dict[str, list[str]]] | None = None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(by_arch) for by_arch in self._packages.values())

    @property
    def frozen(self) -> bool:
        return self._provides is not None

    def add_packages(self, records: Iterable[tuple[PackageRecord, float]], source: str = "") -> int:
        """Ingest parsed records; the higher version wins, ties keep the existing record.

        Returns:
            Number of records read
        """
        count = 0
        with self._lock:
            if self._provides is not None:
                raise IndexFrozenError("Index already frozen")
            logger.info(f"Indexing {source}")
            for record, progress in records:
                count += 1
                by_arch = self._packages.setdefault(record.name, {})
                old = by_arch.get(record.architecture)
                if old is None or old.debian_version < record.debian_version:
                    by_arch[record.architecture] = record
                if count % 10000 == 0:
                    logger.debug(f"Indexing {source}: {progress:.0%}")
        logger.debug(f"Indexed {count} records from {source}")
        return count

    def index_provides(self) -> None:
        """Build the provides table once, freezing the index."""
        with self._lock:
            if self._provides is not None:
                return
            provides: dict[str, dict[str, list[str]]] = {}
            for by_arch in self._packages.values():
                for record in by_arch.values():
                    for name in parse_provides(record.provides):
                        providers = provides.setdefault(name, {}).setdefault(record.architecture, [])
                        if record.name not in providers:
                            providers.append(record.name)
            self._provides = provides
            logger.info(f"Indexed provides: {len(provides)} virtual packages")

    def get(self, name: str, arch: str) -> PackageRecord | None:
        """The real package record for exactly (name, arch), ignoring provides."""
        with self._lock:
            return self._packages.get(name, {}).get(arch)

    def providers(self, name: str, arch: str) -> list[str]:
        self.index_provides()
        by_arch = self._provides.get(name, {})
        return [*by_arch.get(arch, []), *by_arch.get(ARCH_ALL, [])]

    def find(self, name: str, arch: str) -> PackageRecord | None:
        """Resolve a real or virtual package name for `arch`."""
        self.index_provides()
        return self._find(name, arch, set())

    def _find(self, name: str, arch: str, visited: set[str]) -> PackageRecord | None:
        # visited names are on the current path or have already failed from every route
        if name in visited:
            logger.debug(f"Provides cycle through {name!r} for {arch}")
            return None
        visited.add(name)

        by_arch = self._packages.get(name)
        if by_arch and (record := by_arch.get(arch) or by_arch.get(ARCH_ALL)):
            return record
        for provider in self.providers(name, arch):
            if record := self._find(provider, arch, visited):
                return record
        return None

    def essential_names(self, arch: str) -> list[str]:
        with self._lock:
            return [
                name
                for name, by_arch in self._packages.items()
                if any(record.essential for a, record in by_arch.items() if a in (arch, ARCH_ALL))
            ]

    def packages_for(self, name: str, arch: str | None = None) -> list[PackageRecord]:
        """Records of `name` for `arch` (falling back to "all"), or for every mirrored architecture."""
        with self._lock:
            by_arch = self._packages.get(name)
            if not by_arch:
                return []
            if arch:
                record = by_arch.get(arch) or by_arch.get(ARCH_ALL)
                return [record] if record else []
            return [by_arch[a] for a in self.all_architectures if a in by_arch]

    def records(self) -> Iterator[PackageRecord]:
        """Every record for a mirrored architecture."""
        with self._lock:
            names = list(self._packages)
        for name in names:
            yield from self.packages_for(name)

    def _select_records(self, packages: Iterable[Entry] | None) -> Iterator[PackageRecord]:
        """Records for the entries, each package file at most once."""
        if packages is None:
            yield from self.records()
            return
        seen = set()
        for name, arch in packages:
            for record in self.packages_for(name, arch):
                if record.deb_filename not in seen:
                    seen.add(record.deb_filename)
                    yield record

    def files(self, packages: Iterable[Entry] | None = None) -> list[str]:
        """Sorted .deb file names for the given (name, arch) pairs, or for everything."""
        return sorted(record.deb_filename for record in self._select_records(packages))

    def size(self, packages: Iterable[Entry] | None = None) -> int:
        return sum(record.size or 0 for record in self._select_records(packages))

    def download(
        self,
        packages: Iterable[Entry] | None,
        manager: DownloadManager,
        pkg_dir: Path,
        collector: Collector | None = None,
    ) -> list[str]:
        """Queue downloads of the package files; returns the sorted file names.

        Downloads run in the background; pass a collector to observe their results.
        """
        files = []
        for record in self._select_records(packages):
            if not record.url:
                logger.warning(f"No Filename for {record.name} {record.version} ({record.architecture})")
                continue
            download = Download(
                record.url,
                pkg_dir / record.deb_filename,
                record.verifiers(),
                allow_cache=True,
                check_mtime=False,
            )
            if collector is not None:
                download.extra_callback = collector.collect()
            manager.add(download)
            files.append(record.deb_filename)
        return sorted(files)


class PackageSelection:
    """Dependency closure of requested packages for one architecture.

    `selection` maps each requested or required name to the `(package, arch)`
    entries it resolved to. Entries are only ever appended, and each name is
    resolved at most once, so repeated `select` calls extend the closure.
    """

    def __init__(self, index: ArchiveIndex, arch: str):
        self.index = index
        self.index.index_provides()
        self.arch = arch
        self.selection: dict[str, list[Entry]] = {}

    def __contains__(self, name: object) -> bool:
        return name in self.selection

    def entries(self) -> list[Entry]:
        return list(dict.fromkeys(entry for entries in self.selection.values() for entry in entries))

    def select_essentials(self) -> None:
        self.select(*self.index.essential_names(self.arch))

    def select_build_essentials(self) -> None:
        self.select("build-essential")

    def _add_dependencies(self, queue: deque[str], field: str, package: str) -> None:
        # ignore any version constraints; the first alternative that resolves wins
        for clause, alternatives in parse_dependencies(field):
            for alternative in alternatives:
                if record := self.index.find(alternative, self.arch):
                    queue.append(record.name)
                    break
            else:
                raise UnfulfillableDependencyError(clause, package)

    def select(self, *names: str) -> None:
        """Add `names` and everything they (pre-)depend on.

        Nothing is added when any package is missing or any dependency cannot be fulfilled.
        """
        staged: dict[str, list[Entry]] = {}
        queue = deque(names)
        while queue:
            name = queue.popleft()
            if name in self.selection or name in staged:
                continue
            record = self.index.find(name, self.arch)
            if record is None:
                raise PackageNotFoundError(name, self.arch)
            self._add_dependencies(queue, record.pre_depends, name)
            self._add_dependencies(queue, record.depends, name)
            staged.setdefault(name, []).append((record.name, record.architecture))

        for name, entries in staged.items():
            self.selection.setdefault(name, []).extend(entries)
        logger.debug(f"Selected {len(staged)} packages for {self.arch}")

    @staticmethod
    def merge(*selections: "PackageSelection") -> list[Entry]:
        return merge(*selections)


def merge(*selections: PackageSelection) -> list[Entry]:
    """Union of several selections as a flat, duplicate free list of (name, arch) entries."""
    merged: dict[str, list[Entry]] = {}
    for selection in selections:
        for name, entries in selection.selection.items():
            merged.setdefault(name, []).extend(entries)
    # a provider can sit under its own name and under a virtual name
    return list(dict.fromkeys(entry for entries in merged.values() for entry in entries))


def essential_set(selections: Iterable[PackageSelection], architectures: list[str]) -> list[str]:
    """Compress per-architecture selections into `name` / `name:arch` tokens.

    A package resolved for every target architecture (or as an "all" package)
    is listed once by name; otherwise once per architecture it was resolved for.
    """
    coverage: dict[str, list[str]] = {}
    for selection in selections:
        for entries in selection.selection.values():
            name, arch = entries[0]
            archs = coverage.setdefault(name, [])
            if arch not in archs:
                archs.append(arch)

    tokens = []
    for name, archs in coverage.items():
        if ARCH_ALL in archs or set(archs) == set(architectures):
            tokens.append(name)
        else:
            tokens.extend(f"{name}:{arch}" for arch in archs)
    return tokens
