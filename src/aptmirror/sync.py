"""Top level mirror run: load sources, resolve the package set, download it."""

import logging
from pathlib import Path

import httpx

from aptmirror.config import MirrorConfig
from aptmirror.constants import ESSENTIAL_SET_FILENAME, FILES_FILENAME
from aptmirror.errors import SyncError
from aptmirror.fetcher import DownloadManager
from aptmirror.index import ArchiveIndex, PackageSelection, essential_set, merge
from aptmirror.jobs import Collector, Scheduler
from aptmirror.parsers import PackagesParser
from aptmirror.sources import ArchiveLoader, SourceLine
from aptmirror.utils import human_size

logger = logging.getLogger(__name__)


class Mirror:
    """One mirror run over a configuration.

    Owns the scheduler, the shared download manager and the package index;
    `close()` (or leaving the context manager) is the shutdown barrier that
    waits for every background job before stopping the workers.
    """

    def __init__(
        self,
        config: MirrorConfig,
        scheduler: Scheduler | None = None,
        client: httpx.Client | None = None,
    ):
        self.config = config
        self.config.ensure_directories()
        self.scheduler = scheduler or Scheduler()
        self.manager = DownloadManager(self.scheduler, config.download.parallel, client=client)
        self.index = ArchiveIndex(config.architectures)
        self.keyrings = config.trusted_keyrings()

    def __enter__(self) -> "Mirror":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.scheduler.wait()
        self.manager.join()
        self.scheduler.join()

    @property
    def lists_dir(self) -> Path:
        return self.config.lists_directory

    @property
    def pkg_dir(self) -> Path:
        return self.config.package_directory

    def _load_source(self, source: SourceLine) -> None:
        loader = ArchiveLoader(
            source,
            self.manager,
            self.lists_dir,
            self.config.architectures,
            keyrings=self.keyrings,
            verify_signatures=self.config.verify_signatures,
        )

        def _ingest(parser: PackagesParser) -> None:
            self.index.add_packages(parser, source=parser.url)

        loader.load(_ingest)

    def load_sources(self) -> "Mirror":
        """Load every configured source concurrently into the index."""
        collector = Collector(self.scheduler)
        collector.run_each(self.config.source_lines, self._load_source)
        _, error = collector.get()
        if error is not None:
            raise SyncError(f"Couldn't load packages lists: {error}") from error
        self.index.index_provides()
        logger.info(f"Loaded {len(self.index)} package records from {len(self.config.sources)} sources")
        return self

    def selections(self, *packages: str, essentials: bool = False) -> list[PackageSelection]:
        """One selection per target architecture."""
        result = []
        for arch in self.config.architectures:
            selection = PackageSelection(self.index, arch)
            if essentials:
                selection.select_essentials()
            selection.select(*packages)
            result.append(selection)
        return result

    def create_essential_set(self) -> list[str]:
        """Write the coverage compressed essential package list."""
        tokens = essential_set(self.selections(essentials=True), self.config.architectures)
        path = self.lists_dir / ESSENTIAL_SET_FILENAME
        path.write_text("".join(f"{token}\n" for token in tokens), encoding="utf-8")
        logger.info(f"Wrote {len(tokens)} essential packages to {path}")
        return tokens

    def minimal_selection(self) -> list[tuple[str, str]]:
        selections = []
        for arch in self.config.architectures:
            selection = PackageSelection(self.index, arch)
            selection.select_essentials()
            selection.select_build_essentials()
            selection.select(*self.config.chroot_tools)
            selection.select(*self.config.build_tools)
            selection.select(*self.config.extra_packages)
            selections.append(selection)
        return merge(*selections)

    def download(self, packages: list[tuple[str, str]] | None = None) -> list[str]:
        """Download the given (name, arch) entries, or the whole index, and write the file list."""
        collector = Collector(self.scheduler)
        files = self.index.download(packages, self.manager, self.pkg_dir, collector)
        logger.info(f"Downloading {len(files)} packages ({human_size(self.index.size(packages))})")
        results, error = collector.get()

        path = self.lists_dir / FILES_FILENAME
        path.write_text("".join(f"{filename}\n" for filename in files), encoding="utf-8")

        stale = sorted({p.name for p in self.pkg_dir.glob("*.deb")} - set(files))
        for filename in stale:
            logger.info(f"Move away {filename}")

        if error is not None:
            failed = sum(1 for result in results if result is None)
            raise SyncError(f"{failed} of {len(files)} package downloads failed, first error: {error}")
        return files

    def download_minimal_set(self) -> list[str]:
        return self.download(self.minimal_selection())

    def run(self) -> list[str]:
        self.load_sources()
        self.create_essential_set()
        return self.download_minimal_set()
