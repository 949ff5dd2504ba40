"""Archive source lines and loading their package indexes."""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from itertools import product
from pathlib import Path
from urllib.parse import urljoin

from aptmirror.constants import ARCH_ALL
from aptmirror.errors import ConfigError, ParseError, SignatureError
from aptmirror.fetcher import Download, DownloadManager
from aptmirror.gpg import gpg_verify
from aptmirror.jobs import Collector
from aptmirror.models import IndexTarget
from aptmirror.parsers import PackagesParser, ReleaseFile
from aptmirror.utils import url_to_filename

logger = logging.getLogger(__name__)

ARCH_PLACEHOLDER = "$(ARCH)"


@dataclass(frozen=True)
class SourceLine:
    """A `deb <uri> <suite> [<component> ...]` line.

    A suite ending in "/" is an exact path to a flat repository and must not
    list components; any other suite is a standard `dists/` layout and must.
    """

    uri: str
    suite: str
    components: tuple[str, ...] = ()

    @classmethod
    def parse(cls, line: str) -> "SourceLine":
        parts = line.split()
        if not parts or parts[0] != "deb":
            raise ConfigError(f"Cannot handle {parts[0] if parts else line!r} lines, expected 'deb'")
        if len(parts) < 3:
            raise ConfigError(f"Incomplete source line {line!r}")
        _, uri, suite, *components = parts

        if suite.endswith("/") and components:
            raise ConfigError("Distribution is exact path (ends in /), mustn't list components")
        if not suite.endswith("/") and not components:
            raise ConfigError("No components and suite is not an exact path (doesn't end in /)")

        if not uri.endswith("/"):
            uri += "/"
        return cls(uri=uri, suite=suite, components=tuple(components))

    @property
    def is_flat(self) -> bool:
        return not self.components

    def __str__(self) -> str:
        return " ".join(["deb", self.uri, self.suite, *self.components])


class ArchiveLoader:
    """Fetches the signed Release file(s) and Packages indexes of one source.

    Args:
        source: The parsed source line
        manager: Download manager used for every fetch
        lists_dir: Directory the index files are kept in
        architectures: Target architectures; "all" is always added
        keyrings: Trusted keyrings for Release signatures
        verify_signatures: Skip gpgv when False (for unsigned test archives)
    """

    def __init__(
        self,
        source: SourceLine,
        manager: DownloadManager,
        lists_dir: Path,
        architectures: Sequence[str],
        keyrings: Sequence[Path] = (),
        verify_signatures: bool = True,
    ):
        self.source = source
        self.manager = manager
        self.lists_dir = lists_dir
        self.all_archs = list(dict.fromkeys([*architectures, ARCH_ALL]))
        self.keyrings = list(keyrings)
        self.verify_signatures = verify_signatures

    def signed_download(self, url: str, sig_url: str) -> Path:
        """Download a file and its detached signature in parallel, then check the signature."""
        file = self.lists_dir / url_to_filename(url)
        if not self.verify_signatures:
            self.manager.wait(Download(url, file))
            return file

        sig_file = self.lists_dir / url_to_filename(sig_url)
        self.manager.wait(Download(url, file), Download(sig_url, sig_file))
        if reason := gpg_verify(file, sig_file, self.keyrings):
            raise SignatureError(f"Bad signature for {url}: {reason}")
        return file

    def _download_index(self, release: ReleaseFile, filename: str) -> IndexTarget:
        target = release.target(filename)
        self.manager.wait(Download(target.url, target.output_path, release.verifiers(target)))
        return target

    def _load_release(self, dist_url: str) -> ReleaseFile:
        file = self.signed_download(urljoin(dist_url, "Release"), urljoin(dist_url, "Release.gpg"))
        release = ReleaseFile(dist_url, file, self.lists_dir)
        logger.debug(
            f"Release {release.get('Suite') or release.get('Codename') or dist_url}: "
            f"{len(release.files)} files, dated {release.get('Date', 'unknown')}"
        )
        return release

    def _load_automatic(self, callback: Callable[[PackagesParser], None]) -> None:
        """Standard `dists/<suite>/<component>/binary-<arch>/Packages` archives."""
        dist_url = urljoin(self.source.uri, f"dists/{self.source.suite}/")
        release = self._load_release(dist_url)

        def _load(target: tuple[str, str]) -> None:
            arch, component = target
            filename = f"{component}/binary-{arch}/Packages"
            if arch == ARCH_ALL and filename not in release.files:
                # older archives put "all" packages into every binary-<arch> index
                logger.debug(f"No {filename} in {dist_url}Release, skipping")
                return
            index = self._download_index(release, filename)
            callback(PackagesParser(self.source.uri, index))

        collector = Collector(self.manager.scheduler)
        collector.run_each(product(self.all_archs, self.source.components), _load)
        collector.wait_throw()

    def _load_flat(self, callback: Callable[[PackagesParser], None]) -> None:
        """Flat repositories (openbuildservice and other custom archives)."""
        dirs = list(
            dict.fromkeys(
                urljoin(self.source.uri, self.source.suite.replace(ARCH_PLACEHOLDER, arch))
                for arch in self.all_archs
            )
        )

        def _load(dir_url: str) -> None:
            release = self._load_release(dir_url)
            index = self._download_index(release, "Packages")
            callback(PackagesParser(dir_url, index))

        collector = Collector(self.manager.scheduler)
        collector.run_each(dirs, _load)
        collector.wait_throw()

    def load(self, callback: Callable[[PackagesParser], None]) -> None:
        """Call `callback` with a parser for every Packages index of the source."""
        logger.info(f"Loading {self.source}")
        try:
            if self.source.is_flat:
                self._load_flat(callback)
            else:
                self._load_automatic(callback)
        except ParseError as e:
            raise ParseError(f"{self.source}: {e}") from e
