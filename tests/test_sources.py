import pytest

from aptmirror.errors import ConfigError, ParseError, SignatureError
from aptmirror.sources import ArchiveLoader, SourceLine

from .conftest import gz, packages_file, release_file, stanza

BASE = "http://mirror.test/debian/"


def test_parse_standard_source():
    source = SourceLine.parse("deb http://mirror.test/debian bookworm main contrib")
    assert source.uri == BASE
    assert source.suite == "bookworm"
    assert source.components == ("main", "contrib")
    assert not source.is_flat
    assert str(source) == "deb http://mirror.test/debian/ bookworm main contrib"


def test_parse_flat_source():
    source = SourceLine.parse("deb http://download.test/repo/ Debian_12/$(ARCH)/")
    assert source.is_flat
    assert source.suite == "Debian_12/$(ARCH)/"


@pytest.mark.parametrize(
    "line, message",
    [
        ("deb-src http://mirror.test/debian bookworm main", "Cannot handle 'deb-src'"),
        ("deb http://mirror.test/debian", "Incomplete"),
        ("deb http://mirror.test/debian ./ main", "mustn't list components"),
        ("deb http://mirror.test/debian bookworm", "No components"),
    ],
)
def test_parse_invalid_source(line, message):
    with pytest.raises(ConfigError, match=message):
        SourceLine.parse(line)


def serve_dist(archive, dist_url, indexes: dict[str, bytes]):
    for name, content in indexes.items():
        archive.add(dist_url + name, content)
    archive.add(dist_url + "Release", release_file(indexes))


def load(loader):
    parsers = []
    loader.load(parsers.append)
    return sorted(parsers, key=lambda parser: parser.url)


def test_load_standard_archive(manager, archive, tmp_path):
    amd64 = packages_file(stanza("hello", depends="libc6"), stanza("libc6", "2.36-9"))
    everything = packages_file(stanza("tzdata", "2024a-1", arch="all"))
    dist = BASE + "dists/bookworm/"
    serve_dist(
        archive,
        dist,
        {"main/binary-amd64/Packages.gz": gz(amd64), "main/binary-all/Packages": everything},
    )

    source = SourceLine.parse(f"deb {BASE} bookworm main")
    loader = ArchiveLoader(source, manager, tmp_path, ["amd64"], verify_signatures=False)
    parsers = load(loader)

    assert [parser.url for parser in parsers] == [
        dist + "main/binary-all/Packages",
        dist + "main/binary-amd64/Packages.gz",
    ]
    assert [record.name for record, _ in parsers[1]] == ["hello", "libc6"]
    assert [record.url for record, _ in parsers[0]] == [BASE + "pool/main/t/tzdata/tzdata_2024a-1_all.deb"]
    assert (tmp_path / "mirror.test_debian_dists_bookworm_Release").exists()
    assert dist + "Release.gpg" not in archive.urls_requested()


def test_load_without_binary_all(manager, archive, tmp_path):
    dist = BASE + "dists/stable/"
    serve_dist(archive, dist, {"main/binary-amd64/Packages": packages_file(stanza("hello"))})

    source = SourceLine.parse(f"deb {BASE} stable main")
    loader = ArchiveLoader(source, manager, tmp_path, ["amd64"], verify_signatures=False)
    assert [parser.url for parser in load(loader)] == [dist + "main/binary-amd64/Packages"]


def test_load_missing_index_fails(manager, archive, tmp_path):
    dist = BASE + "dists/stable/"
    serve_dist(archive, dist, {"main/binary-amd64/Packages": packages_file(stanza("hello"))})

    source = SourceLine.parse(f"deb {BASE} stable main")
    loader = ArchiveLoader(source, manager, tmp_path, ["amd64", "i386"], verify_signatures=False)
    with pytest.raises(ParseError, match="binary-i386"):
        loader.load(lambda parser: None)


def test_load_flat_archive(manager, archive, tmp_path):
    repo = "http://download.test/repo/"
    for arch in ("amd64", "all"):
        packages = packages_file(stanza(f"tool-{arch}", arch=arch))
        serve_dist(archive, f"{repo}Debian_12/{arch}/", {"Packages": packages})

    source = SourceLine.parse(f"deb {repo} Debian_12/$(ARCH)/")
    loader = ArchiveLoader(source, manager, tmp_path, ["amd64"], verify_signatures=False)
    parsers = load(loader)
    assert [[record.name for record, _ in parser] for parser in parsers] == [["tool-all"], ["tool-amd64"]]
    assert [record.url for record, _ in parsers[1]] == [
        f"{repo}Debian_12/amd64/pool/main/t/tool-amd64/tool-amd64_1.0_amd64.deb"
    ]


def test_signed_download_checks_signature(manager, archive, tmp_path, monkeypatch):
    dist = BASE + "dists/stable/"
    serve_dist(archive, dist, {"main/binary-amd64/Packages": packages_file(stanza("hello"))})
    archive.add(dist + "Release.gpg", b"signature")
    calls = []

    def fake_verify(file, signature, keyrings):
        calls.append((file.name, signature.name, keyrings))
        return "BAD signature from test key"

    monkeypatch.setattr("aptmirror.sources.gpg_verify", fake_verify)
    keyring = tmp_path / "archive.gpg"
    source = SourceLine.parse(f"deb {BASE} stable main")
    loader = ArchiveLoader(source, manager, tmp_path, ["amd64"], keyrings=[keyring])

    with pytest.raises(SignatureError, match="BAD signature"):
        loader.load(lambda parser: None)
    assert calls == [
        ("mirror.test_debian_dists_stable_Release", "mirror.test_debian_dists_stable_Release.gpg", [keyring])
    ]


def test_signed_download_accepts_good_signature(manager, archive, tmp_path, monkeypatch):
    dist = BASE + "dists/stable/"
    serve_dist(archive, dist, {"main/binary-amd64/Packages": packages_file(stanza("hello"))})
    archive.add(dist + "Release.gpg", b"signature")
    monkeypatch.setattr("aptmirror.sources.gpg_verify", lambda file, signature, keyrings: None)

    loader = ArchiveLoader(SourceLine.parse(f"deb {BASE} stable main"), manager, tmp_path, ["amd64"])
    assert len(load(loader)) == 1
