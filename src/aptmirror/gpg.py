"""Detached signature verification through gpgv."""

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

GPGV = "gpgv"
STATUS_PREFIXES = ("gpgv: ", "[GNUPG:] ")


def _reason(stderr: str) -> str:
    lines = []
    for line in stderr.splitlines():
        for prefix in STATUS_PREFIXES:
            line = line.removeprefix(prefix)
        if line.strip():
            lines.append(line.strip())
    return "; ".join(lines) or "signature verification failed"


def gpg_verify(file: Path, signature: Path, keyrings: Sequence[Path] = ()) -> str | None:
    """Verify `signature` over `file` with the trusted keyrings.

    Returns:
        None if the signature is good, otherwise a human readable reason
    """
    command = [GPGV]
    for keyring in keyrings:
        command += ["--keyring", str(keyring)]
    command += ["--", str(signature), str(file)]

    try:
        proc = subprocess.run(command, stdin=subprocess.DEVNULL, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return f"{GPGV} not found, cannot verify {signature}"

    if proc.returncode != 0:
        logger.debug(f"{GPGV} failed for {file}:\n{proc.stderr}")
        return _reason(proc.stderr)
    return None
