from os import getenv
from pathlib import Path

# base directory for relative lists/packages paths when no config file dir applies
DATA_DIR = Path(getenv("APTMIRROR_DATA_DIR", "data")).resolve()

LOG_LEVEL = getenv("APTMIRROR_LOG_LEVEL", "INFO").upper()

# parallel downloads, bounded by bandwidth and open file descriptors
DEFAULT_PARALLEL = int(getenv("APTMIRROR_PARALLEL", "10"))
MAX_REDIRECTS = 10
HTTP_TIMEOUT = 30.0
CHUNK_SIZE = 16384

DEFAULT_ARCHITECTURES = ["amd64", "i386"]

# the pseudo-architecture for architecture-independent packages
ARCH_ALL = "all"

SYSTEM_KEYRINGS = [Path("/etc/apt/trusted.gpg"), *sorted(Path("/etc/apt/trusted.gpg.d").glob("*.gpg"))]

# fmt: off
CHROOT_TOOLS = [
    "less", "kmod", "libdevmapper1.02.1", "net-tools",
    "procps", "psmisc", "strace", "user-setup", "vim",
]
BUILD_TOOLS = ["fakeroot", "debhelper", "lintian"]
# fmt: on

ESSENTIAL_SET_FILENAME = "essential_set"
FILES_FILENAME = "files"
