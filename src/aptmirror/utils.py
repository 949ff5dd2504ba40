import datetime
import logging
import re
from email.utils import format_datetime
from urllib.parse import urlparse

from dateutil.parser import parse as parse_date
from pydantic import ByteSize

logger = logging.getLogger(__name__)


def try_parse_date(date_str: str | None) -> datetime.datetime | None:
    """Try to parse a date string into a timestamp.

    Args:
        date_str: The date string to parse (e.g., from HTTP Last-Modified header)

    Returns:
        The parsed timestamp, or None if parsing failed or date_str is None
    """

    try:
        return parse_date(date_str) if date_str else None
    except (ValueError, OverflowError) as e:
        logger.debug(f"Failed to parse date '{date_str}': {e}")
        return None


def http_date(timestamp: float) -> str:
    """Format a POSIX timestamp as an RFC 1123 date for If-Modified-Since."""
    dt = datetime.datetime.fromtimestamp(timestamp, tz=datetime.UTC)
    return format_datetime(dt, usegmt=True)


def human_size(size: int) -> str:
    return ByteSize(size).human_readable()


def url_to_filename(url: str) -> str:
    """Flatten a URL into a single local filename.

    Examples:
        >>> url_to_filename("http://deb.debian.org/debian/dists/bookworm/Release")
        'deb.debian.org_debian_dists_bookworm_Release'
    """
    parsed = urlparse(url)
    return re.sub(r"/+", "_", f"{parsed.hostname}{parsed.path}")


def url_to_template(url: str) -> str:
    """Temp file prefix derived from a URL."""
    return re.sub(r"[^a-zA-Z0-9-]+", "_", url)[-64:]
