"""
PostgreSQL client version selection.

The sidecar ships several PostgreSQL client majors side by side
(pg_dump15, pg_dump16, pg_dump17, ...). Dumps must be taken with a client
no newer than needed, so the client is chosen per target server.
"""

import logging
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)

SUPPORTED_MAJORS = (15, 16, 17)
DEFAULT_MAJOR = 16
VERSION_QUERY_TIMEOUT = 30


def select_client_major(server_version_num: Optional[int]) -> int:
    """
    Pick the client major for a server version.

    Args:
        server_version_num: Value of server_version_num (170000 for 17.0),
            or None if unknown

    Returns:
        The newest supported major not above the server's major. Servers
        older than every supported major get the oldest one; an unknown
        version gets DEFAULT_MAJOR.
    """
    if not server_version_num:
        return DEFAULT_MAJOR

    server_major = server_version_num // 10000
    candidates = [major for major in SUPPORTED_MAJORS if major <= server_major]

    if not candidates:
        return min(SUPPORTED_MAJORS)

    return max(candidates)


def query_server_version(uri: str) -> Optional[int]:
    """
    Ask the server for its server_version_num.

    Tries the default psql client first, then the other supported majors.

    Returns:
        The integer version, or None if no client could get an answer
    """
    majors = [DEFAULT_MAJOR] + [m for m in SUPPORTED_MAJORS if m != DEFAULT_MAJOR]

    for major in majors:
        try:
            completed = subprocess.run(
                [
                    f'psql{major}', uri,
                    '--tuples-only',
                    '--no-align',
                    '--command=SHOW server_version_num;'
                ],
                capture_output=True,
                text=True,
                timeout=VERSION_QUERY_TIMEOUT
            )
        except FileNotFoundError:
            continue
        except subprocess.TimeoutExpired:
            logger.debug(f"psql{major} timed out querying server version")
            return None

        if completed.returncode != 0:
            logger.debug(f"psql{major} could not query server version: {completed.stderr.strip()}")
            return None

        first_line = completed.stdout.strip().splitlines()[:1]
        if first_line and first_line[0].strip().isdigit():
            return int(first_line[0].strip())
        return None

    logger.debug("No psql client available to query server version")
    return None


def client_binary(tool: str, uri: str) -> str:
    """
    Name of the version-matched client binary for a target.

    Args:
        tool: Client tool, e.g. 'pg_dump' or 'pg_restore'
        uri: Connection URI of the target server

    Returns:
        Binary name such as 'pg_dump17'
    """
    version = query_server_version(uri)
    major = select_client_major(version)

    if version:
        logger.debug(f"PostgreSQL server version {version} detected, using {tool}{major} client")
    else:
        logger.debug(f"PostgreSQL server version unknown, using {tool}{major} client")

    return f"{tool}{major}"
