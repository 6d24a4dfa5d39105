"""Latest-release lookup against the GitHub REST API.

A missing ``tag_name``, a non-2xx status, a body that isn't JSON, and any
network error all collapse to ``None`` ("no release found"); the caller falls
back to a branch update in every one of those cases.
"""

from __future__ import annotations

import aiohttp

from stowage.logger import logger
from stowage.types import RemoteIdentity

_HEADERS = {
    "Accept": "application/vnd.github+json",
    "User-Agent": "stowage",
}


async def latest_release_tag(
    remote: RemoteIdentity,
    *,
    api_base: str = "https://api.github.com",
    timeout: float = 15.0,
) -> str | None:
    url = f"{api_base.rstrip('/')}/repos/{remote.owner}/{remote.name}/releases/latest"
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers=_HEADERS,
        ) as session:
            async with session.get(url) as resp:
                if not 200 <= resp.status < 300:
                    logger.debug("No release listing", repo=remote.slug, status=resp.status)
                    return None
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    return None
    except (aiohttp.ClientError, OSError, TimeoutError) as exc:
        logger.warning("Release lookup failed", repo=remote.slug, error=str(exc))
        return None

    tag = data.get("tag_name") if isinstance(data, dict) else None
    if not isinstance(tag, str) or not tag.strip():
        return None
    return tag.strip()
