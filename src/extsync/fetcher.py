from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit

import httpx

from ._version import __version__
from .errors import DownloadError, PathEscape
from .paths import is_within

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
USER_AGENT = f"extsync/{__version__}"


class ArchiveFetcher(Protocol):
    async def fetch(self, url: str, dest_path: Path) -> None:
        ...


def _check_url(url: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise DownloadError(f"Unsupported URL scheme {parts.scheme!r} in {url!r}")
    if not parts.netloc:
        raise DownloadError(f"URL has no host: {url!r}")


class HttpArchiveFetcher:
    """
    Downloads archives over HTTP(S) with httpx.

    The body is streamed into ``<dest>.part`` and renamed into place once the
    response completed, so ``dest_path`` only ever holds a whole archive.
    No retries are attempted.
    """

    def __init__(
        self,
        *,
        downloads_root: Path | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.downloads_root = Path(downloads_root) if downloads_root is not None else None
        self._http = client or httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "HttpArchiveFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def fetch(self, url: str, dest_path: Path) -> None:
        dest_path = Path(dest_path)
        if self.downloads_root is not None and not is_within(dest_path, self.downloads_root):
            cause = PathEscape(f"Download destination {dest_path} is outside of {self.downloads_root}")
            raise DownloadError(f"Bad download destination: {dest_path}", cause=cause)
        _check_url(url)

        logger.info("Downloading %s to %s", url, dest_path)
        part_path = dest_path.with_name(dest_path.name + ".part")
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            async with self._http.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise DownloadError(f"HTTP {resp.status_code} while downloading {url}: {body[:200]}")
                size = 0
                with part_path.open("wb") as out:
                    async for chunk in resp.aiter_bytes():
                        out.write(chunk)
                        size += len(chunk)
            os.replace(part_path, dest_path)
        except httpx.HTTPError as e:
            raise DownloadError(f"Request failed for {url}: {e}", cause=e) from e
        except OSError as e:
            raise DownloadError(f"Could not write {dest_path}: {e}", cause=e) from e
        finally:
            if part_path.exists():
                part_path.unlink()
        logger.info("Downloaded %d bytes from %s", size, url)
