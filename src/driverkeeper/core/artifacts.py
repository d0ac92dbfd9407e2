"""Preparing a driver's working directory and runtime artifact."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Protocol
from urllib.parse import unquote, urlparse

import httpx
from loguru import logger

from driverkeeper.errors import ArtifactFetchError, ArtifactMissingError, WorkDirError


class Fetcher(Protocol):
    """Transfers ``url`` into ``dest_dir``, keeping the URL's file name."""

    def fetch(self, url: str, dest_dir: Path, credentials: dict[str, str] | None = None) -> None: ...


def artifact_file_name(url: str) -> str:
    """Last segment of the URL path; query and fragment are ignored."""
    path = urlparse(url).path or url
    name = unquote(path.rstrip("/").split("/")[-1])
    if not name:
        raise ArtifactFetchError(f"Cannot derive an artifact file name from {url}")
    return name


class DefaultFetcher:
    """Fetches from local paths, ``file://`` URLs and ``http(s)://`` URLs."""

    def __init__(self, timeout: float = 60.0, chunk_size: int = 64 * 1024):
        self.timeout = timeout
        self.chunk_size = chunk_size

    def fetch(self, url: str, dest_dir: Path, credentials: dict[str, str] | None = None) -> None:
        parsed = urlparse(url)
        target = dest_dir / artifact_file_name(url)

        if parsed.scheme in ("http", "https"):
            self._fetch_http(url, target, credentials)
        elif parsed.scheme in ("", "file", "local"):
            self._fetch_local(Path(unquote(parsed.path)), target)
        else:
            raise ArtifactFetchError(f"Unsupported artifact scheme '{parsed.scheme}' in {url}")

    def _fetch_local(self, source: Path, target: Path) -> None:
        if not source.is_file():
            raise ArtifactFetchError(f"Artifact source does not exist: {source}")
        try:
            shutil.copyfile(source, target)
        except OSError as e:
            raise ArtifactFetchError(f"Failed to copy {source} to {target}: {e}") from e

    def _fetch_http(self, url: str, target: Path, credentials: dict[str, str] | None) -> None:
        headers = {}
        if credentials and credentials.get("token"):
            headers["Authorization"] = f"Bearer {credentials['token']}"

        # Download next to the target, then rename so a partial file never
        # looks like a finished artifact
        partial = target.with_name(target.name + ".part")
        try:
            with httpx.stream("GET", url, headers=headers, timeout=self.timeout, follow_redirects=True) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_bytes(self.chunk_size):
                        f.write(chunk)
            partial.replace(target)
        except httpx.HTTPError as e:
            partial.unlink(missing_ok=True)
            raise ArtifactFetchError(f"Failed to download {url}: {e}") from e
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise ArtifactFetchError(f"Failed to write {target}: {e}") from e


class ArtifactPreparer:
    """Creates the per-driver directory and makes sure the artifact is in it."""

    def __init__(
        self,
        work_dir: Path,
        artifact_url: str,
        fetcher: Fetcher | None = None,
        credentials: dict[str, str] | None = None,
    ):
        self.work_dir = Path(work_dir)
        self.artifact_url = artifact_url
        self.fetcher = fetcher or DefaultFetcher()
        self.credentials = credentials

    def driver_dir(self, driver_id: str) -> Path:
        return self.work_dir / driver_id

    def create_working_directory(self, driver_id: str) -> Path:
        """Create ``work_dir/driver_id`` if it does not exist yet."""
        driver_dir = self.driver_dir(driver_id)
        if not driver_dir.is_dir():
            try:
                driver_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise WorkDirError(f"Failed to create directory {driver_dir}: {e}") from e
        return driver_dir

    def download_artifact(self, driver_dir: Path) -> Path:
        """Fetch the artifact into ``driver_dir`` unless it is already there."""
        file_name = artifact_file_name(self.artifact_url)
        local_file = driver_dir / file_name

        # May already exist if several workers share one node
        if not local_file.exists():
            logger.info(f"Copying user artifact {self.artifact_url} to {local_file}")
            self.fetcher.fetch(self.artifact_url, driver_dir, self.credentials)
            if not local_file.exists():
                raise ArtifactMissingError(file_name, str(driver_dir))

        return local_file.resolve()

    def prepare(self, driver_id: str) -> Path:
        """Create the driver directory and return the absolute local artifact path."""
        driver_dir = self.create_working_directory(driver_id)
        return self.download_artifact(driver_dir)
