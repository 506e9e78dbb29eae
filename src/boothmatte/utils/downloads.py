from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

import requests
from tqdm import tqdm

from ..errors import ModelUnavailableError

logger = logging.getLogger(__name__)


def sha256_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def download_file(
    url: str,
    destination: Path,
    expected_sha256: Optional[str] = None,
    chunk_size: int = 1024 * 1024,
    timeout: float = 60.0,
    progress: bool = True,
) -> Path:
    """
    Stream a model artifact to disk.

    Parameters
    ----------
    url: str
        Remote URL to download.
    destination: Path
        Final artifact path. Data is written to a `.tmp` sibling and moved
        into place only once complete.
    expected_sha256: Optional[str]
        When given, the file is verified after download and removed on
        mismatch.
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    if destination.exists() and expected_sha256:
        if sha256_file(destination) == expected_sha256.lower():
            return destination

    logger.info("Downloading %s -> %s", url, destination)
    tmp_path = destination.with_suffix(destination.suffix + ".tmp")
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0)) or None
            with tmp_path.open("wb") as handle, tqdm(
                total=total,
                unit="B",
                unit_scale=True,
                desc=f"Downloading {destination.name}",
                disable=not progress,
            ) as bar:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if not chunk:
                        continue
                    handle.write(chunk)
                    bar.update(len(chunk))
    except requests.RequestException as exc:
        tmp_path.unlink(missing_ok=True)
        raise ModelUnavailableError(f"Failed to download {url}: {exc}") from exc

    tmp_path.replace(destination)

    if expected_sha256 and sha256_file(destination) != expected_sha256.lower():
        destination.unlink(missing_ok=True)
        raise ModelUnavailableError(
            f"Checksum mismatch for {destination}. Expected {expected_sha256}."
        )

    return destination
