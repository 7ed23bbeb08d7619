from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Optional

import requests
from tqdm import tqdm

logger = logging.getLogger(__name__)


def sha256_file(path: Path, block_size: int = 1 << 20) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as stream:
        while True:
            block = stream.read(block_size)
            if not block:
                break
            digest.update(block)
    return digest.hexdigest()


def download_file(
    url: str,
    destination: Path,
    expected_sha256: Optional[str] = None,
    chunk_size: int = 1024 * 1024,
    timeout: float = 60,
) -> Path:
    """
    Stream a model checkpoint into the weights cache.

    Parameters
    ----------
    url: str
        Release asset URL.
    destination: Path
        Local path inside the weights cache.
    expected_sha256: Optional[str]
        When provided the file is verified after download and removed on mismatch.
    chunk_size: int
        Streaming chunk size in bytes. Defaults to 1 MiB.
    timeout: float
        Connect/read timeout in seconds.
    """

    destination.parent.mkdir(parents=True, exist_ok=True)

    if destination.exists() and expected_sha256:
        if sha256_file(destination) == expected_sha256.lower():
            return destination

    logger.info(f"Downloading {url} -> {destination}")
    tmp_path = destination.with_suffix(destination.suffix + ".part")
    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            size = int(response.headers.get("content-length", 0)) or None
            with tmp_path.open("wb") as sink, tqdm(
                total=size, unit="B", unit_scale=True, desc=destination.name
            ) as progress:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if chunk:
                        sink.write(chunk)
                        progress.update(len(chunk))
    except Exception:
        # never leave a truncated checkpoint behind
        tmp_path.unlink(missing_ok=True)
        raise
    tmp_path.replace(destination)

    if expected_sha256 and sha256_file(destination) != expected_sha256.lower():
        destination.unlink(missing_ok=True)
        raise ValueError(f"Checksum mismatch for {destination}. Expected {expected_sha256}.")

    return destination
