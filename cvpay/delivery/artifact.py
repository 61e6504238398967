from __future__ import annotations

import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import httpx

from cvpay.errors import DeliveryError
from cvpay.observability.logging import log
from cvpay.settings import settings

SaveAs = Callable[[Path, str], Path]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def suggested_filename(full_name: str, fallback: str) -> str:
    """CV_<name with whitespace replaced by underscores>.pdf, or CV_<fallback>.pdf."""
    stem = re.sub(r"\s+", "_", (full_name or "").strip()) or fallback
    return f"CV_{stem}.pdf"


def _safe_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", os.path.basename(name or "")).strip("._")
    return cleaned or "download.pdf"


def save_to_directory(directory: Path) -> SaveAs:
    """Default save-as step: copy into `directory` without clobbering earlier downloads."""

    def _save(temp_path: Path, filename: str) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / _safe_name(filename)
        stem, suffix = target.stem, target.suffix
        n = 1
        while target.exists():
            target = directory / f"{stem} ({n}){suffix}"
            n += 1
        shutil.copyfile(temp_path, target)
        return target

    return _save


@contextmanager
def temporary_object(directory: Optional[Path] = None) -> Iterator:
    """Temporary local copy of the artifact; always removed on exit."""
    handle = tempfile.NamedTemporaryFile(prefix="cvpay-", suffix=".part", dir=directory, delete=False)
    try:
        yield handle
    finally:
        handle.close()
        try:
            os.unlink(handle.name)
        except FileNotFoundError:
            pass


class ArtifactDelivery:
    def __init__(self, http: httpx.AsyncClient, *, download_dir: Optional[str] = None, save_as: Optional[SaveAs] = None):
        self._http = http
        self.download_dir = Path(download_dir or settings.DOWNLOAD_DIR)
        self._save_as = save_as or save_to_directory(self.download_dir)

    async def deliver(self, url: str, filename: str) -> Path:
        if not url:
            raise DeliveryError("No artifact URL to download")
        try:
            async with self._http.stream("GET", url) as resp:
                if not (200 <= resp.status_code < 300):
                    log(event="delivery_non2xx", url=url, statusCode=resp.status_code)
                    raise DeliveryError(f"Artifact download failed ({resp.status_code})")
                with temporary_object() as tmp:
                    size = 0
                    async for chunk in resp.aiter_bytes():
                        tmp.write(chunk)
                        size += len(chunk)
                    tmp.flush()
                    saved = self._save_as(Path(tmp.name), filename)
        except httpx.HTTPError as e:
            log(event="delivery_exception", url=url, errorType=type(e).__name__, error=str(e)[:300])
            raise DeliveryError(f"Artifact download failed: {type(e).__name__}") from e
        except OSError as e:
            log(event="delivery_save_failed", url=url, error=str(e)[:300])
            raise DeliveryError("Artifact could not be saved") from e

        log(event="delivery_saved", url=url, path=str(saved), bytes=size)
        return saved
