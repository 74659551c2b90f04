"""
Serves requests the router decided to keep local.

Lookup order is the public directory first, then the pages root. Paths whose
last segment has no extension fall back to the pages root ``index.html`` so
client-side routes of the single-page app resolve.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, Optional, Union

from fastapi import Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

logger = logging.getLogger("uvicorn.error")

INDEX_FILE = "index.html"
LOCAL_METHODS = ("GET", "HEAD")


class LocalAssets:
    __slots__ = ("_directories", "_pages_root")

    def __init__(
        self,
        pages_root: Optional[Union[str, Path]],
        public_dir: Optional[Union[str, Path]] = None,
    ):
        self._pages_root = Path(pages_root).resolve() if pages_root else None
        directories = []
        if public_dir:
            directories.append(Path(public_dir).resolve())
        if self._pages_root is not None:
            directories.append(self._pages_root)
        self._directories = tuple(directories)
        for directory in self._directories:
            if not directory.is_dir():
                logger.warning(f"[Local] Asset directory {directory} does not exist")

    @property
    def directories(self) -> Iterable[Path]:
        return self._directories

    def resolve(self, path: str) -> Optional[Path]:
        """Map a URL path to a file inside one of the asset directories."""
        relative = path.lstrip("/")
        if "\x00" in relative:
            return None
        for directory in self._directories:
            candidate = (directory / relative).resolve()
            # Refuse anything that escapes the directory (.., symlinks)
            if candidate != directory and directory not in candidate.parents:
                continue
            if candidate.is_dir():
                candidate = candidate / INDEX_FILE
            if candidate.is_file():
                return candidate
        return self._spa_fallback(path)

    def _spa_fallback(self, path: str) -> Optional[Path]:
        if self._pages_root is None:
            return None
        last_segment = path.rstrip("/").rsplit("/", 1)[-1]
        if "." in last_segment:
            return None
        index = self._pages_root / INDEX_FILE
        return index if index.is_file() else None

    async def serve(self, request: Request) -> Response:
        if request.method not in LOCAL_METHODS:
            return PlainTextResponse(
                "Method Not Allowed",
                status_code=405,
                headers={"allow": ", ".join(LOCAL_METHODS)},
            )
        file_path = self.resolve(request.url.path)
        if file_path is None:
            logger.debug(f"[Local] No asset for {request.url.path}")
            return PlainTextResponse("Not Found", status_code=404)
        return FileResponse(
            os.fspath(file_path),
            headers={"cache-control": "no-cache"},
        )
