"""
Local JSON file holding the whole dataset as one blob.

The file is the durable fallback for the MongoDB store and the only store in
local mode. Writes go to a temp file that is then renamed over the target, so
a reader sees either the previous dataset or the new one. All writes and
read-modify-write cycles share one lock.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, TypeVar

from pydantic import ValidationError

from .errors import ReadFailure, WriteFailure
from ..models.dataset import Dataset

log = logging.getLogger(__name__)

T = TypeVar("T")


class FileStore:
    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dataset:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ReadFailure(f"{self.path}: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ReadFailure(f"{self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or not all(
            isinstance(data.get(key), list) for key in ("clients", "quotes", "invoices")
        ):
            raise ReadFailure(f"{self.path} does not hold a clients/quotes/invoices dataset")
        try:
            return Dataset.model_validate(data)
        except ValidationError as exc:
            raise ReadFailure(f"{self.path} holds malformed records: {exc}") from exc

    def _write(self, dataset: Dataset) -> None:
        body = json.dumps(dataset.model_dump(mode="json"), indent=2, ensure_ascii=False)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(body)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise WriteFailure(f"{self.path}: {exc}") from exc

    def _ensure_initialized(self) -> None:
        if self.path.exists():
            return
        log.info("Creating empty data file %s", self.path, extra={"store": "file"})
        self._write(Dataset())

    async def initialize(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._ensure_initialized)

    async def load(self) -> Dataset:
        async with self._lock:
            await asyncio.to_thread(self._ensure_initialized)
            return await asyncio.to_thread(self._read)

    async def save(self, dataset: Dataset) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write, dataset)

    async def update(self, mutate: Callable[[Dataset], T]) -> T:
        """Load, apply ``mutate`` in place and save, holding the lock throughout.

        An unreadable file raises ``ReadFailure`` and is left untouched.
        """
        async with self._lock:
            await asyncio.to_thread(self._ensure_initialized)
            dataset = await asyncio.to_thread(self._read)
            result = mutate(dataset)
            await asyncio.to_thread(self._write, dataset)
            return result
