# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
JSON state file storage.

Handles loading and saving the credential exhaustion record and the
generation history to JSON files.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import aiofiles
from filelock import FileLock

lib_logger = logging.getLogger("orchestrator_library")


class JsonStateFile:
    """
    A single JSON document on disk.

    Features:
    - Tolerant load (missing or corrupt file yields the default)
    - Async file I/O with aiofiles
    - Atomic writes (write to temp, then rename)
    - FileLock to keep several processes from interleaving writes
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        default_factory: Callable[[], Dict[str, Any]] = dict,
    ):
        self.file_path = Path(file_path)
        self._default_factory = default_factory
        self._file_lock = FileLock(f"{self.file_path}.lock")
        self._save_lock = asyncio.Lock()

    def load(self) -> Dict[str, Any]:
        """Reads the document synchronously. Used once at startup."""
        if not self.file_path.exists():
            lib_logger.info(f"No state file found at {self.file_path}, starting fresh")
            return self._default_factory()
        try:
            with self._file_lock:
                content = self.file_path.read_text(encoding="utf-8")
            if not content.strip():
                return self._default_factory()
            data = json.loads(content)
            if not isinstance(data, dict):
                lib_logger.error(f"State file {self.file_path} does not hold an object, ignoring it")
                return self._default_factory()
            return data
        except json.JSONDecodeError as e:
            lib_logger.error(f"Failed to parse state file {self.file_path}: {e}")
            return self._default_factory()
        except OSError as e:
            lib_logger.error(f"Failed to read state file {self.file_path}: {e}")
            return self._default_factory()

    async def save(self, data: Dict[str, Any]) -> None:
        payload = json.dumps(data, indent=2)
        async with self._save_lock:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
            with self._file_lock:
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(payload)
                os.replace(tmp_path, self.file_path)


class MemoryStateFile:
    """Drop-in for JsonStateFile that keeps the document in memory."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = json.loads(json.dumps(initial or {}))
        self.save_count = 0

    def load(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.data))

    async def save(self, data: Dict[str, Any]) -> None:
        self.data = json.loads(json.dumps(data))
        self.save_count += 1
