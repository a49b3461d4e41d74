"""Folder scanner producing a fingerprinted file inventory."""

import asyncio
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .fingerprint import compute_file_hash_async, DEFAULT_CHUNK_SIZE
from ..database.models import FolderConfigResponse
from ..utils.logging import get_logger, timed


HIDDEN_PREFIX = "."


@dataclass
class ScannedFile:
    """A file that passed every filter, with its fingerprint."""

    path: str
    content_hash: str
    size: int
    last_modified: int  # epoch ms
    folder_config_id: int
    group_ids: List[str] = field(default_factory=list)

    @property
    def file_name(self) -> str:
        return os.path.basename(self.path)


@dataclass
class _Candidate:
    path: str
    size: int
    last_modified: int


class FolderScanner:
    """Walks folder configurations, filters entries and fingerprints survivors."""

    def __init__(self, hash_concurrency: int = 4, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.hash_concurrency = hash_concurrency
        self.chunk_size = chunk_size
        self.logger = get_logger(self.__class__.__name__)

    @timed
    async def scan_folders(self, folders: List[FolderConfigResponse]) -> List[ScannedFile]:
        """Scan several folder configurations into one inventory."""
        inventory: List[ScannedFile] = []
        for folder in folders:
            inventory.extend(await self.scan_folder(folder))
        return inventory

    async def scan_folder(self, folder: FolderConfigResponse) -> List[ScannedFile]:
        """Scan one folder configuration.

        Filters run per entry in this order: hidden names, subfolder descent,
        extension, size. Only files passing all of them are hashed. Unreadable
        subtrees and files that vanish before hashing are logged and skipped.
        """
        candidates, skipped = await asyncio.to_thread(self._collect_candidates, folder)

        semaphore = asyncio.Semaphore(self.hash_concurrency)

        async def fingerprint(candidate: _Candidate) -> Optional[ScannedFile]:
            async with semaphore:
                try:
                    content_hash = await compute_file_hash_async(candidate.path, self.chunk_size)
                except OSError as e:
                    self.logger.warning("Skipping unreadable file", file_path=candidate.path, error=str(e))
                    return None

            return ScannedFile(
                path=candidate.path,
                content_hash=content_hash,
                size=candidate.size,
                last_modified=candidate.last_modified,
                folder_config_id=folder.id,
                group_ids=list(folder.group_ids or [])
            )

        results = await asyncio.gather(*(fingerprint(c) for c in candidates))
        scanned = [result for result in results if result is not None]

        self.logger.info(
            "Folder scanned",
            folder_config_id=folder.id,
            local_path=folder.local_path,
            files_found=len(scanned),
            files_filtered=skipped
        )

        return scanned

    def _collect_candidates(self, folder: FolderConfigResponse) -> Tuple[List[_Candidate], int]:
        """Walk the tree and apply every filter except fingerprinting."""
        extensions = set(folder.file_extension_filter or [])
        max_bytes = folder.max_file_size_mb * 1024 * 1024 if folder.max_file_size_mb else None

        candidates: List[_Candidate] = []
        skipped = 0

        def on_error(error: OSError):
            self.logger.warning(
                "Skipping unreadable directory",
                directory=getattr(error, "filename", None),
                error=str(error)
            )

        for root, dirnames, filenames in os.walk(folder.local_path, onerror=on_error):
            if folder.ignore_hidden:
                dirnames[:] = [d for d in dirnames if not d.startswith(HIDDEN_PREFIX)]
            if not folder.include_subfolders:
                dirnames[:] = []

            for name in filenames:
                if folder.ignore_hidden and name.startswith(HIDDEN_PREFIX):
                    skipped += 1
                    continue

                if extensions and os.path.splitext(name)[1].lower() not in extensions:
                    skipped += 1
                    continue

                full_path = os.path.join(root, name)
                try:
                    stat = os.stat(full_path)
                except OSError as e:
                    self.logger.warning("Skipping vanished file", file_path=full_path, error=str(e))
                    continue

                if max_bytes is not None and stat.st_size > max_bytes:
                    skipped += 1
                    continue

                candidates.append(_Candidate(
                    path=full_path,
                    size=stat.st_size,
                    last_modified=int(stat.st_mtime * 1000)
                ))

        return candidates, skipped

    @staticmethod
    def file_exists(path: str) -> bool:
        """Check a tracked path against disk."""
        return os.path.isfile(path)
