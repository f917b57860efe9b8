"""
File utilities module for TaskPilot.

This module provides common file operations used throughout the application.
"""

import os
import tempfile
import hashlib
from pathlib import Path
from typing import Iterable, List, Optional
import logging


class FileUtils:
    """
    Utility class for file operations.
    """

    logger = logging.getLogger(__name__)

    @staticmethod
    def find_files(directory: Path, patterns: Iterable[str]) -> List[Path]:
        """
        Find files below a directory matching glob patterns.

        Args:
            directory: Directory to search in
            patterns: Glob patterns relative to the directory

        Returns:
            Sorted, de-duplicated list of file paths
        """
        if not directory.exists():
            FileUtils.logger.warning(f"Directory does not exist: {directory}")
            return []

        files = set()
        for pattern in patterns:
            for path in directory.glob(pattern):
                if path.is_file():
                    files.add(path)
        return sorted(files)

    @staticmethod
    def static_prefix(pattern: str) -> str:
        """
        Leading part of a glob pattern that contains no wildcards.

        Args:
            pattern: Glob pattern such as ".kiro/specs/*/tasks.md"

        Returns:
            Directory prefix such as ".kiro/specs"
        """
        parts = []
        for part in Path(pattern).parts:
            if any(char in part for char in '*?['):
                break
            parts.append(part)
        if parts and len(parts) == len(Path(pattern).parts):
            parts = parts[:-1]
        return str(Path(*parts)) if parts else ''

    @staticmethod
    def safe_read_file(file_path: Path, encoding: str = 'utf-8') -> Optional[str]:
        """
        Read a file, returning None instead of raising when it is unreadable.

        Args:
            file_path: Path to the file to read
            encoding: File encoding

        Returns:
            File content as string or None if error occurred
        """
        if not file_path.exists():
            return None
        try:
            with open(file_path, 'r', encoding=encoding, errors='replace') as f:
                return f.read()
        except OSError as e:
            FileUtils.logger.error(f"Error reading file {file_path}: {str(e)}")
            return None

    @staticmethod
    def atomic_write_file(file_path: Path, content: str, encoding: str = 'utf-8') -> None:
        """
        Write content to a temporary file next to the target, then replace it.

        Readers see either the old or the new content, never a partial write.

        Args:
            file_path: Path to the file to write
            content: Content to write
            encoding: File encoding
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{file_path.name}.", suffix=".tmp",
                                         dir=str(file_path.parent))
        try:
            with os.fdopen(fd, 'w', encoding=encoding, newline='') as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if file_path.exists():
                os.chmod(temp_name, file_path.stat().st_mode & 0o7777)
            os.replace(temp_name, file_path)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

    @staticmethod
    def get_content_hash(content: str) -> str:
        """
        Hash of document content, used as a cache key component.

        Args:
            content: Text to hash

        Returns:
            Hex digest
        """
        return hashlib.sha256(content.encode('utf-8')).hexdigest()
