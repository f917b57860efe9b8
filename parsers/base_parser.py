"""
Base parser module for TaskPilot.

This module provides a base class for document parsers with common
file handling.
"""

from pathlib import Path
from typing import Any, List
from abc import ABC, abstractmethod
import logging

from ..core.errors import ParseError


class BaseParser(ABC):
    """
    Abstract base class for all parsers in TaskPilot.
    """

    def __init__(self, config=None):
        """
        Initialize the base parser.

        Args:
            config: Application configuration (optional)
        """
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def parse(self, source: str, **kwargs) -> List[Any]:
        """
        Parse the source and return structured data.

        Args:
            source: Path of the document to parse

        Returns:
            Parsed items
        """
        pass

    @abstractmethod
    def parse_content(self, content: str, path: str = "<string>", **kwargs) -> List[Any]:
        """
        Parse document content already held in memory.

        Args:
            content: Document text
            path: Path used in error messages and source locations

        Returns:
            Parsed items
        """
        pass

    def validate_source(self, source: str) -> bool:
        """
        Validate that the source exists and is accessible.

        Args:
            source: Source path to validate

        Returns:
            True if source is valid, False otherwise
        """
        path = Path(source)
        if not path.exists():
            self.logger.error(f"Source does not exist: {source}")
            return False

        if path.is_dir():
            self.logger.error(f"Source is a directory, expected a file: {source}")
            return False

        return True

    def read_file(self, file_path: str, encoding: str = 'utf-8') -> str:
        """
        Read a document.

        Args:
            file_path: Path to the file to read
            encoding: File encoding (default: utf-8)

        Returns:
            File content as string

        Raises:
            ParseError: If the file cannot be read
        """
        try:
            with open(file_path, 'r', encoding=encoding, newline='') as f:
                return f.read()
        except OSError as e:
            raise ParseError(f"Cannot read document: {e}", path=file_path) from e

