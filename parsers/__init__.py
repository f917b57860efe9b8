"""Parsers module for TaskPilot."""

from .base_parser import BaseParser
from .task_parser import TaskParser

__all__ = ['BaseParser', 'TaskParser']
