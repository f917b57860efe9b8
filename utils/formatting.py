"""
Formatting helpers shared by the CLI and the rich renderers.
"""

from typing import Any
import json


class FormattingUtils:
    """
    Text formatting for statuses, durations and machine-readable output.
    """

    STATUS_STYLES = {
        'completed': 'green',
        'in_progress': 'blue',
        'running': 'blue',
        'pending': 'yellow',
        'paused': 'yellow',
        'idle': 'dim',
        'failed': 'red',
        'error': 'red',
        'skipped': 'magenta',
        'stopping': 'yellow',
        'stopped': 'magenta',
    }

    @staticmethod
    def format_json(data: Any) -> str:
        """Dump data as indented JSON; enums, paths and datetimes become strings."""
        return json.dumps(data, indent=2, default=str, ensure_ascii=False)

    @staticmethod
    def format_percentage(part: float, whole: float) -> str:
        ratio = part / whole if whole else 0.0
        return f"{ratio:.1%}"

    @staticmethod
    def format_duration(seconds: float) -> str:
        """
        Render an elapsed time for progress output.

        Sub-minute values keep fractions ('0.250s', '12.3s'); longer ones
        are rounded to whole seconds and never roll over into days
        ('2m 5s', '25h 0m 0s').
        """
        sign = '-' if seconds < 0 else ''
        seconds = abs(seconds)
        if seconds < 1:
            return f"{sign}{seconds:.3f}s"
        if seconds < 60:
            return f"{sign}{seconds:.1f}s"
        minutes, secs = divmod(int(round(seconds)), 60)
        hours, minutes = divmod(minutes, 60)
        if hours:
            return f"{sign}{hours}h {minutes}m {secs}s"
        return f"{sign}{minutes}m {secs}s"
