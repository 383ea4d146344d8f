"""
Atomic file operations.

Provides write-to-temp-then-replace JSON writes so that readers never
observe a partially written file.
"""

import os
import json
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional


class AtomicFileWriter:
    """
    Atomic file writer using temp file + atomic replace.

    Writes to a temporary file in the target's directory, re-reads it to
    confirm it parses, runs an optional hook, then replaces the target with
    os.replace(). Any failure before the replace leaves the target untouched.
    """

    @staticmethod
    def write_json(
        filepath: Path,
        data: Any,
        indent: int = 2,
        before_replace: Optional[Callable[[], None]] = None
    ) -> None:
        """
        Atomically write JSON data to a file.

        Args:
            filepath: Target file path
            data: Data to serialize as JSON
            indent: JSON indentation level
            before_replace: Called after the temp file validated and before
                the rename (used for backups of the previous file)

        Raises:
            ValueError: If the temp file does not parse back
            OSError: If the write fails (temp file is cleaned up)
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        temp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode='w',
                dir=filepath.parent,
                prefix=f".{filepath.name}.",
                suffix='.tmp',
                delete=False
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                json.dump(data, tmp_file, indent=indent, default=str)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())

            with open(temp_path, 'r') as f:
                try:
                    json.load(f)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Serialized form of {filepath.name} is not valid JSON: {e}") from e

            if before_replace is not None:
                before_replace()

            # Atomic on POSIX and Windows for same-directory paths
            os.replace(temp_path, filepath)
            temp_path = None

        finally:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()

    @staticmethod
    def read_json(filepath: Path, default: Any = None) -> Any:
        """
        Read JSON file with safe defaults.

        Args:
            filepath: File to read
            default: Default value if file doesn't exist or is invalid

        Returns:
            Parsed JSON data or default value
        """
        filepath = Path(filepath)

        if not filepath.exists():
            return default

        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError):
            return default

    @staticmethod
    def read_json_strict(filepath: Path) -> Any:
        """
        Read JSON file, raising on any problem.

        Raises:
            FileNotFoundError: If the file is missing
            json.JSONDecodeError: If the content does not parse
        """
        with open(filepath, 'r') as f:
            return json.load(f)
