"""Logging configuration for tabpilot.

Two handlers are attached to the root logger:

1. **Console** -- :class:`SafeStreamHandler`, which never lets a
   Unicode encoding error escape on narrow Windows consoles (page
   titles and Japanese selectors are logged verbatim).
2. **File** -- :class:`CompressedRotatingFileHandler` writing to
   ``logs/tabpilot.log``; rotated generations are gzip-compressed
   (10 MiB per file, 5 backups).

Usage::

    from core.logging_setup import setup_logging
    setup_logging("DEBUG")
"""

import gzip
import io
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
LOG_FILE_NAME = "tabpilot.log"


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that stores rotated generations as ``.gz``."""

    def rotation_filename(self, default_name: str) -> str:
        """Append ``.gz`` to the rotated file name."""
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Gzip *source* into *dest* and remove *source*.

        Args:
            source: Path to the log file being rotated out.
            dest: Compressed destination path.
        """
        if not os.path.exists(source):
            return
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that degrades unencodable text instead of failing.

    On Windows the console may use a code page that cannot represent
    the record; the message is then re-encoded as ``cp1252`` with
    replacement characters.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            stream = self.stream
            try:
                stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(stream, "encoding", None) or 'cp1252'
                safe_msg = msg.encode(
                    encoding, errors='replace',
                ).decode(encoding)
                stream.write(safe_msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def _force_utf8_console() -> None:
    # Must run before the StreamHandler captures sys.stdout
    try:
        if hasattr(sys.stdout, 'reconfigure'):
            sys.stdout.reconfigure(encoding='utf-8', errors='replace')
            sys.stderr.reconfigure(encoding='utf-8', errors='replace')
        else:
            sys.stdout = io.TextIOWrapper(
                sys.stdout.buffer,
                encoding='utf-8',
                errors='replace',
                line_buffering=True,
            )
            sys.stderr = io.TextIOWrapper(
                sys.stderr.buffer,
                encoding='utf-8',
                errors='replace',
                line_buffering=True,
            )
    except Exception:
        os.environ['PYTHONIOENCODING'] = 'utf-8:replace'


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
) -> str:
    """Configure the root logger with console and file handlers.

    Args:
        log_level: Logging level name (``"DEBUG"``, ``"INFO"`` ...).
            Unknown names fall back to ``INFO``.
        log_dir: Directory for ``tabpilot.log``.  Defaults to
            ``logs`` relative to the working directory.

    Returns:
        Path of the active log file.
    """
    if sys.platform == "win32":
        _force_utf8_console()

    level = getattr(logging, log_level.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    log_path = os.path.join(log_dir or "logs", LOG_FILE_NAME)
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    file_handler = CompressedRotatingFileHandler(
        log_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding='utf-8',
    )
    stream_handler = SafeStreamHandler(sys.stdout)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[file_handler, stream_handler],
        force=True,
    )
    # Loop debug chatter from the engine thread is only useful when debugging it
    logging.getLogger("asyncio").setLevel(max(level, logging.WARNING))
    return log_path
