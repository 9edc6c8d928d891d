import sys
from contextlib import AbstractContextManager
from pathlib import Path
from typing import Any

from loguru import logger

NO_SESSION = "-"

# stdout is the chat itself, so only the file sink is on unless configured.
DEFAULT_LOG_FILE = "bizplan_chat.log"

_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | session={extra[session]} | "
    "{name}:{function}:{line} - {message}"
)
_STDERR_FORMAT = "<level>{level:<8}</level> | <yellow>{extra[session]}</yellow> | <level>{message}</level>"


def session_context(session_key: str | None) -> AbstractContextManager:
    """Tag every log line written inside the block (and tasks started in it) with the session."""
    return logger.contextualize(session=session_key[:8] if session_key else NO_SESSION)


def _add_file(level: str, path: str = DEFAULT_LOG_FILE, rotation: str = "10 MB", retention: int = 3) -> str:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    logger.add(path, level=level, format=_FILE_FORMAT, rotation=rotation, retention=retention)
    return f"file ({path}, {level})"


def _add_stderr(level: str) -> str:
    logger.add(sys.stderr, level=level, format=_STDERR_FORMAT)
    return f"stderr ({level})"


_SINKS = {
    "file": _add_file,
    "console": _add_stderr,
}


def setup_logging(level: str = "INFO", consumers: list[dict[str, Any]] | None = None) -> list[str]:
    """Replace loguru's sinks with the configured ones and describe them.

    ``consumers`` is the ``LogConsumers`` list from config.json, e.g.
    ``[{"type": "file", "path": "logs/chat.log"}, {"type": "console", "level": "WARNING"}]``.
    """
    logger.remove()
    logger.configure(extra={"session": NO_SESSION})

    descriptions: list[str] = []
    for entry in consumers if consumers is not None else [{"type": "file", "path": DEFAULT_LOG_FILE}]:
        options = dict(entry)
        sink_type = options.pop("type", "")
        add_sink = _SINKS.get(sink_type)
        if add_sink is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue
        descriptions.append(add_sink(options.pop("level", level), **options))
    return descriptions
