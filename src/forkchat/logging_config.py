import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format="<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    def __init__(
        self,
        path: str = ".forkchat/forkchat.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level})"


_CONSUMER_TYPES: dict[str, type[LogConsumer]] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# The REPL writes replies to stdout, so only warnings reach the console by default.
_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Configure loguru sinks. Returns a description of each registered consumer."""
    logger.remove()

    if consumers is None:
        consumers = _DEFAULT_CONSUMERS

    descriptions: list[str] = []
    for config in consumers:
        sink_level = config.get("level", level)
        consumer = build_consumer(config)
        if consumer is None:
            continue
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions


def build_consumer(config: dict[str, Any]) -> LogConsumer | None:
    """Instantiate the consumer named by ``config["type"]``; ``None`` if unknown."""
    sink_type = config.get("type", "")
    cls = _CONSUMER_TYPES.get(sink_type)
    if cls is None:
        logger.warning(f"Unknown log consumer type: {sink_type!r}")
        return None
    return cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
