"""
Module containing the configuration models for the scheduler, and functions for loading them.

A configuration file is YAML (or JSON) with kebab-case keys:

.. code-block:: yaml

    tick-interval: 1s
    error-backoff: 5s
    max-workers: 4

    state-store:
      path: ${STATE_DIR}/schedule
      autosave: true

    log-handlers:
      - type: console
        level: INFO
      - type: file
        path: logs/scheduler.log
        level: DEBUG
        retention: 7

Environment variables on the form ``${NAME}`` are expanded when loading YAML. Load it with

.. code-block:: python

    config = load_file(Path("config.yaml"), SchedulerConfig)
    setup_logging(config.log_handlers)
    scheduler = Scheduler.from_config(config)
"""

import json
import logging
import os
import re
import time
from enum import Enum
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Annotated, Any, Literal, TextIO, TypeVar

import yaml
from humps import kebabize
from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler, ValidationError
from pydantic_core import CoreSchema, core_schema
from typing_extensions import assert_never

from simplescheduler.exceptions import InvalidConfigError

__all__ = [
    "ConfigFormat",
    "ConfigModel",
    "LogConsoleHandlerConfig",
    "LogFileHandlerConfig",
    "LogHandlerConfig",
    "LogLevel",
    "SchedulerConfig",
    "StateStoreConfig",
    "TimeIntervalConfig",
    "load_dict",
    "load_file",
    "load_io",
    "setup_logging",
]


_INTERVAL_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 60.0 * 60, "d": 60.0 * 60 * 24}
_INTERVAL_PATTERN = re.compile(r"(\d+(?:\.\d+)?)[ \t]*(ms|s|m|h|d)?")


class ConfigModel(BaseModel):
    """
    Base model for configuration objects, setting the correct pydantic options for scheduler config.
    """

    model_config = ConfigDict(
        alias_generator=kebabize,
        populate_by_name=True,
        extra="forbid",
    )


class TimeIntervalConfig:
    """
    Configuration parameter for setting a time interval, such as ``500ms``, ``2s``, ``5m``, ``1h`` or ``1d``. A bare
    number is read as seconds.
    """

    def __init__(self, expression: str | int | float) -> None:
        self._expression = str(expression).strip()
        self._interval = TimeIntervalConfig._parse_expression(self._expression)

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: GetCoreSchemaHandler) -> CoreSchema:  # noqa: ANN401
        return core_schema.no_info_after_validator_function(
            cls,
            handler(str | int | float),
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TimeIntervalConfig):
            return NotImplemented
        return self._interval == other._interval

    def __hash__(self) -> int:
        return hash(self._interval)

    @staticmethod
    def _parse_expression(expression: str) -> float:
        match = _INTERVAL_PATTERN.fullmatch(expression)
        if not match:
            raise InvalidConfigError(f"Invalid interval pattern: {expression}")

        number, unit = match.groups()
        # No unit means seconds
        seconds = float(number) * _INTERVAL_UNITS[unit or "s"]
        if seconds <= 0:
            raise InvalidConfigError(f"Interval must be positive: {expression}")

        return seconds

    @property
    def seconds(self) -> float:
        return self._interval

    def __float__(self) -> float:
        return float(self._interval)

    def __str__(self) -> str:
        return self._expression

    def __repr__(self) -> str:
        return self._expression


class LogLevel(Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"

    @classmethod
    def _missing_(cls, value: object) -> "LogLevel | None":
        # Accept any casing, "debug" and "Debug" alike
        if isinstance(value, str) and value.upper() in cls.__members__:
            return cls[value.upper()]
        return None

    @property
    def level(self) -> int:
        """
        The matching level constant from the ``logging`` module.
        """
        return getattr(logging, self.value)


class LogFileHandlerConfig(ConfigModel):
    """
    Configuration for a log handler that writes to a file, with daily rotation.
    """

    type: Literal["file"]
    path: Path
    level: LogLevel
    retention: int = 7


class LogConsoleHandlerConfig(ConfigModel):
    """
    Configuration for a log handler that writes to standard error.
    """

    type: Literal["console"]
    level: LogLevel


LogHandlerConfig = Annotated[LogFileHandlerConfig | LogConsoleHandlerConfig, Field(discriminator="type")]


class StateStoreConfig(ConfigModel):
    """
    Where to persist scheduler state. The ``.json`` suffix is added to the path if missing.
    """

    path: Path
    autosave: bool = True


class SchedulerConfig(ConfigModel):
    tick_interval: TimeIntervalConfig = Field(default_factory=lambda: TimeIntervalConfig("1s"))
    error_backoff: TimeIntervalConfig = Field(default_factory=lambda: TimeIntervalConfig("5s"))
    max_workers: int = Field(default=4, ge=1)
    state_store: StateStoreConfig | None = None
    log_handlers: list[LogHandlerConfig] = Field(
        default_factory=lambda: [LogConsoleHandlerConfig(type="console", level=LogLevel.INFO)]
    )


_T = TypeVar("_T", bound=ConfigModel)


class ConfigFormat(Enum):
    JSON = "json"
    YAML = "yaml"


_FILE_FORMATS = {".yaml": ConfigFormat.YAML, ".yml": ConfigFormat.YAML, ".json": ConfigFormat.JSON}
_ENV_REFERENCE = re.compile(r"\$\{([^}^{]+)\}")


class _EnvExpandingLoader(yaml.SafeLoader):
    """
    YAML loader expanding ``${NAME}`` references in plain scalars. An expanded ``true`` or ``false`` becomes a bool.
    """


def _construct_env_scalar(loader: yaml.SafeLoader, node: yaml.ScalarNode) -> bool | str:
    expanded = os.path.expandvars(loader.construct_scalar(node))
    if expanded.lower() in ("true", "false"):
        return expanded.lower() == "true"
    return expanded


_EnvExpandingLoader.add_implicit_resolver("!env", _ENV_REFERENCE, None)
_EnvExpandingLoader.add_constructor("!env", _construct_env_scalar)


def _parse_yaml(stream: TextIO) -> dict[str, Any]:
    try:
        data = yaml.load(stream, Loader=_EnvExpandingLoader)  # noqa: S506
    except yaml.YAMLError as e:
        raise InvalidConfigError(f"Invalid YAML: {e!s}") from e

    # An empty document is an empty config
    data = {} if data is None else data
    if not isinstance(data, dict):
        raise InvalidConfigError("The root node of the YAML document must be an object")
    return data


def _parse_json(stream: TextIO) -> Any:
    try:
        return json.load(stream)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Invalid JSON: {e!s}") from e


def load_file(path: Path, schema: type[_T]) -> _T:
    """
    Load a configuration file from the given path and parse it into the specified schema.

    Args:
        path: Path to the configuration file, either ``.yaml``, ``.yml`` or ``.json``.
        schema: The schema class to parse the configuration into.

    Returns:
        An instance of the schema populated with the configuration data.

    Raises:
        InvalidConfigError: If the file type is unknown or the configuration is invalid.
    """
    file_format = _FILE_FORMATS.get(path.suffix)
    if file_format is None:
        raise InvalidConfigError(f"Unknown file type {path.suffix}")

    with open(path) as stream:
        return load_io(stream, file_format, schema)


def load_io(stream: TextIO, file_format: ConfigFormat, schema: type[_T]) -> _T:
    """
    Load a configuration from a stream and parse it into the specified schema.

    Raises:
        InvalidConfigError: If the configuration can not be parsed or is invalid.
    """
    data = _parse_json(stream) if file_format is ConfigFormat.JSON else _parse_yaml(stream)
    return load_dict(data, schema)


def _format_location(loc: tuple[int | str, ...]) -> str:
    """
    Render a pydantic error location as a path, such as ``log-handlers[0].level``.
    """
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path


def _describe_error(error: Any) -> str:
    # Errors raised from our own validators read better than pydantic's wrapped message
    cause = error.get("ctx", {}).get("error")
    message = str(cause) if isinstance(cause, ValueError | AssertionError) else error["msg"]
    return f"{message}: {_format_location(error['loc'])}"


def load_dict(data: dict, schema: type[_T]) -> _T:
    """
    Parse a dictionary into the specified schema.

    Raises:
        InvalidConfigError: If the configuration is invalid. The message lists every failing field.
    """
    try:
        return schema.model_validate(data)
    except ValidationError as e:
        details = [_describe_error(error) for error in e.errors()]
        raise InvalidConfigError(", ".join(details), details=details) from e


class RobustFileHandler(TimedRotatingFileHandler):
    """
    A TimedRotatingFileHandler that creates its log directory, and raises ``PermissionError`` up front if the
    directory is not writable so the caller can fall back to console logging.
    """

    def __init__(self, filename: Path, backup_count: int = 7) -> None:
        directory = filename.parent
        directory.mkdir(parents=True, exist_ok=True)
        if not os.access(directory, os.W_OK):
            raise PermissionError(f"Cannot write to directory: {directory}")

        super().__init__(filename, when="midnight", utc=True, backupCount=backup_count)


def setup_logging(handlers: list[LogHandlerConfig], level_override: LogLevel | None = None) -> None:
    """
    Configure the root logger from a list of handler configs, replacing any handlers already set.

    Args:
        handlers: Console and file handler configs.
        level_override: Use this level for every handler instead of the configured ones.
    """
    levels = [(level_override or h.level).level for h in handlers] or [logging.INFO]

    root = logging.getLogger()
    root.setLevel(min(levels))

    fmt = logging.Formatter(
        "%(asctime)s.%(msecs)03d UTC [%(levelname)-8s] %(threadName)s - %(message)s",
        "%Y-%m-%d %H:%M:%S",
    )
    # Log in UTC
    fmt.converter = time.gmtime

    for handler in list(root.handlers):
        root.removeHandler(handler)

    for handler_config in handlers:
        level = (level_override or handler_config.level).level
        match handler_config:
            case LogConsoleHandlerConfig():
                sh = logging.StreamHandler()
                sh.setFormatter(fmt)
                sh.setLevel(level)
                root.addHandler(sh)

            case LogFileHandlerConfig() as file_handler:
                try:
                    fh = RobustFileHandler(file_handler.path, backup_count=file_handler.retention)
                    fh.setFormatter(fmt)
                    fh.setLevel(level)
                    root.addHandler(fh)
                except OSError as e:
                    if not any(type(h) is logging.StreamHandler for h in root.handlers):
                        sh = logging.StreamHandler()
                        sh.setFormatter(fmt)
                        sh.setLevel(level)
                        root.addHandler(sh)
                    logging.getLogger(__name__).warning(
                        f"Could not create or write to log file {file_handler.path}: {e}. Defaulted to console logging."
                    )

            case _:
                assert_never(handler_config)
