"""Logging options and their application to every registered logger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from svckit.logger import LogLevel, get_loggers, to_log_level

DEFAULT_JSON_OUTPUT = False
DEFAULT_OUTPUT_LEVEL = "info"
UNDEFINED_APP_ID = ""

StringVar = Callable[[Callable[[str], None], str, str, str], None]
BoolVar = Callable[[Callable[[bool], None], str, bool, str], None]


@dataclass
class Options:
    """Logging options."""

    json_format_enabled: bool = DEFAULT_JSON_OUTPUT
    output_level: str = DEFAULT_OUTPUT_LEVEL
    app_id: str = UNDEFINED_APP_ID

    def set_output_level(self, output_level: str) -> None:
        """Set the output level; raise ValueError for an unknown level."""
        if to_log_level(output_level) is LogLevel.UNDEFINED:
            raise ValueError(f"undefined Log Output Level: {output_level}")
        self.output_level = output_level

    def set_app_id(self, app_id: str) -> None:
        self.app_id = app_id

    def attach_cmd_flags(
        self, string_var: Optional[StringVar], bool_var: Optional[BoolVar]
    ) -> None:
        """Register the log flags.

        Each registration function is called as ``fn(setter, name, default, usage)``,
        where ``setter`` stores a parsed value into these options.
        """
        if string_var is not None:

            def set_level(value: str) -> None:
                self.output_level = value

            string_var(
                set_level,
                "log-level",
                DEFAULT_OUTPUT_LEVEL,
                "Options are debug, info, warn, error, or fatal (default info)",
            )
        if bool_var is not None:

            def set_json(value: bool) -> None:
                self.json_format_enabled = value

            bool_var(
                set_json,
                "log-as-json",
                DEFAULT_JSON_OUTPUT,
                "print log as JSON (default false)",
            )


def default_options() -> Options:
    """Return the default options."""
    return Options()


def apply_options_to_loggers(options: Options) -> None:
    """Apply ``options`` to every registered logger.

    Formatting and app id are applied first; an unknown level then raises ValueError.
    """
    loggers = get_loggers().values()

    for logger in loggers:
        logger.enable_json_output(options.json_format_enabled)
        if options.app_id != UNDEFINED_APP_ID:
            logger.set_app_id(options.app_id)

    level = to_log_level(options.output_level)
    if level is LogLevel.UNDEFINED:
        raise ValueError(f"invalid value for --log-level: {options.output_level}")

    for logger in loggers:
        logger.set_output_level(level)