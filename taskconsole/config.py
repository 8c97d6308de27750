"""Console configuration from command-line arguments and TOML config files."""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import time
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

import platformdirs
import tomli_w

from .options import ColorToggles, Palette, RetainFor, ViewOptions, parse_true_color

__all__ = [
    "ConfigError",
    "OptionalCmd",
    "ConfigFile",
    "ConfigPath",
    "Config",
    "default_target_addr",
    "default_log_directory",
    "main",
]

log = logging.getLogger(__name__)

PROG = "taskconsole"
LOG_ENV_VAR = "TASKCONSOLE_LOG"
CONFIG_FILE_NAME = "console.toml"


class ConfigError(Exception):
    """Raised when the configuration cannot be read or is invalid."""


def _first(preferred, fallback):
    return fallback if preferred is None else preferred


# --- addresses and log filters -------------------------------------------

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*$")


def _parse_uri(text: str) -> str:
    """Validate a target address and return it in canonical form."""
    if not text or any(c.isspace() or ord(c) < 0x20 or c == "\x7f" for c in text):
        raise ValueError(f"invalid URI: {text!r}")
    if "://" not in text:
        return text
    scheme, rest = text.split("://", 1)
    if not _SCHEME.match(scheme):
        raise ValueError(f"invalid URI scheme in {text!r}")
    authority, _, path = rest.partition("/")
    if not authority:
        raise ValueError(f"URI has no authority: {text!r}")
    return f"{scheme}://{authority}/{path}"


_LEVELS = {
    "off": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": 5,
}


def _filter_directives(text: str) -> tuple[str | None, dict[str, str]]:
    """Split a log filter into its global level and per-target levels."""
    global_level: str | None = None
    targets: dict[str, str] = {}
    for raw in text.split(","):
        directive = raw.strip()
        if not directive:
            continue
        if "=" in directive:
            target, level = directive.rsplit("=", 1)
            if level.strip().lower() not in _LEVELS:
                raise ValueError(f"invalid log level {level!r}")
            targets[target.split("[", 1)[0].strip()] = level.strip().lower()
        elif directive.lower() in _LEVELS:
            global_level = directive.lower()
        else:
            targets[directive.split("[", 1)[0]] = "trace"
    return global_level, targets


def _validate_filter(text: str) -> str:
    try:
        _filter_directives(text)
    except ValueError as error:
        raise ConfigError(f"failed to parse log filter {text!r}: {error}") from error
    return text


def default_target_addr() -> str:
    """The address connected to when none is given."""
    return _parse_uri("http://127.0.0.1:6669")


def default_log_directory() -> Path:
    """The directory logs are written to when none is given."""
    return Path("/", "tmp", PROG, "logs")


# --- subcommands ----------------------------------------------------------


@dataclass(frozen=True)
class OptionalCmd:
    """A subcommand that replaces connecting to a process."""

    name: str
    install: bool = False
    shell: str | None = None

    GEN_CONFIG: ClassVar[str] = "gen-config"
    GEN_COMPLETION: ClassVar[str] = "gen-completion"
    SHELLS: ClassVar[tuple[str, ...]] = ("bash", "elvish", "fish", "powershell", "zsh")

    def __post_init__(self) -> None:
        if self.name == self.GEN_CONFIG:
            return
        if self.name == self.GEN_COMPLETION:
            if self.shell not in self.SHELLS:
                raise ValueError(f"unsupported shell: {self.shell!r}")
            return
        raise ValueError(f"unknown subcommand: {self.name!r}")

    @classmethod
    def gen_config(cls) -> OptionalCmd:
        return cls(cls.GEN_CONFIG)

    @classmethod
    def gen_completion(cls, shell: str, install: bool = False) -> OptionalCmd:
        return cls(cls.GEN_COMPLETION, install=install, shell=shell)


# --- config file ----------------------------------------------------------


def _check_keys(table: dict, allowed: tuple[str, ...], where: str) -> None:
    unknown = sorted(set(table) - set(allowed))
    if unknown:
        raise ConfigError(f"unknown field {unknown[0]!r} in {where}")


def _opt(table: dict, key: str, kind: type, where: str) -> Any:
    value = table.get(key)
    if value is not None and not isinstance(value, kind):
        raise ConfigError(f"{where}.{key} must be a {kind.__name__}")
    return value


@dataclass(frozen=True)
class _Charset:
    lang: str | None = None
    ascii_only: bool | None = None


@dataclass(frozen=True)
class _Colors:
    enabled: bool | None = None
    truecolor: bool | None = None
    palette: Palette | None = None
    enable: ColorToggles | None = None


def _without_none(values: dict) -> dict:
    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True)
class ConfigFile:
    """The contents of a ``console.toml`` file."""

    default_target_addr: str | None = None
    log: str | None = None
    log_directory: Path | None = None
    retention: RetainFor | None = None
    charset: _Charset | None = None
    colors: _Colors | None = None

    @classmethod
    def from_toml(cls, text: str) -> ConfigFile:
        """Parse a config file, rejecting unknown keys and wrong types."""
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as error:
            raise ConfigError(str(error)) from error
        _check_keys(
            data,
            ("default_target_addr", "log", "log_directory", "retention", "charset", "colors"),
            "config",
        )

        log_directory = _opt(data, "log_directory", str, "config")
        retention_text = _opt(data, "retention", str, "config")
        retention = None
        if retention_text is not None:
            try:
                retention = (
                    RetainFor(None) if retention_text == "" else RetainFor.parse(retention_text)
                )
            except ValueError as error:
                raise ConfigError(f"invalid retention {retention_text!r}: {error}") from error

        charset = None
        if "charset" in data:
            table = _opt(data, "charset", dict, "config")
            _check_keys(table, ("lang", "ascii_only"), "charset")
            charset = _Charset(
                lang=_opt(table, "lang", str, "charset"),
                ascii_only=_opt(table, "ascii_only", bool, "charset"),
            )

        colors = None
        if "colors" in data:
            table = _opt(data, "colors", dict, "config")
            _check_keys(table, ("enabled", "truecolor", "palette", "enable"), "colors")
            palette_text = _opt(table, "palette", str, "colors")
            palette = None
            if palette_text is not None:
                try:
                    palette = Palette.parse(palette_text)
                except ValueError as error:
                    raise ConfigError(str(error)) from error
            enable = None
            if "enable" in table:
                toggles = _opt(table, "enable", dict, "colors")
                _check_keys(toggles, ("durations", "terminated"), "colors.enable")
                enable = ColorToggles(
                    durations=_opt(toggles, "durations", bool, "colors.enable"),
                    terminated=_opt(toggles, "terminated", bool, "colors.enable"),
                )
            colors = _Colors(
                enabled=_opt(table, "enabled", bool, "colors"),
                truecolor=_opt(table, "truecolor", bool, "colors"),
                palette=palette,
                enable=enable,
            )

        return cls(
            default_target_addr=_opt(data, "default_target_addr", str, "config"),
            log=_opt(data, "log", str, "config"),
            log_directory=None if log_directory is None else Path(log_directory),
            retention=retention,
            charset=charset,
            colors=colors,
        )

    @classmethod
    def from_config(cls, config: Config) -> ConfigFile:
        """Describe a configuration as config file contents."""
        view = config.view_options
        return cls(
            default_target_addr=config.target_address,
            log=config.env_filter,
            log_directory=config.log_directory,
            retention=config.retention,
            charset=_Charset(lang=view.lang, ascii_only=view.ascii_only),
            colors=_Colors(
                enabled=not view.no_colors,
                truecolor=view.truecolor,
                palette=view.palette,
                enable=view.toggles,
            ),
        )

    def to_toml(self) -> str:
        """Render the config file as TOML, leaving out unset values."""
        data: dict[str, Any] = _without_none(
            {
                "default_target_addr": self.default_target_addr,
                "log": self.log,
                "log_directory": None if self.log_directory is None else str(self.log_directory),
                "retention": None if self.retention is None else str(self.retention),
            }
        )
        if self.charset is not None:
            data["charset"] = _without_none(
                {"lang": self.charset.lang, "ascii_only": self.charset.ascii_only}
            )
        if self.colors is not None:
            colors = _without_none(
                {
                    "enabled": self.colors.enabled,
                    "truecolor": self.colors.truecolor,
                    "palette": None if self.colors.palette is None else self.colors.palette.value,
                }
            )
            if self.colors.enable is not None:
                colors["enable"] = _without_none(
                    {
                        "durations": self.colors.enable.durations,
                        "terminated": self.colors.enable.terminated,
                    }
                )
            data["colors"] = colors
        return tomli_w.dumps(data)

    def to_config(self) -> Config:
        """Turn the file contents into a configuration."""
        target = None
        if self.default_target_addr is not None:
            try:
                target = _parse_uri(self.default_target_addr)
            except ValueError as error:
                raise ConfigError(
                    f"failed to parse target address {self.default_target_addr!r} as URI"
                ) from error

        env_filter = None
        if self.log is not None and self.log != "off":
            env_filter = _validate_filter(self.log)

        charset = self.charset or _Charset()
        colors = self.colors or _Colors()
        enable = colors.enable
        return Config(
            target_address=target,
            env_filter=env_filter,
            log_directory=self.log_directory,
            retention=self.retention,
            view_options=ViewOptions(
                no_colors=False if colors.enabled is None else not colors.enabled,
                lang=charset.lang,
                ascii_only=charset.ascii_only,
                truecolor=colors.truecolor,
                palette=colors.palette,
                toggles=ColorToggles(
                    durations=None if enable is None else enable.color_durations(),
                    terminated=None if enable is None else enable.color_terminated(),
                ),
            ),
            subcmd=None,
        )


class ConfigPath(Enum):
    """Where config files are looked for."""

    HOME = "home"
    CURRENT = "current"

    def path(self) -> Path | None:
        if self is ConfigPath.HOME:
            directory = platformdirs.user_config_dir(PROG, appauthor=False, roaming=True)
            return Path(directory) / CONFIG_FILE_NAME
        return Path(".", CONFIG_FILE_NAME)


# --- command line ---------------------------------------------------------


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        raise ConfigError(f"{self.prog}: {message}")


def _bool_arg(text: str) -> bool:
    if text == "true":
        return True
    if text == "false":
        return False
    raise ValueError(f"expected 'true' or 'false', got {text!r}")


def _retain_for_arg(text: str) -> RetainFor:
    return RetainFor.parse(text)


_VALUE_OPTIONS = (
    "--log",
    "--log-dir",
    "--retain-for",
    "--lang",
    "--ascii-only",
    "--colorterm",
    "--palette",
    "--no-duration-colors",
    "--no-terminated-colors",
)
_FLAG_OPTIONS = ("--no-colors",)
_SUBCOMMANDS = (OptionalCmd.GEN_CONFIG, OptionalCmd.GEN_COMPLETION)


def _main_parser() -> _Parser:
    parser = _Parser(
        prog=PROG,
        description="Watch the tasks and resources of an instrumented async process.",
        allow_abbrev=False,
    )
    parser.add_argument("target_addr", nargs="?", help="address of the process to connect to")
    parser.add_argument("--log", dest="env_filter", help="log level filter for diagnostics")
    parser.add_argument("--log-dir", dest="log_directory", type=Path)
    parser.add_argument("--retain-for", dest="retention", type=_retain_for_arg)
    parser.add_argument("--no-colors", action="store_true", help="disable ANSI colors")
    parser.add_argument("--lang", help="override the terminal's language")
    parser.add_argument("--ascii-only", type=_bool_arg)
    parser.add_argument("--colorterm", choices=("24bit", "truecolor"))
    parser.add_argument("--palette", choices=[palette.value for palette in Palette])
    parser.add_argument("--no-duration-colors", type=_bool_arg)
    parser.add_argument("--no-terminated-colors", type=_bool_arg)
    return parser


def _subcommand_parser(name: str) -> _Parser:
    parser = _Parser(prog=f"{PROG} {name}", allow_abbrev=False)
    if name == OptionalCmd.GEN_COMPLETION:
        parser.add_argument("--install", action="store_true")
        parser.add_argument("shell", choices=OptionalCmd.SHELLS)
    return parser


def _split_subcommand(argv: list[str]) -> tuple[list[str], str | None, list[str]]:
    index = 0
    while index < len(argv):
        token = argv[index]
        if token == "--":
            break
        if token in _VALUE_OPTIONS:
            index += 2
            continue
        if not token.startswith("-") and token in _SUBCOMMANDS:
            return argv[:index], token, argv[index + 1 :]
        index += 1
    return argv, None, []


def _completion_script(shell: str) -> str:
    words = " ".join((*_SUBCOMMANDS, *_FLAG_OPTIONS, *_VALUE_OPTIONS))
    if shell == "bash":
        return (
            f"_{PROG}() {{\n"
            '    local cur="${COMP_WORDS[COMP_CWORD]}"\n'
            f'    COMPREPLY=( $(compgen -W "{words}" -- "$cur") )\n'
            "}\n"
            f"complete -F _{PROG} {PROG}\n"
        )
    if shell == "zsh":
        return f"#compdef {PROG}\ncompadd -- {words}\n"
    if shell == "fish":
        lines = [f'complete -c {PROG} -f -a "{" ".join(_SUBCOMMANDS)}"']
        lines += [f"complete -c {PROG} -l {option[2:]}" for option in _FLAG_OPTIONS]
        lines += [f"complete -c {PROG} -l {option[2:]} -r" for option in _VALUE_OPTIONS]
        return "\n".join(lines) + "\n"
    if shell == "powershell":
        return (
            f"Register-ArgumentCompleter -Native -CommandName '{PROG}' -ScriptBlock {{\n"
            "    param($wordToComplete, $commandAst, $cursorPosition)\n"
            f"    '{words}' -split ' ' | Where-Object {{ $_ -like \"$wordToComplete*\" }} |\n"
            "        ForEach-Object { [System.Management.Automation.CompletionResult]::new("
            "$_, $_, 'ParameterValue', $_) }\n"
            "}\n"
        )
    return f"set edit:completion:arg-completer[{PROG}] = {{|@words| put {words} }}\n"


def _gen_completion(install: bool, shell: str) -> str:
    if install:
        raise ConfigError(
            f"Automatically installing completion scripts is not currently supported on {shell}"
        )
    return _completion_script(shell)


# --- configuration --------------------------------------------------------


@dataclass
class Config:
    """The console's configuration; unset values are None."""

    target_address: str | None = None
    env_filter: str | None = None
    log_directory: Path | None = None
    retention: RetainFor | None = None
    view_options: ViewOptions = field(default_factory=ViewOptions)
    subcmd: OptionalCmd | None = None

    @classmethod
    def defaults(cls) -> Config:
        """The built-in default configuration."""
        return cls(
            target_address=default_target_addr(),
            env_filter="off",
            log_directory=default_log_directory(),
            retention=RetainFor(),
            view_options=ViewOptions.defaults(),
            subcmd=None,
        )

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Read the configuration given on the command line and in the environment."""
        args = list(sys.argv[1:] if argv is None else argv)
        head, sub_name, sub_args = _split_subcommand(args)
        ns = _main_parser().parse_args(head)

        subcmd = None
        if sub_name is not None:
            sub_ns = _subcommand_parser(sub_name).parse_args(sub_args)
            if sub_name == OptionalCmd.GEN_CONFIG:
                subcmd = OptionalCmd.gen_config()
            else:
                subcmd = OptionalCmd.gen_completion(sub_ns.shell, sub_ns.install)

        if ns.no_colors and (
            ns.palette is not None
            or ns.no_duration_colors is not None
            or ns.no_terminated_colors is not None
        ):
            raise ConfigError(f"{PROG}: --no-colors cannot be used with color options")
        if ns.palette is not None and ns.colorterm is not None:
            raise ConfigError(f"{PROG}: --palette cannot be used with --colorterm")

        target = None
        if ns.target_addr is not None:
            try:
                target = _parse_uri(ns.target_addr)
            except ValueError as error:
                raise ConfigError(f"{PROG}: {error}") from error

        env_filter = _first(ns.env_filter, os.environ.get(LOG_ENV_VAR))
        if env_filter is not None:
            env_filter = _validate_filter(env_filter)

        colorterm = _first(ns.colorterm, os.environ.get("COLORTERM"))
        return cls(
            target_address=target,
            env_filter=env_filter,
            log_directory=ns.log_directory,
            retention=ns.retention,
            view_options=ViewOptions(
                no_colors=ns.no_colors,
                lang=_first(ns.lang, os.environ.get("LANG")),
                ascii_only=ns.ascii_only,
                truecolor=None if colorterm is None else parse_true_color(colorterm),
                palette=None if ns.palette is None else Palette.parse(ns.palette),
                toggles=ColorToggles(
                    durations=ns.no_duration_colors,
                    terminated=ns.no_terminated_colors,
                ),
            ),
            subcmd=subcmd,
        )

    @classmethod
    def from_path(cls, config_path: ConfigPath) -> Config | None:
        """Read a config file; None if it is absent or unreadable."""
        path = config_path.path()
        if path is None:
            return None
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            config_file = ConfigFile.from_toml(raw)
        except ConfigError as error:
            raise ConfigError(f"failed to parse {path}: {error}") from error
        return config_file.to_config()

    @classmethod
    def parse(cls, argv: list[str] | None = None) -> Config:
        """Combine the home config, the local config and the command line, in that order."""
        base = None
        for config in (cls.from_path(ConfigPath.HOME), cls.from_path(ConfigPath.CURRENT)):
            if config is not None:
                base = config if base is None else base.merge_with(config)
        command_line = cls.from_args(argv)
        return command_line if base is None else base.merge_with(command_line)

    def merge_with(self, other: Config) -> Config:
        """Overlay ``other`` on this configuration; its set values win."""
        return Config(
            target_address=_first(other.target_address, self.target_address),
            env_filter=_first(other.env_filter, self.env_filter),
            log_directory=_first(other.log_directory, self.log_directory),
            retention=_first(other.retention, self.retention),
            view_options=self.view_options.merge_with(other.view_options),
            subcmd=_first(other.subcmd, self.subcmd),
        )

    def gen_config_file(self) -> str:
        """Render the defaults, overridden by this configuration, as TOML."""
        return ConfigFile.from_config(Config.defaults().merge_with(self)).to_toml()

    def trace_init(self) -> Path | None:
        """Send diagnostics to a new log file; returns its path, or None if logging is off.

        The log filter and directory are consumed.
        """
        env_filter, self.env_filter = self.env_filter, None
        if env_filter is None:
            return None
        directory = self.log_directory or default_log_directory()
        self.log_directory = None

        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise ConfigError(f"creating log directory '{directory}': {error}") from error
        if not directory.is_dir():
            raise ConfigError(f"log directory path '{directory}' is not a directory")

        stamp = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        path = directory / f"{stamp}.log".replace(":", "")
        try:
            handler = logging.FileHandler(path, mode="x", encoding="utf-8")
        except OSError as error:
            raise ConfigError(f"creating log file '{path}': {error}") from error
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

        global_level, targets = _filter_directives(env_filter)
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(_LEVELS[global_level or "off"])
        for target, level in targets.items():
            logging.getLogger(target.replace("::", ".")).setLevel(_LEVELS[level])
        return path

    def retain_for(self) -> float | None:
        """Seconds to keep completed items, or None to keep them forever."""
        return (self.retention or RetainFor()).duration

    def target_addr(self) -> str:
        """The address to connect to."""
        return self.target_address if self.target_address is not None else default_target_addr()


def main(argv: list[str] | None = None) -> int:
    """Run the command line; returns the exit status."""
    try:
        config = Config.parse(argv)
        config.trace_init()
        command = config.subcmd
        if command is not None and command.name == OptionalCmd.GEN_CONFIG:
            print(config.gen_config_file())
            return 0
        if command is not None and command.name == OptionalCmd.GEN_COMPLETION:
            sys.stdout.write(_gen_completion(command.install, command.shell))
            return 0
    except ConfigError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1
    log.info("using target addr %s", config.target_addr())
    return 0