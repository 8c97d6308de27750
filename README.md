# taskconsole

Building blocks for a diagnostics console that watches asynchronous tasks,
async operations and resources in a running program.

## What is in the package

- `taskconsole.stats`: `TaskStats`, `ResourceStats` and `AsyncOpStats` keep
  wake counts, waker clone and drop counts, poll counts, busy and scheduled
  time, and poll and scheduling duration histograms (`Histogram`, serialized
  in the HDR histogram V2 format). Each has dirty tracking (`take_unsent`,
  `is_unsent`) so that only changed entries need go into the next update, and
  `to_proto` turns it into a snapshot dataclass. `TimeAnchor` converts
  monotonic nanosecond instants into `(seconds, nanos)` wall-clock timestamps.
- `taskconsole.visitors`: `ResourceVisitor`, `FieldVisitor`, `TaskVisitor`,
  `AsyncOpVisitor`, `WakerVisitor`, `PollOpVisitor` and `StateUpdateVisitor`
  take recorded span and event fields through `record_str`, `record_u64`,
  `record_i64`, `record_bool` and `record_debug`, and return locations,
  resource kinds, waker operations (`WakeOp`), poll operations and attribute
  updates (`Update`, `UpdateOp`) from `result()`.
- `taskconsole.intern`: `Strings`, a string interner; `retain_referenced()`
  drops strings nothing else refers to.
- `taskconsole.input`: `KeyEvent`, `KeyModifiers`, and the predicates
  `should_quit` (`q`, Ctrl-C, Ctrl-D) and `is_space`.
- `taskconsole.options`: `Palette`, `RetainFor`, `ColorToggles`,
  `ViewOptions`, and `parse_duration` / `format_duration` for spans such as
  `5days 2min 2s`.
- `taskconsole.config`: `Config`, `ConfigFile` and `ConfigPath` for reading
  command-line options, environment variables and `console.toml` files, and
  the `taskconsole` command.

## Installation

```
pip install .
```

## Command line

```
taskconsole gen-config > console.toml
```

`gen-config` prints a configuration file holding the default settings,
overridden by any options given on the command line, for example:

```
taskconsole --retain-for "1min 30s" --palette 256 gen-config
```

```
taskconsole gen-completion bash
```

prints a completion script for `bash`, `elvish`, `fish`, `powershell` or
`zsh`; `--install` is not supported and reports an error.

Options: `--log`, `--log-dir`, `--retain-for`, `--no-colors`, `--lang`,
`--ascii-only`, `--colorterm`, `--palette`, `--no-duration-colors` and
`--no-terminated-colors`. The log filter may also come from the
`TASKCONSOLE_LOG` environment variable, the language from `LANG` and true
colour support from `COLORTERM`. When a log filter other than `off` is set,
diagnostics are written to a new timestamped file in the log directory
(default `/tmp/taskconsole/logs`).

Configuration is read from `taskconsole/console.toml` in the user's
configuration directory, and then from `./console.toml` in the current
directory; values in the current directory win, and command-line options win
over both.

Retention periods take a combination of time spans such as `5days 2min 2s`,
or `none` to keep completed tasks and dropped resources forever. The default
is `6s`.

## What it does not do

The package does not connect to an instrumented process and has no terminal
interface. Run without a subcommand, `taskconsole` reads and checks its
configuration, logs the target address (default `http://127.0.0.1:6669`) and
exits.

## Library use

```python
from taskconsole.config import Config
from taskconsole.options import RetainFor

config = Config.from_args(["--retain-for", "10s"])
print(config.retain_for())        # 10.0
print(config.gen_config_file())

print(RetainFor.parse("none").duration)   # None
```

## Running the tests

```
pip install ".[test]"
pytest
```