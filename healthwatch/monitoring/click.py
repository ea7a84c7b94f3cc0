# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import logging
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar, Union

import click
import tomli
from healthwatch.exporters import registry
from healthwatch.health_watch.types import ALL_HEALTH_SYSTEMS, HealthSystem
from healthwatch.monitoring.sink.utils import format_factory_docstrings
from typeguard import typechecked
from typing_extensions import ParamSpec

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/healthwatch/config.toml"

FC = TypeVar("FC", bound=Union[Callable[..., Any], click.Command])

sink_option = click.option(
    "--sink",
    default="stdout",
    show_default=True,
    help="The sink where incident records should be published.",
)

sink_opts_option = click.option(
    "-o",
    "--sink-opt",
    "sink_opts",
    multiple=True,
    help="Sink instantiation customization using OmegaConf dot-list syntax. See [1]",
)

log_level_option = click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    default="INFO",
    show_default=True,
    help="Logging verbosity level.",
)

log_folder_option = click.option(
    "--log-folder",
    type=click.Path(file_okay=False),
    default="/var/log/healthwatch",
    show_default=True,
    help="The directory where logs will be stored.",
)

stdout_option = click.option(
    "--stdout",
    is_flag=True,
    default=False,
    help="Whether to display logs to stdout.",
)


def get_docs_for_references(refs: Iterable[str]) -> str:
    """Get click formatted documentation for an iterable of references. The output
    is an ordered list of each reference numbered started from 1.

    Examples:
    >>> get_docs_for_references(["r1", "r2"])
    '\\x08\\nReferences:\\n  [1]: r1\\n  [2]: r2'
    """
    return "\b\nReferences:\n" + textwrap.indent(
        "\n".join(f"[{i}]: {ref}" for i, ref in enumerate(refs, start=1)),
        prefix=" " * 2,
        predicate=lambda _: True,
    )


SINK_EPILOG = (
    "\b\nSink documentation:\n"
    + textwrap.indent(
        format_factory_docstrings(registry),
        prefix=" " * 2,
        predicate=lambda _: True,
    )
    + get_docs_for_references(
        [
            "https://omegaconf.readthedocs.io/en/2.2_branch/usage.html#from-a-dot-list",
        ]
    )
)


def common_options(f: FC) -> FC:
    """Logging and sink options shared by every health_watch command."""
    for option in reversed(
        [
            log_level_option,
            log_folder_option,
            stdout_option,
            sink_option,
            sink_opts_option,
        ]
    ):
        f = option(f)
    return f


class HealthSystemsParam(click.ParamType):
    """A comma separated list of health system names (e.g. `pcie,mem`), `all`, or
    an integer mask such as `0x11`."""

    name = "health_systems"

    def convert(
        self,
        value: Any,
        param: Optional[click.Parameter],
        ctx: Optional[click.Context],
    ) -> HealthSystem:
        if isinstance(value, HealthSystem):
            return value
        if isinstance(value, int):
            return self._from_int(value, param, ctx)

        text = str(value).strip()
        if text.lower() == "all":
            return ALL_HEALTH_SYSTEMS
        try:
            return self._from_int(int(text, 0), param, ctx)
        except ValueError:
            pass

        systems = HealthSystem(0)
        for name in text.split(","):
            name = name.strip().upper()
            if not name:
                continue
            try:
                systems |= HealthSystem[name]
            except KeyError:
                allowed = ", ".join(s.name.lower() for s in HealthSystem)
                self.fail(
                    f"Unknown health system {name.lower()!r}. Allowed: all, {allowed}",
                    param,
                    ctx,
                )
        return systems

    def _from_int(
        self,
        value: int,
        param: Optional[click.Parameter],
        ctx: Optional[click.Context],
    ) -> HealthSystem:
        if value < 0 or value & ~int(ALL_HEALTH_SYSTEMS):
            self.fail(f"{value:#x} is not a valid health system mask", param, ctx)
        return HealthSystem(value)


@typechecked
def ensure_table(x: Any) -> Dict[str, Any]:
    return x


_Tv = TypeVar("_Tv")
_ClickCallback = Callable[[click.Context, click.Parameter, _Tv], None]


def _set_default_map(name: str) -> _ClickCallback[Path]:
    @typechecked
    def cb(ctx: click.Context, param: click.Parameter, path: Path) -> None:
        if not path.exists() or path == Path("/dev/null"):
            return

        logger.info("Reading config from %s...", path)
        with path.open("rb") as f:
            try:
                conf = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise click.BadParameter(
                    f"{path} does not contain valid TOML.",
                    ctx=ctx,
                    param=param,
                ) from e
        try:
            default_map = ensure_table(conf[name])
        except KeyError as e:
            raise click.BadParameter(
                f"'{name}' is not a top-level table name in {path}. Valid names: {list(conf.keys())}",
                ctx=ctx,
                param=param,
            ) from e
        logger.info("Loaded table '%s'.", name)

        ctx.default_map = {**(ctx.default_map or {}), **default_map}

    return cb


_P = ParamSpec("_P")
_R = TypeVar("_R")


def toml_config_option(
    name: str,
    *,
    default_config_path: Union[str, Path] = DEFAULT_CONFIG_PATH,
) -> Callable[[Callable[_P, _R]], Callable[_P, _R]]:
    """Adds a `--config` option which loads default option values from table `name`
    of a TOML file. A non-existent path or `/dev/null` is treated as an empty table.

    Precedence (lowest to highest):
    * `default` argument to `click.option`
    * the value in the config file
    * value passed at the command line

    On a command group, subtables configure the subcommands, e.g. `[health_watch.check]`.
    """

    def decorator(f: Callable[_P, _R]) -> Callable[_P, _R]:
        return click.option(
            "--config",
            type=click.Path(dir_okay=False, path_type=Path),
            callback=_set_default_map(name),
            default=default_config_path,
            show_default=True,
            expose_value=False,
            is_eager=True,
            help=(
                f"Load option values from table '{name}' in the given TOML config file. "
                "A non-existent path or '/dev/null' are ignored and treated as empty tables."
            ),
        )(f)

    return decorator
