# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Plugin discovery and construction for sinks."""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
import re
import textwrap
from dataclasses import dataclass, field
from types import ModuleType
from typing import (
    Any,
    Callable,
    Collection,
    Dict,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

import click
from healthwatch.monitoring.sink.protocol import SinkImpl
from omegaconf import OmegaConf as oc
from typeguard import typechecked

logger = logging.getLogger(__name__)


def discover(module: ModuleType) -> Dict[str, ModuleType]:
    """Import every module of a namespace package so its plugins register themselves.

    See https://packaging.python.org/en/latest/guides/creating-and-discovering-plugins/#using-namespace-packages
    """
    try:
        path = module.__path__
    except AttributeError as e:
        raise RuntimeError(f"{module.__name__} is not a package") from e

    logger.debug("Discovering plugins in namespace package %s", path)
    modules = {}
    for _, name, ispkg in pkgutil.iter_modules(path, module.__name__ + "."):
        logger.debug("Discovered %s %s", name, ispkg)
        modules[name] = importlib.import_module(name)
    return modules


T = TypeVar("T")
Factory = Callable[..., T]
ClassDecorator = Callable[[Type[T]], Type[T]]
Register = Callable[[str], ClassDecorator[T]]

T_co = TypeVar("T_co", covariant=True)


def make_register(registry: MutableMapping[str, Factory[T_co]]) -> Register[T_co]:
    """Build a `register(name)` class decorator which stores the class in `registry`.

    >>> registry: Dict[str, Factory[SinkImpl]] = {}
    >>> register = make_register(registry)
    >>> @register("impl")
    ... class Impl:
    ...     def write(self, data, additional_params): ...
    ...
    >>> registry["impl"] is Impl
    True

    Registering the same name twice is an error.
    """

    def register(name: str) -> ClassDecorator[T_co]:
        def decorator(cls: Type[T_co]) -> Type[T_co]:
            if (factory := registry.get(name)) is not None:
                raise RuntimeError(f"'{name}' is already registered to {factory}")
            registry[name] = cls
            logger.debug("Registered '%s' to %s", name, cls.__name__)
            return cls

        return decorator

    return register


def format_factory_docstrings(
    registry: Mapping[str, Factory[Any]],
    *,
    default_docstring: str = "No documentation found.",
) -> str:
    """One paragraph per registered factory, sorted by name, for `--help` epilogs."""
    indent = " " * 2
    parts = []
    for name, factory in sorted(registry.items(), key=lambda i: i[0]):
        parts.append("\b")
        parts.append(f"{name} - (from module: '{factory.__module__}')")
        parts.append(f"{indent}Signature: {inspect.signature(factory)}")
        parts.append(
            textwrap.indent(
                inspect.getdoc(factory) or default_docstring,
                prefix=indent,
                predicate=lambda _: True,
            )
        )
        parts.append("")
    return "\n".join(parts)


@dataclass
class InvalidParameterMessage:
    sink_name: str
    sink_factory: Factory[Any]
    sink_kwargs: Mapping[str, Any]

    kw_only_param_names: List[str] = field(init=False)
    unrecognized_opts: List[str] = field(init=False)

    def __post_init__(self) -> None:
        sig = inspect.signature(self.sink_factory)
        kw_only_param_names = {
            name for name, p in sig.parameters.items() if p.kind == p.KEYWORD_ONLY
        }
        self.kw_only_param_names = sorted(kw_only_param_names)
        self.unrecognized_opts = sorted(
            set(self.sink_kwargs.keys()) - kw_only_param_names
        )

    def __str__(self) -> str:
        return "\n".join(
            [
                f"Sink '{self.sink_name}' got unrecognized options. "
                "Its signature contains the following keyword-only parameters:",
                *(f"\t{name}" for name in self.kw_only_param_names),
                "But the following additional parameters were given:",
                *(f"\t{name}" for name in self.unrecognized_opts),
            ]
        )


@dataclass
class MissingParameterMessage:
    sink_name: str
    sink_factory: Factory[Any]
    sink_kwargs: Mapping[str, Any]

    missing_opts: List[str] = field(init=False)

    def __post_init__(self) -> None:
        sig = inspect.signature(self.sink_factory)
        required = {
            name
            for name, p in sig.parameters.items()
            if p.kind == p.KEYWORD_ONLY and p.default is p.empty
        }
        self.missing_opts = sorted(required - set(self.sink_kwargs.keys()))

    def __str__(self) -> str:
        return "\n".join(
            [
                f"Sink '{self.sink_name}' is missing required parameters:",
                *(f"\t{name}" for name in self.missing_opts),
                "Pass them with --sink-opt name=value.",
            ]
        )


def get_message_for_sink_init_error(
    exc: TypeError,
    sink_name: str,
    sink_factory: Factory[Any],
    sink_kwargs: Mapping[str, Any],
) -> Union[None, InvalidParameterMessage, MissingParameterMessage]:
    """A readable message for the two known ways a sink fails to construct: an
    unexpected option or a missing required option. None for anything else."""
    str_exc = str(exc)

    if "got an unexpected keyword argument" in str_exc:
        return InvalidParameterMessage(sink_name, sink_factory, sink_kwargs)

    if re.match(r"^.*missing [0-9]+ required keyword-only arguments?:.*$", str_exc):
        return MissingParameterMessage(sink_name, sink_factory, sink_kwargs)

    return None


def make_sink(
    sink: str,
    sink_opts: Collection[str],
    registry: Mapping[str, Factory[SinkImpl]],
) -> SinkImpl:
    """Instantiate a registered sink from OmegaConf dot-list options, e.g.
    `file_path=/tmp/incidents.json`."""
    try:
        sink_factory = typechecked(registry[sink])
    except KeyError:
        raise click.UsageError(
            f"Sink '{sink}' could not be found. Registered sinks: {sorted(registry)}"
        )
    sink_kwargs = oc.to_container(oc.from_dotlist(list(sink_opts)))
    assert isinstance(sink_kwargs, dict)
    try:
        sink_impl = sink_factory(**sink_kwargs)
    except TypeError as e:
        msg = get_message_for_sink_init_error(e, sink, sink_factory, sink_kwargs)
        if msg is None:
            raise
        raise click.UsageError(str(msg)) from e

    if not isinstance(sink_impl, SinkImpl):
        raise click.ClickException(
            f"Sink '{sink}' defined in {inspect.getmodule(sink_impl)} does not "
            f"implement {SinkImpl.__name__}"
        )
    logger.debug("will write health records to %s", sink)
    return sink_impl
