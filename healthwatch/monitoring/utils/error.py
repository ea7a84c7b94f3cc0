# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Error-handling helpers for the publishing side of the commands."""

import logging
from functools import wraps
from typing import Callable, Optional, overload, TypeVar, Union

from typing_extensions import ParamSpec

_T = TypeVar("_T")
_Tr_co = TypeVar("_Tr_co", covariant=True)
_P = ParamSpec("_P")


@overload
def log_error(
    logger_name: str,
) -> Callable[[Callable[_P, _Tr_co]], Callable[_P, Optional[_Tr_co]]]: ...


@overload
def log_error(
    logger_name: str, return_on_error: _T = ...
) -> Callable[[Callable[_P, _Tr_co]], Callable[_P, Union[None, _T, _Tr_co]]]: ...


def log_error(
    logger_name: str,
    return_on_error: Optional[_T] = None,
) -> Callable[[Callable[_P, _Tr_co]], Callable[_P, Union[None, _T, _Tr_co]]]:
    """Log any exception raised by the wrapped callable and return `return_on_error`.

    Used around sink writes: a sink that cannot publish must not change the health
    verdict of the command.
    """

    def decorator(f: Callable[_P, _Tr_co]) -> Callable[_P, Union[None, _T, _Tr_co]]:
        @wraps(f)
        def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> Union[None, _T, _Tr_co]:
            try:
                return f(*args, **kwargs)
            except Exception:
                logging.getLogger(logger_name).exception(
                    "%s raised an exception", getattr(f, "__qualname__", f)
                )
                return return_on_error

        return wrapper

    return decorator
