from __future__ import annotations

import argparse
import types
from typing import Any, Literal, Type, Union, cast, get_args, get_origin

from pydantic import BaseModel


def _unwrap_optional(tp: Any) -> Any:
    if get_origin(tp) in (Union, types.UnionType):
        args = [a for a in get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _scalar_type(tp: Any) -> type:
    # Anything other than plain scalars is parsed as str and validated by pydantic.
    if tp in (str, int, float):
        return cast(type, tp)
    return str


def add_model_to_parser(parser: argparse.ArgumentParser, model: Type[BaseModel]) -> None:
    """
    Add one ``--flag`` per field of a pydantic model.

    - bool fields become ``--flag/--no-flag``
    - Literal fields become choices
    - list fields take ``nargs="*"``

    The parsed namespace is meant for ``model.model_validate(vars(ns))``.
    """
    for name, field in model.model_fields.items():
        tp = _unwrap_optional(field.annotation if field.annotation is not None else Any)
        flag = f"--{name.replace('_', '-')}"
        required = field.is_required()
        default = None if required else field.default
        kwargs: dict[str, Any] = dict(dest=name, default=default, help=field.description or "")

        if tp is bool:
            parser.add_argument(flag, action=argparse.BooleanOptionalAction, **kwargs)
            continue

        kwargs["required"] = required
        origin = get_origin(tp)
        if origin is Literal:
            parser.add_argument(flag, choices=list(get_args(tp)), **kwargs)
        elif origin is list:
            args = get_args(tp)
            parser.add_argument(flag, nargs="*", type=_scalar_type(args[0] if args else str), **kwargs)
        else:
            parser.add_argument(flag, type=_scalar_type(tp), **kwargs)
