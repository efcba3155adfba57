"""The verifier is an external collaborator: given one phone number it reports an Outcome.

Anything with a ``check(number) -> Outcome | str`` method qualifies. A plain
callable taking the number is accepted too. CHECKBOT_VERIFIER names a
``module:attribute``; a class found there is instantiated with no arguments.
"""
import importlib
import inspect
from typing import Protocol, Union

from checkbot.memory.jobs import Outcome


class Verifier(Protocol):
    def check(self, number: str) -> Union[Outcome, str]:
        ...


class _CallableVerifier:
    def __init__(self, fn):
        self._fn = fn

    def check(self, number):
        return self._fn(number)


def as_verifier(obj) -> Verifier:
    if hasattr(obj, "check"):
        return obj
    if callable(obj):
        return _CallableVerifier(obj)
    raise TypeError(f"{obj!r} is neither a verifier nor a callable")


def load_verifier(path: str) -> Verifier:
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Verifier path must look like 'package.module:attribute', got {path!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    if inspect.isclass(obj):
        obj = obj()
    return as_verifier(obj)
