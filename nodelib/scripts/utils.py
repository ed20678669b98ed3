"""
Helpers for converting methods into scripts, and filling in arguments with host objects.
"""

from functools import wraps
from inspect import cleandoc, signature
import logging
import sys
from typing import Any, Callable, cast, Dict, List, Optional, Union

from docopt import docopt

from ..errors import NodeLibError
from ..services import get_instance, Host, ServiceInstance, ServiceType


DocOptArgs = Dict[str, Union[bool, str, List[str]]]

NoneType = type(None)


ENTRYPOINTS: List[str] = []


def entrypoint(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator to make an entrypoint out of a generic function.

    This uses `docopt` to parse arguments according to the method docstring, and will be formatted
    with `{script}` set to the script name.  At minimum, it should contain `Usage: {script}`.

    Functions may optionally accept arguments, but they must be annotated with a recognised type in
    order to be filled in.  The following types are fixed and always available:

    - `DocOptArgs` (a `dict` of input parameters parsed from the usage line)
    - `Host` (context for the local machine, built from the default settings)

    The types `ServiceType`, `ServiceInstance` or `str` will be used to fill in a value based on an
    input parameter matching the variable name, without any trailing underscore (the name must be
    declared in the usage line, either in upper case or surrounded by arrow brackets, e.g. `NAME`
    or `<name>`).  Instances must already be installed.

    An example function:

        @entrypoint
        def start(opts: DocOptArgs, host: Host, instance: ServiceInstance):
            \"""
            Start an installed instance.

            Usage: {script} INSTANCE
            \"""
    """
    label = "nodelib-{}-{}".format(fn.__module__.rsplit(".", 1)[-1],
                                   fn.__qualname__).replace("_", "-")

    @wraps(fn)
    def wrap(opts: Optional[DocOptArgs] = None, host: Optional[Host] = None):
        extra: Dict[str, Any] = {}
        script = "{} [--debug]".format(label)
        if opts is None:
            doc = cleandoc(fn.__doc__.format(script=script))
            opts = docopt(doc)
        if opts.pop("--debug", False):
            logging.basicConfig(level=logging.DEBUG)
        else:
            logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
        # Detect resolvable-typed arguments and fill in their values.
        sig = signature(fn)
        ok = True
        for param in sig.parameters.values():
            name = param.name
            cls = param.annotation
            if cls is DocOptArgs:
                extra[name] = opts
                continue
            elif cls is Host:
                if host is None:
                    host = Host()
                extra[name] = host
                continue
            key = name.rstrip("_")
            try:
                try:
                    value = cast(str, opts[key.upper()])
                except KeyError:
                    value = cast(str, opts["<{}>".format(key)])
            except KeyError:
                raise RuntimeError("Missing argument {!r}".format(name))
            optional = False
            # Unpick Optional[X] by reading the type object arguments and removing type(None).
            if getattr(cls, "__origin__", None) is Union:
                cls_args = cls.__args__
                if NoneType in cls_args:
                    optional = True
                    # NB. Union[X] for a single type X automatically resolves to X.
                    cls = Union[tuple(arg for arg in cls_args if arg is not NoneType)]
            if value is None and optional:
                extra[name] = None
                continue
            try:
                if cls is ServiceType:
                    extra[name] = ServiceType(value)
                elif cls is ServiceInstance:
                    if host is None:
                        host = Host()
                    extra[name] = get_instance(host, value)
                elif cls is str:
                    extra[name] = value
                else:
                    raise RuntimeError("Bad parameter {!r} type {!r}".format(name, cls))
            except (KeyError, ValueError, NodeLibError):
                ok = False
                error("{!r} is not valid for parameter {!r}".format(value, key), colour="1")
        if not ok:
            sys.exit(1)
        return fn(**extra)
    wrap.__doc__ = wrap.__doc__.format(script=label)
    # Create a console script line for setup.
    target = "{}:{}".format(fn.__module__, fn.__qualname__)
    ENTRYPOINTS.append("{}={}".format(label, target))
    return wrap


def parse_pairs(values: List[str]) -> Dict[str, str]:
    """
    Convert a list of `KEY=VALUE` strings from repeated options into a `dict`.
    """
    pairs = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            error("Expected KEY=VALUE, got {!r}".format(item), exit=1)
        pairs[key] = value
    return pairs


def confirm(msg: str = "Are you sure?", opts: Optional[DocOptArgs] = None):
    """
    Prompt for confirmation before destructive actions, unless `--yes` was given.
    """
    if opts and opts.get("--yes"):
        return
    try:
        yn = input("\033[96m{} [yN]\033[0m ".format(msg))
    except (KeyboardInterrupt, EOFError):
        print()
        yn = "n"
    if yn.lower() not in ("y", "yes"):
        error("Aborted!", exit=1)


def error(msg: Optional[str] = None, *, exit: Optional[int] = None, colour: Optional[str] = None):
    """
    Print an error message and/or exit.
    """
    if msg:
        colour = colour or ("1" if exit else "3")
        print("\033[9{}m{}\033[0m".format(colour, msg), file=sys.stderr)
    if exit is not None:
        sys.exit(exit)
