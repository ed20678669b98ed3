"""
Shared helper methods and base classes.
"""

from enum import Enum
from functools import wraps
import inspect
import logging
import secrets
import subprocess
import time
from typing import Any, Callable, Generator, Generic, Iterable, List, Optional, TypeVar, Union


LOG = logging.getLogger(__name__)

T = TypeVar("T")

Collect = Generator["Result[Any]", None, T]
"""
Generic type for the return value of functions using `Result.collect`.
"""


class Unset:
    """
    Constructor of generic default values for optional but nullable parameters.
    """

    def __repr__(self):
        return "UNSET"


UNSET = Unset()
"""
Global generic default value.
"""


class State(Enum):
    """
    Enumeration used by `Result` to declare whether the action happened.
    """

    unchanged = 0
    """
    No action required, the request and current state are consistent.
    """
    success = 1
    """
    The action was completed without issues.
    """
    created = 2
    """
    The action resulted in the creation of a new object or resource.
    """

    def __bool__(self):
        return bool(self.value)


class Result(Generic[T]):
    """
    State and optional accompanying value from a unit of work.

    For a simple plumbing action, just create a new result directly with the resulting `State` and
    a value if relevant:

        def unit():
            # Create a network, call an external command etc.
            return Result(State.success, True)

    For a task that combines multiple results, see `Result.collect`.  The state of such a result is
    based on all of its parts -- if any changes were made, the outer result also reports a change.

    A result can be checked for truthiness, which is `False` if no changes were made.

    A result can also be converted to a string, which produces a tree-like summary of changes:

        module:task success True
            module:unit1 unchanged
            module:unit2 success
    """

    @classmethod
    def _collector(cls, fn: Callable[..., Collect[T]], keep: bool) -> Callable[..., "Result[T]"]:
        @wraps(fn)
        def inner(*args: Any, **kwargs: Any) -> Result[T]:
            value: Union[T, Unset] = UNSET
            parts: List[Result[Any]] = []
            gen = fn(*args, **kwargs)
            try:
                while True:
                    result = next(gen)
                    parts.append(result)
            except StopIteration as ex:
                if keep:
                    value = ex.value
            return cls(None, value, parts, fn)
        return inner

    @classmethod
    def collect(cls, fn: Callable[..., Collect[Any]]) -> Callable[..., "Result[Unset]"]:
        """
        Decorator: build a `Result` from multiple sub-tasks:

            def plumb_b() -> Result[str]: ...

            @Result.collect
            def task() -> Collect[None]:
                yield plumb_a()
                result = yield from plumb_b()
                if result:
                    yield plumb_c()

        The inner function this decorator wraps should be a generator of `Result` objects.

        The return value of the wrapper function will be a new `Result` object, whose `parts` will
        be those collected sub-task results.  Any return value of the inner function is discarded;
        see `Result.collect_value` to keep it.
        """
        return cls._collector(fn, False)

    @classmethod
    def collect_value(cls, fn: Callable[..., Collect[T]]) -> Callable[..., "Result[T]"]:
        """
        Decorator: like `Result.collect`, but the `value` of the outer result will be set to the
        return value of the inner function.
        """
        return cls._collector(fn, True)

    def __init__(self, state: Optional[State] = None, value: Union[T, Unset] = UNSET,
                 parts: Iterable["Result[Any]"] = (), caller: Optional[Callable[..., Any]] = None):
        self._state = state
        self._value = value
        self.parts = tuple(parts)
        self.caller = "<unknown>"
        # Inspection magic to log the calling method, e.g. `module.sub:Class.method`.
        name = None
        if not caller:
            frame = inspect.currentframe()
            try:
                name = frame.f_back.f_code.co_name
                caller = frame.f_back.f_globals[name]
            except (AttributeError, KeyError):
                pass
        if caller:
            self.caller = "{}:{}".format(caller.__module__, caller.__qualname__)
        elif name:
            self.caller = name

    @property
    def state(self) -> State:
        """
        Modification state of the unit of work.

        This may be set directly, computed from `parts`, or defaulted to `State.unchanged`.
        """
        if self._state:
            return self._state
        elif any(self.parts):
            if any(part.state is State.created for part in self.parts):
                return State.created
            else:
                return State.success
        else:
            return State.unchanged

    @state.setter
    def state(self, state: State) -> None:
        self._state = state

    @property
    def value(self) -> T:
        """
        Return value produced by the unit of work.

        Accessing this attribute will raise `ValueError` if no value has been set.
        """
        if isinstance(self._value, Unset):
            raise ValueError("No value set")
        return self._value

    @value.setter
    def value(self, value: T) -> None:
        self._value = value

    def __bool__(self) -> bool:
        return bool(self.state)

    def __iter__(self) -> Generator["Result[T]", None, "Result[T]"]:
        # Syntactic sugar used by `yield from` expressions in `Result.collect()`.
        yield self
        return self

    def __repr__(self) -> str:
        params = [str(self.state)]
        if not isinstance(self._value, Unset):
            params.append(repr(self._value))
        if self.parts:
            params.append("<{} parts>".format(len(self.parts)))
        return "{}({})".format(self.__class__.__name__, ", ".join(params))

    def __str__(self) -> str:
        tree = "{}: {}".format(self.caller, self.state.name)
        if not isinstance(self._value, Unset):
            tree = "{} {!r}".format(tree, self._value)
        if self.parts:
            for result in self.parts:
                tree += "\n    {}".format(str(result).replace("\n", "\n    "))
        return tree


class Password:
    """
    Container of randomly generated passwords.  Use `str(passwd)` to get the actual value.
    """

    def __init__(self, value: str, template: str = "{}"):
        self._value = value
        self._template = template

    def __str__(self):
        return self._template.format(self._value)

    def __repr__(self):
        return "<{}: {!r}>".format(self.__class__.__name__, self._template.format("***"))

    @classmethod
    def new(cls, length: int = 24) -> "Password":
        """
        Generate a fresh new password, safe to embed in `.env` files and URLs.
        """
        return cls(secrets.token_hex(length // 2))

    def wrap(self, template: str) -> "Password":
        """
        Embed a plaintext password into a larger string, and wrap that as a `Password`:

            >>> passwd = Password("secret")
            >>> line = passwd.wrap("POSTGRES_PASSWORD={}")
            >>> line
            <Password: 'POSTGRES_PASSWORD=***'>
            >>> str(line)
            'POSTGRES_PASSWORD=secret'
        """
        return self.__class__(self._value, template.format(self._template))


class Clock:
    """
    Source of time for polling loops.  Tests substitute a fake that advances on `sleep`.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def poll(check: Callable[[], bool], interval: float, ceiling: float, clock: Clock) -> bool:
    """
    Call `check` every `interval` seconds until it returns `True`, giving up after `ceiling`
    seconds.  Returns whether the check passed.

    The check is always made at least once, and once more at the deadline, so a zero ceiling
    means a single attempt.
    """
    deadline = clock.monotonic() + ceiling
    while True:
        if check():
            return True
        remaining = deadline - clock.monotonic()
        if remaining <= 0:
            return False
        clock.sleep(min(interval, remaining))


def command(args: List[str], input_: Optional[Union[str, Password]] = None,
            output: bool = False, cwd: Optional[str] = None,
            timeout: Optional[float] = None) -> "subprocess.CompletedProcess[bytes]":
    """
    Create a subprocess to execute an external command.

    Standard error is always captured, so that callers can report it on failure.
    """
    if input_:
        LOG.debug("Exec: %r <<< %r", args, input_)
    else:
        LOG.debug("Exec: %r", args)
    return subprocess.run(args, input=str(input_).encode("utf-8") if input_ else None,
                          stdout=subprocess.PIPE if output else subprocess.DEVNULL,
                          stderr=subprocess.PIPE, cwd=cwd, timeout=timeout, check=True)
