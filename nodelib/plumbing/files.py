"""
Instance files: `.env` settings and atomically replaced configuration.
"""

import logging
import os
import os.path
import tempfile
from typing import Callable, Dict, List, Mapping, Optional

from .common import Result, State


LOG = logging.getLogger(__name__)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def get_env(path: str) -> Dict[str, str]:
    """
    Parse a `.env` file into a dictionary.  Blank lines and comments are ignored, and values may
    be quoted.  A missing file gives an empty result.
    """
    env: Dict[str, str] = {}
    try:
        with open(path) as handle:
            lines = handle.read().splitlines()
    except FileNotFoundError:
        return env
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        env[key.strip()] = _unquote(value)
    return env


def get_text(path: str) -> Optional[str]:
    """
    Read a file if it exists.
    """
    try:
        with open(path) as handle:
            return handle.read()
    except FileNotFoundError:
        return None


def replace_file(path: str, content: str, validate: Optional[Callable[[str], object]] = None,
                 mode: Optional[int] = None) -> Result[None]:
    """
    Write a file via a temporary sibling, optionally validating the written copy, then rename it
    over the target.  The previous version is untouched if anything fails before the rename.

    Identical content is left alone.
    """
    if get_text(path) == content:
        return Result(State.unchanged)
    directory = os.path.dirname(os.path.abspath(path))
    fd, temp = tempfile.mkstemp(prefix=".{}.".format(os.path.basename(path)), dir=directory)
    try:
        with os.fdopen(fd, "w") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if mode is not None:
            os.chmod(temp, mode)
        elif os.path.exists(path):
            os.chmod(temp, os.stat(path).st_mode & 0o777)
        if validate:
            with open(temp) as handle:
                validate(handle.read())
        os.replace(temp, path)
    except BaseException:
        if os.path.exists(temp):
            os.unlink(temp)
        raise
    LOG.debug("Replaced %r", path)
    return Result(State.success)


def _render_env(lines: List[str], values: Mapping[str, str]) -> str:
    pending = dict(values)
    out = []
    for line in lines:
        stripped = line.strip()
        if stripped and not stripped.startswith("#") and "=" in stripped:
            key = stripped.split("=", 1)[0].strip()
            if key in pending:
                line = "{}={}".format(key, pending.pop(key))
        out.append(line)
    for key, value in pending.items():
        out.append("{}={}".format(key, value))
    return "\n".join(out) + "\n"


def update_env(path: str, values: Mapping[str, str]) -> Result[None]:
    """
    Set keys in a `.env` file, keeping comments and the order of existing lines.  New keys are
    appended at the end.
    """
    if not values:
        return Result(State.unchanged)
    current = get_env(path)
    if all(current.get(key) == str(value) for key, value in values.items()):
        return Result(State.unchanged)
    text = get_text(path)
    if text is None:
        raise FileNotFoundError(path)
    content = _render_env(text.splitlines(), {key: str(value) for key, value in values.items()})
    LOG.info("Updating %s in %r", ", ".join(sorted(values)), path)
    return replace_file(path, content)
