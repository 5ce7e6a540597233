# globs.py
# Workflow-style path globs:
#   *   any run of characters except "/"
#   **  any run of characters including "/"
#   ?   one character except "/"
#   [...] / [!...]  character class
from __future__ import annotations

import functools
import re
from typing import Iterable

from .errors import ConfigError


@functools.lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern:
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigError("empty glob pattern", pattern=repr(pattern))

    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if i + 1 < n and pattern[i + 1] == "*":
                i += 2
                # "**/" also matches zero directories
                if i < n and pattern[i] == "/":
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            j = i + 1
            if j < n and pattern[j] in "!^":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                raise ConfigError(f"unterminated character class in glob {pattern!r}", pattern=pattern)
            body = pattern[i + 1:j]
            if body[:1] in ("!", "^"):
                body = "^" + body[1:]
            if not body or body == "^":
                raise ConfigError(f"empty character class in glob {pattern!r}", pattern=pattern)
            out.append("[" + body.replace("\\", "\\\\") + "]")
            i = j
        else:
            out.append(re.escape(c))
        i += 1

    try:
        return re.compile("".join(out) + r"\Z")
    except re.error as e:
        raise ConfigError(f"invalid glob {pattern!r}: {e}", pattern=pattern) from e


def glob_match(path: str, pattern: str) -> bool:
    return compile_glob(pattern).match(path.replace("\\", "/").lstrip("/")) is not None


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(glob_match(path, p) for p in patterns)
