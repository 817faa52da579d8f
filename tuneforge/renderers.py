"""Tagged renderers: pure functions from ConfigurationState to text lines.

Four shapes cover every catalog file:

- ``StaticText``: fixed text.
- ``TemplateText``: ``string.Template`` text with named substitution
  functions, each a pure function of the state.
- ``KeyValueSections``: ordered ``[section]`` blocks of ``key<sep>value``.
- ``GeneratedLines``: one line per state entry.

Rendering the same state twice yields the same lines; the installer and
both verifiers depend on that.
"""

from __future__ import annotations

from dataclasses import dataclass
from string import Template
from typing import Any, Callable, ClassVar, Iterable, Mapping, Optional, Sequence, Tuple

from .config_store import ConfigurationState
from .lib.env import MANAGED_HEADER

Lines = Tuple[str, ...]
Renderer = Callable[[ConfigurationState], Lines]

SYSTEMD_BOOLS = ("yes", "no")
IWD_BOOLS = ("true", "false")


def format_value(value: Any, bool_words: Tuple[str, str] = SYSTEMD_BOOLS) -> str:
    if isinstance(value, bool):
        return bool_words[0] if value else bool_words[1]
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return " ".join(format_value(v, bool_words) for v in value)
    return str(value)


def to_bytes(lines: Sequence[str]) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


def _with_header(header: Optional[str], body: Iterable[str]) -> Lines:
    head = (header,) if header else ()
    return head + tuple(body)


@dataclass(frozen=True)
class StaticText:
    kind: ClassVar[str] = "static"

    text: str
    header: Optional[str] = MANAGED_HEADER

    def __call__(self, state: ConfigurationState) -> Lines:
        return _with_header(self.header, self.text.splitlines())


@dataclass(frozen=True)
class TemplateText:
    kind: ClassVar[str] = "template"

    template: str
    substitutions: Tuple[Tuple[str, Callable[[ConfigurationState], Any]], ...] = ()
    header: Optional[str] = MANAGED_HEADER

    def __call__(self, state: ConfigurationState) -> Lines:
        values = {name: format_value(fn(state)) for name, fn in self.substitutions}
        return _with_header(self.header, Template(self.template).substitute(values).splitlines())


Section = Tuple[Optional[str], Mapping[str, Any]]


@dataclass(frozen=True)
class KeyValueSections:
    kind: ClassVar[str] = "sections"

    source: Callable[[ConfigurationState], Sequence[Section]]
    separator: str = "="
    bool_words: Tuple[str, str] = SYSTEMD_BOOLS
    header: Optional[str] = MANAGED_HEADER

    def __call__(self, state: ConfigurationState) -> Lines:
        body = []
        for i, (name, entries) in enumerate(self.source(state)):
            if i:
                body.append("")
            if name:
                body.append(f"[{name}]")
            for key, value in entries.items():
                body.append(f"{key}{self.separator}{format_value(value, self.bool_words)}")
        return _with_header(self.header, body)


@dataclass(frozen=True)
class GeneratedLines:
    kind: ClassVar[str] = "lines"

    source: Callable[[ConfigurationState], Iterable[str]]
    header: Optional[str] = MANAGED_HEADER

    def __call__(self, state: ConfigurationState) -> Lines:
        return _with_header(self.header, (str(line) for line in self.source(state)))
