# src/s3_sink/templating.py

"""
A tiny template language for object keys.

Templates are plain text with variable placeholders such as
``{{topic}}-{{partition}}-{{start_offset:padding=true}}``. A placeholder may
carry one ``name=value`` parameter. Rendering takes an explicit mapping from
variable name to a function of that parameter; nothing is captured lazily.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterator, Mapping, Union

from .exceptions import TemplateError

_VARIABLE = re.compile(
    r"\{\{\s*(?P<name>\w+)(?:\s*:\s*(?P<param>\w+)\s*=\s*(?P<value>\w+))?\s*\}\}"
)


@dataclass(frozen=True, slots=True)
class Parameter:
    name: str
    value: str

    def as_bool(self) -> bool:
        if self.value not in ("true", "false"):
            raise TemplateError(
                f"Parameter '{self.name}' must be 'true' or 'false', not '{self.value}'"
            )
        return self.value == "true"


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str


@dataclass(frozen=True, slots=True)
class VariablePart:
    name: str
    parameter: Parameter | None = None


TemplatePart = Union[TextPart, VariablePart]
Formatter = Callable[[Parameter | None], str]


class Template:
    """A parsed key template."""

    def __init__(self, source: str):
        self._source = source
        self._parts = tuple(_parse(source))

    @property
    def source(self) -> str:
        return self._source

    @property
    def parts(self) -> tuple[TemplatePart, ...]:
        return self._parts

    def variables(self) -> list[VariablePart]:
        return [p for p in self._parts if isinstance(p, VariablePart)]

    def variable_names(self) -> set[str]:
        return {v.name for v in self.variables()}

    def render(self, bindings: Mapping[str, Formatter]) -> str:
        out: list[str] = []
        for part in self._parts:
            if isinstance(part, TextPart):
                out.append(part.text)
                continue
            formatter = bindings.get(part.name)
            if formatter is None:
                raise TemplateError(
                    f"Variable '{part.name}' is not bound", template=self._source
                )
            out.append(formatter(part.parameter))
        return "".join(out)

    def __repr__(self) -> str:
        return f"Template({self._source!r})"


def _parse(source: str) -> Iterator[TemplatePart]:
    position = 0
    for match in _VARIABLE.finditer(source):
        if match.start() > position:
            yield _text(source, position, match.start())
        parameter = None
        if match.group("param"):
            parameter = Parameter(match.group("param"), match.group("value"))
        yield VariablePart(match.group("name"), parameter)
        position = match.end()
    if position < len(source):
        yield _text(source, position, len(source))


def _text(source: str, start: int, end: int) -> TextPart:
    text = source[start:end]
    if "{{" in text or "}}" in text:
        raise TemplateError("Malformed variable placeholder", template=source)
    return TextPart(text)
