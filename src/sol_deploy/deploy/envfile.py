"""Structured ``.env`` documents.

Docker Compose reads the homelab's secrets from ``docker/.env``. Editing
that file with ``sed`` corrupts neighbouring keys as soon as a value
contains a slash or an ampersand, and loses track of which keys exist.
:class:`EnvDocument` parses the file into lines (entries, comments,
blanks), lets callers read and set values by key, and renders it back with
every comment and the original ordering intact.

Grammar (one entry per line)::

    # comment
    export KEY=value          # "export " prefix is accepted and preserved
    KEY="quoted value"        # single or double quotes
    KEY=value # trailing      # inline comment outside quotes
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

_VAR_RE = re.compile(
    r"""
    ^                         # start of line
    (?P<indent>\s*)           # optional leading whitespace
    (?P<export>export\s+)?    # optional "export " prefix
    (?P<key>[A-Za-z_]\w*)     # variable name
    \s*=\s*                   # equals with optional whitespace
    (?P<value>.*)             # everything after =
    $                         # end of line
    """,
    re.VERBOSE,
)

_SAFE_VALUE_RE = re.compile(r"^[A-Za-z0-9_./:@,+=%<>-]*$")


def _split_value(raw: str) -> tuple[str, str]:
    """Split the text after ``=`` into ``(value, inline_comment)``."""
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] in ('"', "'"):
        quote = raw[0]
        end = raw.find(quote, 1)
        while quote == '"' and end > 0 and raw[end - 1] == "\\":
            end = raw.find(quote, end + 1)
        if end > 0:
            inner = raw[1:end]
            if quote == '"':
                inner = inner.replace('\\"', '"').replace("\\\\", "\\")
            rest = raw[end + 1 :].strip()
            return inner, rest if rest.startswith("#") else ""
    if " #" in raw:
        idx = raw.index(" #")
        return raw[:idx].rstrip(), raw[idx:].strip()
    return raw, ""


def render_value(value: str) -> str:
    """Quote *value* only when it would not survive unquoted."""
    if _SAFE_VALUE_RE.match(value):
        return value
    if "'" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class EnvLine:
    """One physical line of a ``.env`` file."""

    raw: str
    key: str | None = None
    value: str | None = None
    export: bool = False
    comment: str = ""
    modified: bool = False

    @property
    def is_entry(self) -> bool:
        return self.key is not None

    def render(self) -> str:
        if self.key is None or self.value is None or not self.modified:
            return self.raw
        prefix = "export " if self.export else ""
        text = f"{prefix}{self.key}={render_value(self.value)}"
        if self.comment:
            text = f"{text} {self.comment}"
        return text


@dataclass
class EnvDocument:
    """Ordered, comment-preserving model of a ``.env`` file."""

    lines: list[EnvLine] = field(default_factory=list)

    # ── Parsing ──────────────────────────────────────────────────

    @classmethod
    def parse(cls, text: str) -> EnvDocument:
        doc = cls()
        for raw in text.splitlines():
            stripped = raw.strip()
            if not stripped or stripped.startswith("#"):
                doc.lines.append(EnvLine(raw=raw))
                continue
            match = _VAR_RE.match(raw)
            if match is None:
                doc.lines.append(EnvLine(raw=raw))
                continue
            value, comment = _split_value(match.group("value"))
            doc.lines.append(
                EnvLine(
                    raw=raw,
                    key=match.group("key"),
                    value=value,
                    export=bool(match.group("export")),
                    comment=comment,
                )
            )
        return doc

    @classmethod
    def load(cls, path: Path) -> EnvDocument:
        return cls.parse(path.read_text(encoding="utf-8"))

    # ── Access ───────────────────────────────────────────────────

    def keys(self) -> list[str]:
        """Keys in file order; a repeated key is listed once."""
        seen: list[str] = []
        for line in self.lines:
            if line.key is not None and line.key not in seen:
                seen.append(line.key)
        return seen

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the value of *key*; the last assignment wins, as in compose."""
        value = default
        for line in self.lines:
            if line.key == key:
                value = line.value
        return value

    def __contains__(self, key: object) -> bool:
        return any(line.key == key for line in self.lines)

    def to_dict(self) -> dict[str, str]:
        result: dict[str, str] = {}
        for line in self.lines:
            if line.key is not None and line.value is not None:
                result[line.key] = line.value
        return result

    def set(self, key: str, value: str) -> None:
        """Set *key* on every line assigning it, or append a new entry."""
        found = False
        for line in self.lines:
            if line.key == key:
                found = True
                if line.value != value:
                    line.value = value
                    line.modified = True
        if not found:
            self.lines.append(EnvLine(raw="", key=key, value=value, modified=True))

    # ── Rendering ────────────────────────────────────────────────

    def render(self) -> str:
        text = "\n".join(line.render() for line in self.lines)
        return f"{text}\n" if self.lines else ""
