"""Helpers over `module-info.java` source text."""

from __future__ import annotations

import re
from collections.abc import Iterable

_IDENT = r"[A-Za-z_$][A-Za-z0-9_$]*"
_QUALIFIED_NAME_RE = re.compile(rf"^{_IDENT}(?:\.{_IDENT})*$")
_EXPORT_STMT_RE = re.compile(r"\bexports\s+[^;{}]+;")
_SPLIT_RE = re.compile(r"[,\s]+")


def is_qualified_name(name: str) -> bool:
    return bool(_QUALIFIED_NAME_RE.match(name))


def parse_export_list(raw: str) -> list[str]:
    """Split a comma/whitespace separated export list, keeping first-seen order."""

    out: list[str] = []
    for part in _SPLIT_RE.split(raw or ""):
        name = part.strip()
        if name and name not in out:
            out.append(name)
    return out


def synthesize_descriptor(module_name: str, exports: Iterable[str]) -> str:
    name = (module_name or "").strip()
    if not is_qualified_name(name):
        raise ValueError(f"invalid module name: {module_name!r}")
    packages = [e.strip() for e in exports if e.strip()]
    bad = [p for p in packages if not is_qualified_name(p)]
    if bad:
        raise ValueError(f"invalid export package name(s): {', '.join(bad)}")

    lines = [f"module {name} {{"]
    lines.extend(f"    exports {p};" for p in packages)
    lines.append("}")
    return "\n".join(lines) + "\n"


def count_exports(text: str) -> int:
    return len(_EXPORT_STMT_RE.findall(text))


def remove_export(text: str, token: str) -> tuple[str, int]:
    """Drop every `exports <token>;` line. Returns the new text and lines removed."""

    line_re = re.compile(r"^\s*exports\s+" + re.escape(token.strip()) + r"\s*;\s*$")
    kept: list[str] = []
    removed = 0
    for line in text.splitlines(keepends=True):
        if line_re.match(line):
            removed += 1
            continue
        kept.append(line)
    return "".join(kept), removed
