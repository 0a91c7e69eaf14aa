"""Lexical helpers for LLVM textual IR.

Everything here is regex based and works on the textual form emitted by
``llvm-dis``. Quoted strings (``c"..."`` constants, quoted symbol names)
are always matched first so their contents are never rewritten.
"""

from __future__ import annotations

import re

_STRING = r'"(?:[^"\\]|\\.)*"'
_BARE_NAME = r"[-a-zA-Z$._][-a-zA-Z$._0-9]*|\d+"

# @name / @"quoted name"
GLOBAL_REF_RE = re.compile(r'@(?:"((?:[^"\\]|\\.)*)"|(' + _BARE_NAME + r"))")
_STRING_OR_GLOBAL_RE = re.compile(
    r'(c?' + _STRING + r")|@(?:\"((?:[^\"\\]|\\.)*)\"|(" + _BARE_NAME + r"))"
)
_STRING_OR_NUMBERED_RE = re.compile(r"(c?" + _STRING + r")|([!#])(\d+)\b")
_STRING_OR_TYPE_RE = re.compile(
    r'(c?' + _STRING + r")|%(?:\"((?:[^\"\\]|\\.)*)\"|([-a-zA-Z$._][-a-zA-Z$._0-9]*))"
)

DBG_ATTACHMENT_RE = re.compile(r"!dbg\s+!(\d+)")
COMDAT_REF_RE = re.compile(
    r"(?<![-\w$.@%\"])comdat(?![-\w$.])(?:\s*\(\s*\$(" + _STRING + r"|[-a-zA-Z$._0-9]+)\s*\))?"
)

LINKAGES = frozenset(
    {
        "private",
        "internal",
        "available_externally",
        "linkonce",
        "weak",
        "common",
        "appending",
        "extern_weak",
        "linkonce_odr",
        "weak_odr",
        "external",
    }
)
LOCAL_LINKAGES = frozenset({"private", "internal"})
# Definitions that may be replaced by another module's definition
OVERRIDABLE_LINKAGES = frozenset(
    {"weak", "weak_odr", "linkonce", "linkonce_odr", "common", "available_externally"}
)
# Definitions that may be dropped when unused
DISCARDABLE_LINKAGES = frozenset({"linkonce", "linkonce_odr", "available_externally"})

_VISIBILITY = frozenset({"default", "hidden", "protected"})
_PREEMPTION = frozenset({"dso_local", "dso_preemptable"})
_DLL_STORAGE = frozenset({"dllimport", "dllexport"})
_LEADING_KEYWORDS = LINKAGES | _VISIBILITY | _PREEMPTION | _DLL_STORAGE

_SIMPLE_NAME_RE = re.compile(r"^[-a-zA-Z$._][-a-zA-Z$._0-9]*$")


def quote_name(name: str, sigil: str = "@") -> str:
    """Render a symbol reference, quoting names that need it."""
    if _SIMPLE_NAME_RE.match(name) or name.isdigit():
        return f"{sigil}{name}"
    escaped = "".join(
        f"\\{ord(ch):02X}" if ch in "\"\\" or not ch.isprintable() else ch for ch in name
    )
    return f'{sigil}"{escaped}"'


def global_refs(text: str) -> set[str]:
    """All @symbol names referenced in ``text`` (string literals skipped)."""
    refs: set[str] = set()
    for m in _STRING_OR_GLOBAL_RE.finditer(text):
        if m.group(1):
            continue
        refs.add(unescape(m.group(2)) if m.group(2) is not None else m.group(3))
    return refs


def rename_globals(text: str, mapping: dict[str, str]) -> str:
    """Rewrite @symbol references according to ``mapping``."""
    if not mapping:
        return text

    def _sub(m: re.Match) -> str:
        if m.group(1):
            return m.group(0)
        name = unescape(m.group(2)) if m.group(2) is not None else m.group(3)
        new = mapping.get(name)
        return quote_name(new) if new is not None else m.group(0)

    return _STRING_OR_GLOBAL_RE.sub(_sub, text)


def rename_types(text: str, mapping: dict[str, str]) -> str:
    """Rewrite %named.type references according to ``mapping``."""
    if not mapping:
        return text

    def _sub(m: re.Match) -> str:
        if m.group(1):
            return m.group(0)
        name = unescape(m.group(2)) if m.group(2) is not None else m.group(3)
        new = mapping.get(name)
        return quote_name(new, "%") if new is not None else m.group(0)

    return _STRING_OR_TYPE_RE.sub(_sub, text)


def shift_numbered(text: str, metadata_offset: int, attribute_offset: int) -> str:
    """Shift ``!N`` metadata ids and ``#N`` attribute-group ids by fixed offsets."""
    if not metadata_offset and not attribute_offset:
        return text

    def _sub(m: re.Match) -> str:
        if m.group(1):
            return m.group(0)
        sigil, num = m.group(2), int(m.group(3))
        offset = metadata_offset if sigil == "!" else attribute_offset
        return f"{sigil}{num + offset}"

    return _STRING_OR_NUMBERED_RE.sub(_sub, text)


def split_leading_keywords(segment: str) -> tuple[list[str], str]:
    """Split linkage/visibility/preemption/DLL keywords off the front of ``segment``."""
    tokens: list[str] = []
    rest = segment.lstrip()
    while True:
        head, _, tail = rest.partition(" ")
        if head in _LEADING_KEYWORDS:
            tokens.append(head)
            rest = tail.lstrip()
        else:
            return tokens, rest


def linkage_of(keywords: list[str]) -> str:
    for tok in keywords:
        if tok in LINKAGES:
            return tok
    return "external"


def with_linkage(segment: str, linkage: str) -> str:
    """Replace the leading keyword run of ``segment`` with a bare ``linkage``.

    Local linkages cannot carry a visibility, preemption or DLL storage class,
    so the whole keyword run is dropped.
    """
    _, rest = split_leading_keywords(segment)
    if linkage == "external":
        return rest
    return f"{linkage} {rest}"


def split_fields(body: str) -> list[str]:
    """Split a comma separated field list, honouring quotes and nesting."""
    fields: list[str] = []
    depth = 0
    start = 0
    i = 0
    in_string = False
    while i < len(body):
        ch = body[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "([{<":
            depth += 1
        elif ch in ")]}>":
            depth -= 1
        elif ch == "," and depth == 0:
            fields.append(body[start:i].strip())
            start = i + 1
        i += 1
    tail = body[start:].strip()
    if tail:
        fields.append(tail)
    return fields


def matching_paren(text: str, open_idx: int) -> int:
    """Index of the bracket closing the one at ``open_idx`` (depth-aware)."""
    pairs = {"(": ")", "[": "]", "{": "}", "<": ">"}
    opener = text[open_idx]
    closer = pairs[opener]
    depth = 0
    i = open_idx
    in_string = False
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 2
                continue
            if ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def unescape(value: str) -> str:
    """Decode an IR string literal body (``\\XX`` hex escapes)."""
    return re.sub(r"\\([0-9A-Fa-f]{2})", lambda m: chr(int(m.group(1), 16)), value)
