"""Accessibility snapshots annotated with short element references.

The driver renders the accessibility tree as indented YAML-like text::

    - heading "Example Domain" [level=1]
    - paragraph: Some text content
    - button "Submit"

Every interactive node (and every named content node) is tagged with a token
such as ``[ref=e2]``. Tokens are only valid until the next snapshot and are
resolved back into role based locators by :func:`resolve_locator`.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Optional

INTERACTIVE_ROLES = frozenset(
    {
        "button",
        "link",
        "textbox",
        "checkbox",
        "radio",
        "combobox",
        "listbox",
        "menuitem",
        "menuitemcheckbox",
        "menuitemradio",
        "option",
        "searchbox",
        "slider",
        "spinbutton",
        "switch",
        "tab",
        "treeitem",
    }
)

CONTENT_ROLES = frozenset(
    {
        "heading",
        "cell",
        "gridcell",
        "columnheader",
        "rowheader",
        "listitem",
        "article",
        "region",
        "main",
        "navigation",
    }
)

STRUCTURAL_ROLES = frozenset(
    {
        "generic",
        "group",
        "list",
        "table",
        "row",
        "rowgroup",
        "grid",
        "treegrid",
        "menu",
        "menubar",
        "toolbar",
        "tablist",
        "tree",
        "directory",
        "document",
        "application",
        "presentation",
        "none",
    }
)

EMPTY_TREE = "(empty)"
NO_INTERACTIVE_ELEMENTS = "(no interactive elements)"

_LINE_PATTERN = re.compile(r'^(\s*-\s*)(\w+)(?:\s+"((?:[^"\\]|\\.)*)")?(.*)$')
_REF_TOKEN = re.compile(r"^e\d+$")


@dataclass
class SnapshotOptions:
    interactive: bool = False
    max_depth: Optional[int] = None
    compact: bool = False
    selector: Optional[str] = None


@dataclass
class RefEntry:
    """Locator descriptor a ref token resolves to."""

    selector: str
    role: str
    name: Optional[str] = None
    nth: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"selector": self.selector, "role": self.role}
        if self.name is not None:
            data["name"] = self.name
        if self.nth is not None:
            data["nth"] = self.nth
        return data


RefMap = dict[str, RefEntry]


@dataclass
class EnhancedSnapshot:
    tree: str
    refs: RefMap = field(default_factory=dict)

    def refs_to_dict(self) -> dict[str, dict[str, Any]]:
        return {token: entry.to_dict() for token, entry in self.refs.items()}


class _RefAllocator:
    """Mints tokens for one snapshot call and tracks locator collisions.

    A named ref resolves to ``get_by_role(role, name=...)`` so its index counts
    same role and name elements only. An unnamed ref resolves to every element
    of its role, so its index counts all of them, named or not.
    """

    def __init__(self) -> None:
        self.refs: RefMap = {}
        self._counter = 0
        self._seen: dict[tuple[str, Optional[str]], int] = {}
        self._role_seen: dict[str, int] = {}

    def allocate(self, role: str, name: Optional[str]) -> tuple[str, int]:
        self._counter += 1
        token = f"e{self._counter}"
        position = self._role_seen.get(role, 0)
        self._role_seen[role] = position + 1
        if name:
            key = (role, name)
            nth = self._seen.get(key, 0)
            self._seen[key] = nth + 1
        else:
            nth = position
        self.refs[token] = RefEntry(
            selector=build_selector(role, name),
            role=role,
            name=name,
            nth=nth,
        )
        return token, nth

    def finish(self) -> RefMap:
        for entry in self.refs.values():
            if entry.name:
                matches = self._seen[(entry.role, entry.name)]
            else:
                matches = self._role_seen[entry.role]
            if matches < 2:
                entry.nth = None
        return self.refs


def build_selector(role: str, name: Optional[str] = None) -> str:
    """Return a readable description of the role locator a ref stands for."""

    if name:
        return f"get_by_role({json.dumps(role)}, name={json.dumps(name)}, exact=True)"
    return f"get_by_role({json.dumps(role)})"


def indent_level(line: str) -> int:
    stripped = len(line) - len(line.lstrip(" "))
    return stripped // 2


def _unescape(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    return re.sub(r"\\(.)", r"\1", name)


def process_aria_tree(text: str, options: Optional[SnapshotOptions] = None) -> EnhancedSnapshot:
    """Annotate a raw accessibility tree and build its ref map."""

    options = options or SnapshotOptions()
    if not text or not text.strip():
        return EnhancedSnapshot(tree=EMPTY_TREE)

    allocator = _RefAllocator()
    if options.interactive:
        lines = _interactive_lines(text.split("\n"), options, allocator)
        tree = "\n".join(lines) or NO_INTERACTIVE_ELEMENTS
        return EnhancedSnapshot(tree=tree, refs=allocator.finish())

    lines = []
    for line in text.split("\n"):
        if options.max_depth is not None and indent_level(line) > options.max_depth:
            continue
        lines.append(_annotate_line(line, allocator))
    if options.compact:
        lines = _compact(lines)
    tree = "\n".join(lines) or EMPTY_TREE
    return EnhancedSnapshot(tree=tree, refs=allocator.finish())


def _interactive_lines(
    lines: list[str], options: SnapshotOptions, allocator: _RefAllocator
) -> list[str]:
    result = []
    for line in lines:
        if options.max_depth is not None and indent_level(line) > options.max_depth:
            continue
        match = _LINE_PATTERN.match(line)
        if not match:
            continue
        _, role, raw_name, suffix = match.groups()
        role_lower = role.lower()
        if role_lower not in INTERACTIVE_ROLES:
            continue
        token, nth = allocator.allocate(role_lower, _unescape(raw_name))
        enhanced = f"- {role}"
        if raw_name is not None:
            enhanced += f' "{raw_name}"'
        enhanced += f" [ref={token}]"
        if nth > 0:
            enhanced += f" [nth={nth}]"
        if suffix and "[" in suffix:
            enhanced += suffix
        result.append(enhanced)
    return result


def _annotate_line(line: str, allocator: _RefAllocator) -> str:
    match = _LINE_PATTERN.match(line)
    if not match:
        return line
    prefix, role, raw_name, suffix = match.groups()
    role_lower = role.lower()
    name = _unescape(raw_name)
    if not (role_lower in INTERACTIVE_ROLES or (role_lower in CONTENT_ROLES and name)):
        return line
    token, nth = allocator.allocate(role_lower, name)
    enhanced = f"{prefix}{role}"
    if raw_name is not None:
        enhanced += f' "{raw_name}"'
    enhanced += f" [ref={token}]"
    if nth > 0:
        enhanced += f" [nth={nth}]"
    return enhanced + suffix


def _compact(lines: list[str]) -> list[str]:
    result = []
    for index, line in enumerate(lines):
        if "[ref=" in line:
            result.append(line)
            continue
        if ":" in line and not line.rstrip().endswith(":"):
            result.append(line)
            continue
        match = _LINE_PATTERN.match(line)
        if match and match.group(2).lower() in STRUCTURAL_ROLES and match.group(3):
            result.append(line)
            continue
        if _has_ref_descendant(lines, index):
            result.append(line)
    return result


def _has_ref_descendant(lines: list[str], index: int) -> bool:
    current = indent_level(lines[index])
    for child in lines[index + 1 :]:
        if indent_level(child) <= current:
            return False
        if "[ref=" in child:
            return True
    return False


def parse_ref(arg: str) -> Optional[str]:
    """Extract a ref token from ``@e1``, ``ref=e1`` or ``e1``."""

    if arg.startswith("@"):
        token = arg[1:]
    elif arg.startswith("ref="):
        token = arg[4:]
    else:
        token = arg
    if _REF_TOKEN.match(token):
        return token
    return None


def snapshot_stats(tree: str, refs: RefMap) -> dict[str, int]:
    interactive = sum(1 for entry in refs.values() if entry.role in INTERACTIVE_ROLES)
    return {
        "lines": len(tree.split("\n")),
        "chars": len(tree),
        "tokens": math.ceil(len(tree) / 4),
        "refs": len(refs),
        "interactive": interactive,
    }


async def get_enhanced_snapshot(page: Any, options: Optional[SnapshotOptions] = None) -> EnhancedSnapshot:
    """Fetch the page's accessibility tree and annotate it."""

    options = options or SnapshotOptions()
    locator = page.locator(options.selector or ":root")
    text = await locator.aria_snapshot()
    return process_aria_tree(text or "", options)


def resolve_locator(page: Any, entry: RefEntry) -> Any:
    """Turn a ref entry back into a driver locator on ``page`` (or a frame)."""

    if entry.name:
        locator = page.get_by_role(entry.role, name=entry.name, exact=True)
    else:
        locator = page.get_by_role(entry.role)
    if entry.nth is not None:
        locator = locator.nth(entry.nth)
    return locator
