from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from html import unescape
from html.parser import HTMLParser
from urllib.parse import urljoin

VOID_TAGS = {
    "area",
    "base",
    "br",
    "col",
    "embed",
    "hr",
    "img",
    "input",
    "link",
    "meta",
    "source",
    "track",
    "wbr",
}

_STEP_TAG_RE = re.compile(r"^(?P<tag>[A-Za-z][A-Za-z0-9]*|\*)?(?P<rest>.*)$")
_STEP_PART_RE = re.compile(
    r"\.(?P<cls>[\w-]+)"
    r"|#(?P<id>[\w-]+)"
    r"|\[(?P<attr>[\w:-]+)(?:(?P<op>[*^$]?=)[\"']?(?P<value>[^\"'\]]*)[\"']?)?\]"
)


def normalize_space(value: str) -> str:
    return " ".join(unescape(value).split())


def absolute_url(base_url: str, path_or_url: str | None) -> str:
    if not path_or_url:
        return ""
    value = path_or_url.strip()
    if value.startswith("//"):
        return f"https:{value}"
    return urljoin(f"{base_url.rstrip('/')}/", value)


@dataclass
class HtmlNode:
    tag: str
    attrs: dict[str, str] = field(default_factory=dict)
    children: list[HtmlNode] = field(default_factory=list)
    parent: HtmlNode | None = field(default=None, repr=False)
    text_parts: list[str] = field(default_factory=list, repr=False)
    # Text segments and child nodes interleaved in document order.
    content: list[HtmlNode | str] = field(default_factory=list, repr=False)

    def get(self, name: str, default: str = "") -> str:
        return self.attrs.get(name, default)

    @property
    def classes(self) -> list[str]:
        return self.get("class").split()

    def iter(self) -> Iterator[HtmlNode]:
        for child in self.children:
            yield child
            yield from child.iter()

    def ancestors(self) -> Iterator[HtmlNode]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def own_text(self) -> str:
        return "".join(self.text_parts)

    def text(self) -> str:
        parts: list[str] = []
        self._collect_text(parts)
        return normalize_space(" ".join(parts))

    def _collect_text(self, parts: list[str]) -> None:
        if self.tag in {"script", "style"}:
            return
        for item in self.content:
            if isinstance(item, str):
                parts.append(item)
            else:
                item._collect_text(parts)

    def append_child(self, node: HtmlNode) -> None:
        self.children.append(node)
        self.content.append(node)

    def append_text(self, data: str) -> None:
        self.text_parts.append(data)
        self.content.append(data)

    def select(self, selector: str) -> list[HtmlNode]:
        groups = [_parse_compound(part) for part in selector.split(",") if part.strip()]
        return [node for node in self.iter() if any(_matches(node, steps) for steps in groups)]

    def select_one(self, selector: str) -> HtmlNode | None:
        groups = [_parse_compound(part) for part in selector.split(",") if part.strip()]
        for node in self.iter():
            if any(_matches(node, steps) for steps in groups):
                return node
        return None


@dataclass(frozen=True)
class _AttrTest:
    name: str
    op: str | None
    value: str

    def matches(self, node: HtmlNode) -> bool:
        if self.name not in node.attrs:
            return False
        if self.op is None:
            return True
        actual = node.attrs[self.name]
        if self.op == "=":
            return actual == self.value
        if self.op == "*=":
            return self.value in actual
        if self.op == "^=":
            return actual.startswith(self.value)
        if self.op == "$=":
            return actual.endswith(self.value)
        return False


@dataclass(frozen=True)
class _Step:
    tag: str | None
    classes: tuple[str, ...]
    element_id: str | None
    attr_tests: tuple[_AttrTest, ...]

    def matches(self, node: HtmlNode) -> bool:
        if self.tag is not None and self.tag != "*" and node.tag != self.tag:
            return False
        if self.element_id is not None and node.get("id") != self.element_id:
            return False
        if self.classes:
            node_classes = set(node.classes)
            if not all(name in node_classes for name in self.classes):
                return False
        return all(test.matches(node) for test in self.attr_tests)


def _parse_step(raw: str) -> _Step:
    tag_match = _STEP_TAG_RE.match(raw)
    tag = tag_match.group("tag").lower() if tag_match and tag_match.group("tag") else None
    rest = tag_match.group("rest") if tag_match else raw
    classes: list[str] = []
    element_id: str | None = None
    attr_tests: list[_AttrTest] = []
    for part in _STEP_PART_RE.finditer(rest):
        if part.group("cls"):
            classes.append(part.group("cls"))
        elif part.group("id"):
            element_id = part.group("id")
        elif part.group("attr"):
            attr_tests.append(
                _AttrTest(
                    name=part.group("attr").lower(),
                    op=part.group("op"),
                    value=part.group("value") or "",
                )
            )
    return _Step(
        tag=tag,
        classes=tuple(classes),
        element_id=element_id,
        attr_tests=tuple(attr_tests),
    )


def _parse_compound(selector: str) -> list[_Step]:
    return [_parse_step(raw) for raw in selector.split()]


def _matches(node: HtmlNode, steps: list[_Step]) -> bool:
    if not steps or not steps[-1].matches(node):
        return False
    remaining = steps[:-1]
    if not remaining:
        return True
    for ancestor in node.ancestors():
        if _matches(ancestor, remaining):
            return True
    return False


class _TreeBuilder(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.root = HtmlNode(tag="#document")
        self._current = self.root

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        node = HtmlNode(
            tag=tag.lower(),
            attrs={name.lower(): (value or "") for name, value in attrs},
            parent=self._current,
        )
        self._current.append_child(node)
        if node.tag not in VOID_TAGS:
            self._current = node

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        node = HtmlNode(
            tag=tag.lower(),
            attrs={name.lower(): (value or "") for name, value in attrs},
            parent=self._current,
        )
        self._current.append_child(node)

    def handle_endtag(self, tag: str) -> None:
        normalized = tag.lower()
        if normalized in VOID_TAGS:
            return
        node: HtmlNode | None = self._current
        while node is not None and node is not self.root:
            if node.tag == normalized:
                self._current = node.parent or self.root
                return
            node = node.parent
        # Unmatched end tag: ignore it.

    def handle_data(self, data: str) -> None:
        self._current.append_text(data)


def parse_html(html: str) -> HtmlNode:
    builder = _TreeBuilder()
    builder.feed(html or "")
    builder.close()
    return builder.root


def script_texts(root: HtmlNode) -> list[str]:
    return [node.own_text() for node in root.iter() if node.tag == "script"]
