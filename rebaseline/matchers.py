"""Locate rewritable assertion calls with tree-sitter.

A matcher is a call such as ``expect(value).toBe(2)`` whose callee is a
property access ending in a registered matcher name. Each one is anchored at
the start of that name, which is the column a JavaScript stack frame reports
for the call, and keeps LiveOffsets for:

- the whole call, from the anchor to the closing parenthesis (``toBe(2)``)
- its first argument, when there is one and it is a rewritable literal

Calls whose first argument references anything but literals are skipped
entirely; rewriting them would throw away the author's expression.
"""

import importlib
from bisect import bisect_left
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Mapping, Optional

import structlog

from rebaseline.config import DEFAULT_MATCHERS, LiteralPolicy, MatcherKind
from rebaseline.errors import ParseError
from rebaseline.source import LiveOffset, SourceFile

if TYPE_CHECKING:
    from tree_sitter import Node, Parser

log = structlog.get_logger()


# Language configurations: extension -> (module_name, language_getter)
LANGUAGE_CONFIG: dict[str, tuple[str, str]] = {
    ".js": ("tree_sitter_javascript", "language"),
    ".mjs": ("tree_sitter_javascript", "language"),
    ".cjs": ("tree_sitter_javascript", "language"),
    ".jsx": ("tree_sitter_javascript", "language"),
    ".ts": ("tree_sitter_typescript", "language_typescript"),
    ".mts": ("tree_sitter_typescript", "language_typescript"),
    ".cts": ("tree_sitter_typescript", "language_typescript"),
    ".tsx": ("tree_sitter_typescript", "language_tsx"),
}

# Leaf values that can always be replaced by a JSON rendering
PRIMITIVE_LITERALS = {"number", "string", "true", "false", "null", "undefined", "regex"}

# Object keys that name a property rather than reference a value
LITERAL_KEYS = {"property_identifier", "string", "number"}


@dataclass
class Matcher:
    """One rewritable call site, positioned with live offsets."""

    name: str
    kind: MatcherKind
    start: LiveOffset
    end: LiveOffset
    arg_start: Optional[LiveOffset] = None
    arg_end: Optional[LiveOffset] = None

    @property
    def offset(self) -> int:
        return self.start.value

    @property
    def has_argument(self) -> bool:
        return self.arg_start is not None

    def release(self):
        """Untrack this matcher's offsets."""
        for live in (self.start, self.end, self.arg_start, self.arg_end):
            if live is not None:
                live.release()


@lru_cache(maxsize=None)
def _get_parser(extension: str) -> "Parser":
    """Get a tree-sitter parser for the given file extension."""
    from tree_sitter import Language, Parser

    module_name, lang_func = LANGUAGE_CONFIG[extension]
    lang_module = importlib.import_module(module_name)
    language = Language(getattr(lang_module, lang_func)())
    return Parser(language)


def _values(node: "Node") -> list["Node"]:
    return [child for child in node.named_children if child.type != "comment"]


def is_rewritable(node: "Node", policy: LiteralPolicy) -> bool:
    """Whether ``node`` is a literal shape allowed by ``policy``."""
    node_type = node.type

    if node_type in PRIMITIVE_LITERALS:
        return True

    if node_type == "parenthesized_expression":
        inner = _values(node)
        return len(inner) == 1 and is_rewritable(inner[0], policy)

    if node_type == "unary_expression":
        operator = node.child_by_field_name("operator")
        argument = node.child_by_field_name("argument")
        return (
            policy.negated_numbers
            and operator is not None
            and operator.type in ("-", "+")
            and argument is not None
            and argument.type == "number"
        )

    if node_type == "template_string":
        return policy.templates and all(
            child.type != "template_substitution" for child in node.named_children
        )

    if node_type == "array":
        return policy.arrays and all(is_rewritable(child, policy) for child in _values(node))

    if node_type == "object":
        if not policy.objects:
            return False
        for child in _values(node):
            if child.type != "pair":
                return False
            key = child.child_by_field_name("key")
            value = child.child_by_field_name("value")
            if key is None or key.type not in LITERAL_KEYS:
                return False
            if value is None or not is_rewritable(value, policy):
                return False
        return True

    return False


def _matcher_name(call: "Node", names: Mapping[str, MatcherKind]) -> Optional["Node"]:
    callee = call.child_by_field_name("function")
    if callee is None or callee.type != "member_expression":
        return None
    prop = callee.child_by_field_name("property")
    if prop is None or prop.type != "property_identifier":
        return None
    if prop.text.decode("utf-8") not in names:
        return None
    return prop


def extract_matchers(
    source: SourceFile,
    matchers: Optional[Mapping[str, MatcherKind]] = None,
    policy: Optional[LiteralPolicy] = None,
) -> list[Matcher]:
    """Parse ``source`` and return its matchers ordered by anchor offset.

    Raises:
        ParseError: the file has no grammar or does not parse cleanly.
    """
    names = DEFAULT_MATCHERS if matchers is None else matchers
    policy = policy or LiteralPolicy()

    extension = source.path.suffix.lower()
    if extension not in LANGUAGE_CONFIG:
        raise ParseError(source.path, f"no grammar for '{extension or source.path.name}'")

    tree = _get_parser(extension).parse(source.content)
    if tree.root_node.has_error:
        log.warning("source_parse_failed", path=str(source.path))
        raise ParseError(source.path)

    result: list[Matcher] = []
    skipped = 0
    stack = [tree.root_node]
    while stack:
        node = stack.pop()
        stack.extend(node.children)

        if node.type != "call_expression":
            continue
        prop = _matcher_name(node, names)
        if prop is None:
            continue
        arguments = node.child_by_field_name("arguments")
        if arguments is None or arguments.type != "arguments":
            continue

        name = prop.text.decode("utf-8")
        args = _values(arguments)
        if args and not is_rewritable(args[0], policy):
            skipped += 1
            log.debug(
                "matcher_not_rewritable",
                path=str(source.path),
                name=name,
                line=prop.start_point[0] + 1,
            )
            continue

        matcher = Matcher(
            name=name,
            kind=MatcherKind(names[name]),
            start=source.live_offset(prop.start_byte),
            end=source.live_offset(node.end_byte),
        )
        if args:
            matcher.arg_start = source.live_offset(args[0].start_byte)
            matcher.arg_end = source.live_offset(args[0].end_byte)
        result.append(matcher)

    result.sort(key=lambda m: m.offset)
    log.debug("matchers_extracted", path=str(source.path), count=len(result), skipped=skipped)
    return result


def find_matcher(matchers: list[Matcher], name: str, offset: int) -> Optional[Matcher]:
    """Binary-search ``matchers`` for the one anchored at ``offset`` named ``name``."""
    index = bisect_left(matchers, offset, key=lambda m: m.offset)
    if index < len(matchers) and matchers[index].offset == offset:
        matcher = matchers[index]
        return matcher if matcher.name == name else None
    return None
