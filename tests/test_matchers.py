"""Tests for tree-sitter matcher extraction."""

import pytest

from rebaseline.config import LiteralPolicy, MatcherKind
from rebaseline.errors import ParseError
from rebaseline.matchers import extract_matchers, find_matcher
from rebaseline.source import SourceFile


def _extract(text: str, name: str = "a.spec.js", **kwargs):
    source = SourceFile(name, text)
    return source, extract_matchers(source, **kwargs)


def _args(source, matchers):
    return [
        source.content[m.arg_start.value:m.arg_end.value].decode() if m.has_argument else None
        for m in matchers
    ]


class TestExtraction:
    """Tests for locating matcher calls."""

    def test_literal_argument(self):
        """Test a literal argument yields one matcher with an argument range."""
        source, matchers = _extract("expect(1).toBe(2);")
        assert len(matchers) == 1
        matcher = matchers[0]
        assert matcher.name == "toBe"
        assert matcher.kind == MatcherKind.INLINE
        assert matcher.offset == 10
        assert matcher.end.value == 17
        assert _args(source, matchers) == ["2"]

    def test_variable_argument_is_not_eligible(self):
        """Test a free identifier argument skips the call entirely."""
        _, matchers = _extract("const x = 2;\nexpect(1).toBe(x);")
        assert matchers == []

    def test_missing_argument(self):
        """Test a call without arguments records only the whole call."""
        source, matchers = _extract("expect(1).toBe();")
        assert len(matchers) == 1
        assert not matchers[0].has_argument
        start, end = matchers[0].offset, matchers[0].end.value
        assert source.text[start:end] == "toBe()"

    def test_only_registered_names(self):
        """Test unrelated method calls are ignored."""
        _, matchers = _extract("foo.bar(1);\nexpect(1).toContain(2);")
        assert matchers == []

    def test_plain_function_call_is_ignored(self):
        """Test a bare call named like a matcher is not a matcher."""
        _, matchers = _extract("toBe(1);")
        assert matchers == []

    def test_negated_and_chained(self):
        """Test `.not.toBe()` and negative numbers are found."""
        source, matchers = _extract("expect(1).not.toBe(-1);")
        assert [m.name for m in matchers] == ["toBe"]
        assert _args(source, matchers) == ["-1"]

    def test_sorted_by_offset(self):
        """Test matchers come back in source order."""
        text = (
            "test('a', () => {\n"
            "  expect(a).toEqual({ x: [1, 'two'] });\n"
            "  expect(b).toBe(\"str\");\n"
            "  expect(c).toMatchSnapshot();\n"
            "});\n"
        )
        source, matchers = _extract(text)
        assert [m.name for m in matchers] == ["toEqual", "toBe", "toMatchSnapshot"]
        offsets = [m.offset for m in matchers]
        assert offsets == sorted(offsets)
        assert matchers[2].kind == MatcherKind.ARTIFACT
        assert _args(source, matchers) == ["{ x: [1, 'two'] }", '"str"', None]

    def test_first_argument_only(self):
        """Test only the first argument decides eligibility and range."""
        source, matchers = _extract("expect(1).toBe(1, extra);")
        assert _args(source, matchers) == ["1"]

    def test_typescript(self):
        """Test TypeScript files parse with the TypeScript grammar."""
        text = "const n: number = 1;\nexpect<number>(n).toBe(2 as number);\nexpect(n).toBe(3);\n"
        source, matchers = _extract(text, "a.spec.ts")
        assert _args(source, matchers) == ["3"]

    def test_tsx(self):
        """Test .tsx files parse JSX."""
        text = "const el = <div />;\nexpect(el).toBe(null);\n"
        source, matchers = _extract(text, "a.spec.tsx")
        assert _args(source, matchers) == ["null"]

    def test_custom_registry(self):
        """Test a custom matcher registry replaces the defaults."""
        source, matchers = _extract(
            "expect(1).toBe(1);\nexpect(1).toBeCloseTo(2);",
            matchers={"toBeCloseTo": MatcherKind.INLINE},
        )
        assert [m.name for m in matchers] == ["toBeCloseTo"]


class TestLiteralPolicy:
    """Tests for which argument shapes are rewritable."""

    @pytest.mark.parametrize(
        "argument",
        [
            "1",
            "1.5e3",
            "'single'",
            '"double"',
            "true",
            "false",
            "null",
            "/re/g",
            "-1",
            "+2",
            "(3)",
            "`plain`",
            "[1, 'a', [true]]",
            "{ a: 1, 'b': [2], 3: null }",
            "{ nested: { deep: -1 } }",
            "[]",
            "{}",
        ],
    )
    def test_rewritable(self, argument):
        """Test literal shapes are eligible."""
        _, matchers = _extract(f"expect(v).toEqual({argument});")
        assert len(matchers) == 1

    @pytest.mark.parametrize(
        "argument",
        [
            "foo",
            "-foo",
            "!true",
            "1 + 2",
            "`${x}`",
            "[1, x]",
            "{ a: x }",
            "{ [k]: 1 }",
            "{ foo }",
            "{ ...rest }",
            "[...rest]",
            "Math.round(1)",
            "{ foo: { bar: [1, 2, 3, { baz: Math.round(foo) }] } }",
            "() => 1",
        ],
    )
    def test_not_rewritable(self, argument):
        """Test anything referencing a value is skipped."""
        _, matchers = _extract(f"expect(v).toEqual({argument});")
        assert matchers == []

    def test_policy_can_disable_shapes(self):
        """Test policy flags narrow the rewritable shapes."""
        policy = LiteralPolicy(negated_numbers=False, templates=False, arrays=False, objects=False)
        text = (
            "expect(v).toEqual(-1);\n"
            "expect(v).toEqual(`t`);\n"
            "expect(v).toEqual([1]);\n"
            "expect(v).toEqual({ a: 1 });\n"
            "expect(v).toEqual(1);\n"
        )
        source, matchers = _extract(text, policy=policy)
        assert _args(source, matchers) == ["1"]


class TestParseFailures:
    """Tests for files that cannot be processed."""

    def test_syntax_error(self):
        """Test malformed text aborts extraction."""
        with pytest.raises(ParseError):
            _extract("expect(1).toBe(2;\n")

    def test_unknown_extension(self):
        """Test a file without a grammar is a parse error."""
        with pytest.raises(ParseError) as exc_info:
            _extract("x = 1", "script.py")
        assert "no grammar" in str(exc_info.value)


class TestFindMatcher:
    """Tests for binary search over extracted matchers."""

    TEXT = "expect(1).toBe(1);\nexpect(2).toEqual(2);\nexpect(3).toBe(3);\n"

    def test_finds_by_offset(self):
        """Test each matcher is found at its anchor."""
        _, matchers = _extract(self.TEXT)
        for matcher in matchers:
            assert find_matcher(matchers, matcher.name, matcher.offset) is matcher

    def test_name_mismatch(self):
        """Test a matcher at the offset with another name is not returned."""
        _, matchers = _extract(self.TEXT)
        assert find_matcher(matchers, "toBe", matchers[1].offset) is None

    def test_offset_without_matcher(self):
        """Test offsets between matchers find nothing."""
        _, matchers = _extract(self.TEXT)
        assert find_matcher(matchers, "toBe", 0) is None
        assert find_matcher(matchers, "toBe", 10_000) is None

    def test_offsets_follow_edits(self):
        """Test matcher positions are live offsets."""
        source, matchers = _extract(self.TEXT)
        last = matchers[-1]
        before = last.offset
        first = matchers[0]
        source.replace(first.arg_start.value, first.arg_end.value, '"longer"')
        assert last.offset == before + 7
        assert find_matcher(matchers, "toBe", last.offset) is last
