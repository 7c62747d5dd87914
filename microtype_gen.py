"""Microtype wrapper generator for Rust.

Reads a microtype declaration file and writes a Rust module defining one
wrapper type per declared name, with the capabilities selected by its
annotations and by the enabled features.

Usage:
    python microtype_gen.py types.microtype -o src/types.rs --features serde
"""

import argparse
import bisect
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

OUTPUT_SUFFIX = ".rs"
GENERATOR_NAME = "microtype-gen"


# ===--- Capability families ---=== #

FEATURE_FAMILIES: dict[str, str] = {
    "deref_impls": "dereference",
    "diesel": "column_mapping",
    "secret": "secret",
    "serde": "serialization",
    "test_debug": "test_friendly_debug",
}
"""Cargo-style feature name -> capability family it switches on."""

DEFAULT_FEATURES: frozenset[str] = frozenset({"deref_impls", "secret"})


@dataclass(frozen=True)
class CapabilityFamilies:
    """Build-wide switches deciding which capability families exist at all.

    Passed explicitly through the pipeline; nothing reads global state.

    Attributes:
        serialization: Transparent serde derives and `#[secret(serialize)]`.
        dereference: `Deref`/`DerefMut` to the inner type on normal wrappers.
        secret: Secret wrappers (`#[secret]`) are available.
        test_friendly_debug: Secret wrappers print their value from `Debug`
            in test builds, and no test-only equality impl is generated.
        column_mapping: Diesel `ToSql`/`FromSql` impls for `#[diesel(...)]`.
    """

    serialization: bool = False
    dereference: bool = True
    secret: bool = True
    test_friendly_debug: bool = False
    column_mapping: bool = False

    @classmethod
    def from_features(cls, features: frozenset[str]) -> "CapabilityFamilies":
        for name in features:
            if name not in FEATURE_FAMILIES:
                raise ValueError(f"Unknown feature: {name}")
        return cls(
            **{family: name in features for name, family in FEATURE_FAMILIES.items()}
        )

    @property
    def features(self) -> frozenset[str]:
        """Feature names whose family is enabled."""
        return frozenset(
            name for name, family in FEATURE_FAMILIES.items() if getattr(self, family)
        )


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    input_path: Path
    output_path: Path
    families: CapabilityFamilies
    keep_going: bool = False


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    input_path: Path | None
    families: CapabilityFamilies


VALID_ERROR_CODES = {
    "MISSING_INPUT",
    "PATH_NOT_FOUND",
    "UNKNOWN_FEATURE",
    "CONFLICT_GENERATE_DISCOVERY",
    "OUTPUT_IS_INPUT",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_feature_name(name: str) -> str:
    if name in FEATURE_FAMILIES:
        return name
    raise ConfigError(
        "UNKNOWN_FEATURE",
        f"Unknown feature: {name}",
        f"Use one of: {', '.join(sorted(FEATURE_FAMILIES))}.",
    )


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate Rust microtype wrappers")

    parser.add_argument("input", type=Path, nargs="?", default=None)
    parser.add_argument("-o", "--output", type=Path, default=None)

    feature_group = parser.add_mutually_exclusive_group()
    feature_group.add_argument("--features", action="append", nargs="+", default=None)
    feature_group.add_argument("--all-features", action="store_true", default=False)
    parser.add_argument("--no-default-features", action="store_true", default=False)

    parser.add_argument("--keep-going", action="store_true", default=False)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--plan", action="store_true", default=False)
    discovery_group.add_argument("--list-features", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def normalize_features(raw_features: object) -> tuple[str, ...]:
    """Flatten `--features` values; each value may itself be comma separated."""
    if raw_features is None:
        return tuple()
    if not isinstance(raw_features, list):
        raise ConfigError(
            "UNKNOWN_FEATURE",
            f"Invalid --features value type: {type(raw_features).__name__}",
            "Pass feature names as --features serde,secret.",
        )

    normalized: list[str] = []
    for entry in raw_features:
        names = entry if isinstance(entry, list) else [entry]
        for name in names:
            if not isinstance(name, str):
                raise ConfigError(
                    "UNKNOWN_FEATURE",
                    f"Invalid feature name type: {type(name).__name__}",
                    "Pass feature names as --features serde,secret.",
                )
            normalized.extend(part.strip() for part in name.split(",") if part.strip())

    return tuple(normalized)


def resolve_features(args: argparse.Namespace) -> frozenset[str]:
    if args.all_features:
        return frozenset(FEATURE_FAMILIES)

    selected: set[str] = set() if args.no_default_features else set(DEFAULT_FEATURES)
    selected.update(
        validate_feature_name(name) for name in normalize_features(args.features)
    )
    return frozenset(selected)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    families = CapabilityFamilies.from_features(resolve_features(args))
    has_discovery_command = bool(args.plan or args.list_features)

    if has_discovery_command and (args.output is not None or args.keep_going):
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "--output and --keep-going cannot be combined with discovery flags.",
            "Choose either generate mode or one of --plan / --list-features.",
        )

    if args.list_features:
        return DiscoveryConfig(
            command="list-features", input_path=None, families=families
        )

    if args.input is None:
        raise ConfigError(
            "MISSING_INPUT",
            "A declaration file is required.",
            "Pass the declaration file path: microtype_gen.py types.microtype",
        )
    input_path = validate_path_exists(
        args.input, "input", "Pass an existing declaration file."
    )

    if args.plan:
        return DiscoveryConfig(command="plan", input_path=input_path, families=families)

    output_path = (
        args.output if args.output is not None else input_path.with_suffix(OUTPUT_SUFFIX)
    )
    if output_path.resolve() == input_path.resolve():
        raise ConfigError(
            "OUTPUT_IS_INPUT",
            f"Output path would overwrite the input: {output_path}",
            "Pass a different path with --output.",
        )

    return GenerateConfig(
        input_path=input_path,
        output_path=output_path,
        families=families,
        keep_going=bool(args.keep_going),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Source locations and errors ---=== #


class SourceLocation(NamedTuple):
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"


VALID_ERROR_KINDS = {
    "GRAMMAR",
    "DUPLICATE_ATTRIBUTE",
    "CONFLICTING_ATTRIBUTE",
    "UNSUPPORTED_COMBINATION",
}


class MicrotypeError(Exception):
    """A located error raised inside a pipeline stage.

    Stages raise it; stage boundaries turn it into an ErrorArtifact so that
    callers only ever see errors as returned values.
    """

    def __init__(self, kind: str, message: str, location: SourceLocation):
        if kind not in VALID_ERROR_KINDS:
            raise ValueError(f"Unknown microtype error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.location = location

    def to_artifact(self, name: str | None = None) -> "ErrorArtifact":
        return ErrorArtifact(
            kind=self.kind, message=self.message, location=self.location, name=name
        )


def _rust_string_literal(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(frozen=True)
class ErrorArtifact:
    """The single error produced for a microtype (or for a whole invocation).

    Attributes:
        kind: One of VALID_ERROR_KINDS.
        message: Human-readable diagnostic text.
        location: Position of the offending token or annotation.
        name: Microtype the error belongs to; None for grammar errors that
            stop the invocation before any microtype exists.
    """

    kind: str
    message: str
    location: SourceLocation
    name: str | None = None

    def render_lines(self) -> tuple[str, ...]:
        """Render as an item-position `compile_error!` invocation."""
        return (f"::core::compile_error!({_rust_string_literal(self.message)});",)


def format_diagnostic(error: ErrorArtifact, source_label: str) -> str:
    """Return `<source>:<line>:<col>: error[<KIND>]: <message>` for one error."""
    text = (
        f"{source_label}:{error.location.line}:{error.location.column}: "
        f"error[{error.kind}]: {error.message}"
    )
    if error.name is not None:
        text += f" (in `{error.name}`)"
    return text


# ===--- Tokenizer ---=== #

TOKEN_IDENT = "ident"
TOKEN_LIFETIME = "lifetime"
TOKEN_LITERAL = "literal"
TOKEN_PUNCT = "punct"
TOKEN_DOC = "doc"


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    location: SourceLocation
    start: int
    end: int


_MULTI_CHAR_PUNCT = ("::", "->", "=>")
_SINGLE_CHAR_PUNCT = frozenset("#[](){}<>,;:=&*!+-/.?@|^%~$")
_IDENT_RE = re.compile(r"(?:r#)?[A-Za-z_][A-Za-z0-9_]*")
_NUMBER_RE = re.compile(r"[0-9][0-9A-Za-z_]*(?:\.[0-9][0-9A-Za-z_]*)?")
_LIFETIME_RE = re.compile(r"'[A-Za-z_][A-Za-z0-9_]*")
_CHAR_RE = re.compile(r"b?'(?:[^'\\\n]|\\(?:x[0-9A-Fa-f]{2}|u\{[0-9A-Fa-f]{1,6}\}|.))'")
_RAW_STRING_START_RE = re.compile(r'b?r(#*)"')


class _Locator:
    def __init__(self, source: str):
        self._line_starts = [0]
        for index, char in enumerate(source):
            if char == "\n":
                self._line_starts.append(index + 1)

    def __call__(self, offset: int) -> SourceLocation:
        line_index = bisect.bisect_right(self._line_starts, offset) - 1
        return SourceLocation(line_index + 1, offset - self._line_starts[line_index] + 1)


def _scan_string_end(source: str, pos: int) -> int | None:
    """Return the offset just past the closing quote, scanning from `pos`."""
    while pos < len(source):
        char = source[pos]
        if char == "\\":
            pos += 2
            continue
        if char == '"':
            return pos + 1
        pos += 1
    return None


def _skip_block_comment(source: str, pos: int, locate: _Locator) -> int:
    depth = 0
    index = pos
    while index < len(source):
        if source.startswith("/*", index):
            depth += 1
            index += 2
        elif source.startswith("*/", index):
            depth -= 1
            index += 2
            if depth == 0:
                return index
        else:
            index += 1
    raise MicrotypeError("GRAMMAR", "unterminated block comment", locate(pos))


def tokenize(source: str) -> list[Token]:
    """Split declaration source into tokens, dropping whitespace and comments.

    Outer doc comments (`/// text` and `/** text */`) are kept as TOKEN_DOC
    tokens because they are attributes of the declaration that follows them.

    Raises:
        MicrotypeError: GRAMMAR for unknown characters and unterminated
            literals or comments.
    """
    locate = _Locator(source)
    tokens: list[Token] = []
    pos = 0

    def push(kind: str, end: int) -> None:
        tokens.append(Token(kind, source[pos:end], locate(pos), pos, end))

    while pos < len(source):
        char = source[pos]

        if char.isspace():
            pos += 1
            continue

        if source.startswith("//", pos):
            end = source.find("\n", pos)
            end = len(source) if end == -1 else end
            is_doc = source.startswith("///", pos) and not source.startswith("////", pos)
            if is_doc:
                push(TOKEN_DOC, pos + len(source[pos:end].rstrip()))
            pos = end
            continue

        if source.startswith("/*", pos):
            end = _skip_block_comment(source, pos, locate)
            is_doc = (
                source.startswith("/**", pos)
                and not source.startswith("/***", pos)
                and not source.startswith("/**/", pos)
            )
            if is_doc:
                push(TOKEN_DOC, end)
            pos = end
            continue

        raw_string = _RAW_STRING_START_RE.match(source, pos)
        if raw_string:
            terminator = '"' + raw_string.group(1)
            close = source.find(terminator, raw_string.end())
            if close == -1:
                raise MicrotypeError(
                    "GRAMMAR", "unterminated raw string literal", locate(pos)
                )
            end = close + len(terminator)
            push(TOKEN_LITERAL, end)
            pos = end
            continue

        if char == '"' or source.startswith('b"', pos):
            end = _scan_string_end(source, source.index('"', pos) + 1)
            if end is None:
                raise MicrotypeError("GRAMMAR", "unterminated string literal", locate(pos))
            push(TOKEN_LITERAL, end)
            pos = end
            continue

        char_literal = _CHAR_RE.match(source, pos)
        if char_literal:
            push(TOKEN_LITERAL, char_literal.end())
            pos = char_literal.end()
            continue

        ident = _IDENT_RE.match(source, pos)
        if ident:
            push(TOKEN_IDENT, ident.end())
            pos = ident.end()
            continue

        if char.isdigit():
            number = _NUMBER_RE.match(source, pos)
            assert number is not None
            push(TOKEN_LITERAL, number.end())
            pos = number.end()
            continue

        if char == "'":
            lifetime = _LIFETIME_RE.match(source, pos)
            if lifetime is None:
                raise MicrotypeError(
                    "GRAMMAR", "invalid lifetime or character literal", locate(pos)
                )
            push(TOKEN_LIFETIME, lifetime.end())
            pos = lifetime.end()
            continue

        multi = next((p for p in _MULTI_CHAR_PUNCT if source.startswith(p, pos)), None)
        if multi is not None:
            push(TOKEN_PUNCT, pos + len(multi))
            pos += len(multi)
            continue

        if char in _SINGLE_CHAR_PUNCT:
            push(TOKEN_PUNCT, pos + 1)
            pos += 1
            continue

        raise MicrotypeError("GRAMMAR", f"unexpected character {char!r}", locate(pos))

    return tokens


def end_location(source: str) -> SourceLocation:
    """Location just past the last character of source."""
    lines = source.split("\n")
    return SourceLocation(len(lines), len(lines[-1]) + 1)


_NO_SPACE_BEFORE = frozenset({",", ";", ">", ")", "]", "::", "<", "?"})
_NO_SPACE_AFTER = frozenset({"::", "&", "<", "(", "[", "#", "!"})


def join_tokens(tokens: tuple[Token, ...] | list[Token]) -> str:
    """Render tokens as normalized source text (`Vec<u8>`, `&'a str`, `[u8; 4]`)."""
    parts: list[str] = []
    previous: Token | None = None
    for token in tokens:
        if previous is not None:
            glue_after = previous.kind == TOKEN_PUNCT and previous.text in _NO_SPACE_AFTER
            glue_before = token.kind == TOKEN_PUNCT and token.text in _NO_SPACE_BEFORE
            call_parens = (
                token.text == "("
                and previous.kind == TOKEN_IDENT
                and previous.text not in ("mut", "dyn")
            )
            if not glue_after and not glue_before and not call_parens:
                parts.append(" ")
        parts.append(token.text)
        previous = token
    return "".join(parts)


# ===--- Declaration model ---=== #


@dataclass(frozen=True)
class TypeRef:
    text: str
    location: SourceLocation

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Annotation:
    """One `#[...]` attribute (or `/// doc` comment) as written in the source.

    Attributes:
        path: Attribute path, e.g. "secret", "derive" or "serde::rename".
            Doc comments use "doc".
        text: Verbatim source text, re-emitted unchanged for pass-through
            annotations.
        location: Position of the leading `#` (or `///`).
        delimiter: "(", "[" or "{" for delimited arguments, "=" for
            `#[path = value]`, None for a bare path.
        arguments: Tokens inside the delimiters (or after `=`).
    """

    path: str
    text: str
    location: SourceLocation
    delimiter: str | None = None
    arguments: tuple[Token, ...] = ()


@dataclass(frozen=True)
class NameDecl:
    name: str
    annotations: tuple[Annotation, ...]
    location: SourceLocation


@dataclass(frozen=True)
class RawDeclaration:
    """One `annotations* visibility? inner { names }` block, in source order."""

    annotations: tuple[Annotation, ...]
    inner: TypeRef
    visibility: str
    names: tuple[NameDecl, ...]


@dataclass(frozen=True)
class MicrotypeSpec:
    """Everything needed to generate one wrapper type.

    Attributes:
        inner: Wrapped type, shared by every spec of the same block.
        name: Identifier of the generated wrapper.
        visibility: Rust visibility prefix ("" for private).
        annotations: Name-level annotations first, then block-level ones.
        location: Position of the name in the source.
    """

    inner: TypeRef
    name: str
    visibility: str
    annotations: tuple[Annotation, ...]
    location: SourceLocation


# ===--- Declaration parser ---=== #

RESERVED_NAME_PREFIX = "__Microtype"

RUST_KEYWORDS = frozenset(
    """
    _ abstract as async await become box break const continue crate do dyn
    else enum extern false final fn for if impl in let loop macro match mod
    move mut override priv pub ref return self Self static struct super trait
    true try type typeof unsafe unsized use virtual where while yield
    """.split()
)

_OPEN_TO_CLOSE = {"(": ")", "[": "]", "{": "}"}
_VISIBILITY_RESTRICTIONS = ("crate", "super", "self")


class _Parser:
    def __init__(self, tokens: list[Token], source: str, eof: SourceLocation):
        self.tokens = tokens
        self.source = source
        self.eof = eof
        self.pos = 0

    # -- cursor helpers --

    def at_end(self) -> bool:
        return self.pos >= len(self.tokens)

    def peek(self, offset: int = 0) -> Token | None:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise self.error("unexpected end of input")
        self.pos += 1
        return token

    def check(self, text: str, offset: int = 0) -> bool:
        token = self.peek(offset)
        return (
            token is not None
            and token.kind in (TOKEN_PUNCT, TOKEN_IDENT)
            and token.text == text
        )

    def expect(self, text: str, what: str) -> Token:
        if not self.check(text):
            raise self.error(f"expected {what}, found {self.describe(self.peek())}")
        return self.next()

    def error(self, message: str, token: Token | None = None) -> MicrotypeError:
        if token is None:
            token = self.peek()
        location = token.location if token is not None else self.eof
        return MicrotypeError("GRAMMAR", message, location)

    @staticmethod
    def describe(token: Token | None) -> str:
        return "end of input" if token is None else f"`{token.text}`"

    # -- grammar --

    def parse_invocation(self) -> list[RawDeclaration]:
        declarations: list[RawDeclaration] = []
        while not self.at_end():
            declarations.append(self.parse_block())
        return declarations

    def parse_block(self) -> RawDeclaration:
        annotations = self.parse_annotations()
        visibility = self.parse_visibility()
        inner = self.parse_type()
        self.expect("{", "`{` after the inner type")

        names: list[NameDecl] = []
        while not self.check("}"):
            names.append(self.parse_name_decl())
            if not self.check(","):
                break
            self.next()
        self.expect("}", "`,` or `}` after a microtype name")

        return RawDeclaration(
            annotations=tuple(annotations),
            inner=inner,
            visibility=visibility,
            names=tuple(names),
        )

    def parse_name_decl(self) -> NameDecl:
        annotations = self.parse_annotations()
        token = self.peek()
        if token is None or token.kind != TOKEN_IDENT:
            raise self.error(
                f"expected a microtype name, found {self.describe(token)}", token
            )
        if token.text in RUST_KEYWORDS:
            raise self.error(
                f"`{token.text}` is a reserved keyword; use `r#{token.text}`", token
            )
        if token.text.removeprefix("r#").startswith(RESERVED_NAME_PREFIX):
            raise self.error(
                f"names starting with `{RESERVED_NAME_PREFIX}` are reserved "
                "for generated helper types",
                token,
            )
        self.next()
        return NameDecl(
            name=token.text, annotations=tuple(annotations), location=token.location
        )

    def parse_annotations(self) -> list[Annotation]:
        annotations: list[Annotation] = []
        while True:
            token = self.peek()
            if token is None:
                return annotations
            if token.kind == TOKEN_DOC:
                self.next()
                annotations.append(
                    Annotation(path="doc", text=token.text, location=token.location)
                )
            elif token.kind == TOKEN_PUNCT and token.text == "#":
                annotations.append(self.parse_annotation())
            else:
                return annotations

    def parse_annotation(self) -> Annotation:
        hash_token = self.next()
        if self.check("!"):
            raise self.error("inner attributes (`#![...]`) are not allowed here")
        self.expect("[", "`[` after `#`")
        path = self.parse_path_text("an attribute path")

        delimiter: str | None = None
        arguments: tuple[Token, ...] = ()
        token = self.peek()
        if token is not None and token.kind == TOKEN_PUNCT and token.text in _OPEN_TO_CLOSE:
            delimiter = token.text
            arguments = self.parse_group()
        elif self.check("="):
            delimiter = "="
            self.next()
            arguments = self.collect_until("]")
            if not arguments:
                raise self.error("expected a value after `=`")

        close = self.expect("]", "`]` to close the attribute")
        return Annotation(
            path=path,
            text=self.source[hash_token.start : close.end],
            location=hash_token.location,
            delimiter=delimiter,
            arguments=arguments,
        )

    def parse_path_text(self, what: str) -> str:
        parts: list[str] = []
        if self.check("::"):
            parts.append(self.next().text)
        while True:
            token = self.peek()
            if token is None or token.kind != TOKEN_IDENT:
                raise self.error(f"expected {what}, found {self.describe(token)}", token)
            parts.append(self.next().text)
            if not self.check("::"):
                return "".join(parts)
            parts.append(self.next().text)

    def parse_group(self) -> tuple[Token, ...]:
        """Consume a balanced `( ... )`, `[ ... ]` or `{ ... }` and return its contents."""
        open_token = self.next()
        expected = [_OPEN_TO_CLOSE[open_token.text]]
        start = self.pos
        while expected:
            token = self.peek()
            if token is None:
                raise self.error(f"unclosed delimiter `{open_token.text}`", open_token)
            self.next()
            if token.kind != TOKEN_PUNCT:
                continue
            if token.text in _OPEN_TO_CLOSE:
                expected.append(_OPEN_TO_CLOSE[token.text])
            elif token.text in (")", "]", "}"):
                if token.text != expected[-1]:
                    raise self.error(
                        f"mismatched closing delimiter `{token.text}`", token
                    )
                expected.pop()
        return tuple(self.tokens[start : self.pos - 1])

    def collect_until(self, stop: str) -> tuple[Token, ...]:
        """Consume tokens up to (not including) `stop` at nesting depth zero."""
        start = self.pos
        while not self.check(stop):
            token = self.peek()
            if token is None:
                raise self.error(f"expected `{stop}`, found end of input")
            if token.kind == TOKEN_PUNCT and token.text in _OPEN_TO_CLOSE:
                self.parse_group()
            elif token.kind == TOKEN_PUNCT and token.text in (")", "]", "}"):
                raise self.error(f"mismatched closing delimiter `{token.text}`", token)
            else:
                self.next()
        return tuple(self.tokens[start : self.pos])

    def parse_visibility(self) -> str:
        if not self.check("pub"):
            return ""
        self.next()
        if not self.check("("):
            return "pub"
        restriction = self.peek(1)
        if (
            restriction is not None
            and restriction.kind == TOKEN_IDENT
            and restriction.text in _VISIBILITY_RESTRICTIONS
            and self.check(")", 2)
        ):
            self.pos += 3
            return f"pub({restriction.text})"
        if self.check("in", 1):
            self.pos += 2
            path = self.parse_path_text("a module path")
            self.expect(")", "`)` to close the visibility restriction")
            return f"pub(in {path})"
        # `pub (A, B) { ... }`: the parenthesis opens a tuple inner type.
        return "pub"

    def parse_type(self) -> TypeRef:
        start = self.pos
        self.skip_type()
        tokens = self.tokens[start : self.pos]
        return TypeRef(text=join_tokens(tokens), location=tokens[0].location)

    def skip_type(self) -> None:
        token = self.peek()
        if token is None:
            raise self.error("expected a type, found end of input")

        if token.kind == TOKEN_PUNCT and token.text == "&":
            self.next()
            lifetime = self.peek()
            if lifetime is not None and lifetime.kind == TOKEN_LIFETIME:
                self.next()
            if self.check("mut"):
                self.next()
            self.skip_type()
        elif token.kind == TOKEN_PUNCT and token.text == "(":
            self.next()
            while not self.check(")"):
                self.skip_type()
                if not self.check(","):
                    break
                self.next()
            self.expect(")", "`)` to close the tuple type")
        elif token.kind == TOKEN_PUNCT and token.text == "[":
            self.next()
            self.skip_type()
            if self.check(";"):
                self.next()
                if not self.collect_until("]"):
                    raise self.error("expected an array length")
            self.expect("]", "`]` to close the array type")
        elif token.kind == TOKEN_IDENT and token.text == "dyn":
            self.next()
            self.skip_bound()
            while self.check("+"):
                self.next()
                self.skip_bound()
        else:
            self.skip_path()

    def skip_bound(self) -> None:
        token = self.peek()
        if token is not None and token.kind == TOKEN_LIFETIME:
            self.next()
        else:
            self.skip_path()

    def skip_path(self) -> None:
        if self.check("::"):
            self.next()
        while True:
            token = self.peek()
            if token is None or token.kind != TOKEN_IDENT or token.text in ("pub", "mut"):
                raise self.error(f"expected a type, found {self.describe(token)}", token)
            self.next()
            if self.check("<"):
                self.skip_generic_args()
            elif self.check("("):
                # Fn(A, B) -> C sugar
                self.parse_group()
                if self.check("->"):
                    self.next()
                    self.skip_type()
            if not self.check("::"):
                return
            self.next()

    def skip_generic_args(self) -> None:
        self.expect("<", "`<`")
        while not self.check(">"):
            token = self.peek()
            if token is None:
                raise self.error("expected `>` to close the generic arguments")
            if token.kind in (TOKEN_LIFETIME, TOKEN_LITERAL):
                self.next()
            elif token.kind == TOKEN_PUNCT and token.text == "{":
                self.parse_group()
            elif token.kind == TOKEN_IDENT and self.check("=", 1):
                self.pos += 2
                self.skip_type()
            else:
                self.skip_type()
            if not self.check(","):
                break
            self.next()
        self.expect(">", "`>` to close the generic arguments")


def parse_declarations(source: str) -> list[RawDeclaration]:
    """Parse declaration source into blocks, in source order.

    Only the grammar is checked here; annotation meaning is left to the
    validator. An empty name list (`String { }`) is accepted.

    Raises:
        MicrotypeError: GRAMMAR at the first malformed token.
    """
    parser = _Parser(tokenize(source), source, end_location(source))
    return parser.parse_invocation()


def parse_type_tokens(tokens: tuple[Token, ...], eof: SourceLocation) -> TypeRef:
    """Parse a complete type from an annotation's argument tokens."""
    parser = _Parser(list(tokens), "", eof)
    type_ref = parser.parse_type()
    if not parser.at_end():
        raise parser.error(f"unexpected {parser.describe(parser.peek())} after the type")
    return type_ref


# ===--- Model flattener ---=== #


def flatten(declarations: list[RawDeclaration]) -> list[MicrotypeSpec]:
    """Expand every block into one spec per declared name.

    Annotations are name-level followed by block-level, so re-emitted
    pass-through annotations keep that order.
    """
    specs: list[MicrotypeSpec] = []
    for decl in declarations:
        for name_decl in decl.names:
            specs.append(
                MicrotypeSpec(
                    inner=decl.inner,
                    name=name_decl.name,
                    visibility=decl.visibility,
                    annotations=name_decl.annotations + decl.annotations,
                    location=name_decl.location,
                )
            )
    return specs


# ===--- Attribute extraction and validation ---=== #

MARKER_SECRET = "secret"
MARKER_STRING = "string"
MARKER_INT = "int"
MARKER_COLUMN_MAPPING = "diesel"
SECRET_SERIALIZE_ARG = "serialize"
COLUMN_TYPE_ARG = "sql_type"

KIND_STRING = "string"
KIND_INT = "int"

SECRET_FORM_MESSAGE = "expected either `#[secret]` or `#[secret(serialize)]`"
COLUMN_FORM_MESSAGE = "expected `#[diesel(sql_type = Type)]`"


@dataclass(frozen=True)
class SecretMarker:
    serialize: bool
    location: SourceLocation


@dataclass(frozen=True)
class KindMarker:
    kind: str
    location: SourceLocation


@dataclass(frozen=True)
class ColumnMapping:
    sql_type: TypeRef
    location: SourceLocation


@dataclass(frozen=True)
class ControlAttributes:
    """Validated control annotations of one microtype; all absent by default."""

    secret: SecretMarker | None = None
    kind: KindMarker | None = None
    column_mapping: ColumnMapping | None = None


def partition_annotations(
    annotations: tuple[Annotation, ...], path: str
) -> tuple[tuple[Annotation, ...], tuple[Annotation, ...]]:
    """Split annotations into (matching `path`, the rest), keeping order."""
    matched = tuple(a for a in annotations if a.path == path)
    rest = tuple(a for a in annotations if a.path != path)
    return matched, rest


def split_arguments(tokens: tuple[Token, ...]) -> list[tuple[Token, ...]]:
    """Split argument tokens on top-level commas; a trailing comma is ignored."""
    arguments: list[tuple[Token, ...]] = []
    current: list[Token] = []
    depth = 0
    for token in tokens:
        if token.kind == TOKEN_PUNCT:
            if token.text in ("(", "[", "{", "<"):
                depth += 1
            elif token.text in (")", "]", "}", ">"):
                depth -= 1
            elif token.text == "," and depth == 0:
                arguments.append(tuple(current))
                current = []
                continue
        current.append(token)
    if current:
        arguments.append(tuple(current))
    return arguments


def _is_serialize_argument(argument: tuple[Token, ...]) -> bool:
    return (
        len(argument) == 1
        and argument[0].kind == TOKEN_IDENT
        and argument[0].text == SECRET_SERIALIZE_ARG
    )


def _extract_secret(
    annotations: tuple[Annotation, ...],
) -> tuple[tuple[Annotation, ...], SecretMarker | None]:
    secrets, rest = partition_annotations(annotations, MARKER_SECRET)
    if not secrets:
        return rest, None
    if len(secrets) > 1:
        raise MicrotypeError(
            "DUPLICATE_ATTRIBUTE", "duplicate `secret` attribute found", secrets[1].location
        )

    marker = secrets[0]
    if marker.delimiter is None:
        return rest, SecretMarker(serialize=False, location=marker.location)
    if marker.delimiter != "(":
        location = marker.arguments[0].location if marker.arguments else marker.location
        raise MicrotypeError("GRAMMAR", SECRET_FORM_MESSAGE, location)

    arguments = split_arguments(marker.arguments)
    if not arguments:
        return rest, SecretMarker(serialize=False, location=marker.location)
    if len(arguments) == 1 and _is_serialize_argument(arguments[0]):
        return rest, SecretMarker(serialize=True, location=marker.location)

    offending = next(
        (arg for arg in arguments if not _is_serialize_argument(arg)), arguments[-1]
    )
    raise MicrotypeError("GRAMMAR", SECRET_FORM_MESSAGE, offending[0].location)


def _single_marker(
    annotations: tuple[Annotation, ...], path: str
) -> tuple[tuple[Annotation, ...], Annotation | None]:
    matched, rest = partition_annotations(annotations, path)
    if len(matched) > 1:
        raise MicrotypeError(
            "DUPLICATE_ATTRIBUTE", f"duplicate `{path}` attribute found", matched[1].location
        )
    return rest, (matched[0] if matched else None)


def _extract_kind(
    annotations: tuple[Annotation, ...],
) -> tuple[tuple[Annotation, ...], KindMarker | None]:
    rest, string_marker = _single_marker(annotations, MARKER_STRING)
    rest, int_marker = _single_marker(rest, MARKER_INT)

    if string_marker is not None and int_marker is not None:
        raise MicrotypeError(
            "CONFLICTING_ATTRIBUTE",
            "only one of `#[int]`, `#[string]` allowed",
            max(string_marker.location, int_marker.location),
        )
    if string_marker is not None:
        return rest, KindMarker(kind=KIND_STRING, location=string_marker.location)
    if int_marker is not None:
        return rest, KindMarker(kind=KIND_INT, location=int_marker.location)
    return rest, None


def parse_column_type(marker: Annotation) -> TypeRef:
    """Parse the `sql_type = Type` argument of a column-mapping annotation.

    Raises:
        MicrotypeError: GRAMMAR located at the offending token.
    """
    tokens = marker.arguments
    if marker.delimiter != "(" or not tokens:
        raise MicrotypeError("GRAMMAR", COLUMN_FORM_MESSAGE, marker.location)

    key = tokens[0]
    if key.kind != TOKEN_IDENT or key.text != COLUMN_TYPE_ARG:
        raise MicrotypeError(
            "GRAMMAR", f"expected `{COLUMN_TYPE_ARG}`, found `{key.text}`", key.location
        )
    if len(tokens) < 2 or tokens[1].text != "=":
        location = tokens[1].location if len(tokens) > 1 else key.location
        raise MicrotypeError("GRAMMAR", f"expected `=` after `{COLUMN_TYPE_ARG}`", location)
    if len(tokens) < 3:
        raise MicrotypeError("GRAMMAR", "expected a type after `=`", tokens[1].location)

    return parse_type_tokens(tokens[2:], tokens[-1].location)


def _extract_column_mapping(
    annotations: tuple[Annotation, ...],
) -> tuple[tuple[Annotation, ...], ColumnMapping | None]:
    rest, marker = _single_marker(annotations, MARKER_COLUMN_MAPPING)
    if marker is None:
        return rest, None
    return rest, ColumnMapping(sql_type=parse_column_type(marker), location=marker.location)


def extract_control_attributes(
    spec: MicrotypeSpec,
) -> tuple[tuple[Annotation, ...], ControlAttributes] | ErrorArtifact:
    """Separate control annotations from pass-through ones and validate them.

    Runs three independent partitioning passes (secret, string/int kind,
    column mapping); each removes its markers before the next runs.

    Args:
        spec: Flattened microtype spec.

    Returns:
        (remaining pass-through annotations in original order, control
        attributes), or the single ErrorArtifact for the first rule the
        annotations break.
    """
    try:
        remaining, secret = _extract_secret(spec.annotations)
        remaining, kind = _extract_kind(remaining)
        remaining, column_mapping = _extract_column_mapping(remaining)
    except MicrotypeError as err:
        return err.to_artifact(spec.name)
    return remaining, ControlAttributes(
        secret=secret, kind=kind, column_mapping=column_mapping
    )


# ===--- Capability plan ---=== #

GROUP_ORDER: tuple[str, ...] = (
    "core",
    "secret_wrapper",
    "serde_derive",
    "serializable_secret",
    "dereference",
    "test_debug",
    "string_ops",
    "int_ops",
    "column_mapping",
)


@dataclass(frozen=True)
class CapabilityPlan:
    """Which artifact groups a microtype receives.

    Attributes:
        core: Normal wrapper struct, `Microtype` impl and `From<inner>`.
        secret_wrapper: Secret struct pair, secrecy marker impls,
            `ExposeSecret` and the `SecretMicrotype` constructor.
        serde_derive: serde derives on the generated struct(s).
        serializable_secret: `SerializableSecret` on the hidden wrapper.
        dereference: `Deref`/`DerefMut` to the inner type.
        test_debug: Test-only `Debug`/`PartialEq` exposing a secret.
        string_ops: String capability group.
        int_ops: Integer formatting, arithmetic and parsing group.
        column_mapping: diesel `FromSql`/`ToSql` pair.
    """

    core: bool = False
    secret_wrapper: bool = False
    serde_derive: bool = False
    serializable_secret: bool = False
    dereference: bool = False
    test_debug: bool = False
    string_ops: bool = False
    int_ops: bool = False
    column_mapping: bool = False

    @property
    def groups(self) -> tuple[str, ...]:
        return tuple(group for group in GROUP_ORDER if getattr(self, group))

    @property
    def variant(self) -> str:
        return "secret" if self.secret_wrapper else "normal"


def check_supported(control: ControlAttributes, families: CapabilityFamilies) -> None:
    """Reject control attributes that need a disabled family.

    Raises:
        MicrotypeError: UNSUPPORTED_COMBINATION at the marker responsible.
    """
    _check_column_mapping(control, families)
    secret = control.secret
    if secret is None:
        return
    if secret.serialize and not families.serialization:
        raise MicrotypeError(
            "UNSUPPORTED_COMBINATION",
            "`#[secret(serialize)]` has no effect unless the `serde` feature is enabled",
            secret.location,
        )
    if not families.secret:
        raise MicrotypeError(
            "UNSUPPORTED_COMBINATION",
            "`#[secret]` is only supported when the `secret` feature is enabled",
            secret.location,
        )
    if control.kind is not None and control.kind.kind == KIND_INT:
        raise MicrotypeError(
            "UNSUPPORTED_COMBINATION",
            "`#[int]` cannot be combined with `#[secret]`",
            control.kind.location,
        )


def _check_column_mapping(control: ControlAttributes, families: CapabilityFamilies) -> None:
    if control.column_mapping is not None and not families.column_mapping:
        raise MicrotypeError(
            "UNSUPPORTED_COMBINATION",
            "`#[diesel]` is only supported when the `diesel` feature is enabled",
            control.column_mapping.location,
        )


def plan_capabilities(
    control: ControlAttributes, families: CapabilityFamilies
) -> CapabilityPlan:
    """Compute the capability plan; a pure function of its two arguments.

    Assumes check_supported has accepted the combination.
    """
    kind = control.kind.kind if control.kind is not None else None
    column_mapping = control.column_mapping is not None

    if control.secret is None:
        return CapabilityPlan(
            core=True,
            serde_derive=families.serialization,
            dereference=families.dereference,
            string_ops=kind == KIND_STRING,
            int_ops=kind == KIND_INT,
            column_mapping=column_mapping,
        )

    return CapabilityPlan(
        secret_wrapper=True,
        serde_derive=control.secret.serialize and families.serialization,
        serializable_secret=control.secret.serialize and families.serialization,
        test_debug=not families.test_friendly_debug,
        string_ops=kind == KIND_STRING,
        column_mapping=column_mapping,
    )


# ===--- Artifacts ---=== #


@dataclass(frozen=True)
class ArtifactItem:
    """A run of generated lines belonging to one capability group.

    attached=True marks attribute lines that must sit directly on the item
    that follows them (no blank line in between).
    """

    group: str
    lines: tuple[str, ...]
    attached: bool = False


@dataclass(frozen=True)
class Artifact:
    name: str
    plan: CapabilityPlan
    items: tuple[ArtifactItem, ...]

    @property
    def groups(self) -> tuple[str, ...]:
        """Groups that contributed at least one item, in emission order."""
        seen: list[str] = []
        for item in self.items:
            if item.group not in seen:
                seen.append(item.group)
        return tuple(seen)


# ===--- Rust emitters ---=== #

MICROTYPE_TRAIT = "::microtype::Microtype"
SECRET_MICROTYPE_TRAIT = "::microtype::SecretMicrotype"
SECRECY = "::microtype::secrecy"
STR = "::core::primitive::str"
FORMATTER = "::core::fmt::Formatter<'_>"

INT_FORMAT_TRAITS: tuple[str, ...] = (
    "Display",
    "Octal",
    "LowerHex",
    "UpperHex",
    "Binary",
    "LowerExp",
    "UpperExp",
)
INT_BINARY_OPS: tuple[tuple[str, str, str], ...] = (
    ("Add", "add", "+"),
    ("Sub", "sub", "-"),
    ("Mul", "mul", "*"),
    ("Div", "div", "/"),
    ("Rem", "rem", "%"),
)

SERDE_TRANSPARENT_DERIVES: tuple[str, ...] = (
    "#[derive(::serde::Deserialize, ::serde::Serialize)]",
    "#[serde(transparent)]",
)
SECRET_TYPE_ATTRIBUTES: tuple[str, ...] = (
    "#[repr(transparent)]",
    "#[derive(::core::clone::Clone)]",
    "#[cfg_attr(not(test), derive(::core::fmt::Debug))]",
)


def secret_wrapper_name(name: str) -> str:
    """Hidden wrapper type for a secret microtype.

    Declared names cannot start with RESERVED_NAME_PREFIX, so this never
    collides with a user type.
    """
    return f"{RESERVED_NAME_PREFIX}Secret{name.removeprefix('r#')}"


def _vis_prefix(visibility: str) -> str:
    return f"{visibility} " if visibility else ""


def _pass_through_item(group: str, remaining: tuple[Annotation, ...]) -> list[ArtifactItem]:
    if not remaining:
        return []
    return [ArtifactItem(group, tuple(a.text for a in remaining), attached=True)]


def microtype_impl_lines(name: str, inner: str) -> list[str]:
    return [
        f"impl {MICROTYPE_TRAIT} for {name} {{",
        f"    type Inner = {inner};",
        "",
        "    fn new(inner: Self::Inner) -> Self {",
        "        Self(inner)",
        "    }",
        "",
        "    fn into_inner(self) -> Self::Inner {",
        "        self.0",
        "    }",
        "",
        "    fn inner(&self) -> &Self::Inner {",
        "        &self.0",
        "    }",
        "",
        "    fn inner_mut(&mut self) -> &mut Self::Inner {",
        "        &mut self.0",
        "    }",
        "",
        f"    fn convert<T: {MICROTYPE_TRAIT}<Inner = Self::Inner>>(self) -> T {{",
        "        T::new(self.0)",
        "    }",
        "}",
    ]


def from_inner_impl_lines(name: str, inner: str) -> list[str]:
    return [
        f"impl ::core::convert::From<{inner}> for {name} {{",
        f"    fn from(inner: {inner}) -> Self {{",
        "        Self(inner)",
        "    }",
        "}",
    ]


def deref_impl_lines(name: str, inner: str) -> list[str]:
    return [
        f"impl ::core::ops::Deref for {name} {{",
        f"    type Target = {inner};",
        "",
        "    fn deref(&self) -> &Self::Target {",
        "        &self.0",
        "    }",
        "}",
    ]


def deref_mut_impl_lines(name: str) -> list[str]:
    return [
        f"impl ::core::ops::DerefMut for {name} {{",
        "    fn deref_mut(&mut self) -> &mut Self::Target {",
        "        &mut self.0",
        "    }",
        "}",
    ]


def fmt_impl_lines(name: str, inner: str, trait_name: str) -> list[str]:
    """Forward one `core::fmt` trait to the inner value."""
    trait_path = f"::core::fmt::{trait_name}"
    return [
        f"impl {trait_path} for {name} {{",
        f"    fn fmt(&self, f: &mut {FORMATTER}) -> ::core::fmt::Result {{",
        f"        <{inner} as {trait_path}>::fmt(&self.0, f)",
        "    }",
        "}",
    ]


def string_impl_items(name: str, inner: str) -> list[ArtifactItem]:
    from_str = [
        f"impl ::core::str::FromStr for {name} {{",
        "    type Err = ::core::convert::Infallible;",
        "",
        f"    fn from_str(s: &{STR}) -> ::core::result::Result<Self, Self::Err> {{",
        "        ::core::result::Result::Ok(Self(::core::convert::From::from(s)))",
        "    }",
        "}",
    ]
    from_borrowed = [
        f"impl ::core::convert::From<&{STR}> for {name} {{",
        f"    fn from(s: &{STR}) -> Self {{",
        "        Self(::core::convert::From::from(s))",
        "    }",
        "}",
    ]
    as_ref = [
        f"impl ::core::convert::AsRef<{STR}> for {name} {{",
        f"    fn as_ref(&self) -> &{STR} {{",
        f"        ::core::convert::AsRef::<{STR}>::as_ref(&self.0)",
        "    }",
        "}",
    ]
    blocks = [fmt_impl_lines(name, inner, "Display"), from_str, from_borrowed, as_ref]
    return [ArtifactItem("string_ops", tuple(block)) for block in blocks]


def int_impl_items(name: str, inner: str) -> list[ArtifactItem]:
    blocks: list[list[str]] = [
        fmt_impl_lines(name, inner, trait_name) for trait_name in INT_FORMAT_TRAITS
    ]

    for trait_name, method, operator in INT_BINARY_OPS:
        blocks.append(
            [
                f"impl ::core::ops::{trait_name} for {name} {{",
                "    type Output = Self;",
                "",
                f"    fn {method}(self, rhs: Self) -> Self::Output {{",
                f"        Self(self.0 {operator} rhs.0)",
                "    }",
                "}",
            ]
        )

    for trait_name, method, operator in INT_BINARY_OPS:
        blocks.append(
            [
                f"impl ::core::ops::{trait_name}Assign for {name} {{",
                f"    fn {method}_assign(&mut self, rhs: Self) {{",
                f"        self.0 {operator}= rhs.0;",
                "    }",
                "}",
            ]
        )

    blocks.append(
        [
            f"impl ::core::str::FromStr for {name} {{",
            f"    type Err = <{inner} as ::core::str::FromStr>::Err;",
            "",
            f"    fn from_str(s: &{STR}) -> ::core::result::Result<Self, Self::Err> {{",
            f"        <{inner} as ::core::str::FromStr>::from_str(s).map(Self)",
            "    }",
            "}",
        ]
    )
    return [ArtifactItem("int_ops", tuple(block)) for block in blocks]


def column_mapping_impl_items(
    name: str, inner: str, sql_type: str, *, secret: bool
) -> list[ArtifactItem]:
    """diesel `FromSql`/`ToSql` delegating to the inner type's own impls.

    Decoding maps the inner value through the constructor; encoding borrows
    the inner value (through `expose_secret` for secret microtypes).
    """
    if secret:
        constructor = f"<{name} as {SECRET_MICROTYPE_TRAIT}>::new"
        borrow = f"{SECRECY}::ExposeSecret::expose_secret(self)"
    else:
        constructor = f"<{name} as {MICROTYPE_TRAIT}>::new"
        borrow = f"<{name} as {MICROTYPE_TRAIT}>::inner(self)"
    from_sql = f"::diesel::deserialize::FromSql<{sql_type}, B>"
    to_sql = f"::diesel::serialize::ToSql<{sql_type}, B>"

    decode = [
        f"impl<B> {from_sql} for {name}",
        "where",
        "    B: ::diesel::backend::Backend,",
        f"    {inner}: {from_sql},",
        "{",
        "    fn from_sql(",
        "        bytes: ::diesel::backend::RawValue<'_, B>,",
        "    ) -> ::diesel::deserialize::Result<Self> {",
        f"        <{inner} as {from_sql}>::from_sql(bytes).map({constructor})",
        "    }",
        "}",
    ]
    encode = [
        f"impl<B> {to_sql} for {name}",
        "where",
        "    B: ::diesel::backend::Backend,",
        f"    {inner}: {to_sql},",
        "{",
        "    fn to_sql<'b>(",
        "        &'b self,",
        "        out: &mut ::diesel::serialize::Output<'b, '_, B>,",
        "    ) -> ::diesel::serialize::Result {",
        f"        <{inner} as {to_sql}>::to_sql({borrow}, out)",
        "    }",
        "}",
    ]
    return [
        ArtifactItem("column_mapping", tuple(decode)),
        ArtifactItem("column_mapping", tuple(encode)),
    ]


def secret_marker_impl_lines(wrapper: str) -> list[str]:
    return [
        f"impl {SECRECY}::CloneableSecret for {wrapper} {{}}",
        "",
        f"impl {SECRECY}::DebugSecret for {wrapper} {{}}",
        "",
        f"impl {SECRECY}::Zeroize for {wrapper} {{",
        "    fn zeroize(&mut self) {",
        f"        {SECRECY}::Zeroize::zeroize(&mut self.0);",
        "    }",
        "}",
    ]


def expose_secret_impl_lines(name: str, inner: str) -> list[str]:
    return [
        f"impl {SECRECY}::ExposeSecret<{inner}> for {name} {{",
        f"    fn expose_secret(&self) -> &{inner} {{",
        f"        &{SECRECY}::ExposeSecret::expose_secret(&self.0).0",
        "    }",
        "}",
    ]


def secret_constructor_impl_lines(name: str, wrapper: str, inner: str) -> list[str]:
    return [
        f"impl {SECRET_MICROTYPE_TRAIT} for {name} {{",
        f"    type Inner = {inner};",
        "",
        "    fn new(inner: Self::Inner) -> Self {",
        f"        Self({SECRECY}::Secret::new({wrapper}(inner)))",
        "    }",
        "}",
    ]


def secret_test_debug_lines(name: str, inner: str) -> list[str]:
    return [
        "#[cfg(test)]",
        f"impl ::core::fmt::Debug for {name} {{",
        f"    fn fmt(&self, f: &mut {FORMATTER}) -> ::core::fmt::Result {{",
        f"        <{inner} as ::core::fmt::Debug>::fmt(",
        f"            {SECRECY}::ExposeSecret::expose_secret(self),",
        "            f,",
        "        )",
        "    }",
        "}",
    ]


def secret_test_eq_lines(name: str, inner: str) -> list[str]:
    return [
        "#[cfg(test)]",
        f"impl ::core::cmp::PartialEq for {name} {{",
        "    fn eq(&self, other: &Self) -> bool {",
        f"        <{inner} as ::core::cmp::PartialEq>::eq(",
        f"            {SECRECY}::ExposeSecret::expose_secret(self),",
        f"            {SECRECY}::ExposeSecret::expose_secret(other),",
        "        )",
        "    }",
        "}",
    ]


def secret_string_impl_items(name: str) -> list[ArtifactItem]:
    """Construction-only string capabilities; nothing here reads the secret."""
    new = f"<Self as {SECRET_MICROTYPE_TRAIT}>::new(::core::convert::From::from(s))"
    from_str = [
        f"impl ::core::str::FromStr for {name} {{",
        "    type Err = ::core::convert::Infallible;",
        "",
        f"    fn from_str(s: &{STR}) -> ::core::result::Result<Self, Self::Err> {{",
        f"        ::core::result::Result::Ok({new})",
        "    }",
        "}",
    ]
    from_borrowed = [
        f"impl ::core::convert::From<&{STR}> for {name} {{",
        f"    fn from(s: &{STR}) -> Self {{",
        f"        {new}",
        "    }",
        "}",
    ]
    return [
        ArtifactItem("string_ops", tuple(from_str)),
        ArtifactItem("string_ops", tuple(from_borrowed)),
    ]


def emit_normal(
    spec: MicrotypeSpec,
    remaining: tuple[Annotation, ...],
    control: ControlAttributes,
    plan: CapabilityPlan,
) -> list[ArtifactItem]:
    """Artifact items for a normal (non-secret) microtype, in output order."""
    name = spec.name
    inner = spec.inner.text

    items = _pass_through_item("core", remaining)
    if plan.serde_derive:
        items.append(ArtifactItem("serde_derive", SERDE_TRANSPARENT_DERIVES, attached=True))
    items.append(
        ArtifactItem(
            "core",
            (
                "#[repr(transparent)]",
                f"{_vis_prefix(spec.visibility)}struct {name}(pub {inner});",
            ),
        )
    )
    items.append(ArtifactItem("core", tuple(microtype_impl_lines(name, inner))))
    items.append(ArtifactItem("core", tuple(from_inner_impl_lines(name, inner))))

    if plan.dereference:
        items.append(ArtifactItem("dereference", tuple(deref_impl_lines(name, inner))))
        items.append(ArtifactItem("dereference", tuple(deref_mut_impl_lines(name))))
    if plan.string_ops:
        items.extend(string_impl_items(name, inner))
    if plan.int_ops:
        items.extend(int_impl_items(name, inner))
    if plan.column_mapping:
        assert control.column_mapping is not None
        items.extend(
            column_mapping_impl_items(
                name, inner, control.column_mapping.sql_type.text, secret=False
            )
        )
    return items


def emit_secret(
    spec: MicrotypeSpec,
    remaining: tuple[Annotation, ...],
    control: ControlAttributes,
    plan: CapabilityPlan,
) -> list[ArtifactItem]:
    """Artifact items for a secret microtype, in output order.

    The public type holds `Secret<hidden wrapper>`; the only read access is
    the borrowed `expose_secret`.
    """
    assert control.secret is not None
    name = spec.name
    inner = spec.inner.text
    wrapper = secret_wrapper_name(name)

    items = _pass_through_item("secret_wrapper", remaining)
    for struct_line in (
        f"{_vis_prefix(spec.visibility)}struct {name}({SECRECY}::Secret<{wrapper}>);",
        f"struct {wrapper}({inner});",
    ):
        items.append(ArtifactItem("secret_wrapper", SECRET_TYPE_ATTRIBUTES, attached=True))
        if plan.serde_derive:
            items.append(ArtifactItem("serde_derive", SERDE_TRANSPARENT_DERIVES, attached=True))
        items.append(ArtifactItem("secret_wrapper", (struct_line,)))

    items.append(ArtifactItem("secret_wrapper", tuple(secret_marker_impl_lines(wrapper))))
    if plan.serializable_secret:
        items.append(
            ArtifactItem(
                "serializable_secret",
                (f"impl {SECRECY}::SerializableSecret for {wrapper} {{}}",),
            )
        )
    for block in (
        expose_secret_impl_lines(name, inner),
        secret_constructor_impl_lines(name, wrapper, inner),
    ):
        items.append(ArtifactItem("secret_wrapper", tuple(block)))

    test_debug = tuple(secret_test_debug_lines(name, inner))
    if plan.test_debug:
        items.append(ArtifactItem("test_debug", test_debug))
        items.append(ArtifactItem("test_debug", tuple(secret_test_eq_lines(name, inner))))
    else:
        items.append(ArtifactItem("secret_wrapper", test_debug))

    if plan.string_ops:
        items.extend(secret_string_impl_items(name))
    if plan.column_mapping:
        assert control.column_mapping is not None
        items.extend(
            column_mapping_impl_items(
                name, inner, control.column_mapping.sql_type.text, secret=True
            )
        )
    return items


# ===--- Capability dispatcher ---=== #


def dispatch(
    spec: MicrotypeSpec,
    remaining: tuple[Annotation, ...],
    control: ControlAttributes,
    families: CapabilityFamilies,
) -> Artifact | ErrorArtifact:
    """Decide and emit every artifact group for one validated microtype.

    Args:
        spec: Flattened microtype spec.
        remaining: Pass-through annotations left by extract_control_attributes.
        control: Validated control attributes.
        families: Enabled capability families for this build.

    Returns:
        The Artifact, or one ErrorArtifact when the requested capabilities
        need a disabled family (or combine secret with int).
    """
    try:
        check_supported(control, families)
    except MicrotypeError as err:
        return err.to_artifact(spec.name)

    plan = plan_capabilities(control, families)
    if control.secret is None:
        items = emit_normal(spec, remaining, control, plan)
    else:
        items = emit_secret(spec, remaining, control, plan)
    return Artifact(name=spec.name, plan=plan, items=tuple(items))


def generate_single(
    spec: MicrotypeSpec, families: CapabilityFamilies
) -> Artifact | ErrorArtifact:
    extracted = extract_control_attributes(spec)
    if isinstance(extracted, ErrorArtifact):
        return extracted
    remaining, control = extracted
    return dispatch(spec, remaining, control, families)


def codegen(
    specs: list[MicrotypeSpec], families: CapabilityFamilies
) -> tuple[Artifact | ErrorArtifact, ...]:
    """Generate every spec independently, preserving order.

    Errors do not stop later specs: every spec gets exactly one result.
    """
    return tuple(generate_single(spec, families) for spec in specs)


# ===--- Invocation boundary ---=== #


@dataclass(frozen=True)
class Expansion:
    """Result of one invocation over a declaration source.

    Attributes:
        declarations: Parsed blocks (empty after a grammar error).
        specs: Flattened specs (empty after a grammar error).
        results: One Artifact or ErrorArtifact per spec, in spec order; a
            single GRAMMAR ErrorArtifact when parsing failed.
    """

    declarations: tuple[RawDeclaration, ...]
    specs: tuple[MicrotypeSpec, ...]
    results: tuple[Artifact | ErrorArtifact, ...]

    @property
    def artifacts(self) -> tuple[Artifact, ...]:
        return tuple(r for r in self.results if isinstance(r, Artifact))

    @property
    def errors(self) -> tuple[ErrorArtifact, ...]:
        return tuple(r for r in self.results if isinstance(r, ErrorArtifact))

    @property
    def ok(self) -> bool:
        return not self.errors


def expand(source: str, families: CapabilityFamilies) -> Expansion:
    """Run parser -> flattener -> validator -> dispatcher over one source."""
    try:
        declarations = parse_declarations(source)
    except MicrotypeError as err:
        return Expansion(declarations=(), specs=(), results=(err.to_artifact(),))
    specs = flatten(declarations)
    return Expansion(
        declarations=tuple(declarations),
        specs=tuple(specs),
        results=codegen(specs, families),
    )


# ===--- Output writer ---=== #


@dataclass(frozen=True)
class WriteConfig:
    """Run metadata embedded in the generated file header.

    Attributes:
        source_label: Name of the declaration file, e.g. "types.microtype".
        features: Enabled feature names.
    """

    source_label: str
    features: frozenset[str]


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing the generated file.

    Attributes:
        filename: Filename written, e.g. "types.rs".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


_HEADER_BORDER: str = "// x-------------------------------------------x //"


def format_features_label(features: frozenset[str]) -> str:
    return ", ".join(sorted(features)) if features else "none"


def format_file_header(config: WriteConfig) -> list[str]:
    """Return comment-block lines for the generated file header.

    Output format:
        // x-------------------------------------------x //
        // | Microtype wrappers for Rust
        // | Generated by microtype-gen
        // | Source: types.microtype
        // | Features: deref_impls, secret
        // x-------------------------------------------x //

    Features are sorted; "none" when no feature is enabled.

    Raises:
        ValueError: If config.source_label is empty.
    """
    if not config.source_label:
        raise ValueError("source_label must not be empty")
    return [
        _HEADER_BORDER,
        "// | Microtype wrappers for Rust",
        f"// | Generated by {GENERATOR_NAME}",
        f"// | Source: {config.source_label}",
        f"// | Features: {format_features_label(config.features)}",
        _HEADER_BORDER,
    ]


def render_artifact_lines(artifact: Artifact) -> list[str]:
    """Join an artifact's items, one blank line between unattached items."""
    lines: list[str] = []
    last = len(artifact.items) - 1
    for index, item in enumerate(artifact.items):
        lines.extend(item.lines)
        if not item.attached and index < last:
            lines.append("")
    return lines


def assemble_output_source(
    config: WriteConfig, expansion: Expansion, keep_going: bool = False
) -> str:
    """Assemble the complete Rust source for an expansion.

    File structure:
        <header_comment_block>
                                    <- blank line
        <artifact 1>
                                    <- blank line
        <artifact 2>
        ...                         <- trailing newline

    With keep_going, error artifacts are rendered in place as
    `compile_error!` items so the consuming build reports them.

    Raises:
        ValueError: If the expansion has errors and keep_going is False.
    """
    if expansion.errors and not keep_going:
        raise ValueError(
            f"cannot assemble output from an expansion with "
            f"{len(expansion.errors)} error(s)"
        )

    parts: list[str] = list(format_file_header(config))
    for result in expansion.results:
        parts.append("")
        if isinstance(result, ErrorArtifact):
            parts.extend(result.render_lines())
        else:
            parts.extend(render_artifact_lines(result))
    return "\n".join(parts) + "\n"


def write_output(
    output_path: Path,
    config: WriteConfig,
    expansion: Expansion,
    keep_going: bool = False,
) -> FileWriteResult:
    """Write the generated Rust file to disk.

    Thin I/O shell over assemble_output_source. Creates missing parent
    directories before writing.

    Raises:
        ValueError: Propagated from assemble_output_source.
        OSError: Propagated directly if the filesystem write fails.
    """
    output_path = Path(output_path)
    content = assemble_output_source(config, expansion, keep_going)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(content, encoding="utf-8")
    resolved = output_path.resolve()
    return FileWriteResult(
        filename=output_path.name,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationCounts:
    """Per-variant and per-group counts for one expansion.

    Invariant: normal + secret + errors == microtypes.

    Attributes:
        microtypes: Number of flattened specs.
        normal: Specs generated as normal wrappers.
        secret: Specs generated as secret wrappers.
        errors: Specs (or grammar failures) that produced an error.
        groups: (group, count) for every group in GROUP_ORDER.
    """

    microtypes: int
    normal: int
    secret: int
    errors: int
    groups: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class GenerationSummary:
    source_label: str
    output_path: str
    features_label: str
    counts: GenerationCounts
    file: FileWriteResult


def build_generation_counts(expansion: Expansion) -> GenerationCounts:
    artifacts = expansion.artifacts
    normal = sum(1 for a in artifacts if a.plan.variant == "normal")
    secret = sum(1 for a in artifacts if a.plan.variant == "secret")
    errors = len(expansion.errors)
    microtypes = len(expansion.specs)
    assert normal + secret + errors == max(microtypes, errors), (
        f"GenerationCounts invariant violated: {normal}+{secret}+{errors}!={microtypes}"
    )
    groups = tuple(
        (group, sum(1 for a in artifacts if getattr(a.plan, group)))
        for group in GROUP_ORDER
    )
    return GenerationCounts(
        microtypes=microtypes, normal=normal, secret=secret, errors=errors, groups=groups
    )


def build_generation_summary(
    write_config: WriteConfig,
    expansion: Expansion,
    write_result: FileWriteResult,
) -> GenerationSummary:
    return GenerationSummary(
        source_label=write_config.source_label,
        output_path=str(write_result.path),
        features_label=format_features_label(write_config.features),
        counts=build_generation_counts(expansion),
        file=write_result,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render the post-generation console report.

    Groups with a zero count are omitted. The errors row appears only when
    errors were embedded with --keep-going.
    """
    counts = summary.counts
    lines: list[str] = ["Microtypes generated:", ""]
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_path}")
    lines.append(f"  Features:   {summary.features_label}")
    lines.append("")
    lines.append(
        f"  Microtypes: {counts.microtypes:>5}  "
        f"({counts.normal} normal + {counts.secret} secret)"
    )
    if counts.errors:
        lines.append(f"  Errors:     {counts.errors:>5}  (embedded as compile_error!)")

    present = [(group, count) for group, count in counts.groups if count]
    if present:
        lines.append("")
        lines.append("  Capability groups:")
        for group, count in present:
            lines.append(f"    {group:<22}{count:>5}")

    lines.append("")
    lines.append(f"  Written: {summary.file.filename} ({summary.file.line_count:,} lines)")
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Discovery ---=== #


def format_plan_table(expansion: Expansion, source_label: str) -> str:
    """Return the --plan output: one row per microtype with its groups.

    Output format:

        Capability plan for types.microtype (3 microtypes):

          Email     normal  core, dereference, string_ops
          Password  secret  secret_wrapper, test_debug
          Bad       error   error[CONFLICTING_ATTRIBUTE] 7:9: only one of ...
    """
    count = len(expansion.specs)
    noun = "microtype" if count == 1 else "microtypes"
    lines = [f"Capability plan for {source_label} ({count} {noun}):", ""]

    if not expansion.specs:
        for error in expansion.errors:
            lines.append(f"  error[{error.kind}] {error.location}: {error.message}")
        lines.append("")
        return "\n".join(lines)

    name_width = max(len(spec.name) for spec in expansion.specs)
    for spec, result in zip(expansion.specs, expansion.results):
        if isinstance(result, ErrorArtifact):
            detail = f"error[{result.kind}] {result.location}: {result.message}"
            lines.append(f"  {spec.name.ljust(name_width)}  {'error':<6}  {detail}")
        else:
            groups = ", ".join(result.plan.groups)
            lines.append(
                f"  {spec.name.ljust(name_width)}  {result.plan.variant:<6}  {groups}"
            )
    lines.append("")
    return "\n".join(lines)


def format_features_table(families: CapabilityFamilies) -> str:
    """Return the --list-features output.

    Output format:

        Features:

          deref_impls  dereference          default  enabled
          serde        serialization                 disabled
    """
    enabled = families.features
    name_width = max(len(name) for name in FEATURE_FAMILIES)
    family_width = max(len(family) for family in FEATURE_FAMILIES.values())
    lines = ["Features:", ""]
    for name in sorted(FEATURE_FAMILIES):
        default_col = "default" if name in DEFAULT_FEATURES else ""
        state = "enabled" if name in enabled else "disabled"
        lines.append(
            f"  {name.ljust(name_width)}  {FEATURE_FAMILIES[name].ljust(family_width)}"
            f"  {default_col:<7}  {state}"
        )
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Execute the discovery command specified in config.

    dispatch table:
      "list-features" -> format_features_table -> print
      "plan"          -> expand -> format_plan_table -> print

    Raises:
        SystemExit(1): When the plan contains errors (the table is printed
            first).
        OSError: Declaration file not readable.
    """
    if config.command == "list-features":
        print(format_features_table(config.families), end="")
        return

    assert config.input_path is not None  # validate_config guarantees this for "plan"
    source = config.input_path.read_text(encoding="utf-8")
    expansion = expand(source, config.families)
    print(format_plan_table(expansion, config.input_path.name), end="")
    if not expansion.ok:
        raise SystemExit(1)


# ===--- Main generation ---=== #


def run_generate(config: GenerateConfig) -> FileWriteResult:
    """Execute the generation pipeline for a GenerateConfig.

    Parses the declaration file, expands it, and writes the Rust output.
    When any microtype fails, every diagnostic is printed to stderr and
    nothing is written, unless keep_going is set.

    Returns:
        FileWriteResult for the written file.

    Raises:
        SystemExit(1): When the expansion has errors and keep_going is off.
        OSError: Declaration file not readable or filesystem write failure.
    """
    print(f"Parsing: {config.input_path}")
    source = config.input_path.read_text(encoding="utf-8")
    expansion = expand(source, config.families)
    print(
        f"  Declarations: {len(expansion.declarations)} blocks, "
        f"{len(expansion.specs)} microtypes"
    )

    if expansion.errors:
        for error in expansion.errors:
            print(format_diagnostic(error, str(config.input_path)), file=sys.stderr)
        if not config.keep_going:
            print(f"  Failed: {len(expansion.errors)} error(s), nothing written")
            raise SystemExit(1)

    write_config = WriteConfig(
        source_label=config.input_path.name, features=config.families.features
    )
    result = write_output(
        config.output_path, write_config, expansion, keep_going=config.keep_going
    )
    print(f"  Written: {result.line_count} lines to {result.path}")

    summary = build_generation_summary(write_config, expansion, result)
    print_generation_summary(summary)
    return result


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except ValueError as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
