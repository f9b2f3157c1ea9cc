"""Decoding of Rust linkage names into structured identities.

Two manglings are understood:

* the legacy scheme (``_ZN3foo3bar17h0123456789abcdefE``), an Itanium-like list of
  length-prefixed identifiers ending in a crate-disambiguating hash;
* the v0 scheme (``_RNvCs1234_3foo3bar``), which additionally encodes generic
  arguments, impl blocks and closures.

Anything else (C symbols, C++ names, malformed input) is returned as :class:`Unmangled`.
The functions here are pure: the same linkage name always produces the same result.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional, Tuple, Union

_LLVM_SUFFIX_RE = re.compile(r"\.llvm\.[0-9A-Za-z@]+$")
_LEGACY_HASH_RE = re.compile(r"^h[0-9a-f]{16}$")
_IMPL_CRATE_RE = re.compile(r"^<(?:impl\s+)?&?(?:mut\s+)?([A-Za-z_][A-Za-z0-9_]*)::")
_LEGACY_ESCAPES = {
    "SP": "@",
    "BP": "*",
    "RF": "&",
    "LT": "<",
    "GT": ">",
    "LP": "(",
    "RP": ")",
    "C": ",",
}
_BASIC_TYPES = {
    "a": "i8",
    "b": "bool",
    "c": "char",
    "d": "f64",
    "e": "str",
    "f": "f32",
    "h": "u8",
    "i": "isize",
    "j": "usize",
    "l": "i32",
    "m": "u32",
    "n": "i128",
    "o": "u128",
    "p": "_",
    "s": "i16",
    "t": "u16",
    "u": "()",
    "v": "...",
    "x": "i64",
    "y": "u64",
    "z": "!",
}
_MAX_DEPTH = 256


@dataclass(frozen=True, slots=True)
class StructuredIdentity:
    """Decoded form of a mangled Rust symbol."""

    path: Tuple[str, ...]
    name: str
    generic_args: Tuple[str, ...] = ()
    crate: Optional[str] = None
    scheme: str = "legacy"

    @property
    def module_path(self) -> str:
        return "::".join(self.path)

    @property
    def qualified_name(self) -> str:
        if not self.path:
            return self.name
        return f"{self.module_path}::{self.name}"

    @property
    def key(self) -> str:
        """Canonical, hash-free key used to match definitions across packages."""

        if self.generic_args:
            return f"{self.qualified_name}::<{', '.join(self.generic_args)}>"
        return self.qualified_name

    @property
    def is_generic(self) -> bool:
        return bool(self.generic_args) or "::<" in self.module_path

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True, slots=True)
class Unmangled:
    """A linkage name that is not a Rust mangled symbol."""

    symbol: str

    @property
    def path(self) -> Tuple[str, ...]:
        return ()

    @property
    def name(self) -> str:
        return self.symbol

    @property
    def generic_args(self) -> Tuple[str, ...]:
        return ()

    @property
    def crate(self) -> Optional[str]:
        return None

    @property
    def module_path(self) -> str:
        return ""

    @property
    def qualified_name(self) -> str:
        return self.symbol

    @property
    def key(self) -> str:
        return self.symbol

    @property
    def is_generic(self) -> bool:
        return False

    def __str__(self) -> str:
        return self.symbol


Identity = Union[StructuredIdentity, Unmangled]


class _Invalid(Exception):
    pass


def _strip_prefix(symbol: str, prefixes: Tuple[str, ...]) -> Optional[str]:
    for prefix in prefixes:
        if symbol.startswith(prefix):
            return symbol[len(prefix):]
    return None


# -- legacy ---------------------------------------------------------------------------------------


def _code_point(value: int, symbol: str) -> str:
    if value > sys.maxunicode:
        raise _Invalid(symbol)
    return chr(value)


def _unescape_legacy(ident: str) -> str:
    if ident.startswith("_$"):
        ident = ident[1:]
    out: List[str] = []
    i = 0
    while i < len(ident):
        ch = ident[i]
        if ch == "$":
            end = ident.find("$", i + 1)
            if end == -1:
                raise _Invalid(ident)
            code = ident[i + 1:end]
            if code in _LEGACY_ESCAPES:
                out.append(_LEGACY_ESCAPES[code])
            elif code.startswith("u") and len(code) > 1:
                try:
                    value = int(code[1:], 16)
                except ValueError as exc:
                    raise _Invalid(ident) from exc
                out.append(_code_point(value, ident))
            else:
                raise _Invalid(ident)
            i = end + 1
        elif ident.startswith("..", i):
            out.append("::")
            i += 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _demangle_legacy(body: str) -> StructuredIdentity:
    segments: List[str] = []
    i = 0
    while True:
        if i >= len(body):
            raise _Invalid(body)
        if body[i] == "E":
            i += 1
            break
        start = i
        while i < len(body) and body[i].isdigit():
            i += 1
        if start == i:
            raise _Invalid(body)
        length = int(body[start:i])
        ident = body[i:i + length]
        if len(ident) != length or length == 0:
            raise _Invalid(body)
        segments.append(ident)
        i += length

    rest = body[i:]
    if rest and not rest.startswith("."):
        raise _Invalid(body)
    if segments and _LEGACY_HASH_RE.match(segments[-1]):
        segments.pop()
    if not segments:
        raise _Invalid(body)

    decoded = [_unescape_legacy(segment) for segment in segments]
    crate: Optional[str] = None
    if decoded[0].startswith("<"):
        match = _IMPL_CRATE_RE.match(decoded[0])
        crate = match.group(1) if match else None
    elif len(decoded) > 1:
        crate = decoded[0]
    return StructuredIdentity(path=tuple(decoded[:-1]), name=decoded[-1], crate=crate, scheme="legacy")


# -- v0 -------------------------------------------------------------------------------------------


@dataclass
class _Path:
    segments: List[str]
    crate: Optional[str]
    generic_args: List[str] = field(default_factory=list)

    def render(self) -> str:
        text = "::".join(self.segments)
        if self.generic_args:
            text = f"{text}::<{', '.join(self.generic_args)}>"
        return text


class _V0Parser:
    def __init__(self, sym: str) -> None:
        self.sym = sym
        self.pos = 0
        self.depth = 0

    # primitives

    def peek(self) -> str:
        return self.sym[self.pos] if self.pos < len(self.sym) else ""

    def eat(self, ch: str) -> bool:
        if self.peek() == ch:
            self.pos += 1
            return True
        return False

    def next(self) -> str:
        ch = self.peek()
        if not ch:
            raise _Invalid(self.sym)
        self.pos += 1
        return ch

    def base62(self) -> int:
        if self.eat("_"):
            return 0
        value = 0
        while True:
            ch = self.next()
            if ch == "_":
                return value + 1
            if ch.isdigit():
                digit = ord(ch) - ord("0")
            elif "a" <= ch <= "z":
                digit = 10 + ord(ch) - ord("a")
            elif "A" <= ch <= "Z":
                digit = 36 + ord(ch) - ord("A")
            else:
                raise _Invalid(self.sym)
            value = value * 62 + digit

    def opt_base62(self, tag: str) -> int:
        if not self.eat(tag):
            return 0
        return self.base62() + 1

    def decimal(self) -> int:
        start = self.pos
        while self.peek().isdigit():
            self.pos += 1
        if start == self.pos:
            raise _Invalid(self.sym)
        text = self.sym[start:self.pos]
        if len(text) > 1 and text.startswith("0"):
            raise _Invalid(self.sym)
        return int(text)

    def ident(self) -> Tuple[int, str]:
        disambiguator = self.opt_base62("s")
        return disambiguator, self.undisambiguated_ident()

    def undisambiguated_ident(self) -> str:
        punycode = self.eat("u")
        length = self.decimal()
        self.eat("_")
        raw = self.sym[self.pos:self.pos + length]
        if len(raw) != length:
            raise _Invalid(self.sym)
        self.pos += length
        if not punycode:
            return raw
        head, sep, tail = raw.rpartition("_")
        encoded = f"{head}-{tail}" if sep else raw
        try:
            return encoded.encode("ascii").decode("punycode")
        except (UnicodeError, ValueError) as exc:
            raise _Invalid(self.sym) from exc

    def backref(self) -> "_V0Parser":
        start = self.pos - 1
        target = self.base62()
        if target >= start:
            raise _Invalid(self.sym)
        clone = _V0Parser(self.sym)
        clone.pos = target
        clone.depth = self.depth + 1
        if clone.depth > _MAX_DEPTH:
            raise _Invalid(self.sym)
        return clone

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > _MAX_DEPTH:
            raise _Invalid(self.sym)

    def _leave(self) -> None:
        self.depth -= 1

    # grammar

    def path(self) -> _Path:
        self._enter()
        try:
            tag = self.next()
            if tag == "C":
                _, name = self.ident()
                return _Path([name], name)
            if tag == "M":
                impl = self.impl_path()
                self_ty = self.type_()
                return _Path([f"<{self_ty}>"], impl.crate)
            if tag == "X":
                impl = self.impl_path()
                self_ty = self.type_()
                trait = self.path()
                return _Path([f"<{self_ty} as {trait.render()}>"], impl.crate)
            if tag == "Y":
                self_ty = self.type_()
                trait = self.path()
                return _Path([f"<{self_ty} as {trait.render()}>"], trait.crate)
            if tag == "N":
                namespace = self.next()
                inner = self.path()
                disambiguator, name = self.ident()
                segments = [*inner.segments]
                if inner.generic_args:
                    segments[-1] = f"{segments[-1]}::<{', '.join(inner.generic_args)}>"
                if namespace.isupper():
                    label = {"C": "closure", "S": "shim"}.get(namespace, namespace)
                    segments.append(f"{{{label}:{name}#{disambiguator}}}" if name else f"{{{label}#{disambiguator}}}")
                elif namespace.islower():
                    segments.append(name)
                else:
                    raise _Invalid(self.sym)
                return _Path(segments, inner.crate)
            if tag == "I":
                inner = self.path()
                args = self.generic_args()
                return _Path(inner.segments, inner.crate, [*inner.generic_args, *args])
            if tag == "B":
                return self.backref().path()
            raise _Invalid(self.sym)
        finally:
            self._leave()

    def impl_path(self) -> _Path:
        self.opt_base62("s")
        return self.path()

    def generic_args(self) -> List[str]:
        args: List[str] = []
        while not self.eat("E"):
            if self.eat("L"):
                self.base62()
                continue
            if self.eat("K"):
                args.append(self.const())
                continue
            args.append(self.type_())
        return args

    def type_(self) -> str:
        self._enter()
        try:
            tag = self.next()
            if tag in _BASIC_TYPES:
                return _BASIC_TYPES[tag]
            if tag == "R" or tag == "Q":
                if self.eat("L"):
                    self.base62()
                inner = self.type_()
                return f"&{inner}" if tag == "R" else f"&mut {inner}"
            if tag == "P":
                return f"*const {self.type_()}"
            if tag == "O":
                return f"*mut {self.type_()}"
            if tag == "A":
                inner = self.type_()
                return f"[{inner}; {self.const()}]"
            if tag == "S":
                return f"[{self.type_()}]"
            if tag == "T":
                items: List[str] = []
                while not self.eat("E"):
                    items.append(self.type_())
                if len(items) == 1:
                    return f"({items[0]},)"
                return f"({', '.join(items)})"
            if tag == "F":
                return self.fn_sig()
            if tag == "D":
                bounds = self.dyn_bounds()
                if not self.eat("L"):
                    raise _Invalid(self.sym)
                self.base62()
                return f"dyn {bounds}"
            if tag == "B":
                return self.backref().type_()
            self.pos -= 1
            return self.path().render()
        finally:
            self._leave()

    def fn_sig(self) -> str:
        if self.eat("G"):
            self.base62()
        prefix = "unsafe " if self.eat("U") else ""
        if self.eat("K"):
            abi = "C" if self.eat("C") else self.undisambiguated_ident().replace("_", "-")
            prefix += f'extern "{abi}" '
        params: List[str] = []
        while not self.eat("E"):
            params.append(self.type_())
        ret = self.type_()
        text = f"{prefix}fn({', '.join(params)})"
        if ret != "()":
            text += f" -> {ret}"
        return text

    def dyn_bounds(self) -> str:
        if self.eat("G"):
            self.base62()
        traits: List[str] = []
        while not self.eat("E"):
            trait = self.path()
            bindings: List[str] = []
            while self.eat("p"):
                name = self.undisambiguated_ident()
                bindings.append(f"{name} = {self.type_()}")
            rendered = trait.render()
            if bindings:
                if trait.generic_args:
                    rendered = rendered[:-1] + ", " + ", ".join(bindings) + ">"
                else:
                    rendered = f"{rendered}<{', '.join(bindings)}>"
            traits.append(rendered)
        return " + ".join(traits)

    def const(self) -> str:
        self._enter()
        try:
            if self.eat("p"):
                return "_"
            if self.eat("B"):
                return self.backref().const()
            ty = self.next()
            if ty not in _BASIC_TYPES:
                raise _Invalid(self.sym)
            negative = self.eat("n")
            start = self.pos
            while self.peek() and self.peek() != "_":
                if self.peek() not in "0123456789abcdef":
                    raise _Invalid(self.sym)
                self.pos += 1
            digits = self.sym[start:self.pos]
            if not self.eat("_"):
                raise _Invalid(self.sym)
            value = int(digits, 16) if digits else 0
            if ty == "b":
                return "true" if value else "false"
            if ty == "c":
                return repr(_code_point(value, self.sym))
            return f"-{value}" if negative else str(value)
        finally:
            self._leave()


def _demangle_v0(body: str) -> StructuredIdentity:
    parser = _V0Parser(body)
    if parser.peek().isdigit():
        parser.decimal()
    path = parser.path()
    # Optional instantiating crate, which does not change the identity.
    if parser.peek() and parser.peek() != ".":
        parser.path()
    if parser.peek() and parser.peek() != ".":
        raise _Invalid(body)
    if not path.segments:
        raise _Invalid(body)
    return StructuredIdentity(
        path=tuple(path.segments[:-1]),
        name=path.segments[-1],
        generic_args=tuple(path.generic_args),
        crate=path.crate,
        scheme="v0",
    )


@lru_cache(maxsize=65536)
def demangle(linkage_name: str) -> Identity:
    """Decode ``linkage_name`` into a :class:`StructuredIdentity` or wrap it as :class:`Unmangled`."""

    symbol = _LLVM_SUFFIX_RE.sub("", linkage_name)
    try:
        body = _strip_prefix(symbol, ("_R", "__R"))
        if body:
            return _demangle_v0(body)
        body = _strip_prefix(symbol, ("_ZN", "__ZN"))
        if body:
            return _demangle_legacy(body)
    except (_Invalid, IndexError, ValueError, RecursionError):
        pass
    return Unmangled(linkage_name)


__all__ = ["Identity", "StructuredIdentity", "Unmangled", "demangle"]
