"""Reader for LLVM IR artifacts, textual (``.ll``) or bitcode (``.bc``)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from crate_callgraph.errors import ParseError, UnsupportedIRVersion

LOGGER = logging.getLogger(__name__)

BITCODE_MAGIC = b"BC\xc0\xde"
BITCODE_WRAPPER_MAGIC = b"\xde\xc0\x17\x0b"
IR_SUFFIXES = (".ll", ".bc")

_NAME = r'(?:"(?:[^"\\]|\\.)*"|[-a-zA-Z$._0-9]+)'
_SYMBOL_CALL_RE = re.compile(rf"([@%])({_NAME})\(")
_CONSTEXPR_RE = re.compile(rf"\b(?:bitcast|addrspacecast|getelementptr(?:\s+inbounds)?)\s*\(.*?@({_NAME})")
_ASM_RE = re.compile(r"(?:^|\s)asm\s+(?:sideeffect|alignstack|inteldialect|unwind|\")")
_CALL_RE = re.compile(
    r"^(?:%" + _NAME + r"\s*=\s*)?(?:(?:tail|musttail|notail)\s+)?(call|invoke|callbr)\s+(.*)$"
)
_HEADER_NAME_RE = re.compile(rf"@({_NAME})\(")
_LINKAGES = (
    "private",
    "internal",
    "available_externally",
    "linkonce_odr",
    "linkonce",
    "weak_odr",
    "weak",
    "common",
    "appending",
    "extern_weak",
    "external",
)
_HEADER_KEYWORDS = set(_LINKAGES) | {
    "default",
    "hidden",
    "protected",
    "dllimport",
    "dllexport",
    "dso_local",
    "dso_preemptable",
    "unnamed_addr",
    "local_unnamed_addr",
    "ccc",
    "fastcc",
    "coldcc",
    "tailcc",
    "swiftcc",
    "swifttailcc",
    "preserve_mostcc",
    "preserve_allcc",
    "x86_stdcallcc",
    "x86_fastcallcc",
    "x86_thiscallcc",
    "x86_vectorcallcc",
    "win64cc",
    "x86_64_sysvcc",
    "aarch64_vector_pcs",
    "noundef",
    "zeroext",
    "signext",
    "inreg",
    "nonnull",
}
_PARAM_NAME_RE = re.compile(rf"\s+%{_NAME}(?=\s*(?:,|$))")
_NUMBERED_CC_RE = re.compile(r"\bcc\s+\d+\b")
_TOP_LEVEL_PREFIXES = (
    "source_filename",
    "target ",
    "define",
    "declare",
    "attributes ",
    "module asm",
    "!",
    "@",
    "%",
    "$",
    "uselistorder",
)


@dataclass(slots=True)
class CallSite:
    """One call/invoke instruction. ``callee`` is ``None`` for calls through a non-constant value."""

    opcode: str
    callee: Optional[str]
    line: int

    @property
    def is_indirect(self) -> bool:
        return self.callee is None


@dataclass(slots=True)
class IRFunction:
    name: str
    linkage: str
    signature: str
    is_declaration: bool = False
    calls: List[CallSite] = field(default_factory=list)

    @property
    def is_local(self) -> bool:
        return self.linkage in ("private", "internal")


@dataclass(slots=True)
class IRModule:
    """A parsed artifact: ordered definitions plus the declarations they may call."""

    source: str
    module_id: Optional[str] = None
    target_triple: Optional[str] = None
    functions: List[IRFunction] = field(default_factory=list)
    declarations: Dict[str, IRFunction] = field(default_factory=dict)

    def defined_names(self) -> set[str]:
        return {function.name for function in self.functions}

    def call_count(self) -> int:
        return sum(len(function.calls) for function in self.functions)


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == '"' and name[-1] == '"':
        inner = name[1:-1]
        return re.sub(r"\\([0-9A-Fa-f]{2})", lambda m: chr(int(m.group(1), 16)), inner)
    return name


def _strip_comment(line: str) -> str:
    in_string = False
    for idx, ch in enumerate(line):
        if ch == '"':
            in_string = not in_string
        elif ch == ";" and not in_string:
            return line[:idx]
    return line


def _balanced(text: str, open_idx: int) -> int:
    """Index of the parenthesis closing the one at ``open_idx``."""

    depth = 0
    in_string = False
    for idx in range(open_idx, len(text)):
        ch = text[idx]
        if ch == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return idx
    return -1


def _parse_header(header: str, keyword: str, line_no: int, source: str) -> IRFunction:
    match = _HEADER_NAME_RE.search(header)
    if not match:
        raise ParseError(f"{source}:{line_no}: {keyword} without a function name")
    name = _unquote(match.group(1))
    prefix = header[len(keyword):match.start()]
    tokens = _NUMBERED_CC_RE.sub(" ", prefix).split()
    linkage = next((token for token in tokens if token in _LINKAGES), "external")
    return_type = " ".join(token for token in tokens if token not in _HEADER_KEYWORDS)

    open_idx = match.end() - 1
    close_idx = _balanced(header, open_idx)
    if close_idx == -1:
        raise ParseError(f"{source}:{line_no}: unterminated parameter list for @{name}")
    params = _PARAM_NAME_RE.sub("", header[open_idx + 1:close_idx])
    params = " ".join(params.split())
    return IRFunction(
        name=name,
        linkage=linkage,
        signature=f"{return_type} ({params})".strip(),
        is_declaration=keyword == "declare",
    )


def _parse_call(instruction: str, line_no: int, source: str) -> Optional[CallSite]:
    match = _CALL_RE.match(instruction)
    if not match:
        return None
    opcode, rest = match.group(1), match.group(2)

    symbol_match = _SYMBOL_CALL_RE.search(rest)
    constexpr_match = _CONSTEXPR_RE.search(rest)
    asm_match = _ASM_RE.search(rest)

    if asm_match and (symbol_match is None or asm_match.start() < symbol_match.start()):
        return None
    if constexpr_match and (symbol_match is None or constexpr_match.start() < symbol_match.start()):
        return CallSite(opcode=opcode, callee=_unquote(constexpr_match.group(1)), line=line_no)
    if symbol_match is None:
        raise ParseError(f"{source}:{line_no}: cannot locate the callee of a {opcode} instruction")
    if symbol_match.group(1) == "%":
        return CallSite(opcode=opcode, callee=None, line=line_no)
    return CallSite(opcode=opcode, callee=_unquote(symbol_match.group(2)), line=line_no)


def _iter_lines(text: str) -> Iterator[Tuple[int, str]]:
    for line_no, raw in enumerate(text.splitlines(), start=1):
        yield line_no, raw


def parse_ir_text(text: str, source: str = "<memory>") -> IRModule:
    """Parse textual LLVM IR into an :class:`IRModule`."""

    module = IRModule(source=source)
    current: Optional[IRFunction] = None
    header_parts: List[str] = []
    header_line = 0
    seen_ir = False

    for line_no, raw in _iter_lines(text):
        if raw.startswith("; ModuleID = "):
            module.module_id = raw[len("; ModuleID = "):].strip().strip("'")
            seen_ir = True
            continue
        line = _strip_comment(raw).strip()
        if not line:
            continue

        if header_parts:
            header_parts.append(line)
            if line.endswith("{"):
                current = _parse_header(" ".join(header_parts), "define", header_line, source)
                header_parts = []
            continue

        if current is not None:
            if line == "}":
                module.functions.append(current)
                current = None
                continue
            if line.startswith(("define ", "declare ")):
                raise ParseError(f"{source}:{line_no}: function @{current.name} is not terminated")
            call = _parse_call(line, line_no, source)
            if call is not None:
                current.calls.append(call)
            continue

        if line.startswith("define "):
            seen_ir = True
            if line.endswith("{"):
                current = _parse_header(line, "define", line_no, source)
            else:
                header_parts = [line]
                header_line = line_no
            continue
        if line.startswith("declare "):
            seen_ir = True
            declaration = _parse_header(line, "declare", line_no, source)
            module.declarations.setdefault(declaration.name, declaration)
            continue
        if line.startswith("target triple"):
            module.target_triple = line.split("=", 1)[-1].strip().strip('"')
        if line.startswith(_TOP_LEVEL_PREFIXES):
            seen_ir = True
        # anything else is the continuation of a multi-line global initializer

    if current is not None or header_parts:
        raise ParseError(f"{source}: unexpected end of input inside a function definition")
    if not seen_ir and text.strip():
        raise ParseError(f"{source}: input does not look like LLVM IR")
    return module


def is_bitcode(data: bytes) -> bool:
    return data.startswith(BITCODE_MAGIC) or data.startswith(BITCODE_WRAPPER_MAGIC)


def _disassemble_bitcode(data: bytes, source: str) -> str:
    try:
        import llvmlite.binding as llvm
    except ImportError as exc:  # pragma: no cover - depends on the environment
        raise UnsupportedIRVersion(f"{source}: bitcode reader unavailable ({exc})") from exc

    try:
        module = llvm.parse_bitcode(data)
    except RuntimeError as exc:
        message = str(exc)
        if "Producer" in message or "version" in message.lower() or "Unknown" in message:
            raise UnsupportedIRVersion(f"{source}: {message.strip()}") from exc
        raise ParseError(f"{source}: {message.strip()}") from exc
    return str(module)


def load_ir(data: bytes, source: str = "<memory>") -> IRModule:
    """Parse raw artifact bytes, dispatching on the bitcode magic."""

    if is_bitcode(data):
        text = _disassemble_bitcode(data, source)
    else:
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"{source}: not UTF-8 text and not LLVM bitcode") from exc
    module = parse_ir_text(text, source=source)
    LOGGER.debug("Loaded %s: %d functions, %d call sites", source, len(module.functions), module.call_count())
    return module


def load(artifact_path: Path) -> IRModule:
    """Load an IR artifact from disk."""

    path = Path(artifact_path)
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ParseError(f"{path}: {exc}") from exc
    return load_ir(data, source=str(path))


__all__ = [
    "CallSite",
    "IRFunction",
    "IRModule",
    "IR_SUFFIXES",
    "is_bitcode",
    "load",
    "load_ir",
    "parse_ir_text",
]
