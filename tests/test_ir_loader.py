"""Tests for the LLVM IR reader."""

from __future__ import annotations

from pathlib import Path

import pytest

from crate_callgraph.errors import ParseError, UnsupportedIRVersion
from crate_callgraph.io.ir_loader import load, load_ir, parse_ir_text

SAMPLE = """\
; ModuleID = 'demo.7a1b2c-cgu.0'
source_filename = "demo.7a1b2c-cgu.0"
target triple = "x86_64-unknown-linux-gnu"

@vtable = private unnamed_addr constant <{ ptr, [16 x i8] }> <{
  ptr @_ZN4demo5inner17h2222222222222222E,
  [16 x i8] zeroinitializer }>, align 8

define i32 @_ZN4demo3run17h1111111111111111E(i32 %x, ptr %fp) unnamed_addr #0 {
start:
  %a = call i32 @_ZN4demo5inner17h2222222222222222E(i32 %x)
  %b = tail call i32 @_ZN5other6helper17h3333333333333333E(i32 %a) ; cross-package
  call void %fp()
  call void @llvm.memcpy.p0.p0.i64(ptr %fp, ptr %fp, i64 8, i1 false)
  call void asm sideeffect "nop", ""()
  invoke void @"_ZN4demo5maybe17h4444444444444444E"()
          to label %ok unwind label %cleanup
ok:
  ret i32 %b
cleanup:
  %lp = landingpad { ptr, i32 } cleanup
  resume { ptr, i32 } %lp
}

define internal i32 @_ZN4demo5inner17h2222222222222222E(i32 %x) {
start:
  ret i32 %x
}

declare i32 @_ZN5other6helper17h3333333333333333E(i32)
declare void @llvm.memcpy.p0.p0.i64(ptr, ptr, i64, i1)
"""


def test_parse_sample_module() -> None:
    module = parse_ir_text(SAMPLE, source="demo.ll")

    assert module.module_id == "demo.7a1b2c-cgu.0"
    assert module.target_triple == "x86_64-unknown-linux-gnu"
    assert [function.name for function in module.functions] == [
        "_ZN4demo3run17h1111111111111111E",
        "_ZN4demo5inner17h2222222222222222E",
    ]
    run, inner = module.functions
    assert run.linkage == "external"
    assert run.signature == "i32 (i32, ptr)"
    assert inner.is_local
    assert set(module.declarations) == {"_ZN5other6helper17h3333333333333333E", "llvm.memcpy.p0.p0.i64"}


def test_call_sites_keep_order_and_indirection() -> None:
    module = parse_ir_text(SAMPLE)
    run = module.functions[0]

    assert [(site.opcode, site.callee) for site in run.calls] == [
        ("call", "_ZN4demo5inner17h2222222222222222E"),
        ("call", "_ZN5other6helper17h3333333333333333E"),
        ("call", None),
        ("call", "llvm.memcpy.p0.p0.i64"),
        ("invoke", "_ZN4demo5maybe17h4444444444444444E"),
    ]
    assert sum(site.is_indirect for site in run.calls) == 1


def test_unterminated_function_is_a_parse_error() -> None:
    with pytest.raises(ParseError):
        parse_ir_text("define void @f() {\n  ret void\n")


def test_text_that_is_not_ir_is_rejected() -> None:
    with pytest.raises(ParseError):
        load_ir(b"fn main() { println!(\"hi\"); }")


def test_binary_garbage_is_rejected() -> None:
    with pytest.raises(ParseError):
        load_ir(b"\xff\xfe\x00garbage")


def test_load_reads_files(tmp_path: Path) -> None:
    path = tmp_path / "demo.ll"
    path.write_text(SAMPLE, encoding="utf-8")

    module = load(path)
    assert module.source == str(path)
    assert module.call_count() == 5


def test_bitcode_round_trip(tmp_path: Path) -> None:
    llvm = pytest.importorskip("llvmlite.binding")
    text = 'define void @f() {\n  call void @g()\n  ret void\n}\ndeclare void @g()\n'
    bitcode = llvm.parse_assembly(text).as_bitcode()

    module = load_ir(bitcode, source="f.bc")
    assert [function.name for function in module.functions] == ["f"]
    assert module.functions[0].calls[0].callee == "g"


def test_unreadable_bitcode() -> None:
    pytest.importorskip("llvmlite.binding")
    with pytest.raises((ParseError, UnsupportedIRVersion)):
        load_ir(b"BC\xc0\xde" + b"\x00" * 32, source="broken.bc")
