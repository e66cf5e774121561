#!/usr/bin/env python3

"""Generate a Go source file that embeds the contents of other files.

Example usage:
  goembed -package assets -var logo < logo.png > logo.go
  goembed -package assets -var files -gzip index.html app.js > files.go
  goembed -manifest assets.yaml -o files.go

With no file arguments the single input is read from stdin and declared as
`var <var> []byte`. With file arguments every file gets its own `<var>_<i>`
declaration and `<var>` becomes a map[string][]byte from file name to data.
"""

import argparse
import dataclasses
import gzip
import os
import sys
import tempfile

import yaml

BYTES_PER_LINE = 16
ENCODINGS = ("string", "list")

GENERATED_HEADER = "// Code generated by goembed. DO NOT EDIT."

# package-level names the gunzip prologue depends on
GUNZIP_RESERVED = ("bytes", "gzip", "io", "panic")

# accepted spellings of an explicit -gzip=<value>, as in Go's strconv.ParseBool
BOOL_VALUES = {
    "1": True, "t": True, "T": True, "true": True, "TRUE": True, "True": True,
    "0": False, "f": False, "F": False, "false": False, "FALSE": False, "False": False,
}

MANIFEST_KEYS = {
    "package": str,
    "var": str,
    "gzip": bool,
    "encoding": str,
    "files": list,
}

GO_ESCAPES = {
    '"': '\\"',
    '\\': '\\\\',
    '\a': '\\a',
    '\b': '\\b',
    '\f': '\\f',
    '\n': '\\n',
    '\r': '\\r',
    '\t': '\\t',
    '\v': '\\v',
}

# lookup tables indexed by byte value
_string_conv = ["\\x%02x" % c for c in range(256)]
_list_conv = [" 0x%02x," % c for c in range(256)]


class EmbedError(Exception):
    pass


@dataclasses.dataclass(frozen=True)
class EmbedConfig:
    package: str
    var: str
    gzip: bool = False
    encoding: str = "string"


@dataclasses.dataclass(frozen=True)
class InputUnit:
    name: str
    raw: bytes


@dataclasses.dataclass(frozen=True)
class EmissionPlan:
    package: str
    var: str
    units: tuple
    compress: bool = False
    encoding: str = "string"

    def __post_init__(self):
        if self.encoding not in ENCODINGS:
            raise EmbedError(f"unknown encoding '{self.encoding}' (expected one of {', '.join(ENCODINGS)})")
        if not self.units:
            raise EmbedError("no input")
        if self.compress and self.var in GUNZIP_RESERVED:
            raise EmbedError(f"-var {self.var} clashes with a name the gzip prologue uses")

        if not self.named:
            if len(self.units) > 1:
                raise EmbedError("only one anonymous input is allowed")
            return

        seen = set()
        for unit in self.units:
            if not unit.name:
                raise EmbedError("input name must not be empty when embedding files")
            if unit.name in seen:
                raise EmbedError(f"duplicate input name '{unit.name}'")
            seen.add(unit.name)

    @property
    def named(self) -> bool:
        return any(unit.name for unit in self.units)

    def identifiers(self) -> list:
        if not self.named:
            return [self.var]
        return [f"{self.var}_{i}" for i in range(len(self.units))]


def read_unit(name, path=None) -> InputUnit:
    with open(path if path is not None else name, "rb") as f:
        return InputUnit(name, f.read())


def read_stream(stream) -> InputUnit:
    return InputUnit("", stream.read())


def gzip_payload(raw: bytes) -> bytes:
    # mtime is fixed so that regenerating unchanged inputs gives identical output
    return gzip.compress(raw, compresslevel=9, mtime=0)


def encode_string_literal(data: bytes) -> str:
    """Render data as []byte("\\xNN...").

    A single string token keeps the Go compiler's memory use flat. The
    []byte{...} form of a few tens of megabytes can take gigabytes of RAM
    and minutes to compile. The price is one string to slice copy at startup.
    """
    return '[]byte("' + "".join(map(_string_conv.__getitem__, data)) + '")'


def encode_list_literal(data: bytes) -> str:
    lines = ["[]byte{"]
    for pos in range(0, len(data), BYTES_PER_LINE):
        lines.append("".join(map(_list_conv.__getitem__, data[pos:pos + BYTES_PER_LINE])))
    lines.append("}")
    return "\n".join(lines)


def encode_literal(data: bytes, encoding: str) -> str:
    if encoding == "list":
        return encode_list_literal(data)
    return encode_string_literal(data)


def go_quote(s: str) -> str:
    """Quote s as a Go interpreted string literal."""
    out = ['"']
    for ch in s:
        c = ord(ch)
        if ch in GO_ESCAPES:
            out.append(GO_ESCAPES[ch])
        elif 0xDC80 <= c <= 0xDCFF:
            # undecodable file name byte, see os.fsdecode()
            out.append("\\x%02x" % (c - 0xDC00))
        elif 0xD800 <= c <= 0xDFFF:
            raise EmbedError(f"name {s!r} is not valid Unicode")
        elif ch.isprintable():
            out.append(ch)
        elif c < 0x10000:
            out.append("\\u%04x" % c)
        else:
            out.append("\\U%08x" % c)
    out.append('"')
    return "".join(out)


def _gunzip_prologue(plan, identifiers):
    var = plan.var
    helper = f"{var}_gunzip"
    lines = [
        "import (",
        '\t"bytes"',
        '\t"compress/gzip"',
        '\t"io"',
        ")",
        "",
        "func init() {",
    ]
    for ident in identifiers:
        lines.append(f"\t{ident} = {helper}({ident}_gzip)")
    if plan.named:
        # the table literal is evaluated before init runs and still holds nil slices
        for unit, ident in zip(plan.units, identifiers):
            lines.append(f"\t{var}[{go_quote(unit.name)}] = {ident}")
    lines += [
        "}",
        "",
        f"// {helper} decompresses an embedded payload. It panics if the payload is corrupt.",
        f"func {helper}(data []byte) []byte {{",
        "\tr, err := gzip.NewReader(bytes.NewReader(data))",
        "\tif err != nil {",
        "\t\tpanic(err)",
        "\t}",
        "\tdefer r.Close()",
        "\tout, err := io.ReadAll(r)",
        "\tif err != nil {",
        "\t\tpanic(err)",
        "\t}",
        "\treturn out",
        "}",
        "",
    ]
    return lines


def _declare_unit(ident, raw, plan):
    if not plan.compress:
        return [f"var {ident} = {encode_literal(raw, plan.encoding)}", ""]

    return [
        f"var {ident} []byte // set in init",
        "",
        f"var {ident}_gzip = {encode_literal(gzip_payload(raw), plan.encoding)}",
        "",
    ]


def render_module(plan: EmissionPlan) -> str:
    identifiers = plan.identifiers()
    lines = [GENERATED_HEADER, "", f"package {plan.package}", ""]

    if plan.compress:
        lines += _gunzip_prologue(plan, identifiers)

    if plan.named:
        lines.append("// Table of contents")
        lines.append(f"var {plan.var} = map[string][]byte{{")
        for unit, ident in zip(plan.units, identifiers):
            lines.append(f"\t{go_quote(unit.name)}: {ident},")
        lines.append("}")
        lines.append("")

    # Each payload gets its own package-level var instead of living inside the
    # map literal, so the compiler can put the bytes in a static data section.
    for unit, ident in zip(plan.units, identifiers):
        lines += _declare_unit(ident, unit.raw, plan)

    return "\n".join(lines)


def load_manifest(path) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        manifest = yaml.safe_load(f)

    if manifest is None:
        return {}
    if not isinstance(manifest, dict):
        raise EmbedError(f"{path}: manifest must be a mapping")

    for key, value in manifest.items():
        if key not in MANIFEST_KEYS:
            raise EmbedError(f"{path}: unknown key '{key}'")
        if not isinstance(value, MANIFEST_KEYS[key]):
            raise EmbedError(f"{path}: '{key}' must be a {MANIFEST_KEYS[key].__name__}")

    if not all(isinstance(name, str) for name in manifest.get("files", [])):
        raise EmbedError(f"{path}: 'files' must be a list of strings")

    return manifest


def build_config(args, manifest) -> EmbedConfig:
    package = args.package if args.package is not None else manifest.get("package")
    var = args.var if args.var is not None else manifest.get("var")
    use_gzip = args.gzip if args.gzip is not None else manifest.get("gzip", False)
    encoding = args.encoding if args.encoding is not None else manifest.get("encoding", "string")

    if not package:
        raise EmbedError("missing -package")
    if not var:
        raise EmbedError("missing -var")
    if encoding not in ENCODINGS:
        raise EmbedError(f"unknown encoding '{encoding}' (expected one of {', '.join(ENCODINGS)})")

    return EmbedConfig(package=package, var=var, gzip=use_gzip, encoding=encoding)


def input_sources(args, manifest):
    """Return (name, path) pairs; an empty list means read stdin."""
    if args.files:
        return [(name, name) for name in args.files]

    base_dir = os.path.dirname(args.manifest) if args.manifest else ""
    return [(name, os.path.join(base_dir, name)) for name in manifest.get("files", [])]


def generate(config: EmbedConfig, sources, stdin=None, verbose=False) -> str:
    """Read every input and return the generated Go file.

    Nothing is returned until all inputs were read, so a failure on a later
    file never leaves a partial module behind.
    """
    units = []
    for name, path in sources or [(None, None)]:
        if name is None:
            unit = read_stream(stdin if stdin is not None else sys.stdin.buffer)
        else:
            unit = read_unit(name, path)
        if verbose:
            print(f"Reading {unit.name or '<stdin>'} ({len(unit.raw)} bytes)", file=sys.stderr)
        units.append(unit)

    plan = EmissionPlan(
        package=config.package,
        var=config.var,
        units=tuple(units),
        compress=config.gzip,
        encoding=config.encoding,
    )
    return render_module(plan)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="goembed",
        description="Generate a Go source file embedding the given files (or stdin) as []byte variables.")
    parser.add_argument("files", nargs="*", help="Files to embed. Reads stdin when none are given.")
    parser.add_argument("-package", help="Go package name")
    parser.add_argument("-var", help="Go var name")
    parser.add_argument("-gzip", action="store_true", default=None,
                        help="Whether to gzip contents (-gzip=false turns it off)")
    parser.add_argument("-no-gzip", dest="gzip", action="store_false", default=None, help="Same as -gzip=false")
    parser.add_argument("-encoding", choices=ENCODINGS, default=None,
                        help="Literal form for the data: one escaped string (default) or a list of byte values")
    parser.add_argument("-manifest", help="YAML file providing package, var, gzip, encoding and files")
    parser.add_argument("-o", dest="output", help="Write the generated file here instead of stdout")
    parser.add_argument("-verbose", action="store_true", help="Print progress to stderr")

    # store_true rejects -gzip=false, the Go flag package spelling
    argv = sys.argv[1:] if argv is None else list(argv)
    expanded = []
    for pos, arg in enumerate(argv):
        if arg == "--":
            expanded += argv[pos:]
            break
        name, sep, value = arg.partition("=")
        if sep and name in ("-gzip", "--gzip"):
            if value not in BOOL_VALUES:
                parser.error(f"argument -gzip: invalid boolean value '{value}'")
            arg = "-gzip" if BOOL_VALUES[value] else "-no-gzip"
        expanded.append(arg)
    return parser.parse_args(expanded)


def write_output(path, data):
    """Write data to path through a temporary file so path is never left truncated."""
    target_dir = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".goembed-", suffix=".tmp", dir=target_dir)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        umask = os.umask(0)
        os.umask(umask)
        os.chmod(tmp_path, 0o666 & ~umask)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


def run(argv=None, stdin=None, stdout=None):
    args = parse_args(argv)

    try:
        manifest = load_manifest(args.manifest) if args.manifest else {}
        config = build_config(args, manifest)
        text = generate(config, input_sources(args, manifest), stdin, args.verbose)
        data = text.encode("utf-8")

        if args.output:
            write_output(args.output, data)
        else:
            out = stdout if stdout is not None else sys.stdout.buffer
            out.write(data)
            out.flush()
    except (EmbedError, OSError, yaml.YAMLError) as err:
        print(f"goembed: {err}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Wrote {len(data)} bytes to {args.output or '<stdout>'}", file=sys.stderr)
    return 0


def main():
    sys.exit(run())


if __name__ == '__main__':
    main()
