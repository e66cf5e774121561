import os
import re
import shutil
import subprocess

import pytest

STRING_DECL = re.compile(r'^var (\w+) = \[\]byte\("(.*)"\)$', re.M)
LIST_DECL = re.compile(r'^var (\w+) = \[\]byte\{\n(.*?)^\}$', re.M | re.S)
TABLE_DECL = re.compile(r'^var (\w+) = map\[string\]\[\]byte\{\n(.*?)^\}$', re.M | re.S)
TABLE_ENTRY = re.compile(r'^\t"(.*)": (\w+),$', re.M)

GO_MAIN = """package main

import (
	"encoding/hex"
	"fmt"
	"sort"
)

func main() {
	names := make([]string, 0, len(files))
	for name := range files {
		names = append(names, name)
	}
	sort.Strings(names)
	for _, name := range names {
		fmt.Printf("%s=%s\\n", name, hex.EncodeToString(files[name]))
	}
}
"""


def declarations(text):
    """Map every []byte declaration in a generated file to its decoded bytes."""
    found = {}
    for name, body in STRING_DECL.findall(text):
        assert re.fullmatch(r"(\\x[0-9a-f]{2})*", body)
        found[name] = bytes.fromhex(body.replace("\\x", ""))
    for name, body in LIST_DECL.findall(text):
        found[name] = bytes(int(value, 16) for value in re.findall(r" 0x([0-9a-f]{2}),", body))
    return found


def table(text):
    match = TABLE_DECL.search(text)
    if match is None:
        return None
    return match.group(1), TABLE_ENTRY.findall(match.group(2))


@pytest.fixture
def go_exec(tmp_path):
    """Run a generated file (package main, var files) with a small main and return the process result."""
    go = shutil.which("go")
    if go is None:
        pytest.skip("Go toolchain not available")

    def run(source):
        workdir = tmp_path / "gomod"
        workdir.mkdir()
        (workdir / "go.mod").write_text("module embedtest\n\ngo 1.16\n")
        (workdir / "embed.go").write_text(source, encoding="utf-8")
        (workdir / "main.go").write_text(GO_MAIN)

        env = os.environ.copy()
        env["GOCACHE"] = str(tmp_path / "gocache")
        env["GOPATH"] = str(tmp_path / "gopath")
        env["GOTOOLCHAIN"] = "local"
        env["GOFLAGS"] = "-mod=mod"
        return subprocess.run([go, "run", "."], cwd=workdir, env=env,
                              capture_output=True, text=True, timeout=600)

    return run


@pytest.fixture
def go_run(go_exec):
    """Like go_exec, but require success and return the printed table as {name: bytes}."""
    def run(source):
        result = go_exec(source)
        assert result.returncode == 0, result.stderr

        output = {}
        for line in result.stdout.splitlines():
            name, _, data = line.partition("=")
            output[name] = bytes.fromhex(data)
        return output

    return run
