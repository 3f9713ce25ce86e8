"""
Shared fixtures: throwaway pass stores and fake gpg binaries.

The fake gpg "decrypts" by printing the file it is given, so store files
simply hold the plaintext.
"""

from __future__ import annotations

import itertools
from pathlib import Path

import pytest

FAKE_GPG = """#!/bin/sh
for last; do :; done
case "$1" in
  -aso) cat >/dev/null; exit 0 ;;
esac
cat "$last"
"""


@pytest.fixture
def make_store(tmp_path: Path):
    """Create a store from {relative path: plaintext}."""

    def _make(entries: dict[str, str], name: str = "password-store") -> Path:
        root = tmp_path / name
        root.mkdir()
        for rel, content in entries.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return root

    return _make


@pytest.fixture
def fake_gpg(tmp_path: Path):
    """Write an executable shell script standing in for gpg; default body cats the file."""
    counter = itertools.count()

    def _make(body: str = FAKE_GPG) -> str:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / f"gpg{next(counter)}"
        if not body.startswith("#!"):
            body = "#!/bin/sh\n" + body
        path.write_text(body)
        path.chmod(0o755)
        return str(path)

    return _make
