"""Tests for the gpg subprocess wrappers."""

from pathlib import Path

import pytest

from pass_gpg import KeyUnlockError, decrypt_entry, unlock_key


class TestDecryptEntry:
    def test_success(self, tmp_path: Path, fake_gpg):
        secret = tmp_path / "site.gpg"
        secret.write_text("hunter2\nlogin: alice\n")
        result = decrypt_entry(str(secret), gpg=fake_gpg())
        assert result.ok
        assert result.status == "ok"
        assert result.plaintext == b"hunter2\nlogin: alice\n"
        assert result.returncode == 0

    def test_failure_keeps_partial_output(self, tmp_path: Path, fake_gpg):
        gpg = fake_gpg('echo partial\necho "decryption failed: No secret key" >&2\nexit 2\n')
        result = decrypt_entry(str(tmp_path / "site.gpg"), gpg=gpg)
        assert not result.ok
        assert result.status == "partial"
        assert result.plaintext == b"partial\n"
        assert result.returncode == 2
        assert "status 2" in result.error
        assert "No secret key" in result.stderr

    def test_failure_without_output(self, tmp_path: Path, fake_gpg):
        result = decrypt_entry(str(tmp_path / "site.gpg"), gpg=fake_gpg("exit 1\n"))
        assert result.status == "failed"
        assert result.plaintext == b""

    def test_missing_binary(self, tmp_path: Path):
        result = decrypt_entry(str(tmp_path / "site.gpg"), gpg=str(tmp_path / "no-such-gpg"))
        assert result.status == "failed"
        assert "could not run" in result.error

    def test_extra_options_come_first(self, tmp_path: Path, fake_gpg):
        gpg = fake_gpg('echo "$@"\n')
        path = str(tmp_path / "site.gpg")
        result = decrypt_entry(path, gpg=gpg, gpg_opts=["--batch", "--pinentry-mode=loopback"])
        assert result.plaintext.decode().split() == ["--batch", "--pinentry-mode=loopback", "-qd", path]


class TestUnlockKey:
    def test_success(self, fake_gpg):
        unlock_key(gpg=fake_gpg())

    def test_payload_on_stdin(self, tmp_path: Path, fake_gpg):
        seen = tmp_path / "stdin.txt"
        unlock_key(gpg=fake_gpg(f'cat > "{seen}"\n'))
        assert seen.read_text() == "1234"

    def test_failure(self, fake_gpg):
        gpg = fake_gpg('echo "bad passphrase" >&2\nexit 2\n')
        with pytest.raises(KeyUnlockError, match="bad passphrase"):
            unlock_key(gpg=gpg)

    def test_missing_binary(self, tmp_path: Path):
        with pytest.raises(KeyUnlockError, match="could not run"):
            unlock_key(gpg=str(tmp_path / "no-such-gpg"))
