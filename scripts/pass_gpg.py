"""
Thin wrappers around the gpg binary used by a pass store.

Decryption is delegated entirely to gpg; this module only runs it and
captures what it prints.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_GPG = "gpg"
# Payload signed once so gpg-agent caches the passphrase before the batch.
UNLOCK_PAYLOAD = b"1234"


class KeyUnlockError(Exception):
    """Raised when the private key could not be unlocked."""


@dataclass
class DecryptResult:
    path: str
    plaintext: bytes = b""
    returncode: int = 0
    stderr: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> str:
        if self.ok:
            return "ok"
        return "partial" if self.plaintext else "failed"


def _gpg_command(gpg: str, gpg_opts: Sequence[str], *args: str) -> list:
    return [gpg, *gpg_opts, *args]


def decrypt_entry(path: str, gpg: str = DEFAULT_GPG, gpg_opts: Sequence[str] = ()) -> DecryptResult:
    """Decrypt one file to stdout. Failures are returned, never raised."""
    cmd = _gpg_command(gpg, gpg_opts, "-qd", path)
    try:
        proc = subprocess.run(cmd, stdin=subprocess.DEVNULL, capture_output=True)
    except OSError as exc:
        return DecryptResult(path=path, returncode=-1, error=f"could not run {gpg}: {exc}")

    stderr = proc.stderr.decode("utf-8", errors="replace").strip()
    result = DecryptResult(path=path, plaintext=proc.stdout, returncode=proc.returncode, stderr=stderr)
    if proc.returncode != 0:
        result.error = f"{gpg} exited with status {proc.returncode}"
        if stderr:
            result.error += f": {stderr}"
    return result


def unlock_key(gpg: str = DEFAULT_GPG, gpg_opts: Sequence[str] = ()) -> None:
    cmd = _gpg_command(gpg, gpg_opts, "-aso", "-")
    try:
        proc = subprocess.run(
            cmd,
            input=UNLOCK_PAYLOAD,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise KeyUnlockError(f"could not run {gpg}: {exc}") from exc
    if proc.returncode != 0:
        detail = proc.stderr.decode("utf-8", errors="replace").strip()
        raise KeyUnlockError(f"{gpg} exited with status {proc.returncode}" + (f": {detail}" if detail else ""))
    logger.debug("gpg key unlocked")
