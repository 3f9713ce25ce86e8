"""
Concurrent export pipeline for a pass store.

    walker thread --paths--> decrypt worker(s) --records--> consumer (CSV writer)

Stages hand items over through queues holding a single item, so the walker
never gets far ahead of gpg. Every blocking hand-off polls a shared
CancelToken; once it fires each stage stops at its next hand-off. A gpg
process that is already running is not killed, so a hung gpg still delays
shutdown until it exits.
"""

import functools
import logging
import os
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Sequence, TextIO, Tuple

from bitwarden_csv import write_csv
from pass_entries import SECRET_SUFFIX, CredentialRecord, build_record
from pass_gpg import DEFAULT_GPG, DecryptResult, decrypt_entry, unlock_key

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05  # seconds between cancellation checks while blocked

# End-of-stream marker put on a queue once its producer is finished.
_DONE = object()


class ExportError(Exception):
    """Base class for errors that abort a whole export."""


class WalkError(ExportError):
    """The store directory could not be walked."""


class ExportCancelled(ExportError):
    """The export was cancelled before the stream was drained."""


class CancelToken:
    """Fire-once cancellation flag shared by every stage of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ErrorSlot:
    """Holds the single terminal error of a producer, or None on success."""

    def __init__(self) -> None:
        self._filled = threading.Event()
        self._error: Optional[Exception] = None

    def set(self, error: Optional[Exception]) -> None:
        if self._filled.is_set():
            raise RuntimeError("error slot already filled")
        self._error = error
        self._filled.set()

    def get(self) -> Optional[Exception]:
        """Block until the producer has finished and return its error."""
        self._filled.wait()
        return self._error


@dataclass(frozen=True)
class EntryProblem:
    """A degraded entry: still exported, but with missing data."""

    name: str
    kind: str  # "decrypt" or "parse"
    detail: str


@dataclass
class ExportSummary:
    written: int
    problems: List[EntryProblem] = field(default_factory=list)


def _put(q: queue.Queue, item, cancel: CancelToken) -> None:
    while True:
        if cancel.cancelled:
            raise ExportCancelled("operation aborted")
        try:
            q.put(item, timeout=POLL_INTERVAL)
            return
        except queue.Full:
            continue


def _get(q: queue.Queue, cancel: CancelToken):
    while True:
        if cancel.cancelled:
            raise ExportCancelled("operation aborted")
        try:
            return q.get(timeout=POLL_INTERVAL)
        except queue.Empty:
            continue


def iter_secret_files(root: str) -> Iterator[str]:
    """Yield absolute paths of the *.gpg files below root.

    Hidden files and directories (.git, .gpg-id, ...) are skipped. Broken
    symlinks are still yielded so gpg reports them as failed entries. Any
    filesystem error stops the walk by raising OSError.
    """

    def _raise(exc: OSError) -> None:
        raise exc

    for dirpath, dirnames, filenames in os.walk(os.path.abspath(root), onerror=_raise):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith(".") or not name.endswith(SECRET_SUFFIX):
                continue
            yield os.path.join(dirpath, name)


def walk_files(root: str, cancel: CancelToken) -> Tuple[queue.Queue, ErrorSlot]:
    """Start a walker thread; return its path queue and terminal error slot.

    The queue ends with an end-of-stream marker. The slot is filled before
    that marker is sent: None, WalkError or ExportCancelled.
    """
    paths: queue.Queue = queue.Queue(maxsize=1)
    errc = ErrorSlot()

    def _walk() -> None:
        error: Optional[Exception] = None
        try:
            for path in iter_secret_files(root):
                _put(paths, path, cancel)
        except ExportCancelled:
            error = ExportCancelled("walk canceled")
        except OSError as exc:
            error = WalkError(f"could not walk {root}: {exc}")
            error.__cause__ = exc
        except Exception as exc:
            error = exc
        errc.set(error)
        logger.debug("Walk of %s finished", root)
        try:
            _put(paths, _DONE, cancel)
        except ExportCancelled:
            pass

    threading.Thread(target=_walk, name="pass-walk", daemon=True).start()
    return paths, errc


class ExportRun:
    """A running export. Iterate it to drain records, then call wait().

    Records are yielded in no particular order once more than one worker is
    used. wait() must only be called after iteration has finished or the
    token has been cancelled, otherwise the stages stay blocked on the
    undrained stream.
    """

    def __init__(
        self,
        root: str,
        cancel: CancelToken,
        decrypt: Callable[[str], DecryptResult],
        workers: int,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.root = os.path.abspath(root)
        self.cancel = cancel
        self.problems: List[EntryProblem] = []
        self._decrypt = decrypt
        self._records: queue.Queue = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._remaining = workers
        self._aborted = threading.Event()
        self._closed = False
        self._failure: Optional[Exception] = None

        logger.debug("Exporting %s with %d worker(s)", self.root, workers)
        self._paths, self._walk_error = walk_files(self.root, cancel)
        self._threads = [
            threading.Thread(target=self._work, name=f"pass-decrypt-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in self._threads:
            thread.start()

    def _report(self, problem: EntryProblem) -> None:
        with self._lock:
            self.problems.append(problem)

    def _on_parse_error(self, fname: str, exc: Exception) -> None:
        self._report(EntryProblem(fname, "parse", str(exc)))

    def _process(self, path: str) -> CredentialRecord:
        fname = os.path.relpath(path, self.root)
        result = self._decrypt(path)
        if result.ok:
            logger.debug("Decrypted %s", fname)
        else:
            logger.warning("Error while decrypting entry %s: %s", fname, result.error)
            self._report(EntryProblem(fname, "decrypt", result.error or result.status))
        return build_record(fname, result.plaintext, on_parse_error=self._on_parse_error)

    def _work(self) -> None:
        try:
            while True:
                path = _get(self._paths, self.cancel)
                if path is _DONE:
                    # hand the marker on to sibling workers
                    _put(self._paths, _DONE, self.cancel)
                    break
                _put(self._records, self._process(path), self.cancel)
        except ExportCancelled:
            self._aborted.set()
        except Exception as exc:
            logger.exception("Decrypt worker failed")
            with self._lock:
                if self._failure is None:
                    self._failure = exc
            self.cancel.cancel()
        finally:
            self._worker_done()

    def _worker_done(self) -> None:
        with self._lock:
            self._remaining -= 1
            last = self._remaining == 0
        if not last:
            return
        try:
            _put(self._records, _DONE, self.cancel)
        except ExportCancelled:
            self._aborted.set()

    def __iter__(self) -> Iterator[CredentialRecord]:
        while not self._closed:
            try:
                item = _get(self._records, self.cancel)
            except ExportCancelled:
                return
            if item is _DONE:
                self._closed = True
                return
            yield item

    def wait(self) -> Optional[Exception]:
        """Join the stages and return the run's terminal error, if any."""
        walk_error = self._walk_error.get()
        for thread in self._threads:
            thread.join()
        if walk_error is not None:
            return walk_error
        if self._failure is not None:
            return self._failure
        if self._aborted.is_set() or (self.cancel.cancelled and not self._closed):
            return ExportCancelled("export canceled")
        return None


def start_export(
    root: str,
    cancel: Optional[CancelToken] = None,
    *,
    decrypt: Callable[[str], DecryptResult] = decrypt_entry,
    workers: int = 1,
) -> ExportRun:
    if cancel is None:
        cancel = CancelToken()
    return ExportRun(root, cancel, decrypt, workers)


def run_export(
    root: str,
    out: TextIO,
    *,
    gpg: str = DEFAULT_GPG,
    gpg_opts: Sequence[str] = (),
    workers: int = 1,
    cancel: Optional[CancelToken] = None,
    unlock: bool = True,
    decrypt: Optional[Callable[[str], DecryptResult]] = None,
) -> ExportSummary:
    """Unlock the key, export every entry below root as CSV to out.

    Raises KeyUnlockError before touching the store if the key cannot be
    unlocked, and WalkError or ExportCancelled if the run did not finish.
    Writer errors cancel the run and propagate unchanged.
    """
    if unlock:
        unlock_key(gpg, gpg_opts)
    if cancel is None:
        cancel = CancelToken()
    if decrypt is None:
        decrypt = functools.partial(decrypt_entry, gpg=gpg, gpg_opts=gpg_opts)

    run = start_export(root, cancel, decrypt=decrypt, workers=workers)
    try:
        written = write_csv(out, run)
    except BaseException:
        cancel.cancel()
        run.wait()
        raise

    error = run.wait()
    if error is not None:
        raise error
    return ExportSummary(written=written, problems=list(run.problems))
