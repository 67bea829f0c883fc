"""Move the backup directory between the source and destination workloads.

Two strategies, both preserving the directory's leaf name:

- stream-archive (``tar``): tar on the source pod, stream to a local file,
  push the file into the destination pod, unpack there.
- incremental-sync (``rsync``): ``oc rsync`` the directory down to local
  staging, then up to the destination pod. Needs local ``rsync`` and ``oc``;
  without them the stream-archive strategy is used instead.

Exec channels carry text, so archive bytes travel base64-encoded.
"""

from __future__ import annotations

import base64
import logging
import posixpath
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

from pvcm_common.errors import ConfigError, ExecError, TransferError
from pvcm.workloads import CONTAINER_NAME, EphemeralWorkload

logger = logging.getLogger(__name__)

METHOD_TAR = "tar"
METHOD_RSYNC = "rsync"
METHOD_ALIASES = {
    "tar": METHOD_TAR,
    "stream-archive": METHOD_TAR,
    "rsync": METHOD_RSYNC,
    "incremental-sync": METHOD_RSYNC,
}

REMOTE_ARCHIVE = "/tmp/payload.tar"
PUSH_CHUNK = 3 * 64 * 1024  # multiple of 3 so chunk encodings concatenate cleanly


def normalize_method(value: str | None) -> str:
    """Map a configured method name onto ``tar`` or ``rsync``.

    Raises:
        ConfigError: For unknown method names
    """
    key = (value or "").strip().lower()
    if not key:
        return METHOD_TAR
    if key not in METHOD_ALIASES:
        raise ConfigError(f"Unknown transfer method '{value}' (expected tar or rsync)")
    return METHOD_ALIASES[key]


@dataclass(frozen=True)
class SizeCheck:
    """Advisory comparison of ``du -s`` block counts."""
    source_blocks: int
    dest_blocks: int

    @property
    def tolerance(self) -> int:
        return self.source_blocks // 100 + 16

    @property
    def delta(self) -> int:
        return abs(self.dest_blocks - self.source_blocks)

    @property
    def passed(self) -> bool:
        return self.delta <= self.tolerance


def compare_sizes(source_blocks: int | None, dest_blocks: int | None) -> SizeCheck | None:
    """Compare block counts and log the outcome. Never fails the run."""
    if source_blocks is None or dest_blocks is None or source_blocks <= 0:
        logger.info("Skipping size delta check; empty/unmeasurable.")
        return None

    check = SizeCheck(source_blocks, dest_blocks)
    if check.passed:
        logger.info(f"✅ Size check PASSED (Δ={check.delta} ≤ {check.tolerance}).")
    else:
        logger.warning(f"⚠️  Size Δ={check.delta} (> {check.tolerance}); continuing.")
    return check


class _Base64FileWriter:
    """Decode a base64 text stream into a binary file as chunks arrive."""

    def __init__(self, fh: IO[bytes]):
        self.fh = fh
        self.pending = ""
        self.written = 0

    def __call__(self, chunk: str) -> None:
        data = self.pending + "".join(chunk.split())
        usable = len(data) - len(data) % 4
        self.pending = data[usable:]
        if usable:
            decoded = base64.b64decode(data[:usable])
            self.fh.write(decoded)
            self.written += len(decoded)

    def finish(self) -> None:
        if self.pending:
            raise TransferError(f"Archive stream ended with {len(self.pending)} undecodable characters")


def _encoded_chunks(path: Path) -> Iterator[str]:
    with path.open("rb") as fh:
        while True:
            block = fh.read(PUSH_CHUNK)
            if not block:
                break
            yield base64.b64encode(block).decode("ascii")


def encoded_length(size: int) -> int:
    return 4 * ((size + 2) // 3)


class TransferStrategy:
    name = "base"

    def transfer(
        self,
        source: EphemeralWorkload,
        dest: EphemeralWorkload,
        src_parent: str,
        dir_name: str,
        dest_path: str,
        staging_dir: Path
    ) -> None:
        raise NotImplementedError


class StreamArchiveTransfer(TransferStrategy):
    name = METHOD_TAR

    def pull(self, source: EphemeralWorkload, src_parent: str, dir_name: str, local_path: Path) -> int:
        """Stream a tar of ``src_parent/dir_name`` from the source pod into a local file."""
        script = (
            f"set -o pipefail; cd {shlex.quote(src_parent)} && "
            f"tar cf - {shlex.quote(dir_name)} | base64 -w 0"
        )
        with local_path.open("wb") as fh:
            writer = _Base64FileWriter(fh)
            source.exec(["bash", "-c", script], stdout_sink=writer)
            writer.finish()
        logger.info(f"Archived '{posixpath.join(src_parent, dir_name)}' to {local_path} ({writer.written} bytes)")
        return writer.written

    def push(self, dest: EphemeralWorkload, local_path: Path, remote_path: str = REMOTE_ARCHIVE) -> None:
        """Copy a local file into the destination pod.

        The remote side reads exactly the encoded length, so it finishes
        without needing an end-of-file on stdin.
        """
        length = encoded_length(local_path.stat().st_size)
        script = f"head -c {length} | base64 -d > {shlex.quote(remote_path)}"
        dest.exec(["sh", "-c", script], stdin=_encoded_chunks(local_path))
        logger.info(f"Pushed {local_path.name} to {dest.name}:{remote_path}")

    def unpack(self, dest: EphemeralWorkload, dest_path: str, remote_path: str = REMOTE_ARCHIVE) -> None:
        dest.sh(
            f"mkdir -p {shlex.quote(dest_path)} && tar xf {shlex.quote(remote_path)} -C {shlex.quote(dest_path)} "
            f"&& rm -f {shlex.quote(remote_path)}"
        )

    def transfer(self, source, dest, src_parent, dir_name, dest_path, staging_dir):
        local_path = staging_dir / "payload.tar"
        try:
            self.pull(source, src_parent, dir_name, local_path)
            self.push(dest, local_path)
        except OSError as exc:
            raise TransferError(f"Local staging failed for {local_path}: {exc}") from exc
        finally:
            local_path.unlink(missing_ok=True)
        self.unpack(dest, dest_path)


def incremental_sync_available() -> bool:
    return shutil.which("rsync") is not None and shutil.which("oc") is not None


class IncrementalSyncTransfer(TransferStrategy):
    name = METHOD_RSYNC

    def _run_oc(self, workload: EphemeralWorkload, *args: str) -> subprocess.CompletedProcess:
        cmd = [
            "oc", "--kubeconfig", str(workload.session.kubeconfig_path),
            "-n", workload.namespace,
            *args,
        ]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise TransferError("oc CLI not found on PATH") from exc

        if result.returncode != 0:
            raise TransferError(
                f"oc {' '.join(args)} failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        return result

    def transfer(self, source, dest, src_parent, dir_name, dest_path, staging_dir):
        tmp = staging_dir / "tmp_copy"
        tmp.mkdir(parents=True, exist_ok=True)
        try:
            self._run_oc(
                source, "rsync", "-c", CONTAINER_NAME,
                f"{source.name}:{posixpath.join(src_parent, dir_name)}", f"{tmp}/"
            )
            self._run_oc(
                dest, "rsync", "-c", CONTAINER_NAME,
                str(tmp / dir_name), f"{dest.name}:{dest_path}/"
            )
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


def select_strategy(method: str) -> TransferStrategy:
    """Pick the strategy for a normalized method, degrading rsync to tar."""
    if method == METHOD_RSYNC:
        if incremental_sync_available():
            return IncrementalSyncTransfer()
        logger.info("rsync/oc not available; switching to tar.")
    return StreamArchiveTransfer()


def measure(workload: EphemeralWorkload, path: str) -> tuple[str, int | None]:
    """Return (human-readable size, block count) of a directory in a pod."""
    quoted = shlex.quote(path)
    try:
        human = workload.sh(f"du -sh {quoted} 2>/dev/null | awk '{{print $1}}'", check=False) or "0"
        raw = workload.sh(f"du -s {quoted} 2>/dev/null | awk '{{print $1}}'", check=False)
    except ExecError as exc:
        logger.warning(f"⚠️  Could not measure '{path}' in {workload.name}: {exc}")
        return "0", None
    return human, int(raw) if raw.isdigit() else None


def relabel(workload: EphemeralWorkload, path: str) -> None:
    """Best-effort SELinux relabel of the copied directory."""
    try:
        workload.sh(
            f"command -v restorecon >/dev/null 2>&1 && restorecon -R {shlex.quote(path)} || true",
            check=False
        )
    except ExecError as exc:
        logger.debug(f"restorecon skipped: {exc}")


def transfer_directory(
    strategy: TransferStrategy,
    source: EphemeralWorkload,
    dest: EphemeralWorkload,
    src_parent: str,
    dir_name: str,
    dest_path: str,
    staging_dir: Path
) -> SizeCheck | None:
    """Copy ``src_parent/dir_name`` to ``dest_path/dir_name`` and compare sizes.

    Raises:
        TransferError: If any copy step fails
    """
    dest.sh(f"mkdir -p {shlex.quote(dest_path)}")

    src_dir = posixpath.join(src_parent, dir_name)
    src_human, src_blocks = measure(source, src_dir)
    logger.info(f"Source backup dir size: {src_human} ({src_blocks or 0} blocks)")

    logger.info(f"🔄 Copying '{src_dir}' → {dest.name}:{dest_path}/ (method: {strategy.name})")
    strategy.transfer(source, dest, src_parent, dir_name, dest_path, staging_dir)

    dst_dir = posixpath.join(dest_path, dir_name)
    relabel(dest, dst_dir)
    dst_human, dst_blocks = measure(dest, dst_dir)
    logger.info(f"Destination backup dir size: {dst_human} ({dst_blocks or 0} blocks)")

    return compare_sizes(src_blocks, dst_blocks)
