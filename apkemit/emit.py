from __future__ import annotations

import concurrent.futures as _fut
import contextlib
import enum
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Sequence

from .constants import CONTROL_ENTRY_NAME, COPY_BUFSIZE, OUT_DIR_MODE
from .control import ControlFields, render_control
from .errors import ApkEmitError, EmitError
from .job import PackageJob
from .scan import TreeEntry, installed_size, list_tree
from .sign import rsa_sign_sha1_digest
from .tarball import HashingWriter, TarballOptions, write_members, write_tree


logger = logging.getLogger("apkemit")

_PUBLISHED_MODE = 0o644


class Stage(enum.Enum):
    SCANNING = "scanning"
    DATA_ARCHIVING = "data-archiving"
    CONTROL_COMPOSING = "control-composing"
    SIGNING = "signing"
    COMBINING = "combining"
    DONE = "done"
    FAILED = "failed"


class JobLogAdapter(logging.LoggerAdapter):
    """Prefix every message with the package name and architecture."""

    def process(self, msg, kwargs):
        return f"apkemit ({self.extra['package']}/{self.extra['arch']}): {msg}", kwargs


def job_logger(job: PackageJob, base: Optional[logging.Logger] = None) -> JobLogAdapter:
    return JobLogAdapter(base or logger, {"package": job.name, "arch": job.arch})


@dataclass(frozen=True)
class DataArchive:
    stream: BinaryIO
    installed_size: int
    digest: bytes  # SHA-256 of the compressed member

    @property
    def hexdigest(self) -> str:
        return self.digest.hex()


@dataclass(frozen=True)
class ControlArchive:
    stream: BinaryIO
    text: str
    digest: bytes  # SHA-1 of the compressed member, input to the signature

    @property
    def hexdigest(self) -> str:
        return self.digest.hex()


@dataclass(frozen=True)
class SignatureArchive:
    stream: BinaryIO
    name: str
    signature: bytes


@dataclass(frozen=True)
class EmitResult:
    path: str
    installed_size: int
    data_digest: str
    control_digest: str
    signed: bool


def combine(out: BinaryIO, inputs: Sequence[BinaryIO]) -> None:
    """Copy each input stream into ``out`` in order, byte for byte."""
    for src in inputs:
        shutil.copyfileobj(src, out, COPY_BUFSIZE)


def _rewind(fh: BinaryIO, what: str) -> None:
    try:
        fh.seek(0)
    except OSError as exc:
        raise EmitError(f"unable to rewind {what} tarball: {exc}") from exc


class PackageEmitter:
    """Assemble one ``.apk`` from a prepared workspace.

    Stages run strictly in sequence because each one consumes the digest
    produced by the one before it:

    1.  Scan the package tree and compute the installed size.
    2.  Write the data member (SHA-256 over the compressed bytes).
    3.  Render ``.PKGINFO`` with that digest and write the control member
        (SHA-1 over the compressed bytes), leaving the tar unfinalized.
    4.  When a signing key is configured, sign the control digest and write
        the signature member, also unfinalized.
    5.  Concatenate signature, control and data into a temporary file next
        to the destination and rename it into place.

    Intermediate members live in anonymous temporary files that are closed
    (and thereby removed) on every exit path.
    """

    def __init__(self, job: PackageJob, log: Optional[logging.LoggerAdapter] = None):
        self.job = job
        self.log = log or job_logger(job)
        self.state: Optional[Stage] = None
        self.failed_stage: Optional[Stage] = None

    def _advance(self, stage: Stage) -> None:
        self.state = stage
        self.log.debug("stage: %s", stage.value)

    def _options(self, *, finalize: bool, use_checksums: bool = False) -> TarballOptions:
        return TarballOptions(
            source_date_epoch=self.job.source_date_epoch,
            finalize=finalize,
            use_checksums=use_checksums,
            compresslevel=self.job.compresslevel,
        )

    @staticmethod
    def _tempfile(stack: contextlib.ExitStack, kind: str) -> BinaryIO:
        try:
            fh = tempfile.TemporaryFile(prefix=f"apkemit-{kind}-", suffix=".tar.gz")
        except OSError as exc:
            raise EmitError(f"unable to open temporary file for writing: {exc}") from exc
        return stack.enter_context(fh)

    def scan(self) -> List[TreeEntry]:
        return list_tree(self.job.workspace_subdir())

    def write_data(self, stack: contextlib.ExitStack, entries: List[TreeEntry]) -> DataArchive:
        size = installed_size(entries)
        fh = self._tempfile(stack, "data")
        hw = HashingWriter(fh, hashlib.sha256())
        write_tree(hw, entries, self._options(finalize=True, use_checksums=True))
        hw.seal()
        data = DataArchive(stream=fh, installed_size=size, digest=hw.digest())
        self.log.info("  data.tar.gz installed-size: %d", data.installed_size)
        self.log.info("  data.tar.gz digest: %s", data.hexdigest)
        _rewind(fh, "data")
        return data

    def control_fields(self, data: DataArchive) -> ControlFields:
        job = self.job
        return ControlFields(
            pkgname=job.name,
            version=job.version,
            revision=job.revision,
            arch=job.arch,
            size=data.installed_size,
            description=job.description,
            licenses=job.licenses,
            dependencies=job.dependencies,
            datahash=data.hexdigest,
        )

    def write_control(self, stack: contextlib.ExitStack, data: DataArchive) -> ControlArchive:
        text = render_control(self.control_fields(data))
        fh = self._tempfile(stack, "control")
        hw = HashingWriter(fh, hashlib.sha1())  # nosec: digest algorithm fixed by apk signatures
        write_members(hw, [(CONTROL_ENTRY_NAME, text.encode("utf-8"))], self._options(finalize=False))
        hw.seal()
        control = ControlArchive(stream=fh, text=text, digest=hw.digest())
        self.log.info("  control.tar.gz digest: %s", control.hexdigest)
        _rewind(fh, "control")
        return control

    def write_signature(self, stack: contextlib.ExitStack, control: ControlArchive) -> SignatureArchive:
        job = self.job
        sig = rsa_sign_sha1_digest(control.digest, job.signing_key, job.signing_passphrase)
        name = job.signature_name()
        fh = self._tempfile(stack, "signature")
        write_members(fh, [(name, sig)], self._options(finalize=False))
        self.log.info("  signed with %s", name)
        _rewind(fh, "signature")
        return SignatureArchive(stream=fh, name=name, signature=sig)

    def publish(self, parts: Sequence[BinaryIO]) -> str:
        """Write ``parts`` to a temporary file and atomically rename it into place."""
        dest = self.job.filename()
        out_dir = self.job.arch_out_dir()
        try:
            os.makedirs(out_dir, mode=OUT_DIR_MODE, exist_ok=True)
        except OSError as exc:
            raise EmitError(f"unable to create output directory: {exc}") from exc
        try:
            fd, tmp = tempfile.mkstemp(prefix=f".{self.job.identity()}.", suffix=".tmp", dir=out_dir)
        except OSError as exc:
            raise EmitError(f"unable to create apk file: {exc}") from exc
        try:
            with os.fdopen(fd, "wb") as out:
                combine(out, parts)
                out.flush()
                os.fsync(out.fileno())
            os.chmod(tmp, _PUBLISHED_MODE)
            os.replace(tmp, dest)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise EmitError(f"unable to write apk file: {exc}") from exc
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp)
            raise
        return dest

    def run(self) -> EmitResult:
        job = self.job
        self.log.info("generating package %s", job.identity())
        try:
            with contextlib.ExitStack() as stack:
                self._advance(Stage.SCANNING)
                entries = self.scan()

                self._advance(Stage.DATA_ARCHIVING)
                data = self.write_data(stack, entries)

                self._advance(Stage.CONTROL_COMPOSING)
                control = self.write_control(stack, data)

                parts: List[BinaryIO] = [control.stream, data.stream]
                if job.signed:
                    self._advance(Stage.SIGNING)
                    signature = self.write_signature(stack, control)
                    parts.insert(0, signature.stream)

                self._advance(Stage.COMBINING)
                path = self.publish(parts)
        except BaseException:
            self.failed_stage = self.state
            self.state = Stage.FAILED
            raise
        self._advance(Stage.DONE)
        self.log.info("wrote %s", path)
        return EmitResult(
            path=path,
            installed_size=data.installed_size,
            data_digest=data.hexdigest,
            control_digest=control.hexdigest,
            signed=job.signed,
        )


def emit_package(job: PackageJob, log: Optional[logging.LoggerAdapter] = None) -> EmitResult:
    return PackageEmitter(job, log=log).run()


@dataclass
class JobOutcome:
    job: PackageJob
    result: Optional[EmitResult] = None
    error: Optional[ApkEmitError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def emit_packages(jobs: Sequence[PackageJob], *, max_workers: int = 4) -> List[JobOutcome]:
    """Emit independent packages concurrently; outcomes keep the input order.

    Each job owns its temporary files and output path, so nothing is shared
    between workers. A failed job does not stop its siblings. A job whose
    output path was already claimed by an earlier job fails with
    :class:`EmitError` without running.
    """
    seen = set()
    clashes = set()
    for i, job in enumerate(jobs):
        if job.filename() in seen:
            clashes.add(i)
        seen.add(job.filename())

    def _runner(item) -> JobOutcome:
        i, job = item
        try:
            if i in clashes:
                raise EmitError(f"another job already writes {job.filename()}")
            return JobOutcome(job=job, result=emit_package(job))
        except ApkEmitError as exc:
            job_logger(job).error("failed: %s", exc)
            return JobOutcome(job=job, error=exc)

    with _fut.ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as ex:
        return list(ex.map(_runner, enumerate(jobs)))
