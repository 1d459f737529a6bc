from __future__ import annotations

"""Deterministic tar+gzip member writer.

Every member written here is a standalone gzip stream holding a tar archive.
Ownership and timestamps are overridden per entry and the gzip header carries
neither a timestamp nor a filename, so identical inputs always produce
identical bytes. Members written with ``finalize=False`` omit the tar
end-of-archive blocks so that a later member can follow them in the same
concatenated file.
"""

import gzip
import hashlib
import tarfile
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Optional, Sequence, Tuple

from .constants import (
    COPY_BUFSIZE,
    DEFAULT_COMPRESSLEVEL,
    FORCE_GID,
    FORCE_GNAME,
    FORCE_UID,
    FORCE_UNAME,
    KIND_DIR,
    KIND_FILE,
    KIND_SYMLINK,
    MEMBER_FILE_MODE,
    PAX_CHECKSUM_KEY,
)
from .errors import ArchiveWriteError
from .scan import TreeEntry


_TAR_FORMAT = tarfile.PAX_FORMAT
_TAR_ENCODING = "utf-8"
_TAR_ERRORS = "surrogateescape"


@dataclass(frozen=True)
class TarballOptions:
    source_date_epoch: int
    uid: int = FORCE_UID
    gid: int = FORCE_GID
    uname: str = FORCE_UNAME
    gname: str = FORCE_GNAME
    finalize: bool = True  # False: more members follow, no end-of-archive blocks
    use_checksums: bool = False
    compresslevel: int = DEFAULT_COMPRESSLEVEL


class HashingWriter:
    """Write-through stream that feeds every written byte to ``hasher``.

    The digest is only released after :meth:`seal`, which the caller invokes
    once the whole member has been written successfully.
    """

    def __init__(self, fileobj: BinaryIO, hasher):
        self._f = fileobj
        self._hasher = hasher
        self._sealed = False
        self.bytes_written = 0

    def write(self, data) -> int:
        if self._sealed:
            raise ArchiveWriteError("write after stream was sealed")
        n = len(data)
        self._f.write(data)
        self._hasher.update(data)
        self.bytes_written += n
        return n

    def flush(self) -> None:
        self._f.flush()

    def seal(self) -> None:
        self._f.flush()
        self._sealed = True

    def digest(self) -> bytes:
        if not self._sealed:
            raise ArchiveWriteError("digest requested before the stream was complete")
        return self._hasher.digest()

    def hexdigest(self) -> str:
        return self.digest().hex()


class _TarStream:
    """Minimal tar emitter over a gzip stream.

    Headers are produced by :meth:`tarfile.TarInfo.tobuf`; padding and the
    optional end-of-archive marker are written here so that the caller decides
    whether the archive is finalized.
    """

    def __init__(self, fileobj: BinaryIO, options: TarballOptions):
        self.options = options
        self._gz = gzip.GzipFile(
            filename="",
            mode="wb",
            compresslevel=options.compresslevel,
            fileobj=fileobj,
            mtime=0,
        )
        self.offset = 0

    def _write(self, data: bytes) -> None:
        self._gz.write(data)
        self.offset += len(data)

    def _pad(self, size: int) -> None:
        rem = size % tarfile.BLOCKSIZE
        if rem:
            self._write(tarfile.NUL * (tarfile.BLOCKSIZE - rem))

    def _normalize(self, info: tarfile.TarInfo) -> tarfile.TarInfo:
        o = self.options
        info.uid = o.uid
        info.gid = o.gid
        info.uname = o.uname
        info.gname = o.gname
        info.mtime = int(o.source_date_epoch)
        return info

    def add_header(self, info: tarfile.TarInfo) -> None:
        self._write(self._normalize(info).tobuf(_TAR_FORMAT, _TAR_ENCODING, _TAR_ERRORS))

    def add_bytes(self, name: str, data: bytes, mode: int = MEMBER_FILE_MODE) -> None:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        info.mode = mode
        if self.options.use_checksums:
            info.pax_headers = {PAX_CHECKSUM_KEY: hashlib.sha1(data).hexdigest()}
        self.add_header(info)
        self._write(data)
        self._pad(len(data))

    def add_entry(self, entry: TreeEntry) -> None:
        info = tarfile.TarInfo(entry.path)
        info.mode = entry.mode
        if entry.kind == KIND_DIR:
            info.type = tarfile.DIRTYPE
            self.add_header(info)
        elif entry.kind == KIND_SYMLINK:
            info.type = tarfile.SYMTYPE
            info.linkname = entry.link_target or ""
            self.add_header(info)
        elif entry.kind == KIND_FILE:
            info.size = entry.size
            if self.options.use_checksums:
                info.pax_headers = {PAX_CHECKSUM_KEY: _sha1_file(entry.fs_path, entry.size)}
            self.add_header(info)
            self._copy_file(entry.fs_path, entry.size)
            self._pad(entry.size)
        else:
            raise ArchiveWriteError(f"unsupported entry kind {entry.kind} for {entry.path}")

    def _copy_file(self, fs_path: str, size: int) -> None:
        remaining = size
        with open(fs_path, "rb") as fh:
            while remaining > 0:
                buf = fh.read(min(COPY_BUFSIZE, remaining))
                if not buf:
                    raise ArchiveWriteError(f"{fs_path} shrank while being archived")
                self._write(buf)
                remaining -= len(buf)
            if fh.read(1):
                raise ArchiveWriteError(f"{fs_path} grew while being archived")

    def close(self) -> None:
        if self.options.finalize:
            self._write(tarfile.NUL * (tarfile.BLOCKSIZE * 2))
        self._gz.close()


def _sha1_file(fs_path: str, size: int) -> str:
    h = hashlib.sha1()  # nosec: content checksum expected by apk tooling
    read = 0
    with open(fs_path, "rb") as fh:
        for buf in iter(lambda: fh.read(COPY_BUFSIZE), b""):
            h.update(buf)
            read += len(buf)
    if read != size:
        raise ArchiveWriteError(f"{fs_path} changed size while being archived")
    return h.hexdigest()


def write_tree(fileobj: BinaryIO, entries: Iterable[TreeEntry], options: TarballOptions) -> None:
    """Serialize scanned tree entries as one gzip-compressed tar member."""
    try:
        ts = _TarStream(fileobj, options)
        for entry in entries:
            ts.add_entry(entry)
        ts.close()
    except (OSError, ValueError, zlib.error) as exc:
        raise ArchiveWriteError(f"unable to write tarball: {exc}") from exc


def write_members(
    fileobj: BinaryIO,
    members: Sequence[Tuple[str, bytes]],
    options: TarballOptions,
    mode: Optional[int] = None,
) -> None:
    """Serialize in-memory ``(name, data)`` pairs as one gzip-compressed tar member."""
    try:
        ts = _TarStream(fileobj, options)
        for name, data in members:
            ts.add_bytes(name, data, MEMBER_FILE_MODE if mode is None else mode)
        ts.close()
    except (OSError, ValueError, zlib.error) as exc:
        raise ArchiveWriteError(f"unable to write tarball: {exc}") from exc
