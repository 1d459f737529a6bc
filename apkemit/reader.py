from __future__ import annotations

import gzip
import hashlib
import io
import tarfile
import zlib
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .constants import CONTROL_ENTRY_NAME, PAX_CHECKSUM_KEY, SIGNATURE_PREFIX
from .control import control_value, parse_control
from .errors import PackageFormatError
from .sign import rsa_verify_sha1_digest


def split_members(data: bytes) -> List[bytes]:
    """Split a file of concatenated gzip streams into the raw member bytes."""
    members: List[bytes] = []
    pos = 0
    while pos < len(data):
        d = zlib.decompressobj(wbits=31)
        try:
            d.decompress(data[pos:])
        except zlib.error as exc:
            raise PackageFormatError(f"invalid gzip member at offset {pos}: {exc}") from exc
        if not d.eof:
            raise PackageFormatError(f"truncated gzip member at offset {pos}")
        consumed = len(data) - pos - len(d.unused_data)
        members.append(data[pos:pos + consumed])
        pos += consumed
    return members


def member_entries(member: bytes) -> List[Tuple[tarfile.TarInfo, Optional[bytes]]]:
    """Return ``(info, content)`` for each tar entry in one member.

    Content is None for anything but regular files. Members without
    end-of-archive blocks are accepted.
    """
    try:
        raw = gzip.decompress(member)
        out: List[Tuple[tarfile.TarInfo, Optional[bytes]]] = []
        with tarfile.open(fileobj=io.BytesIO(raw), mode="r:") as tf:
            for info in tf:
                content = None
                if info.isreg():
                    fh = tf.extractfile(info)
                    content = fh.read() if fh is not None else b""
                out.append((info, content))
        return out
    except (OSError, EOFError, tarfile.TarError, zlib.error) as exc:
        raise PackageFormatError(f"unable to read tar member: {exc}") from exc


@dataclass
class PackageFile:
    path: str
    members: List[bytes]
    control_text: str
    control: List[Tuple[str, str]]
    data_entries: List[tarfile.TarInfo] = field(default_factory=list)
    signature_name: Optional[str] = None
    signature: Optional[bytes] = None

    @property
    def signed(self) -> bool:
        return self.signature is not None

    @property
    def control_member(self) -> bytes:
        return self.members[-2]

    @property
    def data_member(self) -> bytes:
        return self.members[-1]

    def get(self, key: str) -> Optional[str]:
        return control_value(self.control, key)

    def get_all(self, key: str) -> List[str]:
        return [v for k, v in self.control if k == key]


def _sole_entry(member: bytes, what: str) -> Tuple[tarfile.TarInfo, bytes]:
    entries = member_entries(member)
    if len(entries) != 1 or entries[0][1] is None:
        raise PackageFormatError(f"{what} member must contain exactly one file")
    return entries[0]  # type: ignore[return-value]


def read_package(path: str) -> PackageFile:
    with open(path, "rb") as fh:
        data = fh.read()
    members = split_members(data)
    if len(members) not in (2, 3):
        raise PackageFormatError(f"expected 2 or 3 gzip members, found {len(members)}")

    sig_name = None
    sig = None
    if len(members) == 3:
        info, sig = _sole_entry(members[0], "signature")
        if not info.name.startswith(SIGNATURE_PREFIX):
            raise PackageFormatError(f"unexpected signature entry name: {info.name}")
        sig_name = info.name

    info, control_raw = _sole_entry(members[-2], "control")
    if info.name != CONTROL_ENTRY_NAME:
        raise PackageFormatError(f"control member holds {info.name}, expected {CONTROL_ENTRY_NAME}")
    try:
        control_text = control_raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PackageFormatError(f"control record is not UTF-8: {exc}") from exc

    data_entries = [i for i, _ in member_entries(members[-1])]
    return PackageFile(
        path=path,
        members=members,
        control_text=control_text,
        control=parse_control(control_text),
        data_entries=data_entries,
        signature_name=sig_name,
        signature=sig,
    )


@dataclass
class Verification:
    datahash_ok: bool
    checksums_ok: bool
    signature_ok: Optional[bool] = None  # None: not checked
    problems: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.datahash_ok and self.checksums_ok and self.signature_ok is not False


def verify_package(path: str, public_key: Optional[str] = None) -> Verification:
    """Check the digests that tie the members together.

    - ``datahash`` in the control record must equal SHA-256 of the data member.
    - Per-file PAX checksums in the data member must match the contents.
    - With ``public_key``, the signature must verify against SHA-1 of the
      control member; an unsigned package fails this check.
    """
    pkg = read_package(path)
    problems: List[str] = []

    want = pkg.get("datahash")
    got = hashlib.sha256(pkg.data_member).hexdigest()
    datahash_ok = want == got
    if not datahash_ok:
        problems.append(f"datahash mismatch: control says {want}, data member is {got}")

    checksums_ok = True
    for info, content in member_entries(pkg.data_member):
        expected = info.pax_headers.get(PAX_CHECKSUM_KEY)
        if expected is None or content is None:
            continue
        if hashlib.sha1(content).hexdigest() != expected:
            checksums_ok = False
            problems.append(f"checksum mismatch for {info.name}")

    signature_ok = None
    if public_key is not None:
        if pkg.signature is None:
            signature_ok = False
            problems.append("package is not signed")
        else:
            digest = hashlib.sha1(pkg.control_member).digest()
            signature_ok = rsa_verify_sha1_digest(digest, pkg.signature, public_key)
            if not signature_ok:
                problems.append("signature does not verify")

    return Verification(datahash_ok, checksums_ok, signature_ok, problems)
