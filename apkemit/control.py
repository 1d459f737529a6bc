from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .constants import CONTROL_GENERATOR
from .errors import ControlRenderError, PackageFormatError


@dataclass(frozen=True)
class ControlFields:
    """Values substituted into the ``.PKGINFO`` record."""
    pkgname: Optional[str]
    version: Optional[str]
    revision: Optional[int]
    arch: Optional[str]
    size: Optional[int]
    description: Optional[str]
    licenses: Sequence[str] = ()
    dependencies: Sequence[str] = ()
    datahash: Optional[str] = None


def _value(name: str, value) -> str:
    if value is None:
        raise ControlRenderError(name)
    s = str(value)
    if "\n" in s or "\r" in s:
        raise ControlRenderError(name, "must not contain line breaks")
    try:
        s.encode("utf-8")
    except UnicodeEncodeError:
        raise ControlRenderError(name, "is not valid UTF-8") from None
    return s


def render_control(fields: ControlFields) -> str:
    """Render the control record.

    Field order is fixed: pkgname, pkgver, arch, size, pkgdesc, license lines,
    depend lines, datahash. Unset fields raise :class:`ControlRenderError`
    instead of producing a truncated record.
    """
    lines = [
        "",
        f"# Generated by {CONTROL_GENERATOR}.",
        f"pkgname = {_value('pkgname', fields.pkgname)}",
        f"pkgver = {_value('version', fields.version)}-r{_value('revision', fields.revision)}",
        f"arch = {_value('arch', fields.arch)}",
        f"size = {_value('size', fields.size)}",
        f"pkgdesc = {_value('description', fields.description)}",
    ]
    for lic in fields.licenses:
        lines.append(f"license = {_value('license', lic)}")
    for dep in fields.dependencies:
        lines.append(f"depend = {_value('depend', dep)}")
    lines.append(f"datahash = {_value('datahash', fields.datahash)}")
    return "\n".join(lines) + "\n"


def parse_control(text: str) -> List[Tuple[str, str]]:
    """Parse a control record into ordered ``(key, value)`` pairs."""
    out: List[Tuple[str, str]] = []
    for n, raw in enumerate(text.splitlines(), start=1):
        if not raw.strip() or raw.lstrip().startswith("#"):
            continue
        # Values may be empty ("pkgdesc = "), so split on the raw line.
        key, sep, value = raw.partition(" = ")
        if not sep:
            raise PackageFormatError(f"malformed control line {n}: {raw!r}")
        out.append((key, value))
    return out


def control_value(pairs: Sequence[Tuple[str, str]], key: str) -> Optional[str]:
    for k, v in pairs:
        if k == key:
            return v
    return None
