from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .constants import (
    APK_ARCHES,
    DEFAULT_ARCH,
    DEFAULT_COMPRESSLEVEL,
    PACKAGE_SUFFIX,
    SIGNATURE_ALGORITHM,
    SIGNATURE_PREFIX,
    WORKSPACE_OUT_DIR,
    default_source_date_epoch,
)
from .errors import JobConfigError


def to_apk_arch(arch: str) -> str:
    """Map an architecture spelling (``amd64``, ``arm/v7``, ...) to its APK name."""
    key = (arch or "").strip().lower()
    if key.startswith("linux/"):
        key = key[len("linux/"):]
    try:
        return APK_ARCHES[key]
    except KeyError:
        raise JobConfigError(f"unsupported architecture: {arch!r}") from None


@dataclass(frozen=True)
class PackageJob:
    """One package emission task.

    Frozen so that no stage can alter the job once the pipeline has started.
    """
    name: str
    version: str
    revision: int
    description: str
    workspace_dir: str
    out_dir: str
    licenses: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    arch: str = DEFAULT_ARCH
    source_date_epoch: int = 0
    signing_key: Optional[str] = None
    signing_passphrase: Optional[str] = field(default=None, repr=False)
    compresslevel: int = DEFAULT_COMPRESSLEVEL

    def __post_init__(self):
        # Accept lists from callers; store tuples so the job stays immutable.
        object.__setattr__(self, "licenses", tuple(self.licenses))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "arch", to_apk_arch(self.arch))
        if not self.name:
            raise JobConfigError("package name must not be empty")
        if "/" in self.name or self.name in (".", ".."):
            raise JobConfigError(f"invalid package name: {self.name!r}")
        if int(self.revision) < 0:
            raise JobConfigError("revision must be >= 0")
        if int(self.source_date_epoch) < 0:
            raise JobConfigError("source_date_epoch must be >= 0")
        if not 0 <= int(self.compresslevel) <= 9:
            raise JobConfigError("compresslevel must be between 0 and 9")

    def identity(self) -> str:
        return f"{self.name}-{self.version}-r{self.revision}"

    def workspace_subdir(self) -> str:
        return os.path.join(self.workspace_dir, WORKSPACE_OUT_DIR, self.name)

    def arch_out_dir(self) -> str:
        return os.path.join(self.out_dir, self.arch)

    def filename(self) -> str:
        return os.path.join(self.arch_out_dir(), self.identity() + PACKAGE_SUFFIX)

    def signature_name(self) -> str:
        if not self.signing_key:
            raise JobConfigError("no signing key configured")
        return f"{SIGNATURE_PREFIX}{SIGNATURE_ALGORITHM}.{os.path.basename(self.signing_key)}.pub"

    @property
    def signed(self) -> bool:
        return bool(self.signing_key)


# -------- Job file (JSON) --------

def _require(section: Dict[str, Any], key: str, where: str) -> Any:
    if key not in section or section[key] is None:
        raise JobConfigError(f"missing required key {where}.{key}")
    return section[key]


def _optional_str(section: Dict[str, Any], key: str, where: str, default: str) -> str:
    # JSON null means the key was left out.
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise JobConfigError(f"{where}.{key} must be a string")
    return value


def _runtime_deps(section: Dict[str, Any], where: str) -> Optional[List[str]]:
    deps = section.get("dependencies")
    if deps is None:
        return None
    if not isinstance(deps, dict):
        raise JobConfigError(f"{where}.dependencies must be an object")
    runtime = deps.get("runtime") or []
    if not isinstance(runtime, list) or not all(isinstance(d, str) for d in runtime):
        raise JobConfigError(f"{where}.dependencies.runtime must be a list of strings")
    return list(runtime)


def _licenses(section: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for i, c in enumerate(section.get("copyright") or []):
        if not isinstance(c, dict):
            raise JobConfigError(f"package.copyright[{i}] must be an object")
        out.append(str(_require(c, "license", f"package.copyright[{i}]")))
    return out


def jobs_from_config(
    config: Dict[str, Any],
    *,
    workspace_dir: str,
    out_dir: str,
    arch: str = DEFAULT_ARCH,
    source_date_epoch: Optional[int] = None,
    signing_key: Optional[str] = None,
    signing_passphrase: Optional[str] = None,
    compresslevel: int = DEFAULT_COMPRESSLEVEL,
) -> List[PackageJob]:
    """Build one job for the origin package and one per subpackage.

    Subpackages inherit version, revision and licenses from the origin; their
    description and runtime dependencies default to the origin's.
    """
    if not isinstance(config, dict):
        raise JobConfigError("job file must contain a JSON object")
    pkg = _require(config, "package", "config")
    if not isinstance(pkg, dict):
        raise JobConfigError("config.package must be an object")
    try:
        revision = int(pkg.get("epoch", 0))
    except (TypeError, ValueError):
        raise JobConfigError("package.epoch must be an integer") from None
    if source_date_epoch is None:
        try:
            source_date_epoch = default_source_date_epoch()
        except ValueError as exc:
            raise JobConfigError(str(exc)) from None

    origin = PackageJob(
        name=str(_require(pkg, "name", "package")),
        version=str(_require(pkg, "version", "package")),
        revision=revision,
        description=_optional_str(pkg, "description", "package", ""),
        licenses=_licenses(pkg),
        dependencies=_runtime_deps(pkg, "package") or [],
        workspace_dir=workspace_dir,
        out_dir=out_dir,
        arch=arch,
        source_date_epoch=source_date_epoch,
        signing_key=signing_key,
        signing_passphrase=signing_passphrase,
        compresslevel=compresslevel,
    )
    jobs = [origin]
    subs = config.get("subpackages") or []
    if not isinstance(subs, list):
        raise JobConfigError("config.subpackages must be a list")
    for i, sp in enumerate(subs):
        where = f"subpackages[{i}]"
        if not isinstance(sp, dict):
            raise JobConfigError(f"{where} must be an object")
        deps = _runtime_deps(sp, where)
        jobs.append(
            replace(
                origin,
                name=str(_require(sp, "name", where)),
                description=_optional_str(sp, "description", where, origin.description),
                dependencies=origin.dependencies if deps is None else deps,
            )
        )
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        raise JobConfigError(f"duplicate package names in job file: {names}")
    return jobs


def load_jobs(path: str, **kwargs) -> List[PackageJob]:
    """Read a JSON job file; keyword arguments are passed to :func:`jobs_from_config`."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            config = json.load(fh)
    except OSError as exc:
        raise JobConfigError(f"unable to read job file {path}: {exc}") from exc
    except ValueError as exc:
        raise JobConfigError(f"invalid JSON in job file {path}: {exc}") from exc
    return jobs_from_config(config, **kwargs)
