import os


# Control member
CONTROL_ENTRY_NAME = ".PKGINFO"
CONTROL_GENERATOR = "apkemit"

# Signature member: ".SIGN.<ALGO>.<key-basename>.pub"
SIGNATURE_ALGORITHM = "RSA"
SIGNATURE_PREFIX = ".SIGN."

# Workspace layout: <workspace>/melange-out/<package name>
WORKSPACE_OUT_DIR = "melange-out"
PACKAGE_SUFFIX = ".apk"

# Ownership forced onto every archived entry
FORCE_UID = 0
FORCE_GID = 0
FORCE_UNAME = "root"
FORCE_GNAME = "root"

# PAX record carrying the per-file content checksum
PAX_CHECKSUM_KEY = "APK-TOOLS.checksum.SHA1"

DEFAULT_COMPRESSLEVEL = 9
COPY_BUFSIZE = 1_048_576  # 1 MiB

# Modes applied to in-memory member entries (.PKGINFO, signature)
MEMBER_FILE_MODE = 0o644
OUT_DIR_MODE = 0o755

# Entry kinds yielded by the tree scanner
KIND_FILE = 0
KIND_DIR = 1
KIND_SYMLINK = 2


# Architecture spellings accepted on input, mapped to APK names
APK_ARCHES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "x86": "x86",
    "386": "x86",
    "i386": "x86",
    "armv7": "armv7",
    "arm/v7": "armv7",
    "armhf": "armhf",
    "arm/v6": "armhf",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}
DEFAULT_ARCH = "x86_64"


def default_source_date_epoch() -> int:
    """Reproducibility epoch from ``SOURCE_DATE_EPOCH``, or 0 when unset."""
    raw = os.environ.get("SOURCE_DATE_EPOCH", "").strip()
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"SOURCE_DATE_EPOCH must be an integer, got {raw!r}")
