"""
apkemit — reproducible APK package assembly.

Features:

- Scans a prepared package tree and records its installed size.
- Writes the data member as a gzip-compressed tar with forced ownership and a
  fixed reproducibility epoch, hashing the compressed bytes as they are written.
- Renders the ``.PKGINFO`` control record (embedding the data digest) into a
  non-finalized control member, hashed for signing.
- Optionally signs the control digest with an RSA key (PyCryptodomex) and
  prepends a detached signature member.
- Concatenates signature, control and data members into the final ``.apk`` and
  publishes it with an atomic rename.

The control record is plain `key = value` text; see apkemit.control.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "job",
    "scan",
    "tarball",
    "control",
    "sign",
    "emit",
    "reader",
]

# Programmatic API: apkemit.emit.emit_package(job) with a PackageJob from
# apkemit.job, or the CLI functions in apkemit.cli (cmd_build/cmd_verify).
