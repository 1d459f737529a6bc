from __future__ import annotations

import argparse
import json as _json
import logging
import sys
import time
from typing import List, Optional

from apkemit.constants import DEFAULT_ARCH, DEFAULT_COMPRESSLEVEL
from apkemit.emit import emit_packages
from apkemit.errors import ApkEmitError, JobConfigError
from apkemit.job import load_jobs
from apkemit.reader import read_package, verify_package


def _configure_logging(quiet: bool) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", datefmt="%Y/%m/%d %H:%M:%S"))
    root = logging.getLogger("apkemit")
    root.handlers[:] = [handler]
    root.setLevel(logging.WARNING if quiet else logging.INFO)
    root.propagate = False


def cmd_build(
    config: str,
    *,
    workspace_dir: str = ".",
    out_dir: str = "packages",
    arch: str = DEFAULT_ARCH,
    source_date_epoch: Optional[int] = None,
    signing_key: Optional[str] = None,
    signing_passphrase: Optional[str] = None,
    compresslevel: int = DEFAULT_COMPRESSLEVEL,
    jobs: int = 4,
    as_json: bool = False,
) -> bool:
    """Emit every package described by a JSON job file.

    Args:
        config: Path to the job file (origin package plus optional subpackages).
        workspace_dir: Directory holding ``melange-out/<name>`` trees.
        out_dir: Output root; packages land in ``<out_dir>/<arch>/``.
        arch: Target architecture (``x86_64``, ``amd64``, ``arm64``, ...).
        source_date_epoch: Reproducibility epoch; defaults to ``SOURCE_DATE_EPOCH`` or 0.
        signing_key: Optional PEM RSA private key used to sign each package.
        signing_passphrase: Passphrase for an encrypted signing key.
        compresslevel: Gzip level for every member.
        jobs: Maximum number of packages assembled in parallel.
        as_json: When True, print a JSON result summary.

    Returns:
        True when every package was written, False otherwise.
    """
    job_list = load_jobs(
        config,
        workspace_dir=workspace_dir,
        out_dir=out_dir,
        arch=arch,
        source_date_epoch=source_date_epoch,
        signing_key=signing_key,
        signing_passphrase=signing_passphrase,
        compresslevel=compresslevel,
    )
    t0 = time.time()
    outcomes = emit_packages(job_list, max_workers=jobs)
    dt = max(0.000001, time.time() - t0)

    ok = sum(1 for o in outcomes if o.ok)
    failed = len(outcomes) - ok
    if as_json:
        results = []
        for o in outcomes:
            r = {"package": o.job.identity(), "status": "ok" if o.ok else "fail"}
            if o.result is not None:
                r.update(
                    path=o.result.path,
                    installed_size=o.result.installed_size,
                    datahash=o.result.data_digest,
                    control_sha1=o.result.control_digest,
                    signed=o.result.signed,
                )
            else:
                r["message"] = str(o.error)
            results.append(r)
        print(_json.dumps({"results": results, "ok": ok, "failed": failed}))
    else:
        for o in outcomes:
            if o.ok:
                print(f"OK       {o.result.path}")
            else:
                print(f"FAIL     {o.job.identity()}: {o.error}")
        print(f"Summary: ok={ok} failed={failed} in {dt:.1f}s")
    return failed == 0


def cmd_info(package: str) -> bool:
    """Show the members and control record of a package.

    Args:
        package: Path to an .apk file.
    """
    pkg = read_package(package)
    print(f"Package: {package}")
    print(f"  Members: {len(pkg.members)}")
    if pkg.signed:
        print(f"  Signature: {pkg.signature_name} ({len(pkg.signature)} bytes)")
    else:
        print("  Signature: none")
    print(f"  Data entries: {len(pkg.data_entries)}")
    print("  Control:")
    for key, value in pkg.control:
        print(f"    {key} = {value}")
    return True


def cmd_verify(package: str, *, public_key: Optional[str] = None) -> bool:
    """Verify the digests (and optionally the signature) of a package.

    Args:
        package: Path to an .apk file.
        public_key: PEM RSA public key; when given the signature must verify.

    Prints:
        "OK" on success, "FAIL" followed by the problems otherwise.
    """
    v = verify_package(package, public_key=public_key)
    if v.ok:
        print("OK")
    else:
        print("FAIL")
        for p in v.problems:
            print("  " + p)
    return v.ok


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="apkemit",
        description="Assemble reproducible APK packages from prepared trees",
        epilog="Members are written in the order signature, control, data.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_build = sub.add_parser("build", help="Emit packages described by a JSON job file")
    ap_build.add_argument("config", help="Job file (JSON)")
    ap_build.add_argument("--workspace-dir", default=".", help="Workspace containing melange-out/<name> trees")
    ap_build.add_argument("--out-dir", default="packages", help="Output root (packages go to <out-dir>/<arch>)")
    ap_build.add_argument("--arch", default=DEFAULT_ARCH, help=f"Target architecture (default {DEFAULT_ARCH})")
    ap_build.add_argument("--source-date-epoch", type=int, help="Reproducibility epoch (default: $SOURCE_DATE_EPOCH or 0)")
    ap_build.add_argument("--signing-key", help="PEM RSA private key used to sign packages")
    ap_build.add_argument("--signing-passphrase", help="Passphrase for the signing key")
    ap_build.add_argument("--compresslevel", type=int, default=DEFAULT_COMPRESSLEVEL, help="Gzip level 0-9")
    ap_build.add_argument("--jobs", "-j", type=int, default=4, help="Packages assembled in parallel (default 4)")
    ap_build.add_argument("--json", action="store_true", help="Emit JSON result summary")
    ap_build.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_info = sub.add_parser("info", help="Show package members and control record")
    ap_info.add_argument("package", help="Package path")

    ap_verify = sub.add_parser("verify", help="Verify package digests and signature")
    ap_verify.add_argument("package", help="Package path")
    ap_verify.add_argument("--public-key", help="PEM RSA public key to check the signature with")

    args = ap.parse_args(argv)
    _configure_logging(getattr(args, "quiet", False) or getattr(args, "json", False))
    try:
        if args.cmd == "build":
            success = cmd_build(
                args.config,
                workspace_dir=args.workspace_dir,
                out_dir=args.out_dir,
                arch=args.arch,
                source_date_epoch=args.source_date_epoch,
                signing_key=args.signing_key,
                signing_passphrase=args.signing_passphrase,
                compresslevel=args.compresslevel,
                jobs=args.jobs,
                as_json=args.json,
            )
            sys.exit(0 if success else 1)
        elif args.cmd == "info":
            cmd_info(args.package)
        elif args.cmd == "verify":
            sys.exit(0 if cmd_verify(args.package, public_key=args.public_key) else 1)
        else:
            raise RuntimeError("Unknown command")
    except JobConfigError as e:
        print(f"Error: invalid job: {e}", file=sys.stderr)
        sys.exit(2)
    except (ApkEmitError, OSError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
