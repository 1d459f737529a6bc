from __future__ import annotations

import gzip
import hashlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path

from apkemit.constants import KIND_DIR, KIND_FILE, KIND_SYMLINK
from apkemit.control import ControlFields, parse_control, render_control
from apkemit.errors import ArchiveWriteError, ControlRenderError, JobConfigError, PackageFormatError, ScanError, SigningError
from apkemit.job import PackageJob, jobs_from_config, load_jobs, to_apk_arch
from apkemit.reader import member_entries, split_members
from apkemit.scan import iter_tree, scan_tree
from apkemit.sign import PrehashedSHA1, rsa_sign_sha1_digest
from apkemit.tarball import HashingWriter, TarballOptions, write_members


def _fields(**kw) -> ControlFields:
    params = dict(
        pkgname="pkgA",
        version="1.0",
        revision=0,
        arch="x86_64",
        size=10,
        description="desc",
        licenses=["MIT"],
        dependencies=[],
        datahash="ab" * 32,
    )
    params.update(kw)
    return ControlFields(**params)


class ScanTests(unittest.TestCase):
    def test_order_kinds_and_size(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "b").mkdir()
            (root / "b" / "inner.bin").write_bytes(b"x" * 7)
            (root / "a.txt").write_bytes(b"y" * 5)
            (root / "c").mkdir()
            has_link = hasattr(os, "symlink")
            if has_link:
                os.symlink("a.txt", root / "d-link")

            entries = list(iter_tree(str(root)))
            paths = [e.path for e in entries]
            expected = ["a.txt", "b", "b/inner.bin", "c"] + (["d-link"] if has_link else [])
            self.assertEqual(paths, expected)
            kinds = {e.path: e.kind for e in entries}
            self.assertEqual(kinds["a.txt"], KIND_FILE)
            self.assertEqual(kinds["b"], KIND_DIR)
            if has_link:
                self.assertEqual(kinds["d-link"], KIND_SYMLINK)
                self.assertEqual(entries[-1].size, 0)
            self.assertEqual(scan_tree(str(root)), 12)

    def test_empty_tree_has_zero_size(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertEqual(scan_tree(tmp), 0)

    def test_missing_root(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ScanError):
                scan_tree(os.path.join(tmp, "nope"))


class TarballTests(unittest.TestCase):
    def test_digest_requires_seal(self):
        hw = HashingWriter(io.BytesIO(), hashlib.sha256())
        hw.write(b"partial")
        with self.assertRaises(ArchiveWriteError):
            hw.digest()
        hw.seal()
        self.assertEqual(hw.digest(), hashlib.sha256(b"partial").digest())
        with self.assertRaises(ArchiveWriteError):
            hw.write(b"more")

    def test_hash_covers_exact_output(self):
        buf = io.BytesIO()
        hw = HashingWriter(buf, hashlib.sha1())
        write_members(hw, [(".PKGINFO", b"pkgname = x\n")], TarballOptions(source_date_epoch=5, finalize=False))
        hw.seal()
        self.assertEqual(hw.bytes_written, len(buf.getvalue()))
        self.assertEqual(hw.hexdigest(), hashlib.sha1(buf.getvalue()).hexdigest())

    def test_gzip_header_is_fixed(self):
        buf = io.BytesIO()
        write_members(buf, [("f", b"data")], TarballOptions(source_date_epoch=0))
        raw = buf.getvalue()
        # magic, deflate, no FNAME flag, mtime 0
        self.assertEqual(raw[:4], b"\x1f\x8b\x08\x00")
        self.assertEqual(raw[4:8], b"\x00\x00\x00\x00")
        self.assertEqual(len(split_members(raw)), 1)

    def test_members_concatenate(self):
        buf = io.BytesIO()
        opts = TarballOptions(source_date_epoch=0, finalize=False)
        write_members(buf, [("one", b"1")], opts)
        write_members(buf, [("two", b"22")], TarballOptions(source_date_epoch=0))
        members = split_members(buf.getvalue())
        self.assertEqual(len(members), 2)
        # A reader that treats the file as one gzip stream sees a single tar.
        names = [i.name for i, _ in member_entries(gzip.compress(gzip.decompress(buf.getvalue())))]
        self.assertEqual(names, ["one", "two"])

    def test_file_shrinking_during_write_is_reported(self):
        from apkemit.scan import TreeEntry
        from apkemit.tarball import write_tree

        with tempfile.TemporaryDirectory() as tmp:
            p = Path(tmp) / "f"
            p.write_bytes(b"abc")
            entry = TreeEntry("f", str(p), KIND_FILE, 10, 0o644)
            with self.assertRaises(ArchiveWriteError):
                write_tree(io.BytesIO(), [entry], TarballOptions(source_date_epoch=0))


class ControlTests(unittest.TestCase):
    def test_render_layout(self):
        text = render_control(_fields(licenses=["MIT", "BSD-2-Clause"], dependencies=["so:libc.so.6"]))
        self.assertEqual(
            text,
            "\n# Generated by apkemit.\n"
            "pkgname = pkgA\n"
            "pkgver = 1.0-r0\n"
            "arch = x86_64\n"
            "size = 10\n"
            "pkgdesc = desc\n"
            "license = MIT\n"
            "license = BSD-2-Clause\n"
            "depend = so:libc.so.6\n"
            f"datahash = {'ab' * 32}\n",
        )

    def test_unset_field_fails_loudly(self):
        for name, kw in (
            ("pkgname", {"pkgname": None}),
            ("size", {"size": None}),
            ("datahash", {"datahash": None}),
        ):
            with self.assertRaises(ControlRenderError) as cm:
                render_control(_fields(**kw))
            self.assertEqual(cm.exception.field, name)

    def test_line_breaks_rejected(self):
        with self.assertRaises(ControlRenderError) as cm:
            render_control(_fields(description="two\nlines"))
        self.assertEqual(cm.exception.field, "description")

    def test_lone_surrogate_rejected(self):
        with self.assertRaises(ControlRenderError) as cm:
            render_control(_fields(dependencies=["so:\udcff"]))
        self.assertEqual(cm.exception.field, "depend")

    def test_parse_roundtrip_with_empty_value(self):
        pairs = parse_control(render_control(_fields(description="")))
        self.assertIn(("pkgdesc", ""), pairs)
        self.assertEqual(pairs[0], ("pkgname", "pkgA"))

    def test_parse_rejects_garbage(self):
        with self.assertRaises(PackageFormatError):
            parse_control("pkgname=oops\n")


class JobTests(unittest.TestCase):
    def _job(self, **kw) -> PackageJob:
        params = dict(name="foo", version="1.2.3", revision=4, description="", workspace_dir="/ws", out_dir="/out")
        params.update(kw)
        return PackageJob(**params)

    def test_derived_names(self):
        job = self._job(signing_key="/keys/me@example.com-1234.rsa")
        self.assertEqual(job.identity(), "foo-1.2.3-r4")
        self.assertEqual(job.workspace_subdir(), os.path.join("/ws", "melange-out", "foo"))
        self.assertEqual(job.filename(), os.path.join("/out", "x86_64", "foo-1.2.3-r4.apk"))
        self.assertEqual(job.signature_name(), ".SIGN.RSA.me@example.com-1234.rsa.pub")

    def test_job_is_immutable(self):
        job = self._job(licenses=["MIT"])
        self.assertEqual(job.licenses, ("MIT",))
        with self.assertRaises(AttributeError):
            job.name = "bar"  # type: ignore[misc]

    def test_arch_names(self):
        self.assertEqual(to_apk_arch("amd64"), "x86_64")
        self.assertEqual(to_apk_arch("linux/arm64"), "aarch64")
        self.assertEqual(to_apk_arch("arm/v7"), "armv7")
        self.assertEqual(to_apk_arch("386"), "x86")
        with self.assertRaises(JobConfigError):
            to_apk_arch("mips")

    def test_invalid_jobs(self):
        with self.assertRaises(JobConfigError):
            self._job(name="")
        with self.assertRaises(JobConfigError):
            self._job(name="a/b")
        with self.assertRaises(JobConfigError):
            self._job(revision=-1)

    def test_config_missing_key_is_named(self):
        with self.assertRaises(JobConfigError) as cm:
            jobs_from_config({"package": {"name": "x"}}, workspace_dir=".", out_dir=".")
        self.assertIn("package.version", str(cm.exception))

    def test_duplicate_subpackage_names(self):
        cfg = {"package": {"name": "x", "version": "1"}, "subpackages": [{"name": "x"}]}
        with self.assertRaises(JobConfigError):
            jobs_from_config(cfg, workspace_dir=".", out_dir=".", source_date_epoch=0)

    def test_null_description_counts_as_missing(self):
        cfg = {
            "package": {"name": "p", "version": "1", "description": None},
            "subpackages": [{"name": "q", "description": None}],
        }
        jobs = jobs_from_config(cfg, workspace_dir=".", out_dir=".", source_date_epoch=0)
        self.assertEqual([j.description for j in jobs], ["", ""])
        cfg["package"]["description"] = "origin"
        jobs = jobs_from_config(cfg, workspace_dir=".", out_dir=".", source_date_epoch=0)
        self.assertEqual([j.description for j in jobs], ["origin", "origin"])
        cfg["subpackages"][0]["description"] = 5
        with self.assertRaises(JobConfigError) as cm:
            jobs_from_config(cfg, workspace_dir=".", out_dir=".", source_date_epoch=0)
        self.assertIn("subpackages[0].description", str(cm.exception))

    def test_source_date_epoch_from_environment(self):
        cfg = {"package": {"name": "x", "version": "1"}}
        old = os.environ.get("SOURCE_DATE_EPOCH")
        os.environ["SOURCE_DATE_EPOCH"] = "1234"
        try:
            (job,) = jobs_from_config(cfg, workspace_dir=".", out_dir=".")
            self.assertEqual(job.source_date_epoch, 1234)
            os.environ["SOURCE_DATE_EPOCH"] = "soon"
            with self.assertRaises(JobConfigError):
                jobs_from_config(cfg, workspace_dir=".", out_dir=".")
        finally:
            if old is None:
                os.environ.pop("SOURCE_DATE_EPOCH", None)
            else:
                os.environ["SOURCE_DATE_EPOCH"] = old

    def test_load_jobs_reports_bad_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            p = Path(tmp) / "job.json"
            p.write_text("{not json", encoding="utf-8")
            with self.assertRaises(JobConfigError):
                load_jobs(str(p), workspace_dir=".", out_dir=".")
            p.write_text(json.dumps({"package": {"name": "x", "version": "1", "epoch": 2}}), encoding="utf-8")
            (job,) = load_jobs(str(p), workspace_dir=".", out_dir=".", source_date_epoch=0)
            self.assertEqual(job.revision, 2)


class SignTests(unittest.TestCase):
    def test_prehashed_digest_length(self):
        with self.assertRaises(SigningError):
            PrehashedSHA1(b"\x00" * 32)
        self.assertEqual(PrehashedSHA1(b"\x01" * 20).hexdigest(), "01" * 20)

    def test_non_key_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            p = Path(tmp) / "junk.rsa"
            p.write_text("not a key", encoding="utf-8")
            with self.assertRaises(SigningError):
                rsa_sign_sha1_digest(b"\x00" * 20, str(p))


if __name__ == "__main__":
    unittest.main()
