from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from typing import Dict

from cask.constants import ENV_ASSET_KEY
from cask.encryption import _HAS_CRYPTO
from cask.reader import ArchiveReader


def _build_fixture_tree(root: Path) -> Dict[str, bytes]:
    files: Dict[str, bytes] = {}
    (root / "skeletons").mkdir()
    (root / "skeletons" / "hero").mkdir()
    content = b'{"bones": ["root", "spine"]}\n' * 20
    (root / "skeletons" / "hero" / "hero_ske.json").write_bytes(content)
    files["skeletons/hero/hero_ske.json"] = content

    tex = os.urandom(2048)
    (root / "skeletons" / "hero" / "hero_tex.png").write_bytes(tex)
    files["skeletons/hero/hero_tex.png"] = tex

    (root / "notes.txt").write_text("")
    files["notes.txt"] = b""
    (root / "sfx").mkdir()
    return files


class CLIIntegrationTests(unittest.TestCase):
    def run_cli(self, args, *, expect: int | None = 0, cwd: Path | None = None, extra_env=None):
        cmd = [sys.executable, "-m", "cask.cli"] + list(args)
        env = os.environ.copy()
        env.pop(ENV_ASSET_KEY, None)
        env.update(extra_env or {})
        repo_root = Path(__file__).resolve().parent
        existing = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = str(repo_root) if not existing else f"{repo_root}{os.pathsep}{existing}"
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
        if expect is not None and proc.returncode != expect:
            raise AssertionError(
                f"CLI exited {proc.returncode}, expected {expect}\nCommand: {' '.join(cmd)}\n"
                f"STDOUT:\n{proc.stdout.decode(errors='replace')}\nSTDERR:\n{proc.stderr.decode(errors='replace')}"
            )
        return proc

    def test_plain_pack_list_cat_extract(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            files = _build_fixture_tree(src)
            archive = root / "assets.cask"

            pack = self.run_cli(["pack", str(archive), str(src)])
            self.assertIn(b"Done: 3 files", pack.stdout)
            reader = ArchiveReader.from_file(str(archive))
            self.assertEqual(sorted(reader.list()), sorted(files))
            self.assertTrue(reader.is_dir("sfx"))

            listing = self.run_cli(["list", str(archive)]).stdout.decode("utf-8").splitlines()
            self.assertIn(f"{len(files['notes.txt'])}\tnotes.txt", listing)
            self.assertEqual(len(listing), len(files))

            cat = self.run_cli(["cat", str(archive), "skeletons\\hero\\hero_tex.png"])
            self.assertEqual(cat.stdout, files["skeletons/hero/hero_tex.png"])

            info = self.run_cli(["info", str(archive)]).stdout.decode("utf-8")
            self.assertIn("Files: 3", info)
            self.assertIn(f"Data offset: {reader.data_offset}", info)

            verify = self.run_cli(["verify", str(archive)])
            self.assertIn(b"OK: 3 files", verify.stdout)

            out = root / "out"
            self.run_cli(["extract", str(archive), "--outdir", str(out), "skeletons"])
            for path, data in files.items():
                target = out / path
                if path.startswith("skeletons/"):
                    self.assertEqual(target.read_bytes(), data)
                else:
                    self.assertFalse(target.exists())

    def test_lookup_errors(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            _build_fixture_tree(src)
            archive = root / "assets.cask"
            self.run_cli(["pack", str(archive), str(src)])

            missing = self.run_cli(["cat", str(archive), "nope.json"], expect=2)
            self.assertIn(b"Error: ", missing.stderr)
            directory = self.run_cli(["cat", str(archive), "skeletons"], expect=2)
            self.assertIn(b"directory", directory.stderr)
            self.run_cli(["pack", str(root / "x.cask"), str(root / "does-not-exist")], expect=2)

    def test_corrupt_archive_fails_verify(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            _build_fixture_tree(src)
            archive = root / "assets.cask"
            self.run_cli(["pack", str(archive), str(src)])
            data = archive.read_bytes()
            archive.write_bytes(data[:-100])
            proc = self.run_cli(["verify", str(archive)], expect=2)
            self.assertIn(b"Error", proc.stderr)

    def test_sealed_roundtrip(self):
        if not _HAS_CRYPTO:
            self.skipTest("PyCryptodomex and argon2-cffi not available")

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            files = _build_fixture_tree(src)
            enc = root / "dist" / "assets.cask.enc"
            password = "p@ssw0rd"

            seal = self.run_cli(["seal", str(enc), str(src), "--password", password])
            self.assertIn(b"Done: sealed 3 files with aes-256-gcm/scrypt", seal.stdout)
            meta_path = root / "dist" / "assets.cask.enc.meta.json"
            meta = json.loads(meta_path.read_text())
            self.assertEqual(meta["algorithm"], "aes-256-gcm")
            self.assertNotIn(password, meta_path.read_text())

            verify = self.run_cli(["verify", str(enc), "--password", password])
            self.assertIn(b"OK: 3 files", verify.stdout)
            cat = self.run_cli(["cat", str(enc), "skeletons/hero/hero_ske.json"], extra_env={ENV_ASSET_KEY: password})
            self.assertEqual(cat.stdout, files["skeletons/hero/hero_ske.json"])

            wrong = self.run_cli(["verify", str(enc), "--password", "nope"], expect=2)
            self.assertIn(b"Authentication failed", wrong.stderr)
            no_pw = self.run_cli(["list", str(enc)], expect=2)
            self.assertIn(b"password", no_pw.stderr.lower())
            refused = self.run_cli(["extract", str(enc), "--outdir", str(root / "out")], expect=2)
            self.assertIn(b"sealed", refused.stderr)
            self.assertFalse((root / "out").exists())

    def test_sealed_chunked_with_env_passphrase(self):
        if not _HAS_CRYPTO:
            self.skipTest("PyCryptodomex and argon2-cffi not available")

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            (src / "big.bin").write_bytes(os.urandom(3 * 1024 * 1024))
            enc = root / "assets.cask.enc"
            env = {ENV_ASSET_KEY: "env-secret"}

            seal = self.run_cli(["seal", str(enc), str(src), "--chunk-size-mb", "1"], extra_env=env)
            self.assertIn(b"Passphrase from env", seal.stdout)
            chunks = sorted(p.name for p in root.iterdir() if ".chunk" in p.name)
            self.assertEqual(chunks, [f"assets.cask.enc.chunk{i}" for i in range(4)])
            verify = self.run_cli(["verify", str(enc)], extra_env=env)
            self.assertIn(b"OK: 1 files", verify.stdout)

    def test_plain_and_sealed_side_by_side(self):
        if not _HAS_CRYPTO:
            self.skipTest("PyCryptodomex and argon2-cffi not available")

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            files = _build_fixture_tree(src)
            plain = root / "assets.cask"
            sealed = root / "assets.cask.enc"

            self.run_cli(["pack", str(plain), str(src)])
            self.run_cli(["seal", str(sealed), str(src), "--password", "pw"])

            listing = self.run_cli(["list", str(plain)]).stdout.decode("utf-8").splitlines()
            self.assertEqual(len(listing), len(files))
            cat = self.run_cli(["cat", str(plain), "skeletons/hero/hero_ske.json"])
            self.assertEqual(cat.stdout, files["skeletons/hero/hero_ske.json"])
            out = root / "out"
            self.run_cli(["extract", str(plain), "--outdir", str(out)])
            self.assertEqual((out / "notes.txt").read_bytes(), b"")

            verify = self.run_cli(["verify", str(sealed), "--password", "pw"])
            self.assertIn(b"OK: 3 files", verify.stdout)

    def test_plain_archive_named_like_a_container(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            src = root / "assets"
            src.mkdir()
            _build_fixture_tree(src)
            archive = root / "assets.enc"
            self.run_cli(["pack", str(archive), str(src)])
            verify = self.run_cli(["verify", str(archive)])
            self.assertIn(b"OK: 3 files", verify.stdout)


if __name__ == "__main__":
    unittest.main()
