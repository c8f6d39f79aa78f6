from __future__ import annotations

import os
import struct
import tempfile
import unittest
from pathlib import Path

from cask.container import save_container
from cask.encryption import _HAS_CRYPTO, CipherContext
from cask.errors import AuthenticationError, FormatError, PathIsDirectoryError, PathNotFoundError
from cask.runtime import DirectorySource, ParseRegistry, RuntimeLoader, content_type
from cask.writer import build_mapping


PASSPHRASE = "build-1700000000000"

ASSETS = {
    "skeletons/hero_ske.json": b'{"armature": []}',
    "skeletons/hero_tex.png": b"\x89PNG\r\n\x1a\n" + bytes(range(64)),
    "audio/theme.mp3": b"ID3" + bytes(32),
}


def _seal(tmp_path: Path, plaintext: bytes, *, chunk_size=None) -> str:
    enc = tmp_path / "assets.cask.enc"
    save_container(CipherContext.create(PASSPHRASE).encrypt(plaintext), str(enc), chunk_size=chunk_size)
    return str(enc)


@unittest.skipUnless(_HAS_CRYPTO, "PyCryptodomex and argon2-cffi required")
class RuntimeLoaderTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_init_and_read(self):
        def scenario(tmp_path: Path):
            enc = _seal(tmp_path, build_mapping(ASSETS))
            before = sorted(os.listdir(tmp_path))
            loader = RuntimeLoader()
            loader.init(enc, PASSPHRASE)
            self.assertTrue(loader.ready)
            self.assertFalse(loader.degraded)
            self.assertFalse(loader.dev_mode)
            for path, data in ASSETS.items():
                self.assertEqual(loader.read(path), data)
            self.assertEqual(loader.read("skeletons\\hero_ske.json"), ASSETS["skeletons/hero_ske.json"])
            self.assertEqual(sorted(loader.list()), sorted(ASSETS))
            self.assertTrue(loader.exists("audio/theme.mp3"))
            with self.assertRaises(PathIsDirectoryError):
                loader.read("skeletons")
            # decrypted bytes never reach the filesystem
            self.assertEqual(sorted(os.listdir(tmp_path)), before)

        self.run_with_tmpdir(scenario)

    def test_chunked_container(self):
        def scenario(tmp_path: Path):
            enc = _seal(tmp_path, build_mapping(ASSETS), chunk_size=64)
            loader = RuntimeLoader()
            loader.init(enc, PASSPHRASE)
            self.assertEqual(loader.read("audio/theme.mp3"), ASSETS["audio/theme.mp3"])

        self.run_with_tmpdir(scenario)

    def test_raise_policy(self):
        def scenario(tmp_path: Path):
            enc = _seal(tmp_path, build_mapping(ASSETS))
            loader = RuntimeLoader(on_error="raise")
            with self.assertRaises(AuthenticationError):
                loader.init(enc, "wrong")
            self.assertFalse(loader.ready)
            with self.assertRaises(RuntimeError):
                loader.read("audio/theme.mp3")

            garbage = tmp_path / "garbage"
            garbage.mkdir()
            with self.assertRaises(FormatError):
                loader.init(_seal(garbage, b"not an archive at all"), PASSPHRASE)
            with self.assertRaises(OSError):
                loader.init(str(tmp_path / "missing.cask.enc"), PASSPHRASE)

        self.run_with_tmpdir(scenario)

    def test_placeholder_policy(self):
        def scenario(tmp_path: Path):
            enc = _seal(tmp_path, build_mapping(ASSETS))
            loader = RuntimeLoader(on_error="placeholder", placeholder=b"{}")
            with self.assertLogs("cask.runtime", level="WARNING"):
                loader.init(enc, "wrong")
            self.assertTrue(loader.ready)
            self.assertTrue(loader.degraded)
            self.assertIsInstance(loader.load_error, AuthenticationError)
            self.assertEqual(loader.read("skeletons/hero_ske.json"), b"{}")
            self.assertEqual(loader.read("anything/at/all"), b"{}")
            self.assertEqual(loader.list(), [])

            # a later successful init clears the degraded state
            loader.init(enc, PASSPHRASE)
            self.assertFalse(loader.degraded)
            self.assertEqual(loader.read("audio/theme.mp3"), ASSETS["audio/theme.mp3"])

        self.run_with_tmpdir(scenario)

    def test_placeholder_covers_hostile_header(self):
        def scenario(tmp_path: Path):
            raw = b'{"files":' + b"[" * 100000 + b"]" * 100000 + b"}"
            aligned = (len(raw) + 3) // 4 * 4
            blob = struct.pack("<IIII", 4, aligned + 8, aligned + 4, len(raw)) + raw + b"\x00" * (aligned - len(raw))
            loader = RuntimeLoader(on_error="placeholder", placeholder=b"?")
            with self.assertLogs("cask.runtime", level="WARNING"):
                loader.init(_seal(tmp_path, blob), PASSPHRASE)
            self.assertIsInstance(loader.load_error, FormatError)
            self.assertEqual(loader.read("hero.json"), b"?")

        self.run_with_tmpdir(scenario)

    def test_read_or(self):
        def scenario(tmp_path: Path):
            loader = RuntimeLoader()
            loader.init(_seal(tmp_path, build_mapping(ASSETS)), PASSPHRASE)
            self.assertEqual(loader.read_or("missing.json", b"default"), b"default")
            self.assertEqual(loader.read_or("audio/theme.mp3", b"default"), ASSETS["audio/theme.mp3"])
            with self.assertRaises(PathIsDirectoryError):
                loader.read_or("audio", b"default")

        self.run_with_tmpdir(scenario)

    def test_init_background(self):
        def scenario(tmp_path: Path):
            loader = RuntimeLoader()
            future = loader.init_background(_seal(tmp_path, build_mapping(ASSETS)), PASSPHRASE)
            reader = future.result(timeout=60)
            self.assertEqual(reader.read("audio/theme.mp3"), ASSETS["audio/theme.mp3"])
            self.assertTrue(loader.ready)

            failing = RuntimeLoader().init_background(str(tmp_path / "missing.enc"), PASSPHRASE)
            with self.assertRaises(OSError):
                failing.result(timeout=60)

        self.run_with_tmpdir(scenario)


class RuntimeWithoutCryptoTests(unittest.TestCase):
    def test_invalid_policy(self):
        with self.assertRaises(ValueError):
            RuntimeLoader(on_error="ignore")

    def test_read_before_init(self):
        with self.assertRaises(RuntimeError):
            RuntimeLoader().read("a.txt")

    def test_registries_are_per_loader(self):
        first = RuntimeLoader()
        second = RuntimeLoader()
        self.assertTrue(first.registry.register("hero"))
        self.assertFalse(first.registry.register("hero"))
        self.assertIn("hero", first.registry)
        self.assertNotIn("hero", second.registry)
        self.assertTrue(second.registry.register("hero"))
        first.registry.clear()
        self.assertEqual(len(first.registry), 0)
        self.assertEqual(len(second.registry), 1)

    def test_registry_iteration(self):
        reg = ParseRegistry()
        for name in ("villain", "hero", "npc"):
            reg.register(name)
        self.assertEqual(list(reg), ["hero", "npc", "villain"])

    def test_directory_mode(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "skeletons").mkdir()
            (root / "skeletons" / "hero_ske.json").write_bytes(b"{}")
            (root / "readme.txt").write_bytes(b"hi")
            loader = RuntimeLoader()
            source = loader.init_directory(tmp)
            self.assertIsInstance(source, DirectorySource)
            self.assertTrue(loader.dev_mode)
            self.assertEqual(loader.read("skeletons\\hero_ske.json"), b"{}")
            self.assertEqual(loader.list(), ["readme.txt", "skeletons/hero_ske.json"])
            self.assertTrue(loader.exists("readme.txt"))
            self.assertFalse(loader.exists("skeletons"))
            with self.assertRaises(PathIsDirectoryError):
                loader.read("skeletons")
            with self.assertRaises(PathNotFoundError):
                loader.read("missing.png")
            with self.assertRaises(PathNotFoundError):
                loader.read("../outside.txt")

    def test_directory_mode_missing_root(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(FileNotFoundError):
                RuntimeLoader().init_directory(os.path.join(tmp, "nope"))

    def test_content_type(self):
        self.assertEqual(content_type("skeletons/hero_ske.json"), "application/json")
        self.assertEqual(content_type("a\\b\\tex.PNG"), "image/png")
        self.assertEqual(content_type("audio/theme.mp3"), "audio/mpeg")
        self.assertEqual(content_type("data.unknownext"), "application/octet-stream")
        self.assertEqual(content_type("no_extension"), "application/octet-stream")


if __name__ == "__main__":
    unittest.main()
