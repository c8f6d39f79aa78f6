from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import List, Optional

from cask.constants import DEFAULT_JOBS, ENV_ASSET_KEY, KDF_ARGON2ID, KDF_SCRYPT, PRELUDE_SIZE
from cask.container import load_container, meta_path_for, save_container
from cask.encryption import decrypt, encrypt
from cask.errors import AuthenticationError, CaskError, PathIsDirectoryError, PathNotFoundError
from cask.header import has_prelude
from cask.kdf import resolve_build_passphrase
from cask.reader import ArchiveReader
from cask.writer import ArchiveBuilder


def _is_sealed(archive: str, password: Optional[str]) -> bool:
    if os.path.exists(meta_path_for(archive)):
        return True
    # A readable archive prelude means plain, whatever the name or flags say.
    # Chunked containers have no file at this path at all.
    if os.path.isfile(archive):
        with open(archive, "rb") as fh:
            if has_prelude(fh.read(PRELUDE_SIZE)):
                return False
    return bool(password) or archive.endswith(".enc")


def _open_reader(archive: str, password: Optional[str]) -> ArchiveReader:
    """Open a plain archive from disk, or decrypt a sealed one in memory."""
    if not _is_sealed(archive, password):
        return ArchiveReader.from_file(archive)
    pw = password or os.environ.get(ENV_ASSET_KEY)
    if not pw:
        raise ValueError(f"Container is encrypted; password required (--password or {ENV_ASSET_KEY})")
    container = load_container(archive)
    return ArchiveReader.open(decrypt(container, pw))


def _fmt_mib(n: int) -> str:
    return f"{n / (1024.0 * 1024.0):.2f} MiB"


def _build(source: str, jobs: int) -> tuple[bytes, int]:
    builder = ArchiveBuilder(jobs=jobs)
    builder.add_directory(source)
    return builder.to_bytes(), builder.file_count


def cmd_pack(output: str, source: str, *, jobs: int = DEFAULT_JOBS, quiet: bool = False) -> bool:
    """Pack a directory into a plain (unencrypted) archive.

    Args:
        output: Destination archive path.
        source: Directory whose contents become the archive root.
        jobs: Worker threads used to read source files.
    """
    t0 = time.time()
    builder = ArchiveBuilder(jobs=jobs)
    builder.add_directory(source)
    size = builder.write(output)
    if not quiet:
        dt = max(0.000001, time.time() - t0)
        print(f"Done: {builder.file_count} files; {_fmt_mib(size)} in {dt:.1f}s -> {output}")
    return True


def cmd_seal(
    output: str,
    source: str,
    *,
    password: Optional[str] = None,
    chunk_size_mb: Optional[int] = None,
    kdf: str = KDF_SCRYPT,
    jobs: int = DEFAULT_JOBS,
    quiet: bool = False,
) -> bool:
    """Pack a directory and seal it with AES-256-GCM.

    Args:
        output: Encrypted container path (e.g. ``dist/assets.cask.enc``).
        source: Directory to pack.
        password: Passphrase; falls back to $CASK_ASSET_KEY, then the git
            commit of ``source``, then a timestamp build id.
        chunk_size_mb: When set, split the ciphertext into files of at most
            this many MiB.
        kdf: ``scrypt`` (default) or ``argon2id``.
    """
    passphrase, origin = resolve_build_passphrase(password, cwd=source if os.path.isdir(source) else None)
    if not quiet:
        if origin in ("git", "timestamp"):
            print(f" Passphrase from {origin}: {passphrase}")
        else:
            print(f" Passphrase from {origin}")

    plain, n_files = _build(source, jobs)
    if not quiet:
        print(f" Packed {n_files} files ({_fmt_mib(len(plain))}); deriving key ({kdf})...", flush=True)
    container = encrypt(plain, passphrase, key_derivation=kdf)
    chunk_size = chunk_size_mb * 1024 * 1024 if chunk_size_mb else None
    meta = save_container(container, output, chunk_size=chunk_size)

    # Read back what was written before declaring success
    reopened = ArchiveReader.open(decrypt(load_container(output), passphrase))
    if len(reopened.list()) != n_files:
        raise CaskError("Sealed container does not round-trip")

    if not quiet:
        if meta.get("chunked"):
            for ch in meta["chunks"]:
                print(f"  {ch['filename']} ({_fmt_mib(ch['size'])})")
        else:
            print(f"  {output} ({_fmt_mib(len(container.to_blob()))})")
        print(f"  {meta_path_for(output)}")
    print(f"Done: sealed {n_files} files with {container.algorithm}/{container.key_derivation}")
    return True


def cmd_list(archive: str, *, password: Optional[str] = None) -> bool:
    """List file entries with their sizes."""
    r = _open_reader(archive, password)
    for e in r.walk():
        print(f"{e.size}\t{e.path}")
    return True


def cmd_info(archive: str, *, password: Optional[str] = None) -> bool:
    """Show header fields and totals."""
    r = _open_reader(archive, password)
    h = r.header
    print(f"Archive: {archive}")
    if _is_sealed(archive, password):
        meta_path = meta_path_for(archive)
        print(f"  Sealed: yes (sidecar {meta_path if os.path.exists(meta_path) else 'absent'})")
    print(f"  Header bytes: {h.header_byte_length}")
    print(f"  Header payload: {h.header_payload_size}")
    print(f"  JSON length: {h.json_length} (+{h.padding} padding)")
    print(f"  Data offset: {r.data_offset}")
    print(f"  Files: {len(r.list())}")
    print(f"  Directories: {len(r.dirs())}")
    print(f"  Data size: {r.total_size()}")
    return True


def cmd_cat(archive: str, path: str, *, password: Optional[str] = None) -> bool:
    """Write one entry's bytes to stdout."""
    data = _open_reader(archive, password).read(path)
    sys.stdout.buffer.write(data)
    sys.stdout.flush()
    return True


def cmd_extract(archive: str, *, outdir: str = ".", paths: Optional[list[str]] = None, quiet: bool = False) -> bool:
    """Extract files from a plain archive.

    Sealed containers are refused; their plaintext is meant to stay in memory.
    """
    if _is_sealed(archive, None):
        raise ValueError("Refusing to extract a sealed container to disk")
    r = ArchiveReader.from_file(archive)
    for p in paths or []:
        if not (r.exists(p) or r.is_dir(p)):
            raise PathNotFoundError(f"Path not found: {p}")
    written = r.extract(outdir, paths)
    if not quiet:
        for p in written:
            print(f" extracted: {p}")
    print(f"Done: {len(written)} files -> {outdir}")
    return True


def cmd_verify(archive: str, *, password: Optional[str] = None) -> bool:
    """Authenticate (when sealed), parse, and read every entry."""
    r = _open_reader(archive, password)
    n = r.verify()
    print(f"OK: {n} files, {r.total_size()} bytes")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="cask",
        description="Asset container tool",
        epilog=(
            "Sealed containers are AES-256-GCM encrypted; the passphrase may also be "
            f"supplied through ${ENV_ASSET_KEY}."
        ),
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_pack = sub.add_parser("pack", help="Pack a directory into a plain archive")
    ap_pack.add_argument("output", help="Output archive path")
    ap_pack.add_argument("source", help="Source directory")
    ap_pack.add_argument("--jobs", "-j", type=int, default=DEFAULT_JOBS, help=f"Parallel readers (default {DEFAULT_JOBS})")
    ap_pack.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_seal = sub.add_parser("seal", help="Pack and encrypt a directory")
    ap_seal.add_argument("output", help="Encrypted container path (sidecar <output>.meta.json is written next to it)")
    ap_seal.add_argument("source", help="Source directory")
    ap_seal.add_argument("--password", help="Encryption passphrase")
    ap_seal.add_argument("--chunk-size-mb", type=int, help="Split ciphertext into chunks of this many MiB")
    ap_seal.add_argument("--kdf", choices=[KDF_SCRYPT, KDF_ARGON2ID], default=KDF_SCRYPT, help="Key derivation (default scrypt)")
    ap_seal.add_argument("--jobs", "-j", type=int, default=DEFAULT_JOBS, help=f"Parallel readers (default {DEFAULT_JOBS})")
    ap_seal.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive or container path")
    ap_list.add_argument("--password", help="Container passphrase")

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive or container path")
    ap_info.add_argument("--password", help="Container passphrase")

    ap_cat = sub.add_parser("cat", help="Write one entry to stdout")
    ap_cat.add_argument("archive", help="Archive or container path")
    ap_cat.add_argument("path", help="Entry path ('/' or '\\' separators)")
    ap_cat.add_argument("--password", help="Container passphrase")

    ap_extract = sub.add_parser("extract", help="Extract files from a plain archive")
    ap_extract.add_argument("archive", help="Archive path")
    ap_extract.add_argument("--outdir", default=".", help="Output directory")
    ap_extract.add_argument("paths", nargs="*", help="Specific archive paths to extract (files or directories)")
    ap_extract.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_verify = sub.add_parser("verify", help="Authenticate and read every entry")
    ap_verify.add_argument("archive", help="Archive or container path")
    ap_verify.add_argument("--password", help="Container passphrase")

    args = ap.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd == "pack":
            cmd_pack(args.output, args.source, jobs=args.jobs, quiet=args.quiet)
        elif args.cmd == "seal":
            cmd_seal(
                args.output,
                args.source,
                password=args.password,
                chunk_size_mb=args.chunk_size_mb,
                kdf=args.kdf,
                jobs=args.jobs,
                quiet=args.quiet,
            )
        elif args.cmd == "list":
            cmd_list(args.archive, password=args.password)
        elif args.cmd == "info":
            cmd_info(args.archive, password=args.password)
        elif args.cmd == "cat":
            cmd_cat(args.archive, args.path, password=args.password)
        elif args.cmd == "extract":
            cmd_extract(args.archive, outdir=args.outdir, paths=args.paths, quiet=args.quiet)
        elif args.cmd == "verify":
            cmd_verify(args.archive, password=args.password)
        else:
            raise RuntimeError("Unknown command")
    except AuthenticationError:
        print("Error: Authentication failed. Wrong passphrase or corrupted container.", file=sys.stderr)
        sys.exit(2)
    except (PathNotFoundError, PathIsDirectoryError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except ValueError as e:
        msg = str(e)
        if "password required" in msg.lower():
            print(f"Error: Container is encrypted. Provide --password or set {ENV_ASSET_KEY}.", file=sys.stderr)
        else:
            print(f"Error: {msg}", file=sys.stderr)
        sys.exit(2)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (CaskError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
