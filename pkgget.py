#!/usr/bin/env python3
import argparse
import asyncio
import aiohttp
import os
import sys
import time
import json
import hashlib
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlparse, unquote
import re

log = logging.getLogger("pkgget")

USER_AGENT = "Mozilla/5.0"
CHUNK_SIZE = 5 * 1024 * 1024
MIB = 1024 * 1024
UNIT_BYTES = {"": 1, "k": 1024, "m": MIB, "g": 1024 * MIB}

# known wrong package links and the manifest they belong to
PKG_SUFFIXES = ("_sc.pkg", "-DP.pkg", "_0.pkg")
MANIFEST_EXT = ".json"

# ------------- errors

class PkgGetError(Exception):
    pass

class RequestBuildError(PkgGetError):
    pass

class TransportError(PkgGetError):
    pass

class DecodeError(PkgGetError):
    pass

class ConsistencyWarning:
    """Advisory mismatch between the manifest and what actually landed on disk. Reported, never raised."""

    OFFSET = "piece offset"
    SIZE = "piece size"
    HASH = "piece hash"
    FILE_SIZE = "file size"

    def __init__(self, kind: str, expected, got):
        self.kind = kind
        self.expected = expected
        self.got = got

    def __str__(self):
        return f"inconsistent {self.kind} - expected {self.expected}, got {self.got}"

    def __repr__(self):
        return f"ConsistencyWarning({self.kind!r}, {self.expected!r}, {self.got!r})"

# ------------- helpers

def human_to_bytes(s: str) -> int:
    """Parse a buffer size like 512k, 5MiB or 1048576 into bytes."""
    m = re.fullmatch(r"(?i)\s*(\d+(?:\.\d+)?)\s*(?:([kmg])i?b?|b?)\s*", s)
    if not m:
        raise ValueError(f"Invalid size: {s.strip()}")
    unit = (m.group(2) or "").lower()
    return int(float(m.group(1)) * UNIT_BYTES[unit])

def normalize_url(url: str) -> str:
    # if a package link was given instead of its manifest, point at the manifest
    for suffix in PKG_SUFFIXES:
        if url.endswith(suffix):
            return url[:-len(suffix)] + MANIFEST_EXT
    return url

def default_name_from_url(url: str) -> str:
    path = urlparse(url).path
    name = unquote(os.path.basename(path)) or "download.json"
    return os.path.splitext(name)[0] + ".pkg"

def now() -> float:
    return time.time()

# ------------- manifest

@dataclass
class Piece:
    url: str
    file_offset: int
    file_size: int
    hash_value: str

    @property
    def end(self) -> int:
        return self.file_offset + self.file_size

@dataclass
class Manifest:
    pieces: List[Piece]
    original_file_size: int

def _field(doc: dict, key: str, kind: type, where: str):
    if key not in doc:
        raise DecodeError(f"{where} missing field '{key}'")
    v = doc[key]
    # json gives bool for true/false, which is an int subclass
    if not isinstance(v, kind) or isinstance(v, bool):
        raise DecodeError(f"{where} field '{key}' is {type(v).__name__}, expected {kind.__name__}")
    return v

def parse_manifest(doc) -> Manifest:
    if not isinstance(doc, dict):
        raise DecodeError("manifest is not a JSON object")
    raw_pieces = _field(doc, "pieces", list, "manifest")
    total = _field(doc, "originalFileSize", int, "manifest")

    pieces = []
    for i, p in enumerate(raw_pieces):
        where = f"piece {i}"
        if not isinstance(p, dict):
            raise DecodeError(f"{where} is not a JSON object")
        pieces.append(Piece(
            url=_field(p, "url", str, where),
            file_offset=_field(p, "fileOffset", int, where),
            file_size=_field(p, "fileSize", int, where),
            hash_value=_field(p, "hashValue", str, where),
        ))
    return Manifest(pieces=pieces, original_file_size=total)

async def fetch_manifest(http: aiohttp.ClientSession, url: str) -> Manifest:
    try:
        async with http.get(url) as r:
            log.debug("GET %s -> %s", url, r.status)
            body = await r.read()
    except ValueError as e:
        # aiohttp.InvalidURL is a ValueError as well
        raise RequestBuildError(f"Error fetching manifest: invalid URL {url!r}: {e}") from e
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        raise TransportError(f"Error fetching manifest: {e!r}") from e

    try:
        doc = json.loads(body)
    except ValueError as e:
        raise DecodeError(f"Error fetching manifest: {e}") from e
    return parse_manifest(doc)

# ------------- progress

@dataclass
class TransferSession:
    filename: str
    target_size: int = 0
    total_bytes: int = 0
    start_time: float = field(default_factory=now)

    def elapsed(self) -> float:
        return max(1e-6, now() - self.start_time)

    def percent(self) -> int:
        if self.target_size <= 0:
            return 100
        return 100 * self.total_bytes // self.target_size

    def speed(self) -> float:
        return self.total_bytes / MIB / self.elapsed()

class Progress:
    def __init__(self, stream=None):
        self._stream = stream
        self._inline = False

    @property
    def stream(self):
        return self._stream or sys.stdout

    def update(self, session: TransferSession):
        line = f"Downloading {session.filename}: {session.percent():6d}% ({session.speed():6.2f}MiB/s)"
        print(line, end="\r", file=self.stream, flush=True)
        self._inline = True

    def _end_line(self):
        if self._inline:
            print(file=self.stream)
            self._inline = False

    def warn(self, warning: ConsistencyWarning):
        self._end_line()
        print(f"WARNING: {warning}", file=self.stream)

    def summary(self, name: str, size: int, elapsed: float):
        self._end_line()
        mib = size / MIB
        print(f"Completed {name}: {mib:.2f}MiB ({mib / max(1e-6, elapsed):.2f}MiB/s)", file=self.stream)

# ------------- pieces

async def fetch_piece(http: aiohttp.ClientSession, url: str, out, session: TransferSession,
                      progress: Progress, chunk_size: int = CHUNK_SIZE) -> Tuple[str, str]:
    sha1 = hashlib.sha1()
    sha256 = hashlib.sha256()
    try:
        async with http.get(url) as r:
            log.debug("GET %s -> %s", url, r.status)
            async for chunk in r.content.iter_chunked(chunk_size):
                out.write(chunk)
                sha1.update(chunk)
                sha256.update(chunk)
                session.total_bytes += len(chunk)
                progress.update(session)
    except ValueError as e:
        raise RequestBuildError(f"Error fetching piece: invalid URL {url!r}: {e}") from e
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        raise TransportError(f"Error fetching piece: {e!r}") from e
    return sha1.hexdigest(), sha256.hexdigest()

def file_length(f) -> int:
    try:
        return f.seek(0, os.SEEK_END)
    except OSError as e:
        raise TransportError(f"Error seeking file: {e}") from e

# ------------- assembly

@dataclass
class AssemblyResult:
    path: str
    size: int
    elapsed: float
    warnings: List[ConsistencyWarning] = field(default_factory=list)

    @property
    def speed(self) -> float:
        return self.size / MIB / max(1e-6, self.elapsed)

async def assemble(url: str, out_path: str, chunk_size: int = CHUNK_SIZE,
                   timeout: Optional[float] = None, user_agent: str = USER_AGENT,
                   progress: Optional[Progress] = None) -> AssemblyResult:
    """
    Fetch the manifest at url and rebuild the file it describes at out_path.

    Pieces are appended strictly in offset order, so the current file length is
    always where the next piece starts. Offset, size and hash mismatches are
    reported as ConsistencyWarning and the run carries on; fetch, create and
    seek failures raise.
    """
    progress = progress or Progress()
    name = os.path.basename(out_path)
    session = TransferSession(filename=name)
    warnings: List[ConsistencyWarning] = []

    def warn(kind, expected, got):
        w = ConsistencyWarning(kind, expected, got)
        warnings.append(w)
        progress.warn(w)

    try:
        f = open(out_path, "wb")
    except OSError as e:
        raise TransportError(f"Error creating file: {e}") from e

    timeout_obj = aiohttp.ClientTimeout(total=None, sock_read=timeout)
    headers = {"User-Agent": user_agent}
    with f:
        async with aiohttp.ClientSession(timeout=timeout_obj, headers=headers) as http:
            manifest = await fetch_manifest(http, url)
            session.target_size = manifest.original_file_size
            pieces = sorted(manifest.pieces, key=lambda p: p.file_offset)
            log.debug("manifest: %d pieces, %d bytes", len(pieces), manifest.original_file_size)

            for piece in pieces:
                offset = file_length(f)
                if offset != piece.file_offset:
                    warn(ConsistencyWarning.OFFSET, piece.file_offset, offset)

                digests = await fetch_piece(http, piece.url, f, session, progress, chunk_size)
                log.debug("piece @%d sha1=%s sha256=%s", piece.file_offset, *digests)

                offset = file_length(f)
                if offset != piece.end:
                    warn(ConsistencyWarning.SIZE, piece.end, offset)

                if piece.hash_value.lower() not in digests:
                    warn(ConsistencyWarning.HASH, piece.hash_value, digests[0])

        size = file_length(f)

    if size != manifest.original_file_size:
        warn(ConsistencyWarning.FILE_SIZE, manifest.original_file_size, size)

    result = AssemblyResult(path=out_path, size=size, elapsed=session.elapsed(), warnings=warnings)
    progress.summary(name, result.size, result.elapsed)
    return result

# ------------- main

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="pkgget", description="Rebuild a package from its JSON piece manifest")
    ap.add_argument("url", nargs="?", help="Manifest URL (known package links are rewritten to their manifest)")
    ap.add_argument("-o", "--output", metavar="PATH", help="Save pkg to PATH")
    ap.add_argument("-s", "--chunk-size", default="5MiB", help="Read buffer per piece, example 1MB or 5MiB")
    ap.add_argument("-t", "--timeout", type=float, default=None, help="Socket read timeout in seconds (default: wait forever)")
    ap.add_argument("-A", "--user-agent", default=USER_AGENT, help="User-Agent header sent with every request")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    return ap

def main(argv=None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    if not args.url:
        ap.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        chunk_size = human_to_bytes(args.chunk_size)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    if chunk_size <= 0:
        print("Error: chunk size must be positive")
        return 1

    url = normalize_url(args.url)
    if url != args.url:
        log.debug("rewrote %s -> %s", args.url, url)
    out_path = args.output or default_name_from_url(url)

    try:
        asyncio.run(assemble(url, out_path, chunk_size=chunk_size,
                             timeout=args.timeout, user_agent=args.user_agent))
    except PkgGetError as e:
        print(e)
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user")
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
