#!/usr/bin/env python3
# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
# Gzip post-processor for finished backup archives
import argparse, enum, gzip, logging, sys
from pathlib import Path
from typing import Any

log = logging.getLogger("tarkeep.gzip")

COPY_CHUNK = 16 * 1024

STATUS_OK = 0
STATUS_OPEN_INPUT = 1
STATUS_CREATE_OUTPUT = 2
STATUS_READ = 4
STATUS_WRITE = 5
STATUS_BAD_ARGS = 10
STATUS_MISSING_ARG = 12


class CompressionLevel(enum.IntEnum):
    FAST = 1
    NORMAL = 6
    MAXIMUM = 9


def _pump(src, gz) -> int:
    while True:
        try:
            buf = src.read(COPY_CHUNK)
        except OSError as e:
            log.error("read error: %s", e)
            return STATUS_READ
        if not buf:
            return STATUS_OK
        gz.write(buf)


def gzip_tar(in_path: Any, out_path: Any, level: int = CompressionLevel.NORMAL) -> int:
    """Gzip in_path into out_path. Returns 0 on success, a status code otherwise.

    Codes: 1 input cannot be opened, 2 output cannot be created, 4 read
    error, 5 write error, 10 empty or identical paths, 12 missing path.
    """
    if in_path is None or out_path is None:
        return STATUS_MISSING_ARG
    in_s, out_s = str(in_path), str(out_path)
    if not in_s or not out_s or in_s == out_s:
        return STATUS_BAD_ARGS
    log.debug("gzip %s -> %s (level %d)", in_s, out_s, int(level))

    try:
        src = open(in_s, "rb")
    except OSError as e:
        log.error("open in failed: %s", e)
        return STATUS_OPEN_INPUT
    with src:
        try:
            raw = open(out_s, "wb")
        except OSError as e:
            log.error("create out failed: %s", e)
            return STATUS_CREATE_OUTPUT
        try:
            with raw, gzip.GzipFile(filename=Path(in_s).name, mode="wb",
                                    fileobj=raw, compresslevel=int(level)) as gz:
                status = _pump(src, gz)
        except OSError as e:
            log.error("write error: %s", e)
            return STATUS_WRITE
    return status


def main():
    ap = argparse.ArgumentParser(prog="tarkeep-gzip")
    ap.add_argument("in_path", type=Path)
    ap.add_argument("out_path", type=Path)
    ap.add_argument("--level", choices=[l.name.lower() for l in CompressionLevel], default="normal")
    args = ap.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    code = gzip_tar(args.in_path, args.out_path, CompressionLevel[args.level.upper()])
    print(f"gzip_tar returned: {code}")
    if code != STATUS_OK:
        sys.exit(code)


if __name__ == "__main__":
    main()
