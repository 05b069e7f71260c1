#!/usr/bin/env python
"""Index filter run by ``git filter-branch`` for every rewritten commit.

Reads the output of ``git ls-files -s -z`` on stdin, renames each path with
the rules stored in the JSON file given as the only argument, and writes
records suitable for ``git update-index -z --index-info`` to stdout.
"""

from __future__ import annotations

import json
import sys
from typing import BinaryIO, Iterator

from .rewrite import RewriteEngine

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


def rewrite_index_records(engine: RewriteEngine, stream: bytes) -> Iterator[bytes]:
    """Yield rewritten ``<mode> <sha> <stage>\\t<path>`` records."""
    for record in stream.split(b"\0"):
        if not record:
            continue
        info, sep, raw_path = record.partition(b"\t")
        if not sep:
            yield record
            continue
        path = raw_path.decode(_ENCODING, _ERRORS)
        new_path = engine.rewrite(path)
        yield info + b"\t" + new_path.encode(_ENCODING, _ERRORS)


def run(rules_file: str, stdin: BinaryIO, stdout: BinaryIO) -> None:
    with open(rules_file, encoding="utf-8") as fh:
        engine = RewriteEngine.from_json_payload(json.load(fh))
    for record in rewrite_index_records(engine, stdin.read()):
        stdout.write(record + b"\0")
    stdout.flush()


def main() -> None:
    if len(sys.argv) != 2:
        print("Usage: python -m splitrepo.index_filter RULES.json", file=sys.stderr)
        sys.exit(2)
    run(sys.argv[1], sys.stdin.buffer, sys.stdout.buffer)


if __name__ == "__main__":
    main()
