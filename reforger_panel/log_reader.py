from __future__ import annotations
import base64
import binascii
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

LOG_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

@dataclass
class LogChunk:
    entries: List[str]
    cursor: str
    truncated: bool

def _encode_cursor(pos: int, size: int) -> str:
    raw = json.dumps({"pos": pos, "size": size}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")

def _decode_cursor(cursor: str) -> Optional[Dict[str, int]]:
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None

def log_path(logs_dir: Path, log_id: str) -> Optional[Path]:
    """Map a log id (file stem) to its file, or None for unknown/unsafe ids."""
    if not LOG_ID_RE.match(log_id) or log_id.startswith("."):
        return None
    path = logs_dir / f"{log_id}.log"
    return path if path.is_file() else None

def list_logs(logs_dir: Path) -> List[dict]:
    if not logs_dir.is_dir():
        return []
    out = []
    for p in sorted(logs_dir.glob("*.log")):
        st = p.stat()
        out.append({
            "id": p.stem,  # console, ...
            "path": f"logs/{p.name}",
            "size_bytes": st.st_size,
            "modified": int(st.st_mtime),
        })
    return out

def read_tail(path: Path, tail_lines: int = 200, max_bytes: int = 256_000) -> LogChunk:
    size = path.stat().st_size
    start = max(0, size - max_bytes)
    with path.open("rb") as f:
        f.seek(start)
        data = f.read()
    lines = data.decode("utf-8", errors="replace").splitlines()
    if start > 0 and lines:
        # first line is probably cut in half
        lines = lines[1:]
    chunk = lines[-tail_lines:] if tail_lines > 0 else []
    return LogChunk(entries=chunk, cursor=_encode_cursor(size, size), truncated=len(lines) > len(chunk))

def read_from_cursor(path: Path, cursor: str, max_lines: int = 200, max_bytes: int = 256_000) -> LogChunk:
    size = path.stat().st_size
    pos = int((_decode_cursor(cursor) or {}).get("pos", 0))
    if pos > size:
        # file was truncated/rotated
        pos = 0

    with path.open("rb") as f:
        f.seek(pos)
        data = f.read(max_bytes)

    # only hand out complete lines; the remainder is read next time
    end = data.rfind(b"\n")
    if end >= 0:
        complete = data[: end + 1]
    elif len(data) >= max_bytes:
        # a single line longer than max_bytes is handed out in pieces
        complete = data
    else:
        complete = b""
    raw_lines = complete.splitlines(keepends=True)
    taken = raw_lines[:max_lines]
    consumed = sum(len(line) for line in taken)
    entries = [line.decode("utf-8", errors="replace").rstrip("\r\n") for line in taken]
    truncated = len(raw_lines) > len(taken) or (pos + len(data)) < size
    return LogChunk(entries=entries, cursor=_encode_cursor(pos + consumed, size), truncated=truncated)
