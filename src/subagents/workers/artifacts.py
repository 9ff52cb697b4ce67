from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from subagents.workers.models import ArtifactPaths, TruncationInfo

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe(part: str) -> str:
    return _UNSAFE.sub("_", part) or "task"


def get_artifact_paths(
    artifacts_dir: Path, run_id: str, agent: str, index: int | None = None
) -> ArtifactPaths:
    stem = f"{_safe(run_id)}_{_safe(agent)}"
    if index is not None:
        stem = f"{stem}_{index}"
    return ArtifactPaths(
        input_path=artifacts_dir / f"{stem}_input.md",
        output_path=artifacts_dir / f"{stem}_output.md",
        jsonl_path=artifacts_dir / f"{stem}.jsonl",
        metadata_path=artifacts_dir / f"{stem}_meta.json",
    )


def write_artifact(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def write_metadata(path: Path, payload: dict[str, Any]) -> None:
    write_artifact(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def truncate_output(
    text: str,
    max_bytes: int,
    max_lines: int,
    artifact_path: Path | str | None = None,
) -> tuple[str, TruncationInfo]:
    """Cap ``text`` by lines, then by UTF-8 bytes, and describe what was dropped."""
    encoded = text.encode("utf-8")
    lines = text.split("\n")
    original_bytes = len(encoded)
    original_lines = len(lines)
    if original_bytes <= max_bytes and original_lines <= max_lines:
        return text, TruncationInfo(False, original_bytes, original_lines)

    kept = "\n".join(lines[:max_lines])
    kept_bytes = kept.encode("utf-8")
    if len(kept_bytes) > max_bytes:
        kept = kept_bytes[:max_bytes].decode("utf-8", errors="ignore")

    note = (
        f"[Output truncated: {original_lines} lines / {original_bytes} bytes, "
        f"limit {max_lines} lines / {max_bytes} bytes]"
    )
    if artifact_path:
        note = f"{note[:-1]}. Full output: {artifact_path}]"
    info = TruncationInfo(
        truncated=True,
        original_bytes=original_bytes,
        original_lines=original_lines,
        note=note,
        artifact_path=str(artifact_path) if artifact_path else None,
    )
    return f"{kept}\n\n{note}", info
