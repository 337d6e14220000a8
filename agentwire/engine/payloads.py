"""Per-turn scratch files: the rendered prompt and decoded images.

Files live under ``<cwd>/<temp_subdir>/<millis>/`` so the agent CLI
can read them with paths relative to its own working directory. The
turn that staged them owns them and removes the directory when it
finalizes.
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from .models import ImageAttachment

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)
_EXTENSION_RE = re.compile(r"^[a-z0-9]+$")


@dataclass
class StagedPayload:
    """Paths written for one turn."""
    temp_dir: Path | None = None
    prompt_file: Path | None = None
    image_paths: list[Path] = field(default_factory=list)

    @property
    def paths(self) -> list[Path]:
        out: list[Path] = []
        if self.prompt_file is not None:
            out.append(self.prompt_file)
        out.extend(self.image_paths)
        return out


def decode_data_url(data: str) -> tuple[str, bytes] | None:
    """Split ``data:<mime>;base64,<payload>`` into (mime, bytes)."""
    match = _DATA_URL_RE.match(data or "")
    if not match:
        return None
    mime, payload = match.groups()
    try:
        return mime, base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError):
        return None


def _extension_for(mime: str) -> str:
    subtype = mime.split("/", 1)[1] if "/" in mime else ""
    subtype = subtype.split("+", 1)[0].strip().lower()
    return subtype if _EXTENSION_RE.match(subtype) else "png"


def stage_payloads(
    cwd: str | Path,
    prompt: str,
    images: list[ImageAttachment],
    *,
    temp_subdir: str = ".tmp/agent",
    write_prompt: bool = True,
) -> StagedPayload:
    """Write the prompt and decodable images into a fresh turn directory.

    Nothing is created when there is nothing to write. Images whose
    data is not a base64 data URL, or that cannot be written, are
    skipped. A failed prompt write removes the turn directory.
    """
    if not write_prompt and not images:
        return StagedPayload()

    temp_dir = Path(cwd) / temp_subdir / str(time.time_ns() // 1_000_000)
    while temp_dir.exists():
        temp_dir = temp_dir.with_name(str(int(temp_dir.name) + 1))
    temp_dir.mkdir(parents=True)
    staged = StagedPayload(temp_dir=temp_dir)

    if write_prompt:
        staged.prompt_file = temp_dir / "prompt.txt"
        try:
            staged.prompt_file.write_text(prompt or "", encoding="utf-8")
        except OSError:
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise

    for index, image in enumerate(images):
        decoded = decode_data_url(image.data)
        if decoded is None:
            logger.warning("Skipping image %d: not a base64 data URL", index)
            continue
        mime, blob = decoded
        path = temp_dir / f"image_{index}.{_extension_for(mime)}"
        try:
            path.write_bytes(blob)
        except OSError as exc:
            logger.warning("Skipping image %d: could not write %s: %s", index, path, exc)
            continue
        staged.image_paths.append(path)

    logger.debug(
        "Staged turn payload in %s (prompt=%s, images=%d)",
        temp_dir, staged.prompt_file is not None, len(staged.image_paths),
    )
    return staged


def cleanup_payloads(paths: list[Path], temp_dir: Path | None) -> None:
    """Best-effort removal of staged files and their directory."""
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.debug("Failed to delete temp file %s: %s", path, exc)
    if temp_dir is not None:
        shutil.rmtree(temp_dir, ignore_errors=True)
