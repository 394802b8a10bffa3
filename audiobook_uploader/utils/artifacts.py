"""Artifact path helpers and resume checks.

Intermediate files are identified purely by convention: fixed filenames
inside the run's output directory (the parent of the output video path).
Presence of a file at its conventional path is the resume signal. No
manifest or checksum is kept, so a stale artifact from a run with different
inputs is reused as-is.

Architecture Pattern:
    <output root>/
    ├── video_1/
    │   ├── source_video.mp4   (downloaded foreground clip)
    │   ├── voiceover.mp3      (narration only)
    │   ├── mixed_audio.m4a    (narration + music)
    │   ├── <output video>
    │   └── thumbnail.jpg
    └── video_2/
        └── ...

Usage:
    from audiobook_uploader.utils.artifacts import artifact_exists

    if resume and artifact_exists(output_dir, VOICEOVER_FILENAME):
        ...  # skip synthesis
"""

import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from audiobook_uploader.constants import RUN_DIR_PREFIX, THUMBNAIL_FILENAME

__all__ = [
    "artifact_exists",
    "artifact_path",
    "find_previous_thumbnail",
    "get_next_run_dir",
    "list_run_dirs",
    "partial_artifact_path",
    "staged_artifact",
]

_RUN_DIR_PATTERN = re.compile(rf"^{re.escape(RUN_DIR_PREFIX)}(\d+)$")


def artifact_path(output_dir: str | Path, filename: str) -> Path:
    """Return the conventional path of an artifact inside an output directory."""
    return Path(output_dir) / filename


def artifact_exists(output_dir: str | Path, filename: str) -> bool:
    """Check whether an artifact was already produced.

    Pure filesystem check with no state of its own. Empty files do not
    count, since an interrupted ffmpeg run leaves a zero-byte output behind.

    Args:
        output_dir: Run output directory
        filename: Conventional artifact filename (e.g. "voiceover.mp3"),
            or an absolute path for the final video

    Returns:
        True if a non-empty regular file exists at the conventional path.

    Example:
        >>> artifact_exists("/tmp/run", "voiceover.mp3")
        False
    """
    path = artifact_path(output_dir, filename)
    return path.is_file() and path.stat().st_size > 0


def partial_artifact_path(path: str | Path) -> Path:
    """Return the sibling path a tool writes to before the artifact is committed.

    The original suffix is kept last so ffmpeg still infers the container.

    Example:
        >>> partial_artifact_path("run/final.mp4")
        PosixPath('run/final.part.mp4')
    """
    path = Path(path)
    return path.with_name(f"{path.stem}.part{path.suffix}")


@contextmanager
def staged_artifact(path: str | Path) -> Iterator[Path]:
    """Write an artifact under a temporary name and commit it on success.

    Yields the partial path. When the block completes the partial file is
    renamed onto ``path``; on any exception, including cancellation, it is
    removed so ``artifact_exists`` never sees a half-written file.

    Usage:
        with staged_artifact(output_path) as partial:
            await run_process([..., str(partial)])
    """
    target = Path(path)
    partial = partial_artifact_path(target)
    try:
        yield partial
        if partial.exists():
            partial.replace(target)
    finally:
        partial.unlink(missing_ok=True)


def list_run_dirs(root: str | Path) -> list[tuple[int, Path]]:
    """List numbered run folders under root, sorted by run number."""
    root_path = Path(root)
    if not root_path.is_dir():
        return []
    runs = []
    for entry in root_path.iterdir():
        match = _RUN_DIR_PATTERN.match(entry.name)
        if match and entry.is_dir():
            runs.append((int(match.group(1)), entry))
    return sorted(runs)


def get_next_run_dir(root: str | Path, create: bool = True) -> tuple[Path, int]:
    """Allocate the next numbered run folder ("video_1", "video_2", ...).

    Args:
        root: Output root holding the run folders
        create: Create the folder (and root) when True

    Returns:
        Tuple of (folder path, run number).

    Example:
        >>> get_next_run_dir("output")
        (PosixPath('output/video_3'), 3)
    """
    runs = list_run_dirs(root)
    next_number = runs[-1][0] + 1 if runs else 1
    run_dir = Path(root) / f"{RUN_DIR_PREFIX}{next_number}"
    if create:
        run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir, next_number


def find_previous_thumbnail(
    run_dir: str | Path, filename: str = THUMBNAIL_FILENAME
) -> Path | None:
    """Find the most recent earlier run's thumbnail.

    Used as a style-consistency reference when chaining multi-part content.
    Only folders numbered below ``run_dir`` are considered. When run_dir is
    not itself a numbered run folder every sibling run is considered.

    Returns:
        Path to the newest earlier non-empty thumbnail, or None.
    """
    run_path = Path(run_dir)
    match = _RUN_DIR_PATTERN.match(run_path.name)
    current = int(match.group(1)) if match else None
    for number, folder in reversed(list_run_dirs(run_path.parent)):
        if current is not None and number >= current:
            continue
        if artifact_exists(folder, filename):
            return folder / filename
    return None
