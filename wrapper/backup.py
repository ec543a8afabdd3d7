"""
Backup export/import of the state and workspace directories.

Archives are gzip tarballs. When both directories live under the data root
the archive is relative to it (.openclaw/..., workspace/...), so it can be
restored straight back into the volume. Import only ever extracts into the
data root and skips members with unsafe paths.
"""

import io
import re
import tarfile
from pathlib import Path

from settings import Settings

MAX_IMPORT_BYTES = 250 * 1024 * 1024  # 250MB

_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")


class ImportRejected(ValueError):
    pass


def is_under_dir(path: Path, root: Path) -> bool:
    path = Path(path).resolve()
    root = Path(root).resolve()
    return path == root or root in path.parents


def looks_safe_tar_path(name: str) -> bool:
    if not name:
        return False
    if name.startswith("/") or name.startswith("\\"):
        return False
    if _DRIVE_RE.match(name):
        return False
    if ".." in name.replace("\\", "/").split("/"):
        return False
    return True


def _normalise(info: tarfile.TarInfo) -> tarfile.TarInfo:
    # Portable archive: no owner names and no timestamps.
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mtime = 0
    return info


def export_roots(settings: Settings) -> tuple[Path, list[str]]:
    """(cwd, member roots) for the archive."""
    state = settings.state_dir.resolve()
    workspace = settings.workspace_dir.resolve()
    data_root = settings.data_root.resolve()

    if is_under_dir(state, data_root) and is_under_dir(workspace, data_root):
        return data_root, [str(state.relative_to(data_root)), str(workspace.relative_to(data_root))]

    return Path("/"), [str(state).lstrip("/"), str(workspace).lstrip("/")]


def export_archive(settings: Settings) -> bytes:
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    settings.workspace_dir.mkdir(parents=True, exist_ok=True)

    cwd, roots = export_roots(settings)
    buf = io.BytesIO()
    seen = set()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for root in roots:
            # The workspace usually sits inside the state dir; add it once.
            if any(s == "." or root == s or root.startswith(s + "/") for s in seen):
                continue
            seen.add(root)
            tar.add(str(cwd / root), arcname=root, filter=_normalise)
    return buf.getvalue()


def read_archive(settings: Settings, data: bytes) -> tuple[tarfile.TarFile, list[tarfile.TarInfo]]:
    """Open and vet a backup without touching the disk.

    Returns the open archive and the members safe to extract; raises
    ImportRejected for anything that can't be restored.
    """
    data_root = settings.data_root
    if not (is_under_dir(settings.state_dir, data_root) and is_under_dir(settings.workspace_dir, data_root)):
        raise ImportRejected(
            f"Import is only supported when OPENCLAW_STATE_DIR and OPENCLAW_WORKSPACE_DIR are under {data_root}."
        )
    if not data:
        raise ImportRejected("Empty body")
    if len(data) > MAX_IMPORT_BYTES:
        raise ImportRejected("Backup too large")

    try:
        tar = tarfile.open(fileobj=io.BytesIO(data), mode="r:gz")
    except (tarfile.TarError, EOFError, OSError) as e:
        raise ImportRejected(f"Not a gzip tar archive: {e}") from e

    try:
        listing = tar.getmembers()
    except (tarfile.TarError, EOFError, OSError) as e:
        tar.close()
        raise ImportRejected(f"Corrupt archive: {e}") from e

    members = []
    for member in listing:
        if not looks_safe_tar_path(member.name):
            print(f"[import] skipping unsafe path: {member.name}", flush=True)
        elif member.issym() or member.islnk() or member.isdev():
            print(f"[import] skipping link/device entry: {member.name}", flush=True)
        else:
            members.append(member)
    return tar, members


def extract_members(settings: Settings, tar: tarfile.TarFile, members: list[tarfile.TarInfo]) -> list[str]:
    """Extract vetted members into the data root. Existing files are overwritten, never deleted."""
    with tar:
        settings.data_root.mkdir(parents=True, exist_ok=True)
        tar.extractall(path=settings.data_root, members=members, filter="data")
    return [m.name for m in members]


def import_archive(settings: Settings, data: bytes) -> list[str]:
    tar, members = read_archive(settings, data)
    return extract_members(settings, tar, members)
