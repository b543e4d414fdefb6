# artifacts.py
from __future__ import annotations

import hashlib
import io
import json
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Union, runtime_checkable

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are content addressed:
#   digest = sha256(bytes)                       for raw payloads
#   digest = sha256(tar.gz of the path)          for files / directories
#
# Layout:
#   root/
#     <name>/
#       <digest>.tar.gz | <digest>.bin
#       <digest>.manifest.json
#
# Storing the same content twice under the same name is a no-op.
# ---------------------------------------------------------------------

DEFAULT_ARTIFACT_DIR = ".stepflow/artifacts"
DEFAULT_ARTIFACT_EXCLUDES = [
    ".git/**",
    ".stepflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class ArtifactRef:
    name: str
    digest: str
    path: Path
    size: int
    files: int

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "digest": self.digest,
            "path": str(self.path),
            "size": self.size,
            "files": self.files,
        }


@runtime_checkable
class ArtifactStore(Protocol):
    def store(self, name: str, source: Union[str, Path, bytes]) -> ArtifactRef: ...


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _tar_bytes(src: Path, *, exclude_globs: List[str]) -> tuple[bytes, int]:
    """
    Pack src (file or dir) into an in-memory tar.gz with stable ordering and
    zeroed mtimes, so equal content always gives an equal digest.
    """
    base = src.parent if src.is_file() else src
    files = [src] if src.is_file() else list(_iter_files_under(src))

    buf = io.BytesIO()
    count = 0
    # mtime=0 on the gzip header too, otherwise the digest changes every run
    with tarfile.open(fileobj=buf, mode="w:gz", compresslevel=6) as tar:
        for f in files:
            rel = str(f.relative_to(base)).replace("\\", "/")
            if _matches_any_glob(rel, exclude_globs):
                continue
            data = f.read_bytes()
            info = tarfile.TarInfo(name=rel)
            info.size = len(data)
            info.mtime = 0
            info.mode = 0o644
            tar.addfile(info, fileobj=io.BytesIO(data))
            count += 1
    raw = buf.getvalue()
    # gzip header bytes 4..8 hold the mtime
    raw = raw[:4] + b"\x00\x00\x00\x00" + raw[8:]
    return raw, count


class LocalArtifactStore:
    """File-based, content-addressed artifact sink."""

    def __init__(self, root: str | Path = DEFAULT_ARTIFACT_DIR, *, excludes: Optional[List[str]] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.excludes = list(DEFAULT_ARTIFACT_EXCLUDES) + list(excludes or [])

    def _name_dir(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValueError(f"invalid artifact name: {name!r}")
        d = self.root / name
        d.mkdir(parents=True, exist_ok=True)
        return d

    def manifest_path(self, name: str, digest: str) -> Path:
        return self._name_dir(name) / f"{digest}.manifest.json"

    def store(self, name: str, source: Union[str, Path, bytes]) -> ArtifactRef:
        if isinstance(source, (bytes, bytearray)):
            payload, files, suffix, origin = bytes(source), 1, ".bin", None
        else:
            src = Path(source).expanduser().resolve()
            if not src.exists():
                raise FileNotFoundError(f"artifact source not found: {src}")
            payload, files = _tar_bytes(src, exclude_globs=self.excludes)
            suffix, origin = ".tar.gz", str(src)

        digest = _sha256_bytes(payload)
        d = self._name_dir(name)
        art = d / f"{digest}{suffix}"
        if not art.exists():
            tmp = art.with_name(art.name + ".tmp")
            try:
                tmp.write_bytes(payload)
                tmp.replace(art)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)

            manifest = {
                "name": name,
                "digest": digest,
                "size": len(payload),
                "files": files,
                "source": origin,
                "stored_at_unix": int(time.time()),
            }
            self.manifest_path(name, digest).write_text(_json_dumps_stable(manifest), encoding="utf-8")

        return ArtifactRef(name=name, digest=digest, path=art, size=len(payload), files=files)

    def list(self, name: str) -> List[Dict]:
        """Manifests stored under name, newest first."""
        d = self._name_dir(name)
        manifests = [json.loads(p.read_text(encoding="utf-8")) for p in d.glob("*.manifest.json")]
        return sorted(manifests, key=lambda m: m.get("stored_at_unix", 0), reverse=True)

    def prune(self, name: str, keep: int = 3) -> None:
        """
        Keep only the newest N artifacts for a name.
        Uses file mtime as "newest".
        """
        d = self._name_dir(name)
        blobs = [p for p in d.iterdir() if p.name.endswith((".tar.gz", ".bin"))]
        blobs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for p in blobs[keep:]:
            digest = p.name.split(".", 1)[0]
            p.unlink(missing_ok=True)
            (d / f"{digest}.manifest.json").unlink(missing_ok=True)
