"""
cache
-----

의존성 캐시(예: ~/.cargo/registry)를 매니페스트 내용 해시로 키잉하여
복원/저장하는 모듈.

키 형식: ``<platform>[-<namespace>]-<sha256>``
조회 순서: 정확한 키 → restore prefix 별 가장 최근에 쓰인 항목 → 없음.
"""

from __future__ import annotations

import hashlib
import io
import json
import os
import re
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from google.api_core.exceptions import NotFound
from google.cloud import storage

from .config import PipelineConfig
from .logging_utils import get_logger


logger = get_logger(__name__)


class CacheError(RuntimeError):
    """캐시 키 계산/저장소 접근 실패. 파이프라인에서는 항상 비치명적이다."""


@dataclass(frozen=True)
class CacheKey:
    key: str
    restore_prefixes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheEntry:
    key: str
    written_at: float
    # 같은 시각에 쓰인 항목의 순서를 정하기 위한 단조 증가 값
    sequence: int = 0

    @property
    def recency(self) -> tuple[float, int, str]:
        return (self.written_at, self.sequence, self.key)


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, blob: bytes) -> None: ...

    def entries(self, prefix: str) -> List[CacheEntry]: ...


# -----------------------------
# cache key
# -----------------------------
def _matched_files(patterns: Iterable[str], base_dir: str) -> List[Path]:
    base = Path(base_dir)
    found: set[Path] = set()
    for pattern in patterns:
        for path in base.glob(pattern):
            if path.is_file():
                found.add(path)
    return sorted(found, key=lambda p: p.relative_to(base).as_posix())


def hash_files(patterns: Iterable[str], base_dir: str = ".") -> str:
    """
    패턴에 매칭되는 파일들의 내용 해시.
    각 파일의 sha256 을 경로 순으로 이어서 다시 sha256 한다(수정 시각은 반영하지 않는다).
    """
    files = _matched_files(patterns, base_dir)
    if not files:
        raise CacheError(
            "캐시 키를 계산할 매니페스트 파일이 없습니다: " + ", ".join(patterns)
        )

    outer = hashlib.sha256()
    for path in files:
        inner = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                inner.update(chunk)
        outer.update(inner.digest())
    return outer.hexdigest()


def compute_cache_key(
    platform: str,
    manifests: Sequence[str],
    base_dir: str = ".",
    namespace: str = "",
) -> CacheKey:
    parts = [platform]
    if namespace:
        parts.append(namespace)
    prefix = "-".join(parts) + "-"
    digest = hash_files(manifests, base_dir)
    return CacheKey(key=prefix + digest, restore_prefixes=(prefix,))


def lookup(store: CacheStore, cache_key: CacheKey, skip: Iterable[str] = ()) -> Optional[str]:
    """
    정확한 키가 있으면 그 키, 없으면 prefix 순서대로 가장 최근에 쓰인 키를 반환한다.
    skip 에 있는 키는 후보에서 뺀다.
    """
    skipped = set(skip)
    if cache_key.key not in skipped and any(e.key == cache_key.key for e in store.entries(cache_key.key)):
        return cache_key.key

    for prefix in cache_key.restore_prefixes:
        candidates = [e for e in store.entries(prefix) if e.key not in skipped]
        if candidates:
            latest = max(candidates, key=lambda e: e.recency)
            return latest.key
    return None


# -----------------------------
# stores
# -----------------------------
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class LocalCacheStore:
    """
    로컬 디렉토리 기반 캐시 저장소.
    blob 은 ``<key>.tar.gz`` 로, 쓰기 시각/순번은 index.json 에 둔다.
    """

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def _index_path(self) -> Path:
        return self.root / "index.json"

    def _blob_path(self, key: str) -> Path:
        return self.root / (_UNSAFE.sub("_", key) + ".tar.gz")

    def _load_index(self) -> dict:
        path = self._index_path()
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise CacheError(f"캐시 인덱스를 읽을 수 없습니다: {path}") from e

    def _write_atomic(self, path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)

    def get(self, key: str) -> Optional[bytes]:
        if key not in self._load_index():
            return None
        path = self._blob_path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def put(self, key: str, blob: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        index = self._load_index()
        sequence = max((int(v.get("sequence", 0)) for v in index.values()), default=0) + 1
        self._write_atomic(self._blob_path(key), blob)
        index[key] = {"written_at": time.time(), "sequence": sequence}
        self._write_atomic(self._index_path(), json.dumps(index, indent=2).encode("utf-8"))

    def entries(self, prefix: str) -> List[CacheEntry]:
        return [
            CacheEntry(key=k, written_at=float(v["written_at"]), sequence=int(v.get("sequence", 0)))
            for k, v in self._load_index().items()
            if k.startswith(prefix)
        ]


class GcsCacheStore:
    """GCS 버킷 기반 캐시 저장소. 여러 워커가 같은 버킷을 공유할 수 있다."""

    def __init__(self, bucket_name: str, prefix: str = "", project: Optional[str] = None,
                 client: Optional[storage.Client] = None) -> None:
        self.prefix = prefix
        self._client = client or storage.Client(project=project)
        self._bucket = self._client.bucket(bucket_name)

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._bucket.blob(self.prefix + key).download_as_bytes()
        except NotFound:
            return None

    def put(self, key: str, blob: bytes) -> None:
        self._bucket.blob(self.prefix + key).upload_from_string(
            blob, content_type="application/gzip"
        )

    def entries(self, prefix: str) -> List[CacheEntry]:
        result: List[CacheEntry] = []
        for b in self._client.list_blobs(self._bucket, prefix=self.prefix + prefix):
            result.append(
                CacheEntry(
                    key=b.name[len(self.prefix):],
                    written_at=b.updated.timestamp() if b.updated else 0.0,
                    sequence=int(b.generation or 0),
                )
            )
        return result


def open_cache_store(cfg: PipelineConfig, base_dir: str = ".") -> CacheStore:
    if cfg.cache_backend == "gcs":
        if not cfg.cache_bucket:
            raise CacheError("CACHE_BACKEND=gcs 이면 CACHE_BUCKET 환경변수가 필요합니다.")
        logger.info("GCS 캐시 저장소 사용: gs://%s/%s", cfg.cache_bucket, cfg.cache_bucket_prefix)
        return GcsCacheStore(cfg.cache_bucket, prefix=cfg.cache_bucket_prefix, project=cfg.gcp_project_id)
    root = os.path.join(base_dir, os.path.expanduser(cfg.cache_dir))
    logger.info("로컬 캐시 저장소 사용: %s", root)
    return LocalCacheStore(root)


# -----------------------------
# archive
# -----------------------------
def _arcname(path_spec: str) -> str:
    return hashlib.sha256(path_spec.encode("utf-8")).hexdigest()[:16]


def pack_paths(paths: Sequence[str]) -> Optional[bytes]:
    """
    존재하는 경로들을 tar.gz 로 묶는다. 묶을 것이 없으면 None.
    아카이브 안의 이름은 경로 설정 문자열의 해시라서, 복원 시 같은 설정으로 되돌릴 수 있다.
    """
    buf = io.BytesIO()
    added = 0
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for spec in paths:
            target = os.path.expanduser(spec)
            if not os.path.exists(target):
                logger.debug("캐시 경로가 없어 건너뜁니다: %s", spec)
                continue
            tar.add(target, arcname=_arcname(spec))
            added += 1
    if not added:
        return None
    return buf.getvalue()


def _extract(tar: tarfile.TarFile, member: tarfile.TarInfo, dest: str) -> None:
    if hasattr(tarfile, "data_filter"):
        tar.extract(member, dest, filter="data")
    else:
        tar.extract(member, dest)


def unpack_paths(blob: bytes, paths: Sequence[str]) -> int:
    """pack_paths 로 만든 아카이브를 원래 경로로 풀고, 복원한 멤버 수를 반환한다."""
    restored = 0
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        for spec in paths:
            arc = _arcname(spec)
            target = os.path.expanduser(spec)
            for member in members:
                if member.name == arc:
                    if member.isdir():
                        os.makedirs(target, exist_ok=True)
                        continue
                    member.name = os.path.basename(target)
                    _extract(tar, member, os.path.dirname(target) or ".")
                    restored += 1
                elif member.name.startswith(arc + "/"):
                    member.name = member.name[len(arc) + 1:]
                    if member.name.startswith("/") or ".." in member.name.split("/"):
                        raise CacheError(f"허용되지 않는 캐시 멤버 경로입니다: {member.name}")
                    os.makedirs(target, exist_ok=True)
                    _extract(tar, member, target)
                    restored += 1
    return restored


def restore_cache(store: CacheStore, cache_key: CacheKey, paths: Sequence[str]) -> Optional[str]:
    """
    캐시를 복원하고 실제로 사용한 키를 반환한다(미스면 None).
    """
    # index 에는 있지만 데이터가 사라진 항목은 건너뛰고 다음 후보를 찾는다.
    missing: List[str] = []
    while True:
        matched = lookup(store, cache_key, skip=missing)
        if matched is None:
            logger.info("캐시 미스: %s", cache_key.key)
            return None
        blob = store.get(matched)
        if blob is not None:
            break
        logger.warning("캐시 항목의 데이터가 없어 다음 후보를 찾습니다: %s", matched)
        missing.append(matched)

    count = unpack_paths(blob, paths)
    if matched == cache_key.key:
        logger.info("캐시 적중: %s (%d 항목)", matched, count)
    else:
        logger.info("prefix 캐시로 복원: %s (요청 키 %s, %d 항목)", matched, cache_key.key, count)
    return matched


def save_cache(store: CacheStore, cache_key: CacheKey, paths: Sequence[str],
               restored_key: Optional[str] = None) -> bool:
    """
    계산된 키로 캐시를 저장한다.
    정확한 키로 복원된 run 은 내용이 같으므로 다시 올리지 않는다.
    """
    if restored_key == cache_key.key:
        logger.info("정확한 키로 복원되어 캐시 저장을 건너뜁니다: %s", cache_key.key)
        return False

    blob = pack_paths(paths)
    if blob is None:
        logger.info("저장할 캐시 경로가 없습니다: %s", ", ".join(paths))
        return False

    store.put(cache_key.key, blob)
    logger.info("캐시 저장: %s (%d bytes)", cache_key.key, len(blob))
    return True
