"""
Manifest Builder

Persists the generated fixture set with SHA-256 content checksums so later
runs can tell stale or hand-edited fixtures (drift) apart from decoder bugs.

Manifest layout (JSON, UTF-8):
    {
      "schema_version": "1.0.0",
      "generated_at": "2026-01-01T00:00:00Z",
      "fixtures": [
        {"id": ..., "container_format": ..., "codec_params": {...},
         "metadata_tags": {...}, "reference": {...}, "output_path": ...,
         "sha256": ..., "file_size": ..., "generated_at": ...},
        ...
      ]
    }

The manifest is always written whole: serialized in memory, written to a
temporary file in the same directory, then moved over the old one with
os.replace.
"""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePath
from typing import Dict, List, Optional

import numpy as np

import config
from codec_fixtures.errors import ManifestDrift
from codec_fixtures.fixture_spec import FixtureSpec

logger = logging.getLogger(__name__)


class ManifestEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy scalars, enums and paths."""
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        elif isinstance(obj, np.bool_):
            return bool(obj)
        elif isinstance(obj, Enum):
            return obj.value
        elif isinstance(obj, PurePath):
            return str(obj)
        return super().default(obj)


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with a 'Z' suffix."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def compute_checksum(path: Path) -> str:
    """SHA-256 of a file's bytes, streamed."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(config.CHECKSUM_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def compute_bytes_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ManifestEntry:
    spec: FixtureSpec
    content_checksum: str
    file_size: int
    generated_at: str

    def to_dict(self) -> dict:
        record = self.spec.to_dict()
        record.update({
            'sha256': self.content_checksum,
            'file_size': self.file_size,
            'generated_at': self.generated_at,
        })
        return record

    @classmethod
    def from_dict(cls, data: dict) -> 'ManifestEntry':
        return cls(
            spec=FixtureSpec.from_dict(data),
            content_checksum=data['sha256'],
            file_size=int(data['file_size']),
            generated_at=data['generated_at'],
        )


@dataclass
class FixtureManifest:
    """Ordered record of one generation run."""
    entries: List[ManifestEntry] = field(default_factory=list)
    generated_at: str = ""
    schema_version: str = config.SCHEMA_VERSION

    def __len__(self) -> int:
        return len(self.entries)

    def by_id(self) -> Dict[str, ManifestEntry]:
        return {entry.spec.id: entry for entry in self.entries}

    def get(self, fixture_id: str) -> Optional[ManifestEntry]:
        return self.by_id().get(fixture_id)

    def to_dict(self) -> dict:
        return {
            'schema_version': self.schema_version,
            'generated_at': self.generated_at,
            'fixtures': [entry.to_dict() for entry in self.entries],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False, cls=ManifestEncoder) + "\n"

    @classmethod
    def from_dict(cls, data: dict) -> 'FixtureManifest':
        return cls(
            entries=[ManifestEntry.from_dict(item) for item in data.get('fixtures', [])],
            generated_at=data.get('generated_at', ""),
            schema_version=data.get('schema_version', config.SCHEMA_VERSION),
        )


def manifest_path(target_dir: Path) -> Path:
    return Path(target_dir) / config.MANIFEST_FILENAME


def load_manifest(path: Path) -> FixtureManifest:
    """
    Raises:
        FileNotFoundError: No manifest at path
        ValueError: The file is not a valid manifest
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = json.load(f)
            return FixtureManifest.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed manifest {path}: {e}") from e


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write data to path so readers only ever see the old or the new content."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix='.tmp', dir=str(path.parent))
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


def write_manifest(manifest: FixtureManifest, path: Path) -> Path:
    """Serialize the complete manifest and atomically replace the file at path."""
    write_bytes_atomic(path, manifest.to_json().encode('utf-8'))
    logger.info("Manifest written to %s (%d fixtures)", path, len(manifest))
    return path


# =============================================================================
# DRIFT DETECTION
# =============================================================================

class DriftKind(Enum):
    MISSING = 'missing'
    SIZE_MISMATCH = 'size_mismatch'
    CHECKSUM_MISMATCH = 'checksum_mismatch'


@dataclass(frozen=True)
class DriftRecord:
    fixture_id: str
    kind: DriftKind
    expected: str
    actual: str

    def describe(self) -> str:
        if self.kind is DriftKind.MISSING:
            return f"{self.fixture_id}: file is missing"
        return f"{self.fixture_id}: {self.kind.value} (manifest {self.expected}, disk {self.actual})"


def entry_drift(entry: ManifestEntry, target_dir: Path) -> Optional[DriftRecord]:
    """Compare one manifest entry with the file on disk."""
    path = Path(target_dir) / entry.spec.output_path
    fixture_id = entry.spec.id
    if not path.is_file():
        return DriftRecord(fixture_id, DriftKind.MISSING, entry.content_checksum, "")
    size = path.stat().st_size
    if size != entry.file_size:
        return DriftRecord(fixture_id, DriftKind.SIZE_MISMATCH, str(entry.file_size), str(size))
    checksum = compute_checksum(path)
    if checksum != entry.content_checksum:
        return DriftRecord(fixture_id, DriftKind.CHECKSUM_MISMATCH, entry.content_checksum, checksum)
    return None


def find_drift(manifest: FixtureManifest, target_dir: Path) -> List[DriftRecord]:
    """All entries whose on-disk file no longer matches the manifest."""
    records = []
    for entry in manifest.entries:
        record = entry_drift(entry, target_dir)
        if record is not None:
            records.append(record)
    return records


def check_drift(manifest: FixtureManifest, target_dir: Path) -> None:
    """
    Raises:
        ManifestDrift: If any fixture differs from its manifest record
    """
    records = find_drift(manifest, target_dir)
    if records:
        summary = "; ".join(r.describe() for r in records[:5])
        more = f" (+{len(records) - 5} more)" if len(records) > 5 else ""
        raise ManifestDrift(
            f"{len(records)} fixture(s) drifted from the manifest: {summary}{more}",
            records=records,
        )
