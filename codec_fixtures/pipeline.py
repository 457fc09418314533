"""
Generation Pipeline

Drives a regeneration run end to end:

    plan -> drift check -> capability check -> parallel generate -> commit

Each fixture walks its own state machine:

    PENDING -> SYNTHESIZING -> ENCODING -> TAGGING -> MANIFEST_RECORDED
                    \\              \\          \\
                     +-------------+----------+--> FAILED

A format family whose encoding capability is absent is SKIPPED (reported
once), which is not a failure of the rest of the matrix. When only the tag
writer is missing, just the family's tagged fixtures are skipped.

Every output is written into a hidden staging directory inside the target.
Only when all scheduled fixtures succeeded are the files moved into place and
the complete manifest committed; any failure or cancellation discards the
staging directory and leaves the previous fixtures and manifest untouched.
Files replaced during the commit are first moved aside, so a failed move or
manifest write is rolled back to the previous fixtures.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import config
from codec_fixtures.encoders import CodecEncoder, default_encoder
from codec_fixtures.errors import FixtureError, GenerationCancelled, MissingTool
from codec_fixtures.fixture_spec import DEFAULT_MATRICES, FixtureMatrix, FixtureSpec, expand_matrices
from codec_fixtures.formats import ContainerFormat
from codec_fixtures.manifest import (
    FixtureManifest,
    ManifestEntry,
    check_drift,
    compute_bytes_checksum,
    entry_drift,
    find_drift,
    load_manifest,
    manifest_path,
    utc_timestamp,
    write_manifest,
)
from codec_fixtures.metadata import MetadataInjector
from codec_fixtures.params import GenerationConfig, validate_config
from codec_fixtures.signals import synthesize

logger = logging.getLogger(__name__)

# Staging subdirectory holding the fixtures a commit replaces
BACKUP_DIRNAME = ".replaced"


class FixtureState(Enum):
    PENDING = 'pending'
    SYNTHESIZING = 'synthesizing'
    ENCODING = 'encoding'
    TAGGING = 'tagging'
    MANIFEST_RECORDED = 'manifest_recorded'
    FAILED = 'failed'
    SKIPPED = 'skipped'


TRANSITIONS = {
    FixtureState.PENDING: {FixtureState.SYNTHESIZING, FixtureState.SKIPPED},
    FixtureState.SYNTHESIZING: {FixtureState.ENCODING, FixtureState.FAILED},
    FixtureState.ENCODING: {FixtureState.TAGGING, FixtureState.FAILED},
    FixtureState.TAGGING: {FixtureState.MANIFEST_RECORDED, FixtureState.FAILED},
    FixtureState.MANIFEST_RECORDED: set(),
    FixtureState.FAILED: set(),
    FixtureState.SKIPPED: set(),
}


@dataclass
class FixtureOutcome:
    """
    Mutable per-fixture record owned by exactly one worker at a time.

    Attributes:
        spec: Fixture being produced
        state: Current state (see TRANSITIONS)
        error: Error that failed or skipped the fixture
        failed_in: State the fixture was in when it failed
        content_checksum: SHA-256 of the produced bytes
        file_size: Size of the produced file
        staged_path: Location of the produced file inside the staging directory
        elapsed_sec: Wall-clock time spent on the fixture
    """
    spec: FixtureSpec
    state: FixtureState = FixtureState.PENDING
    error: Optional[Exception] = None
    failed_in: Optional[FixtureState] = None
    content_checksum: Optional[str] = None
    file_size: Optional[int] = None
    staged_path: Optional[Path] = None
    elapsed_sec: float = 0.0

    def advance(self, new_state: FixtureState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"{self.spec.id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def fail(self, error: Exception) -> None:
        failed_in = self.state
        self.advance(FixtureState.FAILED)
        self.failed_in = failed_in
        self.error = error

    def skip(self, error: MissingTool) -> None:
        self.advance(FixtureState.SKIPPED)
        self.error = error

    @property
    def succeeded(self) -> bool:
        """True once the file is produced (staged or recorded)."""
        return self.state in (FixtureState.TAGGING, FixtureState.MANIFEST_RECORDED) \
            and self.content_checksum is not None

    @property
    def error_kind(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, 'kind', type(self.error).__name__)

    def to_dict(self) -> Dict:
        return {
            'id': self.spec.id,
            'state': self.state.value,
            'failed_in': self.failed_in.value if self.failed_in else None,
            'error_kind': self.error_kind,
            'error': str(self.error) if self.error else None,
            'sha256': self.content_checksum,
            'file_size': self.file_size,
            'elapsed_sec': round(self.elapsed_sec, 3),
        }


@dataclass
class GenerationReport:
    """
    Collected outcome of a run; nothing in it is raised.

    Attributes:
        skipped_families: Families with no encoder, all fixtures skipped
        skipped_tagging: Families with no tag writer, tagged fixtures skipped
        commit_error: Error that aborted moving files into place or writing
            the manifest (the previous state was restored)
        unrestored: Fixtures the rollback could not put back
    """
    outcomes: List[FixtureOutcome] = field(default_factory=list)
    skipped_families: Dict[str, MissingTool] = field(default_factory=dict)
    skipped_tagging: Dict[str, MissingTool] = field(default_factory=dict)
    manifest_path: Optional[Path] = None
    committed: bool = False
    dry_run: bool = False
    cancelled: bool = False
    commit_error: Optional[Exception] = None
    unrestored: List[Path] = field(default_factory=list)

    @property
    def failed(self) -> List[FixtureOutcome]:
        return [o for o in self.outcomes if o.state is FixtureState.FAILED]

    @property
    def recorded(self) -> List[FixtureOutcome]:
        return [o for o in self.outcomes if o.state is FixtureState.MANIFEST_RECORDED]

    @property
    def skipped(self) -> List[FixtureOutcome]:
        return [o for o in self.outcomes if o.state is FixtureState.SKIPPED]

    @property
    def exit_code(self) -> int:
        if self.cancelled or self.failed or self.commit_error is not None:
            return config.EXIT_FAILURE
        if self.skipped_families or self.skipped_tagging:
            return config.EXIT_MISSING_TOOL
        return config.EXIT_OK

    def summary_lines(self) -> List[str]:
        lines = []
        for family, error in self.skipped_families.items():
            lines.append(f"SKIP  {family}: {error}")
        for family, error in self.skipped_tagging.items():
            lines.append(f"SKIP  {family} (tagged fixtures only): {error}")
        for outcome in self.failed:
            lines.append(f"FAIL  {outcome.spec.id} [{outcome.error_kind} during "
                         f"{outcome.failed_in.value}]: {outcome.error}")
        total = len(self.outcomes)
        if self.dry_run:
            planned = sum(1 for o in self.outcomes if o.state is FixtureState.PENDING)
            lines.append(f"Dry run: {planned}/{total} fixture(s) can be generated")
        elif self.cancelled:
            lines.append("Generation cancelled; no fixtures or manifest were changed")
        elif self.commit_error is not None:
            if self.unrestored:
                lines.append(f"Commit failed ({self.commit_error}); {len(self.unrestored)} "
                             f"fixture(s) could not be restored, backups kept in the staging directory")
            else:
                lines.append(f"Commit failed ({self.commit_error}); "
                             f"previous fixtures and manifest restored")
        elif self.committed:
            lines.append(f"Generated {len(self.recorded)}/{total} fixture(s); "
                         f"manifest: {self.manifest_path}")
        elif self.failed:
            lines.append(f"{len(self.failed)}/{total} fixture(s) failed; manifest not written")
        else:
            lines.append("Nothing generated; manifest unchanged")
        return lines


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FixtureGenerator:
    """
    Regenerates a fixture corpus into a target directory.

    Parameters:
        params: Run configuration
        encoders: Encoder per container format (defaults: default_encoder)
        injector: Metadata injector (default: ffmpeg/ffprobe based)
        clock: Returns the current time; injectable for reproducible manifests
        matrices: Fixture matrices to expand (default: the built-in corpus)
    """

    def __init__(
        self,
        params: GenerationConfig,
        encoders: Optional[Mapping[ContainerFormat, CodecEncoder]] = None,
        injector: Optional[MetadataInjector] = None,
        clock: Optional[Callable[[], datetime]] = None,
        matrices: Sequence[FixtureMatrix] = DEFAULT_MATRICES,
    ):
        validate_config(params)
        self.params = params
        self.matrices = tuple(matrices)
        self._encoders = dict(encoders or {})
        self.injector = injector or MetadataInjector(
            ffmpeg=params.ffmpeg, ffprobe=params.ffprobe,
            timeout_sec=params.encoder_timeout_sec,
        )
        self.clock = clock or _utc_now
        self._cancel_event = threading.Event()

    # -------------------------------------------------------------------------

    def encoder_for(self, fmt: ContainerFormat) -> CodecEncoder:
        if fmt not in self._encoders:
            self._encoders[fmt] = default_encoder(
                fmt, ffmpeg=self.params.ffmpeg, timeout_sec=self.params.encoder_timeout_sec
            )
        return self._encoders[fmt]

    def cancel(self) -> None:
        """Abort the run; in-flight tool processes are killed."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def plan(self) -> List[FixtureSpec]:
        """
        Expand and validate the matrices, applying the format filter.

        Raises:
            UnsupportedParameterCombination: Before any encoder is touched
        """
        return expand_matrices(self.matrices, self.params.formats)

    def check_capabilities(
        self, specs: Sequence[FixtureSpec]
    ) -> Tuple[Dict[str, MissingTool], Dict[str, MissingTool]]:
        """
        Check each format family once.

        The tag writer is only checked for families that have tagged fixtures
        and a working encoder.

        Returns:
            Tuple of (missing encoders, missing taggers), each a mapping of
            format family -> MissingTool
        """
        missing_encoders: Dict[str, MissingTool] = {}
        missing_taggers: Dict[str, MissingTool] = {}
        families: Dict[ContainerFormat, bool] = {}
        for spec in specs:
            fmt = spec.container_format
            families[fmt] = families.get(fmt, False) or spec.needs_tagging

        for fmt, needs_tagging in families.items():
            try:
                self.encoder_for(fmt).check_available()
            except MissingTool as e:
                missing_encoders[fmt.value] = e
                logger.warning("Skipping %s fixtures: %s", fmt.value, e)
                continue
            if not needs_tagging:
                continue
            try:
                self.injector.check_available(fmt)
            except MissingTool as e:
                missing_taggers[fmt.value] = e
                logger.warning("Skipping tagged %s fixtures: %s", fmt.value, e)
        return missing_encoders, missing_taggers

    # -------------------------------------------------------------------------

    def generate_one(self, spec: FixtureSpec, staging_dir: Path,
                     outcome: Optional[FixtureOutcome] = None) -> FixtureOutcome:
        """
        Produce one fixture into staging_dir. Never raises for a fixture
        error; the outcome carries it.
        """
        outcome = outcome or FixtureOutcome(spec)
        started = time.monotonic()
        try:
            outcome.advance(FixtureState.SYNTHESIZING)
            self._check_cancelled()
            pcm = synthesize(spec.reference)

            outcome.advance(FixtureState.ENCODING)
            self._check_cancelled()
            encoder = self.encoder_for(spec.container_format)
            data = encoder.encode(spec.reference, spec.params_dict, pcm=pcm,
                                  cancel_event=self._cancel_event)

            outcome.advance(FixtureState.TAGGING)
            self._check_cancelled()
            data = self.injector.apply_verified(
                data, spec.container_format, spec.tags_dict,
                artwork=spec.artwork, cancel_event=self._cancel_event, fixture_id=spec.id,
            )

            staged = Path(staging_dir) / spec.output_path
            staged.parent.mkdir(parents=True, exist_ok=True)
            staged.write_bytes(data)
            outcome.staged_path = staged
            outcome.content_checksum = compute_bytes_checksum(data)
            outcome.file_size = len(data)
        except (FixtureError, OSError) as e:
            if isinstance(e, FixtureError) and e.fixture_id is None:
                e.fixture_id = spec.id
            outcome.fail(e)
        finally:
            outcome.elapsed_sec = time.monotonic() - started

        if outcome.state is FixtureState.FAILED:
            logger.error("%s failed during %s: %s", spec.id, outcome.failed_in.value, outcome.error)
        else:
            logger.info("%s: %d bytes, sha256 %s", spec.id, outcome.file_size,
                        outcome.content_checksum[:12])
        return outcome

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise GenerationCancelled("Generation cancelled")

    # -------------------------------------------------------------------------

    def _load_previous(self) -> Optional[FixtureManifest]:
        path = manifest_path(self.params.target_dir)
        if not path.exists():
            return None
        try:
            return load_manifest(path)
        except ValueError:
            if not self.params.force:
                raise
            logger.warning("Ignoring unreadable manifest %s (--force)", path)
            return None

    def _check_previous(self, previous: Optional[FixtureManifest]) -> None:
        """
        Raises:
            ManifestDrift: On-disk fixtures differ from the manifest and
                force is off
        """
        if previous is None:
            return
        if not self.params.force:
            check_drift(previous, self.params.target_dir)
            return
        records = find_drift(previous, self.params.target_dir)
        if records:
            logger.warning("Overwriting %d drifted fixture(s) (--force)", len(records))

    def run(self) -> GenerationReport:
        """
        Execute the full regeneration.

        Raises:
            UnsupportedParameterCombination: The matrix is invalid
            ManifestDrift: Existing fixtures drifted and force is off
            ValueError: The existing manifest is unreadable and force is off
        """
        specs = self.plan()
        previous = self._load_previous()
        self._check_previous(previous)

        report = GenerationReport(outcomes=[FixtureOutcome(s) for s in specs],
                                  dry_run=self.params.dry_run)
        report.skipped_families, report.skipped_tagging = self.check_capabilities(specs)
        runnable = []
        for outcome in report.outcomes:
            family = outcome.spec.container_format.value
            error = report.skipped_families.get(family)
            if error is None and outcome.spec.needs_tagging:
                error = report.skipped_tagging.get(family)
            if error is not None:
                outcome.skip(error)
            else:
                runnable.append(outcome)

        if self.params.dry_run:
            logger.info("Dry run: %d fixture(s) planned, %d skipped",
                        len(runnable), len(report.skipped))
            return report
        if not runnable:
            return report

        target = self.params.target_dir
        target.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=config.STAGING_PREFIX, dir=str(target)))
        try:
            self._generate_all(runnable, staging)
            report.cancelled = self.cancelled
            if report.cancelled or report.failed:
                return report
            self._commit(report, runnable, previous, staging)
        finally:
            if report.unrestored:
                logger.error("Keeping %s: it holds %d fixture(s) that could not be restored",
                             staging, len(report.unrestored))
            else:
                shutil.rmtree(staging, ignore_errors=True)
        return report

    def _generate_all(self, runnable: List[FixtureOutcome], staging: Path) -> None:
        executor = ThreadPoolExecutor(max_workers=self.params.max_workers)
        try:
            futures = [executor.submit(self.generate_one, o.spec, staging, o) for o in runnable]
            for future in as_completed(futures):
                future.result()
        except KeyboardInterrupt:
            logger.warning("Interrupted; cancelling in-flight fixtures")
            self.cancel()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _commit(self, report: GenerationReport, generated: List[FixtureOutcome],
                previous: Optional[FixtureManifest], staging: Path) -> None:
        """
        Move staged files into place, then write the full manifest.

        Each fixture about to be overwritten is first moved into the staging
        directory. If any move or the manifest write fails, those files are
        put back and the new ones removed, so the previous manifest still
        matches the directory; the error is recorded on the report.
        """
        target = self.params.target_dir
        timestamp = utc_timestamp(self.clock())
        backup_root = staging / BACKUP_DIRNAME
        moved: List[Tuple[Path, Optional[Path]]] = []

        try:
            for outcome in generated:
                final_path = target / outcome.spec.output_path
                final_path.parent.mkdir(parents=True, exist_ok=True)
                backup = None
                if final_path.exists():
                    backup = backup_root / outcome.spec.output_path
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(final_path, backup)
                moved.append((final_path, backup))
                os.replace(outcome.staged_path, final_path)

            fresh = {
                o.spec.id: ManifestEntry(o.spec, o.content_checksum, o.file_size, timestamp)
                for o in generated
            }
            carried = self._carry_over(previous, fresh)

            entries = []
            for spec in expand_matrices(self.matrices):
                entry = fresh.get(spec.id) or carried.get(spec.id)
                if entry is not None:
                    entries.append(entry)

            manifest = FixtureManifest(entries=entries, generated_at=timestamp)
            report.manifest_path = write_manifest(manifest, manifest_path(target))
        except OSError as e:
            logger.error("Commit failed, restoring previous fixtures: %s", e)
            report.commit_error = e
            report.unrestored = self._rollback(moved)
            return

        report.committed = True
        for outcome in generated:
            outcome.advance(FixtureState.MANIFEST_RECORDED)

    def _rollback(self, moved: List[Tuple[Path, Optional[Path]]]) -> List[Path]:
        """Undo commit moves in reverse order. Returns the paths left unrestored."""
        unrestored = []
        for final_path, backup in reversed(moved):
            try:
                if backup is None:
                    final_path.unlink(missing_ok=True)
                else:
                    os.replace(backup, final_path)
            except OSError as e:
                logger.error("Could not restore %s: %s", final_path, e)
                unrestored.append(final_path)
        return unrestored

    def _carry_over(self, previous: Optional[FixtureManifest],
                    fresh: Mapping[str, ManifestEntry]) -> Dict[str, ManifestEntry]:
        """Previous entries for fixtures this run did not regenerate and that are intact."""
        if previous is None:
            return {}
        carried = {}
        for entry in previous.entries:
            if entry.spec.id in fresh:
                continue
            if entry_drift(entry, self.params.target_dir) is not None:
                logger.warning("Dropping drifted entry %s from the manifest", entry.spec.id)
                continue
            carried[entry.spec.id] = entry
        return carried
